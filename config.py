import os
import yaml
import keyring

from settings_schema import RunnerSettings, validate_settings

ENV_PREFIX = "SETRUNNER_"


class YamlConfig:
    """Runner settings stored in a YAML file.

    With ``ENCRYPT_SETTINGS=1`` the secret keys live in the system keyring and
    the file only records that they are set.
    """

    SENSITIVE_KEYS = {"api_token"}

    def __init__(self, path: str = "settings.yaml", service: str = "setrunner") -> None:
        self.path = path
        self.service = service
        self.encrypt = os.environ.get("ENCRYPT_SETTINGS") == "1"

    def _reveal(self, data: dict) -> dict:
        for key in self.SENSITIVE_KEYS & data.keys():
            secret = keyring.get_password(self.service, key)
            if secret is None:
                del data[key]
            else:
                data[key] = secret
        return data

    def _conceal(self, data: dict) -> dict:
        for key in self.SENSITIVE_KEYS & data.keys():
            keyring.set_password(self.service, key, str(data[key]))
            data[key] = True
        return data

    def load(self) -> dict:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return self._reveal(data) if self.encrypt else data

    def save(self, data: dict) -> None:
        out = dict(data)
        if self.encrypt:
            out = self._conceal(out)
        with open(self.path, "w", encoding="utf-8") as f:
            yaml.safe_dump(out, f)


def env_overrides(environ=None) -> dict:
    """Return ``SETRUNNER_*`` variables as lower-case setting names."""
    environ = os.environ if environ is None else environ
    fields = RunnerSettings.model_fields
    out = {}
    for name, value in environ.items():
        if not name.startswith(ENV_PREFIX):
            continue
        key = name[len(ENV_PREFIX):].lower()
        if key in fields:
            out[key] = value
    return out


def load_settings(path: str = "settings.yaml") -> RunnerSettings:
    """Return validated settings from ``path`` (defaults when missing).

    Environment variables take precedence over the file.
    """
    data = YamlConfig(path).load()
    data.update(env_overrides())
    return validate_settings(data)


def save_settings(settings: RunnerSettings, path: str = "settings.yaml") -> None:
    data = settings.model_dump(mode="json", exclude_none=True)
    YamlConfig(path).save(data)
