from enum import Enum

from pydantic import BaseModel, Field, ValidationError


class ExtendPolicy(str, Enum):
    """What adding rest does to a countdown that already expired."""

    REOPEN = "reopen"
    KEEP_FINISHED = "keep_finished"


class PersistMode(str, Enum):
    PER_SET = "per_set"
    BATCH = "batch"


class RunnerSettings(BaseModel):
    default_rest_seconds: int = Field(90, ge=0)
    max_rest_seconds: int = Field(3600, ge=0)
    rest_increment_seconds: int = Field(30, ge=1)
    weight_step: float = Field(5.0, gt=0)
    reps_step: int = Field(1, ge=1)
    max_weight: float = Field(500.0, ge=0)
    max_reps: int = Field(100, ge=0)
    extend_policy: ExtendPolicy = ExtendPolicy.REOPEN
    allow_early_next_set: bool = False
    persist_mode: PersistMode = PersistMode.PER_SET
    haptics_enabled: bool = True
    log_level: str = "INFO"
    api_url: str = "http://localhost:8000"
    api_token: str | None = None


def validate_settings(data: dict) -> RunnerSettings:
    try:
        return RunnerSettings(**data)
    except ValidationError as e:
        raise ValueError(str(e))
