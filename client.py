import asyncio
import logging
import requests
from typing import Optional

from data_source import (
    DEFAULT_REST_SECONDS,
    ExercisePlan,
    TemplateInfo,
    normalize_identifier,
    normalize_plan,
)

logger = logging.getLogger(__name__)


class RunnerClient:
    """Simple REST client for the set runner API."""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        token: Optional[str] = None,
        session=None,
        timeout: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        self.headers = {"Authorization": f"Bearer {token}"} if token else {}

    def _get(self, path: str, allow_missing: bool = False):
        resp = self.session.get(f"{self.base_url}{path}", headers=self.headers, timeout=self.timeout)
        if allow_missing and resp.status_code == 404:
            return None
        resp.raise_for_status()
        return resp.json()

    def _post(self, path: str, **params):
        resp = self.session.post(
            f"{self.base_url}{path}", params=params, headers=self.headers, timeout=self.timeout
        )
        resp.raise_for_status()
        return resp.json()

    def fetch_plan(self, exercise_id: int) -> Optional[dict]:
        return self._get(f"/exercises/{exercise_id}/plan", allow_missing=True)

    def fetch_template(self, template_id: int) -> Optional[dict]:
        return self._get(f"/templates/{template_id}", allow_missing=True)

    def list_template_exercises(self, template_id: int) -> list[dict]:
        return self._get(f"/templates/{template_id}/exercises")

    def list_program_templates(self, program_id: int) -> list[dict]:
        return self._get(f"/programs/{program_id}/templates")

    def start_run(self, exercise_id: int) -> dict:
        return self._post("/runs", exercise_id=exercise_id)

    def complete_set(self, run_id: int, weight: float, reps: int) -> dict:
        self._post(f"/runs/{run_id}/weight", amount=weight)
        self._post(f"/runs/{run_id}/reps", amount=reps)
        return self._post(f"/runs/{run_id}/complete")


class RemoteDataSource:
    """Data source reading plans from a remote runner API.

    Blocking HTTP calls run in a worker thread so the event loop keeps ticking.
    """

    def __init__(self, client: RunnerClient, default_rest: int = DEFAULT_REST_SECONDS) -> None:
        self.client = client
        self.default_rest = default_rest

    async def load_plan(self, exercise_id: int) -> Optional[ExercisePlan]:
        record = await asyncio.to_thread(self.client.fetch_plan, exercise_id)
        if record is None:
            logger.debug("exercise %s not found at %s", exercise_id, self.client.base_url)
            return None
        return normalize_plan(record, self.default_rest)

    async def list_template_exercises(self, template_id: int) -> list[int]:
        rows = await asyncio.to_thread(self.client.list_template_exercises, template_id)
        return self._ids(rows)

    async def fetch_template(self, template_id: int) -> Optional[TemplateInfo]:
        record = await asyncio.to_thread(self.client.fetch_template, template_id)
        if record is None:
            return None
        tid = normalize_identifier(record.get("id"))
        if tid is None:
            return None
        return TemplateInfo(
            template_id=tid,
            program_id=normalize_identifier(record.get("program_id", record.get("programId"))),
            name=str(record.get("name") or record.get("title") or f"Template {tid}"),
        )

    async def list_program_templates(self, program_id: int) -> list[int]:
        rows = await asyncio.to_thread(self.client.list_program_templates, program_id)
        return self._ids(rows)

    @staticmethod
    def _ids(rows) -> list[int]:
        ids = []
        for row in rows or []:
            value = normalize_identifier(row.get("id") if isinstance(row, dict) else row)
            if value is not None:
                ids.append(value)
        return sorted(ids)
