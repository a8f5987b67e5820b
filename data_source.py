"""Collaborator interfaces consumed by the set runner and their SQLite adapters.

Records coming from outside (database rows, JSON payloads) are normalized here
so the runner only ever sees :class:`ExercisePlan` and :class:`PrescribedSet`.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional, Protocol, Sequence

from db import (
    AsyncSessionRepository,
    AsyncSetLogRepository,
    AsyncTemplateExerciseRepository,
    AsyncTemplateSetRepository,
    AsyncTemplateWorkoutRepository,
    NotificationRepository,
)
from errors import DataUnavailable
from set_tracker import PrescribedSet, SetLog
from tools import MathTools

logger = logging.getLogger(__name__)

DEFAULT_REST_SECONDS = 90

REPS_FIELDS = ("target_reps", "targetReps", "reps", "rep_range", "repRange", "target")
REST_FIELDS = ("rest_seconds", "restSeconds", "rest_sec", "rest", "rest_time", "restTime")
EXERCISE_ID_FIELDS = ("exercise_id", "exerciseId", "id")
TEMPLATE_ID_FIELDS = ("template_id", "templateId", "workout_template_id")
NAME_FIELDS = ("name", "title", "exercise_name", "exerciseName")


@dataclass(frozen=True)
class ExercisePlan:
    exercise_id: int
    name: str
    sets: tuple[PrescribedSet, ...]
    template_id: Optional[int] = None


@dataclass(frozen=True)
class TemplateInfo:
    template_id: int
    program_id: Optional[int]
    name: str


class DataSource(Protocol):
    async def load_plan(self, exercise_id: int) -> Optional[ExercisePlan]: ...

    async def list_template_exercises(self, template_id: int) -> list[int]: ...

    async def fetch_template(self, template_id: int) -> Optional[TemplateInfo]: ...

    async def list_program_templates(self, program_id: int) -> list[int]: ...


class PersistenceSink(Protocol):
    async def open_session(self, template_id: Optional[int], exercise_id: Optional[int]) -> int: ...

    async def save_set(self, session_id: int, exercise_id: Optional[int], log: SetLog) -> None: ...

    async def save_batch(
        self, session_id: int, exercise_id: Optional[int], logs: Sequence[SetLog]
    ) -> None: ...

    async def close_session(self, session_id: int) -> None: ...


def _first_present(record: Mapping, fields: Iterable[str]):
    for field in fields:
        value = record.get(field)
        if value is not None and value != "":
            return value
    return None


def normalize_identifier(value: object) -> Optional[int]:
    """Return ``value`` as an int id, or None when it cannot be one."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def normalize_prescribed_set(
    record: Mapping, default_rest: int = DEFAULT_REST_SECONDS
) -> PrescribedSet:
    """Build a :class:`PrescribedSet` from a loosely-typed record.

    Different stores spell the fields differently; the first populated
    spelling wins. Missing or unusable rest values fall back to ``default_rest``.
    """
    label = _first_present(record, REPS_FIELDS)
    rest = _first_present(record, REST_FIELDS)
    try:
        rest_seconds = int(float(rest)) if rest is not None else default_rest
    except (TypeError, ValueError):
        rest_seconds = default_rest
    return PrescribedSet(
        target_reps_label=str(label) if label is not None else "",
        rest_seconds=MathTools.non_negative_seconds(rest_seconds),
    )


def normalize_plan(
    record: Mapping, default_rest: int = DEFAULT_REST_SECONDS
) -> Optional[ExercisePlan]:
    """Build an :class:`ExercisePlan` from an exercise record with a ``sets`` list."""
    exercise_id = normalize_identifier(_first_present(record, EXERCISE_ID_FIELDS))
    if exercise_id is None:
        return None
    raw_sets = record.get("sets") or []
    sets = tuple(normalize_prescribed_set(s, default_rest) for s in raw_sets if isinstance(s, Mapping))
    if not sets:
        return None
    name = _first_present(record, NAME_FIELDS)
    return ExercisePlan(
        exercise_id=exercise_id,
        name=str(name) if name is not None else f"Exercise {exercise_id}",
        sets=sets,
        template_id=normalize_identifier(_first_present(record, TEMPLATE_ID_FIELDS)),
    )


class SqliteDataSource:
    """Reads plans and template ordering from the local SQLite store."""

    def __init__(self, db_path: str = "workout.db", default_rest: int = DEFAULT_REST_SECONDS) -> None:
        self.default_rest = default_rest
        self.templates = AsyncTemplateWorkoutRepository(db_path)
        self.exercises = AsyncTemplateExerciseRepository(db_path)
        self.sets = AsyncTemplateSetRepository(db_path)

    async def load_plan(self, exercise_id: int) -> Optional[ExercisePlan]:
        detail = await self.exercises.fetch_detail(exercise_id)
        if detail is None:
            return None
        ex_id, template_id, name = detail
        rows = await self.sets.fetch_for_exercise(ex_id)
        record = {
            "exercise_id": ex_id,
            "template_id": template_id,
            "name": name,
            "sets": [
                {"target_reps": reps, "rest_seconds": rest} for _sid, reps, rest in rows
            ],
        }
        return normalize_plan(record, self.default_rest)

    async def list_template_exercises(self, template_id: int) -> list[int]:
        return await self.exercises.fetch_ids_for_template(template_id)

    async def fetch_template(self, template_id: int) -> Optional[TemplateInfo]:
        detail = await self.templates.fetch_detail(template_id)
        if detail is None:
            return None
        tid, program_id, name = detail
        return TemplateInfo(template_id=tid, program_id=program_id, name=name)

    async def list_program_templates(self, program_id: int) -> list[int]:
        return await self.templates.fetch_ids_for_program(program_id)


class SqlitePersistenceSink:
    """Stores completed sets in the local SQLite store."""

    def __init__(self, db_path: str = "workout.db") -> None:
        self.sessions = AsyncSessionRepository(db_path)
        self.logs = AsyncSetLogRepository(db_path)

    async def open_session(self, template_id: Optional[int], exercise_id: Optional[int]) -> int:
        return await self.sessions.open(template_id, exercise_id)

    async def save_set(self, session_id: int, exercise_id: Optional[int], log: SetLog) -> None:
        await self.logs.add(session_id, exercise_id, log.set_number, log.weight, log.reps)

    async def save_batch(
        self, session_id: int, exercise_id: Optional[int], logs: Sequence[SetLog]
    ) -> None:
        await self.logs.bulk_add(
            session_id, exercise_id, [(l.set_number, l.weight, l.reps) for l in logs]
        )

    async def close_session(self, session_id: int) -> None:
        await self.sessions.close(session_id)


class NotificationHaptics:
    """Alert channel that records a notification for each finished rest."""

    def __init__(self, db_path: str = "workout.db", message: str = "Rest over!") -> None:
        self.repo = NotificationRepository(db_path)
        self.message = message

    def __call__(self) -> None:
        try:
            self.repo.add(self.message)
        except sqlite3.Error as e:
            logger.warning("rest-over alert not stored: %s", e)


async def load_plan_or_none(source: DataSource, exercise_id: int) -> Optional[ExercisePlan]:
    """Return the plan for ``exercise_id``; failures are logged and yield None."""
    try:
        plan = await source.load_plan(exercise_id)
    except Exception as e:
        logger.warning("plan lookup for exercise %s failed: %s", exercise_id, e)
        return None
    if plan is None:
        logger.info("no plan for exercise %s", exercise_id)
    return plan


def require_plan(plan: Optional[ExercisePlan], exercise_id: int) -> ExercisePlan:
    if plan is None:
        raise DataUnavailable(f"no prescribed sets for exercise {exercise_id}")
    return plan
