from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

from data_source import DataSource

logger = logging.getLogger(__name__)


class SuccessorKind(str, Enum):
    EXERCISE = "exercise"
    WORKOUT = "workout"


@dataclass(frozen=True)
class Successor:
    kind: SuccessorKind
    target_id: int

    def as_dict(self) -> dict:
        return {"kind": self.kind.value, "target_id": self.target_id}


class Navigator(Protocol):
    def go_to_successor(self, successor: Successor) -> None: ...

    def go_home(self) -> None: ...


class CancellationScope:
    """Owns async work for one run; results are applied only while active."""

    def __init__(self) -> None:
        self._cancelled = False
        self._tasks: set[asyncio.Task] = set()

    @property
    def active(self) -> bool:
        return not self._cancelled

    @property
    def pending(self) -> list[asyncio.Task]:
        return list(self._tasks)

    def spawn(self, coro) -> Optional[asyncio.Task]:
        if self._cancelled:
            coro.close()
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            raise
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def cancel(self) -> None:
        self._cancelled = True
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()


def _next_after(ordered: list[int], current: int) -> Optional[int]:
    if current not in ordered:
        return None
    idx = ordered.index(current)
    return ordered[idx + 1] if idx + 1 < len(ordered) else None


class CompletionReporter:
    """Decides where to go once an exercise is done and tells the navigator."""

    def __init__(self, data_source: DataSource, navigator: Navigator) -> None:
        self.data_source = data_source
        self.navigator = navigator

    async def resolve_next(
        self, exercise_id: int, template_id: Optional[int] = None
    ) -> Optional[Successor]:
        """Return the next exercise of the template, else the next template of the program.

        Siblings are ordered by ascending id. Lookup failures yield None.
        """
        try:
            if template_id is None:
                plan = await self.data_source.load_plan(exercise_id)
                template_id = plan.template_id if plan is not None else None
            if template_id is None:
                return None
            exercises = sorted(await self.data_source.list_template_exercises(template_id))
            next_exercise = _next_after(exercises, exercise_id)
            if next_exercise is not None:
                return Successor(SuccessorKind.EXERCISE, next_exercise)
            template = await self.data_source.fetch_template(template_id)
            if template is None or template.program_id is None:
                return None
            templates = sorted(await self.data_source.list_program_templates(template.program_id))
            next_template = _next_after(templates, template_id)
            if next_template is not None:
                return Successor(SuccessorKind.WORKOUT, next_template)
            return None
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("successor lookup for exercise %s failed: %s", exercise_id, e)
            return None

    async def report(
        self,
        exercise_id: int,
        scope: CancellationScope,
        template_id: Optional[int] = None,
    ) -> Optional[Successor]:
        successor = await self.resolve_next(exercise_id, template_id)
        if not scope.active:
            logger.debug("run torn down; dropping successor %s", successor)
            return None
        if successor is not None:
            self.navigator.go_to_successor(successor)
        else:
            self.navigator.go_home()
        return successor
