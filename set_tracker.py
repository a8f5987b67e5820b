from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from errors import InvalidInput
from tools import MathTools


@dataclass(frozen=True)
class PrescribedSet:
    """Planned target for one set: a reps label such as ``8-10`` and the rest after it."""

    target_reps_label: str
    rest_seconds: int

    def __post_init__(self) -> None:
        if self.rest_seconds < 0:
            raise ValueError("rest_seconds must be non-negative")


@dataclass(frozen=True)
class SetLog:
    """Recorded outcome of a completed set."""

    set_number: int
    weight: float
    reps: int

    def as_dict(self) -> dict:
        return {"set_number": self.set_number, "weight": self.weight, "reps": self.reps}


class SetProgressTracker:
    """Tracks position in a fixed sequence of prescribed sets."""

    def __init__(self, sets: Iterable[PrescribedSet]) -> None:
        self._sets: tuple[PrescribedSet, ...] = tuple(sets)
        if not self._sets:
            raise InvalidInput("exercise has no prescribed sets")
        self._index = 0
        self._logs: list[SetLog] = []

    @property
    def total_sets(self) -> int:
        return len(self._sets)

    @property
    def current_index(self) -> int:
        return self._index

    @property
    def prescribed(self) -> tuple[PrescribedSet, ...]:
        return self._sets

    @property
    def logs(self) -> tuple[SetLog, ...]:
        return tuple(self._logs)

    def current_set(self) -> Optional[PrescribedSet]:
        if self._index >= len(self._sets):
            return None
        return self._sets[self._index]

    def is_last_set(self) -> bool:
        return self._index == len(self._sets) - 1

    def is_current_recorded(self) -> bool:
        return len(self._logs) > self._index

    def record_completion(self, weight: float, reps: int) -> SetLog:
        """Append a log for the current set.

        Raises :class:`InvalidInput` without touching the history when reps are
        not positive, weight is negative, or the current set is already logged.
        """
        if not MathTools.is_finite_number(weight) or weight < 0:
            raise InvalidInput("weight must be non-negative")
        if not MathTools.is_finite_number(reps) or reps <= 0:
            raise InvalidInput("reps must be positive")
        if self._index >= len(self._sets):
            raise InvalidInput("sequence exhausted")
        if self.is_current_recorded():
            raise InvalidInput(f"set {self._index + 1} already recorded")
        log = SetLog(set_number=self._index + 1, weight=float(weight), reps=int(reps))
        self._logs.append(log)
        return log

    def advance(self) -> bool:
        """Move to the next set; return False when the sequence is exhausted."""
        if self._index + 1 >= len(self._sets):
            return False
        self._index += 1
        return True

    def last_log(self) -> Optional[SetLog]:
        return self._logs[-1] if self._logs else None

    def reset(self) -> None:
        self._index = 0
        self._logs.clear()
