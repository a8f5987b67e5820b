from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from tools import MathTools, TimeFormatter

MAX_REST_SECONDS = 3600


class TimerPhase(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    EXPIRED = "expired"


@dataclass(frozen=True)
class TimerState:
    total_seconds: int = 0
    remaining_seconds: int = 0
    paused: bool = False
    finished: bool = False

    @property
    def phase(self) -> TimerPhase:
        if self.finished:
            return TimerPhase.EXPIRED
        if self.paused:
            return TimerPhase.PAUSED
        return TimerPhase.RUNNING

    @property
    def display(self) -> str:
        return TimeFormatter.format_clock(self.remaining_seconds)

    def as_dict(self) -> dict:
        return {
            "total_seconds": self.total_seconds,
            "remaining_seconds": self.remaining_seconds,
            "paused": self.paused,
            "finished": self.finished,
            "phase": self.phase.value,
            "display": self.display,
        }


class RestTimer:
    """Countdown between sets, advanced one second per :meth:`tick`.

    ``on_expire`` is called once each time the countdown reaches zero.
    """

    def __init__(
        self,
        on_expire: Optional[Callable[[], None]] = None,
        max_seconds: int = MAX_REST_SECONDS,
    ) -> None:
        self.on_expire = on_expire
        self.max_seconds = max_seconds
        self._total = 0
        self._remaining = 0
        self._paused = False
        self._finished = False

    @property
    def state(self) -> TimerState:
        return TimerState(self._total, self._remaining, self._paused, self._finished)

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def remaining(self) -> int:
        return self._remaining

    @property
    def total(self) -> int:
        return self._total

    def start(self, total_seconds: int) -> None:
        seconds = MathTools.non_negative_seconds(total_seconds)
        self._total = seconds
        self._remaining = seconds
        self._paused = False
        self._finished = False
        if seconds == 0:
            self._expire()

    def tick(self) -> None:
        if self._paused or self._finished:
            return
        self._remaining = max(0, self._remaining - 1)
        if self._remaining == 0:
            self._expire()

    def check_expired(self) -> bool:
        """Observe a zeroed countdown without consuming a tick."""
        if not self._finished and self._remaining == 0:
            self._expire()
        return self._finished

    def toggle_pause(self) -> None:
        if self._finished:
            return
        self._paused = not self._paused

    def extend(self, delta_seconds: int) -> int:
        """Add ``delta_seconds`` to both totals and return the seconds actually added.

        The total is capped at ``max_seconds``; a negative delta shortens the
        countdown but never below zero. A prescribed rest already longer than
        the cap is never cut down by an extension. The finished flag is left
        alone.
        """
        if not MathTools.is_finite_number(delta_seconds):
            return 0
        delta = int(delta_seconds)
        ceiling = max(self.max_seconds, self._total)
        new_total = int(MathTools.clamp(self._total + delta, 0, ceiling))
        applied = new_total - self._total
        self._total = new_total
        self._remaining = int(MathTools.clamp(self._remaining + applied, 0, self._total))
        return applied

    def reopen(self) -> bool:
        """Clear ``finished`` when time remains, resuming the countdown."""
        if self._finished and self._remaining > 0:
            self._finished = False
            self._paused = False
            return True
        return False

    def skip(self) -> None:
        self._remaining = 0

    def reset(self) -> None:
        self._total = 0
        self._remaining = 0
        self._paused = False
        self._finished = False

    def format_remaining(self) -> str:
        return TimeFormatter.format_clock(self._remaining)

    def _expire(self) -> None:
        self._finished = True
        if self.on_expire is not None:
            self.on_expire()
