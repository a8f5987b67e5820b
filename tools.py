import math
import re
import warnings

from errors import TimerUnderrun


class MathTools:
    """Provides numeric helpers for set input and rest countdowns."""

    MAX_WEIGHT: float = 500.0
    MAX_REPS: int = 100
    WEIGHT_STEP: float = 5.0
    REPS_STEP: int = 1

    @staticmethod
    def clamp(value: float, min_value: float, max_value: float) -> float:
        """Clamp ``value`` to the inclusive range [min_value, max_value]."""
        if min_value > max_value:
            raise ValueError("min_value must not exceed max_value")
        return max(min_value, min(value, max_value))

    @staticmethod
    def is_finite_number(value: object) -> bool:
        """Return True for real, finite numbers (bools excluded)."""
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return False
        return math.isfinite(value)

    @classmethod
    def clamp_weight(cls, weight: float, max_weight: float | None = None) -> float:
        upper = cls.MAX_WEIGHT if max_weight is None else max_weight
        if not cls.is_finite_number(weight):
            return 0.0
        return float(cls.clamp(weight, 0.0, upper))

    @classmethod
    def clamp_reps(cls, reps: int, max_reps: int | None = None) -> int:
        upper = cls.MAX_REPS if max_reps is None else max_reps
        if not cls.is_finite_number(reps):
            return 0
        return int(cls.clamp(int(reps), 0, upper))

    @staticmethod
    def non_negative_seconds(value: object) -> int:
        """Return ``value`` as whole seconds, clamping bad input to zero.

        Negative and non-finite values emit a :class:`TimerUnderrun` warning.
        """
        if not MathTools.is_finite_number(value):
            warnings.warn(f"non-finite duration {value!r} clamped to 0", TimerUnderrun)
            return 0
        seconds = int(value)
        if seconds < 0:
            warnings.warn(f"negative duration {seconds} clamped to 0", TimerUnderrun)
            return 0
        return seconds


class InputTools:
    """Parsing for direct numeric entry fields."""

    _NON_DIGITS = re.compile(r"[^0-9]")

    @classmethod
    def parse_entry(cls, text: str | None) -> int:
        """Return the integer typed into an entry field.

        Every non-digit character is stripped before parsing and an empty
        entry counts as 0.
        """
        digits = cls._NON_DIGITS.sub("", text or "")
        if not digits:
            return 0
        return int(digits)

    @staticmethod
    def leading_reps(label: str | None) -> int:
        """Return the first whole number in a target reps label like ``8-10``."""
        match = re.search(r"\d+", label or "")
        return int(match.group(0)) if match else 0


class TimeFormatter:
    """Formats countdowns for display."""

    @staticmethod
    def format_clock(seconds: object) -> str:
        """Return ``seconds`` as ``M:SS``; negative or non-finite input shows ``0:00``."""
        if not MathTools.is_finite_number(seconds) or seconds < 0:
            return "0:00"
        total = int(seconds)
        minutes, secs = divmod(total, 60)
        return f"{minutes}:{secs:02d}"
