class RunnerError(Exception):
    """Base class for set runner errors."""


class InvalidInput(RunnerError, ValueError):
    """Rejected user input; the run state is left untouched."""


class DataUnavailable(RunnerError):
    """A data source or persistence call failed or returned nothing."""


class TimerUnderrun(RuntimeWarning):
    """Issued when a countdown value had to be clamped to zero."""
