"""
Error types raised by the progress core.

Not-found lookups are not errors: Registry.get returns None and
Registry.stream closes the connection. Only waiting on a start signal
raises, and it raises one of the two scope outcomes below.
"""


class ProgressError(Exception):
    """Base class for progress tracking errors."""


class Cancelled(ProgressError):
    """The scope was cancelled before the awaited event happened."""

    def __init__(self, message: str = "scope cancelled"):
        super().__init__(message)


class DeadlineExceeded(ProgressError, TimeoutError):
    """The scope's deadline passed before the awaited event happened."""

    def __init__(self, message: str = "deadline exceeded"):
        super().__init__(message)
