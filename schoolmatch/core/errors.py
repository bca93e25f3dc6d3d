"""Failure taxonomy for the matching core.

Primary failures and validation failures propagate to the direct caller.
Secondary failures are logged at the boundary of the task that produced them
and never reach the primary call chain.
"""


class SchoolMatchError(Exception):
    """Base class for every error raised by the core."""

    def __init__(self, message: str, operation: str | None = None):
        super().__init__(message)
        self.message = message
        self.operation = operation


class ValidationFailure(SchoolMatchError):
    """Caller-supplied data failed a precondition. Raised before any write."""


class RecordNotFound(ValidationFailure):
    """A referenced id does not exist in the store."""


class PrimaryWriteFailure(SchoolMatchError):
    """The operation's main effect could not be persisted."""


class SecondaryEffectFailure(SchoolMatchError):
    """A best-effort side effect failed."""


class TimeoutFailure(SchoolMatchError):
    """An external call did not complete within its budget.

    ``primary`` tells whether the timed-out call was the write the caller is
    waiting on (reportable, "try again") or a secondary effect (swallowed).
    """

    def __init__(self, operation: str, seconds: float, primary: bool = False):
        super().__init__(f"{operation} timed out after {seconds:g}s", operation=operation)
        self.seconds = seconds
        self.primary = primary
