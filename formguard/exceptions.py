"""Exception hierarchy for formguard.

Only programming and usage errors are raised. Validation failures are
reported as ValidationError records (see formguard.errors), never raised.
"""

from typing import Any


class FormGuardError(Exception):
    """Base class for all exceptions raised by formguard."""


class InvalidStateError(FormGuardError):
    """Raised when an operation is not allowed in the object's current state.

    Attributes:
        target: The object that rejected the operation
        message: Human-readable error message
    """

    def __init__(self, target: Any, message: str):
        self.target = target
        super().__init__(message)


class JobAbortedError(FormGuardError):
    """Raised by AbortSignal.raise_if_aborted() once the signal was aborted.

    Attributes:
        reason: The reason given to AbortController.abort(), if any
    """

    def __init__(self, reason: Any = None):
        self.reason = reason
        if reason is None:
            super().__init__("Job was aborted")
        else:
            super().__init__(f"Job was aborted: {reason}")


__all__ = [
    "FormGuardError",
    "InvalidStateError",
    "JobAbortedError",
]
