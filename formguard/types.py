"""Core type definitions for formguard.

This module defines the enumerations shared across the package:
- JobState: Lifecycle states of an AsyncJob
- EventType: Event types emitted on the observability channel
- HandlerKind: The kind of validation handler that produced an error bucket
"""

from enum import Enum


class JobState(str, Enum):
    """AsyncJob lifecycle states.

    idle --request--> running --(no pending)--> idle
    running --(pending on completion)--> scheduled --timer--> running
    """
    IDLE = "idle"
    RUNNING = "running"
    SCHEDULED = "scheduled"


class EventType(str, Enum):
    """Event types for the formguard event stream."""
    JOB_STATE_CHANGED = "job.state_changed"
    JOB_FAILED = "job.failed"
    ERRORS_UPDATED = "errors.updated"
    ERRORS_CLEARED = "errors.cleared"
    HANDLER_FAILED = "handler.failed"
    VALIDATOR_RESET = "validator.reset"


class HandlerKind(str, Enum):
    """Kind of validation handler registered on a Validator."""
    INSTANT = "instant"
    SYNC = "sync"
    ASYNC = "async"


__all__ = [
    "JobState",
    "EventType",
    "HandlerKind",
]
