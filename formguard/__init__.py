"""FormGuard Reactive Validation Engine.

FormGuard validates arbitrary object graphs and keeps the result up to date:
- Key paths addressing nested fields, and a multi-map indexed by key path
- Validators attached one-per-object, merging errors of nested objects
- Sync handlers re-run after debounced changes
- Async handlers run through a throttled single-slot job with cancellation
- Event stream of error updates and job state changes

Basic usage:
    >>> from formguard import Validator, Watcher
    >>> class Signup:
    ...     def __init__(self):
    ...         self.email = ""
    >>> signup = Signup()
    >>> def check(builder):
    ...     if "@" not in signup.email:
    ...         builder.invalidate("email", "Invalid email")
    >>> dispose = Validator.get(signup).add_sync_handler(check)
    >>> Validator.get(signup).get_error_messages("email")
    {'Invalid email'}
"""

__version__ = "0.1.0"
__author__ = "FormGuard Team"

# Version info
VERSION = (0, 1, 0)

# Core exports
from formguard.async_job import AbortController, AbortSignal, AsyncJob
from formguard.config import HandlerOptions
from formguard.errors import ValidationError, ValidationErrorMapBuilder
from formguard.events import EventEmitter, ValidatorEvent
from formguard.exceptions import FormGuardError, InvalidStateError, JobAbortedError
from formguard.key_path import SELF, KeyPath, KeyPathMultiMap, build_key_path
from formguard.nested import NestedField
from formguard.types import EventType, HandlerKind, JobState
from formguard.validator import Validator, make_validatable
from formguard.watcher import Watcher, batch

# Package metadata
__all__ = [
    "__version__",
    "VERSION",
    "AbortController",
    "AbortSignal",
    "AsyncJob",
    "EventEmitter",
    "EventType",
    "FormGuardError",
    "HandlerKind",
    "HandlerOptions",
    "InvalidStateError",
    "JobAbortedError",
    "JobState",
    "KeyPath",
    "KeyPathMultiMap",
    "NestedField",
    "SELF",
    "ValidationError",
    "ValidationErrorMapBuilder",
    "Validator",
    "ValidatorEvent",
    "Watcher",
    "batch",
    "build_key_path",
    "make_validatable",
]
