"""Error records and exception types for formguard.

Validation errors are data: handlers report them through a
ValidationErrorMapBuilder and they are stored as immutable ValidationError
records in a frozen KeyPathMultiMap. They are never raised.

Programming and usage errors (mutating a frozen map, reading an aborted
signal) are raised as subclasses of FormGuardError.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Generic, Optional, TypeVar, Union

from formguard.exceptions import FormGuardError, InvalidStateError, JobAbortedError
from formguard.key_path import (
    SELF,
    KeyPath,
    KeyPathMultiMap,
    ReadonlyKeyPathMultiMap,
    build_key_path,
    get_parent_key,
    is_self,
)

T = TypeVar("T")


@dataclass(frozen=True)
class ValidationError:
    """A single validation failure.

    Attributes:
        key_path: Key path where the error was raised
        message: Human-readable error description
        cause: Optional - the exception given as the reason
        key: The first segment of key_path, i.e. the field this error
            bubbles up to (SELF when key_path is SELF)

    Examples:
        >>> err = ValidationError(key_path="address.city", message="Unknown city")
        >>> err.key
        'address'
    """
    key_path: KeyPath
    message: str
    cause: Optional[BaseException] = field(default=None, compare=False)
    key: KeyPath = field(init=False)

    def __post_init__(self):
        object.__setattr__(self, "key_path", build_key_path(self.key_path))
        object.__setattr__(self, "key", get_parent_key(self.key_path))

    @classmethod
    def from_reason(cls, key_path: KeyPath, reason: Union[str, BaseException]) -> "ValidationError":
        """Create an error from a message string or an exception."""
        if isinstance(reason, BaseException):
            return cls(key_path=key_path, message=str(reason), cause=reason)
        return cls(key_path=key_path, message=reason)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for serialization."""
        result: Dict[str, Any] = {
            "keyPath": None if is_self(self.key_path) else self.key_path,
            "key": None if is_self(self.key) else self.key,
            "message": self.message,
        }
        if self.cause is not None:
            result["cause"] = repr(self.cause)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ValidationError":
        """Create ValidationError from dict.

        The cause is not restored; only its representation is serialized.
        """
        key_path = data.get("keyPath")
        return cls(key_path=SELF if key_path is None else key_path, message=data["message"])


class ValidationErrorMapBuilder(Generic[T]):
    """Write-only accumulator of validation errors for one handler run.

    Examples:
        >>> builder = ValidationErrorMapBuilder()
        >>> builder.invalidate("email", "Invalid email format")
        >>> builder.has_error
        True
        >>> errors = ValidationErrorMapBuilder.build(builder)
        >>> [e.message for e in errors.find_exact("email")]
        ['Invalid email format']
    """

    def __init__(self) -> None:
        self._map: KeyPathMultiMap[ValidationError] = KeyPathMultiMap()

    @staticmethod
    def build(instance: "ValidationErrorMapBuilder[Any]") -> ReadonlyKeyPathMultiMap[ValidationError]:
        """Freeze the collected errors and return them."""
        return instance._map.to_immutable()

    def invalidate(self, key: str, reason: Union[str, BaseException]) -> None:
        """Invalidate a field of the tracked object.

        Multiple reasons can be added for the same key.
        """
        key_path = build_key_path(key)
        self._map.set(key_path, ValidationError.from_reason(key_path, reason))

    def invalidate_self(self, reason: Union[str, BaseException]) -> None:
        """Invalidate the tracked object as a whole."""
        self._map.set(SELF, ValidationError.from_reason(SELF, reason))

    @property
    def has_error(self) -> bool:
        """Whether any error was added."""
        return len(self._map) > 0


__all__ = [
    "FormGuardError",
    "InvalidStateError",
    "JobAbortedError",
    "ValidationError",
    "ValidationErrorMapBuilder",
]
