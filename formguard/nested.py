"""Discovery of nested objects in a tracked object graph.

A tracked object describes its nested children by implementing
nested_fields(), returning NestedField declarations. The value of a field
may be a single object, a list/tuple or a mapping of objects; a hoisted
field attaches its children at the parent's own root instead of under the
field name.

Usage:
    >>> class Address:
    ...     pass
    >>> class Person:
    ...     def __init__(self):
    ...         self.address = Address()
    ...         self.previous = [Address()]
    ...     def nested_fields(self):
    ...         return [NestedField("address", self.address), NestedField("previous", self.previous)]
    >>> person = Person()
    >>> [entry.key_path for entry in NestedFetcher(person, lambda entry: entry.data)]
    ['address', 'previous.0']
"""

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Iterable, Iterator, Optional, Tuple, TypeVar, Union
import weakref

from typing_extensions import Protocol, runtime_checkable

from formguard.key_path import SELF, KeyPath, build_key_path

T = TypeVar("T")


@dataclass(frozen=True)
class NestedField:
    """Declaration of a field holding nested objects.

    Attributes:
        key: Name of the field
        value: Current value of the field (object, list/tuple, mapping or None)
        hoist: Attach the children at the parent's root instead of under key
    """
    key: str
    value: Any
    hoist: bool = False


@runtime_checkable
class SupportsNested(Protocol):
    """Objects that describe their nested children."""

    def nested_fields(self) -> Iterable[NestedField]: ...


@dataclass(frozen=True)
class NestedEntry(Generic[T]):
    """A nested child found in a tracked object.

    Attributes:
        key: Name of the declaring field, or SELF for hoisted fields
        key_path: Key path at which the child is attached
        data: The child (after transformation)
    """
    key: KeyPath
    key_path: KeyPath
    data: T


def get_nested_fields(target: Any) -> Iterator[NestedField]:
    """Iterate over the nested field declarations of a target.

    Targets that do not implement nested_fields() have no nested fields.
    """
    if not isinstance(target, SupportsNested):
        return
    yield from target.nested_fields()


def unwrap_shallow_contents(value: Any) -> Iterator[Tuple[Union[KeyPath, int], Any]]:
    """Iterate over the direct contents of a field value.

    Mappings yield their items (non str/int keys are skipped), lists and
    tuples yield (index, item), any other object yields (SELF, value).
    """
    if value is None:
        return
    if isinstance(value, Mapping):
        for key, item in value.items():
            if isinstance(key, (str, int)):
                yield key, item
    elif isinstance(value, (list, tuple)):
        yield from enumerate(value)
    else:
        yield SELF, value


class NestedFetcher(Generic[T]):
    """Enumerates the nested entries of a target.

    The structure is read again on every iteration, so live collections are
    always reflected. The target is referenced weakly.
    """

    def __init__(self, target: Any, transform: Callable[[NestedEntry[Any]], Optional[T]]) -> None:
        """
        Args:
            target: The tracked object
            transform: Maps an entry's data to the desired type. Entries for
                which it returns None are skipped.
        """
        self._target_ref = weakref.ref(target)
        self._transform = transform

    def __iter__(self) -> Iterator[NestedEntry[T]]:
        target = self._target_ref()
        if target is None:
            return
        for nested_field in get_nested_fields(target):
            key = SELF if nested_field.hoist else build_key_path(nested_field.key)
            for sub_key, value in unwrap_shallow_contents(nested_field.value):
                key_path = build_key_path(key, sub_key)
                data = self._transform(NestedEntry(key=key, key_path=key_path, data=value))
                if data is None:
                    continue
                yield NestedEntry(key=key, key_path=key_path, data=data)

    def get_for_key_path(self, key_path: KeyPath) -> Iterator[NestedEntry[T]]:
        """Iterate over the entries attached at exactly this key path."""
        key_path = build_key_path(key_path)
        for entry in self:
            if entry.key_path == key_path:
                yield entry

    @property
    def data_map(self) -> Dict[KeyPath, T]:
        """Map of attachment key paths to data."""
        return {entry.key_path: entry.data for entry in self}


__all__ = [
    "NestedEntry",
    "NestedFetcher",
    "NestedField",
    "SupportsNested",
    "get_nested_fields",
    "unwrap_shallow_contents",
]
