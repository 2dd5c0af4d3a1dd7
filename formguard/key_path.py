"""Key path addressing for nested object graphs.

A key path is either a dot-delimited string ("address.city", "items.0.name")
or the SELF sentinel, which addresses the root of the current object. The
empty string is accepted as an alias of SELF.

This module also provides KeyPathMultiMap, a set-valued map from key paths
to values supporting both exact lookups and hierarchical prefix lookups.
Prefix lookups go through a secondary index from every ancestor path to the
descendant paths that have entries, so they never scan the whole map.

Usage:
    >>> build_key_path("items", 0, "name")
    'items.0.name'
    >>> list(get_ancestors("a.b.c"))
    ['a.b.c', 'a.b', 'a']
    >>> get_relative("a.b.c", "a")
    'b.c'
"""

from enum import Enum
from typing import Dict, Generic, Iterator, Optional, Set, Tuple, TypeVar, Union

from typing_extensions import Protocol

from formguard.exceptions import InvalidStateError

T = TypeVar("T")
T_co = TypeVar("T_co", covariant=True)

DELIMITER = "."


class KeyPathSelf(Enum):
    """Sentinel type for the self key path."""
    SELF = "self"

    def __repr__(self) -> str:
        return "SELF"


SELF = KeyPathSelf.SELF
"""The self key path: the root of the current object."""

KeyPath = Union[str, KeyPathSelf]


def is_self(key_path: KeyPath) -> bool:
    """Whether a key path is the self path.

    Empty strings are also considered self paths.
    """
    return key_path is SELF or key_path == ""


def build_key_path(*keys: Union[KeyPath, int, None]) -> KeyPath:
    """Build a key path from a sequence of keys.

    None, empty strings and SELF are skipped, integers are rendered as
    decimal strings. Returns SELF when nothing is left.

    Examples:
        >>> build_key_path("a", None, "c")
        'a.c'
        >>> build_key_path(SELF, "")
        SELF
    """
    parts = []
    for key in keys:
        if key is None or key is SELF:
            continue
        if isinstance(key, int):
            parts.append(str(key))
        elif key != "":
            parts.append(key)
    if not parts:
        return SELF
    return DELIMITER.join(parts)


def get_parent_key(key_path: KeyPath) -> KeyPath:
    """Get the first segment of a key path.

    Returns SELF if the key path is the self path.
    """
    if is_self(key_path):
        return SELF
    return key_path.split(DELIMITER, 1)[0] or SELF


def get_ancestors(key_path: KeyPath, include_self: bool = True) -> Iterator[KeyPath]:
    """Iterate over a key path and its ancestors, closest first.

    The iteration stops at the first segment; SELF is only yielded for the
    self path itself.

    Examples:
        >>> list(get_ancestors("a.b.c", include_self=False))
        ['a.b', 'a']
        >>> list(get_ancestors(SELF))
        [SELF]
    """
    if is_self(key_path):
        if include_self:
            yield SELF
        return
    if include_self:
        yield key_path
    parts = key_path.split(DELIMITER)
    while len(parts) > 1:
        parts.pop()
        yield DELIMITER.join(parts)


def get_relative(key_path: KeyPath, prefix: KeyPath) -> Optional[KeyPath]:
    """Get a key path relative to a prefix key path.

    Returns None when key_path is not the prefix itself or one of its
    descendants. Matching respects segment boundaries: "aa" is not a
    descendant of "a".

    Examples:
        >>> get_relative("a.b.c", "a.b")
        'c'
        >>> get_relative("a.b", "a.b")
        SELF
        >>> get_relative("a.bb", "a.b") is None
        True
    """
    if is_self(key_path):
        return SELF
    if is_self(prefix):
        return key_path
    if not f"{key_path}{DELIMITER}".startswith(f"{prefix}{DELIMITER}"):
        return None
    return build_key_path(key_path[len(prefix) + 1:])


class ReadonlyKeyPathMultiMap(Protocol[T_co]):
    """Read-only interface of KeyPathMultiMap."""

    def __len__(self) -> int: ...

    def __iter__(self) -> Iterator[Tuple[KeyPath, T_co]]: ...

    def has(self, key_path: KeyPath, prefix_match: bool = False) -> bool: ...

    def find_exact(self, key_path: KeyPath) -> Iterator[T_co]: ...

    def find_prefix(self, key_path: KeyPath) -> Iterator[T_co]: ...

    def get(self, key_path: KeyPath, prefix_match: bool = False) -> Set[T_co]: ...


_MISSING = object()


class KeyPathMultiMap(Generic[T]):
    """Map storing multiple values per key path with prefix matching.

    Examples:
        >>> m = KeyPathMultiMap()
        >>> m.set("a.b", 1)
        >>> m.set("a.b.c", 2)
        >>> sorted(m.find_prefix("a.b"))
        [1, 2]
        >>> list(m.find_exact("a.b"))
        [1]
    """

    def __init__(self) -> None:
        self._map: Dict[KeyPath, Set[T]] = {}
        # ancestor key path -> descendant key paths holding values
        self._prefix_map: Dict[KeyPath, Set[KeyPath]] = {}
        self._frozen = False

    @property
    def frozen(self) -> bool:
        """Whether the map was frozen by to_immutable()."""
        return self._frozen

    def __len__(self) -> int:
        """The number of key paths."""
        return len(self._map)

    def __iter__(self) -> Iterator[Tuple[KeyPath, T]]:
        for key_path, values in self._map.items():
            for value in values:
                yield key_path, value

    def __repr__(self) -> str:
        return f"KeyPathMultiMap({dict(self._map)!r})"

    def has(self, key_path: KeyPath, prefix_match: bool = False) -> bool:
        """Whether the map contains the key path (or a descendant of it)."""
        key_path = build_key_path(key_path)
        if key_path in self._map:
            return True
        if prefix_match:
            if is_self(key_path):
                return len(self._map) > 0
            return key_path in self._prefix_map
        return False

    def find_exact(self, key_path: KeyPath) -> Iterator[T]:
        """Iterate over the values stored at exactly this key path."""
        values = self._map.get(build_key_path(key_path))
        if values:
            yield from values

    def find_prefix(self, key_path: KeyPath) -> Iterator[T]:
        """Iterate over the values at this key path and all its descendants."""
        key_path = build_key_path(key_path)
        if is_self(key_path):
            for values in self._map.values():
                yield from values
            return

        yield from self.find_exact(key_path)
        for child_key_path in self._prefix_map.get(key_path, ()):
            yield from self.find_exact(child_key_path)

    def get(self, key_path: KeyPath, prefix_match: bool = False) -> Set[T]:
        """Get the set of values for a key path."""
        if prefix_match:
            return set(self.find_prefix(key_path))
        return set(self.find_exact(key_path))

    def set(self, key_path: KeyPath, value: T) -> None:
        """Add a value for a key path.

        Raises:
            InvalidStateError: If the map is frozen
        """
        self._check_mutable()
        key_path = build_key_path(key_path)
        self._map.setdefault(key_path, set()).add(value)
        for ancestor in get_ancestors(key_path, include_self=False):
            self._prefix_map.setdefault(ancestor, set()).add(key_path)

    def delete(self, key_path: KeyPath, value=_MISSING) -> None:
        """Remove a key path, or a single value of a key path.

        Raises:
            InvalidStateError: If the map is frozen
        """
        self._check_mutable()
        key_path = build_key_path(key_path)
        if value is not _MISSING:
            values = self._map.get(key_path)
            if values is None:
                return
            values.discard(value)
            if values:
                return

        self._map.pop(key_path, None)
        for ancestor in get_ancestors(key_path, include_self=False):
            children = self._prefix_map.get(ancestor)
            if children is None:
                continue
            children.discard(key_path)
            if not children:
                del self._prefix_map[ancestor]

    def to_immutable(self) -> ReadonlyKeyPathMultiMap[T]:
        """Freeze this map in place and return it."""
        self._frozen = True
        return self

    def _check_mutable(self) -> None:
        if self._frozen:
            raise InvalidStateError(self, "Cannot modify frozen KeyPathMultiMap")


__all__ = [
    "SELF",
    "DELIMITER",
    "KeyPath",
    "KeyPathSelf",
    "KeyPathMultiMap",
    "ReadonlyKeyPathMultiMap",
    "build_key_path",
    "get_ancestors",
    "get_parent_key",
    "get_relative",
    "is_self",
]
