"""Change notification for tracked objects.

A Watcher is the explicit change source of one tracked object. Code that
mutates the object reports the change with mark_changed(); the watcher bumps
its change tick, records the changed key paths and notifies its subscribers.
Validators subscribe to watchers to know when to re-run their handlers.

A watcher also listens to the watchers of its nested objects: a change of a
nested object bumps the parent's tick and notifies the parent's subscribers.
The set of nested watchers is refreshed whenever the parent or one of its
children reports a change, so structural changes (items added to a list)
should be reported on the parent with mark_changed().

Notifications can be grouped with batch(): all changes made inside the
block, on any watcher, are delivered as a single notification per watcher
when the outermost block exits.

Usage:
    >>> class Model:
    ...     name = ""
    >>> model = Model()
    >>> watcher = Watcher.get(model)
    >>> with batch():
    ...     model.name = "Alice"
    ...     watcher.mark_changed("name")
    >>> watcher.changed_key_paths
    frozenset({'name'})
"""

from contextlib import contextmanager
from typing import Any, Callable, Dict, FrozenSet, Iterator, List, Optional, Set
import logging
import uuid
import weakref

from typing_extensions import Protocol, runtime_checkable

from formguard.key_path import SELF, KeyPath, build_key_path
from formguard.nested import NestedFetcher
from formguard.registry import ObjectRegistry

logger = logging.getLogger(__name__)

ChangeListener = Callable[[], None]
"""Type alias for change listeners: called without arguments."""


@runtime_checkable
class ChangeSource(Protocol):
    """Anything that notifies listeners when relevant state changed."""

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a listener and return a function that unregisters it."""
        ...


_batch_depth = 0
_pending: Dict[int, "Watcher"] = {}


@contextmanager
def batch() -> Iterator[None]:
    """Deliver the notifications of all changes in the block at once.

    Batches can be nested; notifications are delivered when the outermost
    batch exits, once per changed watcher.
    """
    global _batch_depth
    _batch_depth += 1
    try:
        yield
    finally:
        _batch_depth -= 1
        if _batch_depth == 0:
            while _pending:
                watcher = _pending.pop(next(iter(_pending)))
                watcher._dispatch()


_INTERNAL_TOKEN = object()


class Watcher:
    """Change tracker for a target object.

    Attributes:
        id: Unique identifier of this watcher
    """

    _registry: "ObjectRegistry[Watcher]"

    @classmethod
    def get(cls, target: Any) -> "Watcher":
        """Get the watcher for a target object.

        Raises:
            TypeError: If the target is not an object that can be tracked
        """
        watcher = cls.get_safe(target)
        if watcher is None:
            raise TypeError(f"target: Expected a trackable object, got {type(target).__name__}")
        return watcher

    @classmethod
    def get_safe(cls, target: Any) -> Optional["Watcher"]:
        """Same as get() but returns None instead of raising."""
        return cls._registry.get(target)

    def __init__(self, token: object, target: Any) -> None:
        if token is not _INTERNAL_TOKEN:
            raise TypeError("Watcher cannot be instantiated directly, use Watcher.get()")
        self.id = f"wat_{uuid.uuid4().hex[:16]}"
        self._changed_tick = 0
        self._assume_changed = False
        self._changed_key_paths: Set[KeyPath] = set()
        self._listeners: List[ChangeListener] = []
        self._parent_listeners: List[ChangeListener] = []
        self._nested_unsubscribers: Dict[int, Callable[[], None]] = {}
        self._notifying = False
        self._nested: NestedFetcher[Watcher] = NestedFetcher(
            target, lambda entry: Watcher.get_safe(entry.data)
        )

    @property
    def changed_tick(self) -> int:
        """Monotonically increasing counter of changes, including nested ones."""
        return self._changed_tick

    @property
    def changed(self) -> bool:
        """Whether the target or any nested object has changed since the last reset."""
        if self._assume_changed or self._changed_key_paths:
            return True
        return any(entry.data.changed for entry in self._nested)

    @property
    def changed_key_paths(self) -> FrozenSet[KeyPath]:
        """Changed key paths, including those of nested objects."""
        result = set(self._changed_key_paths)
        for entry in self._nested:
            for key_path in entry.data.changed_key_paths:
                result.add(build_key_path(entry.key_path, key_path))
        return frozenset(result)

    def mark_changed(self, *key_paths: KeyPath) -> None:
        """Record a change at the given key paths (the whole object if none)."""
        for key_path in key_paths or (SELF,):
            self._changed_key_paths.add(build_key_path(key_path))
        self._sync_nested()
        self._changed_tick += 1
        self._notify()

    def assume_changed(self) -> None:
        """Mark the target as changed without naming a key path."""
        self._assume_changed = True
        self._sync_nested()
        self._changed_tick += 1
        self._notify()

    def reset(self) -> None:
        """Forget recorded changes of the target and its nested objects.

        The change tick is not reset.
        """
        self._assume_changed = False
        self._changed_key_paths.clear()
        for entry in self._nested:
            entry.data.reset()

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a change listener.

        Returns:
            A function that unregisters the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass  # already removed

        return unsubscribe

    def _sync_nested(self) -> None:
        children = {id(entry.data): entry.data for entry in self._nested if entry.data is not self}
        for key in [key for key in self._nested_unsubscribers if key not in children]:
            self._nested_unsubscribers.pop(key)()
        for key, child in children.items():
            if key not in self._nested_unsubscribers:
                self._nested_unsubscribers[key] = child._add_parent_listener(_nested_listener(self))

    def _add_parent_listener(self, listener: ChangeListener) -> Callable[[], None]:
        self._parent_listeners.append(listener)

        def remove() -> None:
            try:
                self._parent_listeners.remove(listener)
            except ValueError:
                pass  # already removed

        return remove

    def _on_nested_change(self) -> None:
        # a cycle of nested objects leads back to a watcher still notifying
        if self._notifying:
            return
        self._sync_nested()
        self._changed_tick += 1
        self._notify()

    def _notify(self) -> None:
        if _batch_depth > 0:
            _pending[id(self)] = self
        else:
            self._dispatch()
        # parents join the batch of this change
        self._notifying = True
        try:
            for listener in list(self._parent_listeners):
                listener()
        finally:
            self._notifying = False

    def _dispatch(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.warning("Change listener %r of %s failed", listener, self.id, exc_info=True)


def _nested_listener(parent: Watcher) -> ChangeListener:
    parent_ref = weakref.ref(parent)

    def on_nested_change() -> None:
        watcher = parent_ref()
        if watcher is not None:
            watcher._on_nested_change()

    return on_nested_change


Watcher._registry = ObjectRegistry(
    lambda target: Watcher(_INTERNAL_TOKEN, target),
    on_create=Watcher._sync_nested,
)


__all__ = [
    "ChangeListener",
    "ChangeSource",
    "Watcher",
    "batch",
]
