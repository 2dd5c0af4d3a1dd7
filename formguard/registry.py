"""One-instance-per-object registry with garbage-collection tied lifetime.

Validators and watchers are attached to the objects they track. The
registry hands out the same instance for repeated lookups of one object and
drops it when the object is garbage collected. Instances must not hold a
strong reference to their target, or the target would never be collected.
"""

from typing import Any, Callable, Dict, Generic, Optional, TypeVar
import weakref

V = TypeVar("V")

# Never tracked: values without identity semantics
_SCALAR_TYPES = (str, bytes, int, float, complex, bool)


class ObjectRegistry(Generic[V]):
    """Weakly keyed registry creating instances on first lookup.

    Keys are object identities, so unhashable objects can be tracked too.
    Objects that do not support weak references (None, scalars, builtin
    dicts and lists) cannot be tracked.

    Examples:
        >>> class Model: pass
        >>> registry = ObjectRegistry(lambda target: object())
        >>> model = Model()
        >>> registry.get(model) is registry.get(model)
        True
        >>> registry.get(42) is None
        True
    """

    def __init__(
        self,
        factory: Callable[[Any], V],
        on_create: Optional[Callable[[V], None]] = None,
    ) -> None:
        """
        Args:
            factory: Creates the instance for a target
            on_create: Called with each new instance once it is registered,
                so lookups made from it find the instance
        """
        self._factory = factory
        self._on_create = on_create
        self._instances: Dict[int, V] = {}

    def get(self, target: Any) -> Optional[V]:
        """Get or create the instance for a target, or None if it cannot be tracked."""
        if target is None or isinstance(target, _SCALAR_TYPES):
            return None

        key = id(target)
        instance = self._instances.get(key)
        if instance is not None:
            return instance

        try:
            weakref.finalize(target, self._instances.pop, key, None)
        except TypeError:
            return None
        instance = self._factory(target)
        self._instances[key] = instance
        if self._on_create is not None:
            self._on_create(instance)
        return instance

    def peek(self, target: Any) -> Optional[V]:
        """Get the instance for a target without creating one."""
        return self._instances.get(id(target))

    def __len__(self) -> int:
        return len(self._instances)


__all__ = [
    "ObjectRegistry",
]
