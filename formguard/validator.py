"""Validator orchestrating the validation of a tracked object.

There is one Validator per tracked object, obtained with Validator.get().
Handlers attached to it report errors through a ValidationErrorMapBuilder:

- instant handlers (update_errors) run once, right away
- sync handlers re-run after a debounce delay whenever their change source
  notifies a change
- async handlers evaluate a dependency expression after each debounced
  change and, when its value changed, run in a per-handler AsyncJob

The result of each handler is stored in its own error bucket. Queries merge
the buckets with the errors of nested child validators at read time, so a
parent never has to be recomputed when a child changes.

Usage:
    >>> class Account:
    ...     def __init__(self):
    ...         self.name = ""
    >>> account = Account()
    >>> validator = Validator.get(account)
    >>> dispose = validator.update_errors("server", lambda b: b.invalidate("name", "Name is taken"))
    >>> validator.is_valid
    False
    >>> validator.get_error_messages("name")
    {'Name is taken'}
    >>> dispose()
    >>> validator.is_valid
    True
"""

from itertools import chain
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    FrozenSet,
    Generic,
    Hashable,
    Iterable,
    Iterator,
    List,
    Optional,
    Set,
    Tuple,
    TypeVar,
    Union,
)
import asyncio
import logging
import uuid

from formguard.async_job import AbortSignal, AsyncJob
from formguard.config import DEFAULT_DELAY_MS, HandlerOptions
from formguard.errors import ValidationError, ValidationErrorMapBuilder
from formguard.events import EventEmitter, ValidatorEvent
from formguard.key_path import (
    SELF,
    KeyPath,
    ReadonlyKeyPathMultiMap,
    build_key_path,
    get_ancestors,
    get_relative,
    is_self,
)
from formguard.nested import NestedFetcher
from formguard.registry import ObjectRegistry
from formguard.types import EventType, HandlerKind, JobState
from formguard.watcher import ChangeSource, Watcher

logger = logging.getLogger(__name__)

T = TypeVar("T")
E = TypeVar("E")

InstantHandler = Callable[[ValidationErrorMapBuilder[T]], None]
"""Instant handler: (builder) -> None"""

SyncHandler = Callable[[ValidationErrorMapBuilder[T]], None]
"""Sync handler: (builder) -> None, re-run on every debounced change"""

AsyncHandler = Callable[[E, ValidationErrorMapBuilder[T], AbortSignal], Awaitable[None]]
"""Async handler: (expression value, builder, abort signal) -> awaitable"""

WatchSpec = Union[ChangeSource, Iterable[ChangeSource], None]

_INTERNAL_TOKEN = object()
_UNSET = object()


class _HandlerKey:
    """Error bucket key of a registered handler; never equal to a user key."""

    __slots__ = ("name",)

    def __init__(self, name: str) -> None:
        self.name = name

    def __str__(self) -> str:
        return self.name

    __repr__ = __str__


def make_validatable(target: Any, *args: Any, **kwargs: Any) -> Callable[[], None]:
    """Make a target object validatable.

    Shorthand for Validator.get(target).add_sync_handler(handler, **kwargs)
    when called as make_validatable(target, handler, ...), and for
    Validator.get(target).add_async_handler(expr, handler, **kwargs) when
    called as make_validatable(target, expr, handler, ...).

    Returns:
        A function that removes the handler
    """
    if len(args) == 2 and callable(args[0]) and callable(args[1]):
        expr, handler = args
        return Validator.get(target).add_async_handler(expr, handler, **kwargs)
    if len(args) == 1 and callable(args[0]):
        return Validator.get(target).add_sync_handler(args[0], **kwargs)
    raise TypeError("make_validatable() expects (target, handler) or (target, expr, handler)")


class Validator(Generic[T]):
    """Per-object validation orchestrator.

    Attributes:
        id: Unique identifier of this validator, used as event source
        events: Emitter of ERRORS_UPDATED, ERRORS_CLEARED, HANDLER_FAILED and
            VALIDATOR_RESET events
        default_delay_ms: Debounce delay used when a handler gives none
    """

    default_delay_ms: int = DEFAULT_DELAY_MS

    _registry: "ObjectRegistry[Validator[Any]]"

    @classmethod
    def get(cls, target: T) -> "Validator[T]":
        """Get the validator for a target object.

        Raises:
            TypeError: If the target is not an object that can be tracked
        """
        validator = cls.get_safe(target)
        if validator is None:
            raise TypeError(f"target: Expected a trackable object, got {type(target).__name__}")
        return validator

    @classmethod
    def get_safe(cls, target: T) -> Optional["Validator[T]"]:
        """Same as get() but returns None instead of raising."""
        return cls._registry.get(target)

    def __init__(self, token: object, target: T) -> None:
        if token is not _INTERNAL_TOKEN:
            raise TypeError("Validator cannot be instantiated directly, use Validator.get()")
        self.id = f"val_{uuid.uuid4().hex[:16]}"
        self.events = EventEmitter()
        self._nested: NestedFetcher[Validator[Any]] = NestedFetcher(
            target, lambda entry: Validator.get_safe(entry.data)
        )
        self._default_watch = Watcher.get_safe(target)
        self._errors: Dict[Hashable, ReadonlyKeyPathMultiMap[ValidationError]] = {}
        self._reaction_timers: Dict[Hashable, asyncio.TimerHandle] = {}
        self._jobs: Dict[Hashable, AsyncJob[Any]] = {}
        self._last_values: Dict[Hashable, Any] = {}
        self._handler_count = 0

    # Queries

    @property
    def is_valid(self) -> bool:
        """Whether no errors are found, including nested objects."""
        return self.invalid_key_path_count == 0

    @property
    def invalid_keys(self) -> FrozenSet[KeyPath]:
        """Fields of the target with errors of its own handlers.

        Errors of nested validators are not included.
        """
        return frozenset(
            error.key for errors in self._errors.values() for _, error in errors
        )

    @property
    def invalid_key_count(self) -> int:
        """The number of invalid keys."""
        return len(self.invalid_keys)

    @property
    def invalid_key_paths(self) -> FrozenSet[KeyPath]:
        """Key paths with errors, including those of nested validators."""
        result: Set[KeyPath] = set()
        for errors in self._errors.values():
            for key_path, _ in errors:
                result.add(key_path)
        for entry in self._nested:
            for key_path in entry.data.invalid_key_paths:
                result.add(build_key_path(entry.key_path, key_path))
        return frozenset(result)

    @property
    def invalid_key_path_count(self) -> int:
        """The number of invalid key paths."""
        return len(self.invalid_key_paths)

    @property
    def first_error_message(self) -> Optional[str]:
        """The first error message, including nested objects, or None."""
        for _, error in self.find_errors(SELF, prefix_match=True):
            return error.message
        return None

    @property
    def nested(self) -> Dict[KeyPath, "Validator[Any]"]:
        """Nested validators by attachment key path."""
        return self._nested.data_map

    def get_error_messages(self, key_path: KeyPath = SELF, prefix_match: bool = False) -> Set[str]:
        """Get the error messages for a key path."""
        return {error.message for _, error in self.find_errors(key_path, prefix_match)}

    def has_errors(self, key_path: KeyPath = SELF, prefix_match: bool = False) -> bool:
        """Whether there are errors for a key path."""
        for _ in self.find_errors(key_path, prefix_match):
            return True
        return False

    def find_errors(
        self, key_path: KeyPath = SELF, prefix_match: bool = False
    ) -> Iterator[Tuple[KeyPath, ValidationError]]:
        """Find errors for a key path.

        Yields (key path, error) pairs. The key path is where the error is
        seen from this validator; error.key_path is where it was raised by
        the validator owning it. A parent's error at "child" and the child's
        own invalidate_self() error both surface for "child" and can be told
        apart by error.key_path.

        Args:
            key_path: Key path to search; SELF searches the whole object
            prefix_match: Also include errors at descendant key paths
        """
        key_path = build_key_path(key_path)
        if is_self(key_path):
            for errors in self._errors.values():
                yield from errors
            for entry in self._nested:
                if prefix_match:
                    for relative, error in entry.data.find_errors(SELF, True):
                        yield build_key_path(entry.key_path, relative), error
                elif is_self(entry.key):
                    # hoisted list items merge into the root without their index
                    yield from entry.data.find_errors(SELF, False)
            return

        for errors in self._errors.values():
            matches = errors.find_prefix(key_path) if prefix_match else errors.find_exact(key_path)
            for error in matches:
                yield error.key_path, error
        yield from self._find_nested_errors(key_path, prefix_match)

    def _find_nested_errors(
        self, key_path: KeyPath, prefix_match: bool
    ) -> Iterator[Tuple[KeyPath, ValidationError]]:
        entries = list(self._nested)
        covered: Set[int] = set()

        if prefix_match:
            # children attached at or under the key path contribute everything
            for entry in entries:
                if is_self(entry.key_path) or get_relative(entry.key_path, key_path) is None:
                    continue
                covered.add(id(entry))
                for relative, error in entry.data.find_errors(SELF, True):
                    yield build_key_path(entry.key_path, relative), error
            ancestors = get_ancestors(key_path, include_self=False)
        else:
            ancestors = get_ancestors(key_path)

        # the nearest attachment point owns the key path; hoisted children last
        for ancestor in chain(ancestors, (SELF,)):
            if is_self(ancestor):
                owners = [e for e in entries if is_self(e.key) and id(e) not in covered]
            else:
                owners = [e for e in entries if e.key_path == ancestor]
            if not owners:
                continue
            relative_key_path = get_relative(key_path, ancestor)
            for entry in owners:
                for relative, error in entry.data.find_errors(relative_key_path, prefix_match):
                    yield build_key_path(ancestor, relative), error
            return

    # Observability

    @property
    def reaction_state(self) -> int:
        """The number of pending (debouncing) reactions."""
        return len(self._reaction_timers)

    @property
    def async_state(self) -> int:
        """The number of running or scheduled async jobs."""
        return sum(1 for job in self._jobs.values() if job.state != JobState.IDLE)

    @property
    def is_validating(self) -> bool:
        """Whether the validator is computing errors."""
        return self.reaction_state > 0 or self.async_state > 0

    async def wait_for_validation(self) -> None:
        """Wait until no reaction is pending and no async job is active.

        Sleeps until the last pending reaction timer is due, then waits for
        the jobs to become idle, and repeats while either started new work.
        """
        loop = asyncio.get_running_loop()
        while self.is_validating:
            if self._reaction_timers:
                due = max(timer.when() for timer in self._reaction_timers.values())
                await asyncio.sleep(max(0.0, due - loop.time()))
            else:
                await asyncio.gather(*(job.wait_idle() for job in list(self._jobs.values())))

    # Handlers

    def update_errors(self, key: Hashable, handler: InstantHandler[T]) -> Callable[[], None]:
        """Update the errors of a bucket immediately.

        Calling again with the same key replaces the bucket. Exceptions
        raised by the handler propagate to the caller.

        Returns:
            A function that removes the errors of the bucket
        """
        builder: ValidationErrorMapBuilder[T] = ValidationErrorMapBuilder()
        handler(builder)
        self._store_errors(key, ValidationErrorMapBuilder.build(builder), HandlerKind.INSTANT)

        def dispose() -> None:
            self._clear_errors(key)

        return dispose

    def add_sync_handler(
        self,
        handler: SyncHandler[T],
        *,
        watch: WatchSpec = None,
        initial_run: bool = True,
        delay_ms: Optional[int] = None,
        options: Optional[HandlerOptions] = None,
    ) -> Callable[[], None]:
        """Add a handler re-run after every debounced change.

        Args:
            handler: Called with a fresh builder on every run
            watch: Change source(s) triggering re-runs; defaults to the
                target's Watcher
            initial_run: Run the handler synchronously right away
            delay_ms: Debounce delay (default: Validator.default_delay_ms)
            options: HandlerOptions overriding initial_run and delay_ms

        Returns:
            A function that removes the handler and its errors
        """
        if options is not None:
            initial_run, delay_ms = options.initial_run, options.delay_ms
        key = self._next_handler_key(HandlerKind.SYNC)

        def run() -> None:
            builder: ValidationErrorMapBuilder[T] = ValidationErrorMapBuilder()
            try:
                handler(builder)
            except Exception as e:
                self._handle_failure(key, HandlerKind.SYNC, e)
                return
            self._store_errors(key, ValidationErrorMapBuilder.build(builder), HandlerKind.SYNC)

        return self._create_reaction(key, run, watch, initial_run, delay_ms)

    def add_async_handler(
        self,
        expr: Callable[[], E],
        handler: AsyncHandler[E, T],
        *,
        watch: WatchSpec = None,
        initial_run: bool = True,
        delay_ms: Optional[int] = None,
        options: Optional[HandlerOptions] = None,
    ) -> Callable[[], None]:
        """Add an async handler driven by a dependency expression.

        After every debounced change, expr() is evaluated; when its value
        differs from the previous one, the handler is requested on the
        handler's AsyncJob. Results of superseded or aborted runs are
        discarded.

        Args:
            expr: Dependency expression
            handler: Called with (value, builder, abort signal)
            watch: Change source(s) triggering re-evaluation; defaults to
                the target's Watcher
            initial_run: Request the handler right away
            delay_ms: Debounce delay and scheduled-run delay of the job
            options: HandlerOptions overriding initial_run and delay_ms

        Returns:
            A function that removes the handler and its errors

        Raises:
            RuntimeError: If initial_run is set and no event loop is running;
                nothing is registered in that case
        """
        if options is None:
            options = HandlerOptions(initial_run=initial_run, delay_ms=delay_ms)
        initial_run = options.initial_run
        if initial_run:
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                raise RuntimeError(
                    "add_async_handler() with initial_run needs a running event loop"
                ) from None
        resolved_delay_ms = options.resolve_delay_ms(self.default_delay_ms)
        key = self._next_handler_key(HandlerKind.ASYNC)

        async def run_job(value: E, signal: AbortSignal) -> None:
            generation = signal.generation
            builder: ValidationErrorMapBuilder[T] = ValidationErrorMapBuilder()
            try:
                await handler(value, builder, signal)
            except Exception as e:
                if job.is_current(generation) and not signal.aborted:
                    self._clear_errors(key)
                    self._emit(EventType.HANDLER_FAILED, {
                        "handler": str(key),
                        "kind": HandlerKind.ASYNC.value,
                        "error": repr(e),
                    })
                raise
            if job.is_current(generation) and not signal.aborted:
                self._store_errors(key, ValidationErrorMapBuilder.build(builder), HandlerKind.ASYNC)

        job: AsyncJob[E] = AsyncJob(run_job, resolved_delay_ms, name=f"{self.id}.{key}")
        self._jobs[key] = job

        def evaluate() -> None:
            try:
                value = expr()
            except Exception as e:
                self._handle_failure(key, HandlerKind.ASYNC, e)
                return
            previous = self._last_values.get(key, _UNSET)
            self._last_values[key] = value
            if previous is not _UNSET and previous == value:
                return
            job.request(value)

        def dispose_job() -> None:
            job.reset()
            self._jobs.pop(key, None)
            self._last_values.pop(key, None)

        if not initial_run:
            try:
                self._last_values[key] = expr()
            except Exception as e:
                self._handle_failure(key, HandlerKind.ASYNC, e)

        return self._create_reaction(key, evaluate, watch, initial_run, resolved_delay_ms, dispose_job)

    def reset(self) -> None:
        """Clear all errors and cancel pending work.

        Handlers stay registered and run again on the next change.
        """
        for timer in self._reaction_timers.values():
            timer.cancel()
        self._reaction_timers.clear()
        for job in self._jobs.values():
            job.reset()
        self._last_values.clear()
        self._errors.clear()
        self._emit(EventType.VALIDATOR_RESET)

    # Internals

    def _next_handler_key(self, kind: HandlerKind) -> "_HandlerKey":
        self._handler_count += 1
        return _HandlerKey(f"{kind.value}_{self._handler_count}")

    def _create_reaction(
        self,
        key: Hashable,
        effect: Callable[[], None],
        watch: WatchSpec,
        initial_run: bool,
        delay_ms: Optional[int],
        on_dispose: Optional[Callable[[], None]] = None,
    ) -> Callable[[], None]:
        reaction_delay_ms = self.default_delay_ms if delay_ms is None else delay_ms

        def on_change() -> None:
            self._schedule_reaction(key, effect, reaction_delay_ms)

        unsubscribers = [source.subscribe(on_change) for source in self._resolve_sources(watch)]

        if initial_run:
            effect()

        def dispose() -> None:
            for unsubscribe in unsubscribers:
                unsubscribe()
            timer = self._reaction_timers.pop(key, None)
            if timer is not None:
                timer.cancel()
            try:
                if on_dispose is not None:
                    on_dispose()
            finally:
                self._clear_errors(key)

        return dispose

    def _resolve_sources(self, watch: WatchSpec) -> List[ChangeSource]:
        if watch is None:
            return [] if self._default_watch is None else [self._default_watch]
        if isinstance(watch, ChangeSource):
            return [watch]
        return list(watch)

    def _schedule_reaction(self, key: Hashable, effect: Callable[[], None], delay_ms: int) -> None:
        timer = self._reaction_timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, running reaction %s of %s now", key, self.id)
            effect()
            return
        self._reaction_timers[key] = loop.call_later(delay_ms / 1000, self._fire_reaction, key, effect)

    def _fire_reaction(self, key: Hashable, effect: Callable[[], None]) -> None:
        self._reaction_timers.pop(key, None)
        effect()

    def _store_errors(
        self, key: Hashable, errors: ReadonlyKeyPathMultiMap[ValidationError], kind: HandlerKind
    ) -> None:
        if len(errors) == 0:
            self._clear_errors(key)
            return
        self._errors[key] = errors
        self._emit(EventType.ERRORS_UPDATED, {
            "handler": str(key),
            "kind": kind.value,
            "errors": [error.to_dict() for _, error in errors],
        })

    def _clear_errors(self, key: Hashable) -> None:
        if self._errors.pop(key, None) is not None:
            self._emit(EventType.ERRORS_CLEARED, {"handler": str(key)})

    def _handle_failure(self, key: Hashable, kind: HandlerKind, error: Exception) -> None:
        logger.exception("%s handler %s of %s failed", kind.value.capitalize(), key, self.id)
        self._clear_errors(key)
        self._emit(EventType.HANDLER_FAILED, {
            "handler": str(key),
            "kind": kind.value,
            "error": repr(error),
        })

    def _emit(self, event_type: EventType, payload: Optional[Dict[str, Any]] = None) -> None:
        self.events.emit(ValidatorEvent.create(event_type, self.id, payload))


Validator._registry = ObjectRegistry(lambda target: Validator(_INTERNAL_TOKEN, target))


__all__ = [
    "AsyncHandler",
    "InstantHandler",
    "SyncHandler",
    "Validator",
    "make_validatable",
]
