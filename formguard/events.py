"""Event system for formguard.

This module provides the event records and the event emitter used as the
observability channel of validators and async jobs. Job state changes,
error bucket updates, resets and handler failures are all emitted as typed
ValidatorEvent records, so a consumer can render "currently validating"
indicators or record failures without polling.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
import json
import logging
import uuid

from dateutil.parser import isoparse

from formguard.types import EventType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ValidatorEvent:
    """A single event emitted by a validator or an async job.

    Attributes:
        event_id: Unique event identifier (e.g., "evt_01H8...")
        type: Event type from EventType enum
        source_id: Identifier of the emitting validator or job
        ts: UTC timestamp when the event occurred
        payload: Optional event-specific data (e.g., state change, handler key)

    Examples:
        >>> from datetime import datetime, timezone
        >>> event = ValidatorEvent(
        ...     event_id="evt_001",
        ...     type=EventType.JOB_STATE_CHANGED,
        ...     source_id="job_001",
        ...     ts=datetime.now(timezone.utc),
        ...     payload={"from": "idle", "to": "running"},
        ... )
    """
    event_id: str
    type: EventType
    source_id: str
    ts: datetime
    payload: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if isinstance(self.type, str) and not isinstance(self.type, EventType):
            object.__setattr__(self, "type", EventType(self.type))

    @classmethod
    def create(
        cls,
        type: EventType,
        source_id: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> "ValidatorEvent":
        """Create an event with a fresh identifier and the current UTC time."""
        return cls(
            event_id=f"evt_{uuid.uuid4().hex[:16]}",
            type=type,
            source_id=source_id,
            ts=datetime.now(timezone.utc),
            payload=payload,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary for serialization.

        Timestamp is formatted as ISO 8601 string.
        """
        result: Dict[str, Any] = {
            "eventId": self.event_id,
            "type": self.type.value,
            "sourceId": self.source_id,
            "ts": self.ts.isoformat(),
        }
        if self.payload is not None:
            result["payload"] = self.payload
        return result

    def to_jsonl(self) -> str:
        """Convert event to a single-line JSON string."""
        return json.dumps(self.to_dict(), separators=(',', ':'), default=str)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ValidatorEvent":
        """Create ValidatorEvent from dictionary (camelCase keys)."""
        return cls(
            event_id=data["eventId"],
            type=EventType(data["type"]),
            source_id=data["sourceId"],
            ts=isoparse(data["ts"]),
            payload=data.get("payload"),
        )


EventListener = Callable[[ValidatorEvent], None]
"""Type alias for event listener callbacks.

Event listeners are called synchronously when events are emitted.
"""


class EventEmitter:
    """Dispatches validator and job events to subscribed listeners.

    Listeners subscribe to one event type or to all of them, and get back a
    function that unsubscribes them, the same contract as Watcher.subscribe().
    Type-specific listeners are called before wildcard listeners. A failing
    listener is logged and does not affect the others.

    Examples:
        >>> emitter = EventEmitter()
        >>> seen = []
        >>> unsubscribe = emitter.on(EventType.VALIDATOR_RESET, seen.append)
        >>> emitter.emit(ValidatorEvent.create(EventType.VALIDATOR_RESET, "val_1"))
        >>> unsubscribe()
        >>> emitter.emit(ValidatorEvent.create(EventType.VALIDATOR_RESET, "val_1"))
        >>> len(seen)
        1
    """

    def __init__(self):
        self._listeners: Dict[EventType, List[EventListener]] = {}
        self._any_listeners: List[EventListener] = []

    def on(self, event_type: EventType, listener: EventListener) -> Callable[[], None]:
        """Subscribe to a specific event type.

        Returns:
            A function that unsubscribes the listener
        """
        return _subscribe(self._listeners.setdefault(event_type, []), listener)

    def on_any(self, listener: EventListener) -> Callable[[], None]:
        """Subscribe to all event types.

        Returns:
            A function that unsubscribes the listener
        """
        return _subscribe(self._any_listeners, listener)

    def emit(self, event: ValidatorEvent) -> None:
        """Dispatch an event to the listeners of its type, then to wildcard listeners."""
        listeners = list(self._listeners.get(event.type, ())) + list(self._any_listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.warning(
                    "Event listener %r failed for %s", listener, event.type.value, exc_info=True
                )


def _subscribe(listeners: List[EventListener], listener: EventListener) -> Callable[[], None]:
    listeners.append(listener)
    subscribed = True

    def unsubscribe() -> None:
        nonlocal subscribed
        if subscribed:
            subscribed = False
            listeners.remove(listener)

    return unsubscribe


__all__ = [
    "ValidatorEvent",
    "EventType",
    "EventListener",
    "EventEmitter",
]
