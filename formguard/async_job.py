"""Throttled single-slot asyncio job runner with cancellation.

An AsyncJob runs one asynchronous handler at a time. Requests that arrive
while the handler is running are coalesced into a single follow-up run that
uses only the latest payload, started after a delay once the current run
completes. A forced request aborts the current run and starts a new one
immediately.

Every run receives an AbortSignal. Superseded runs are not killed: the job
aborts their signal, stops waiting for them and ignores their completion.
Each run is tagged with a generation number so that a stale completion can
never change the state of the job.

Usage:
    >>> async def handler(payload, signal):
    ...     await asyncio.sleep(0.1)
    ...     if signal.aborted:
    ...         return
    ...     print(payload)
    >>> job = AsyncJob(handler, scheduled_run_delay_ms=50)
    >>> job.request(1)  # doctest: +SKIP
"""

from typing import Any, Awaitable, Callable, Generic, List, Optional, Set, TypeVar
import asyncio
import logging
import uuid

from formguard.events import EventEmitter, ValidatorEvent
from formguard.exceptions import JobAbortedError
from formguard.types import EventType, JobState

logger = logging.getLogger(__name__)

P = TypeVar("P")

_NO_PAYLOAD = object()


class AbortSignal:
    """Cancellation signal handed to a job handler.

    Handlers are expected to stop as soon as convenient once the signal is
    aborted: any further side effects of the run are meaningless.

    Attributes:
        generation: Generation number of the job run the signal was issued
            for, or None for signals created outside a job
    """

    def __init__(self, generation: Optional[int] = None) -> None:
        self.generation = generation
        self._aborted = False
        self._reason: Any = None
        self._listeners: List[Callable[[], None]] = []
        self._event: Optional[asyncio.Event] = None

    @property
    def aborted(self) -> bool:
        """Whether the signal has been aborted."""
        return self._aborted

    @property
    def reason(self) -> Any:
        """The reason given when aborting, if any."""
        return self._reason

    def add_listener(self, listener: Callable[[], None]) -> None:
        """Call a listener once when the signal is aborted.

        The listener is called immediately if the signal is already aborted.
        """
        if self._aborted:
            listener()
        else:
            self._listeners.append(listener)

    def raise_if_aborted(self) -> None:
        """Raise JobAbortedError if the signal has been aborted."""
        if self._aborted:
            raise JobAbortedError(self._reason)

    async def wait(self) -> None:
        """Wait until the signal is aborted."""
        if self._aborted:
            return
        if self._event is None:
            self._event = asyncio.Event()
        await self._event.wait()

    def _abort(self, reason: Any) -> None:
        if self._aborted:
            return
        self._aborted = True
        self._reason = reason
        if self._event is not None:
            self._event.set()
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            try:
                listener()
            except Exception:
                logger.warning("Abort listener %r failed", listener, exc_info=True)


class AbortController:
    """Owner side of an AbortSignal."""

    def __init__(self, generation: Optional[int] = None) -> None:
        self.signal = AbortSignal(generation)

    def abort(self, reason: Any = None) -> None:
        """Abort the signal; repeated calls have no effect."""
        self.signal._abort(reason)


JobHandler = Callable[[P, AbortSignal], Awaitable[None]]
"""Type alias for job handlers: (payload, signal) -> awaitable."""


class AsyncJob(Generic[P]):
    """Single-slot throttled job runner.

    State machine:
        idle --request--> running --(no pending)--> idle
        running --(pending on completion)--> scheduled --timer--> running

    A request arriving while scheduled restarts the timer and replaces the
    buffered payload.

    Attributes:
        scheduled_run_delay_ms: Delay before a scheduled follow-up run starts
        job_id: Identifier used as the source of emitted events
        events: Emitter of JOB_STATE_CHANGED and JOB_FAILED events
    """

    def __init__(
        self,
        handler: JobHandler[P],
        scheduled_run_delay_ms: int,
        name: Optional[str] = None,
    ) -> None:
        self.scheduled_run_delay_ms = scheduled_run_delay_ms
        self.job_id = name or f"job_{uuid.uuid4().hex[:16]}"
        self.events = EventEmitter()
        self._handler = handler
        self._state = JobState.IDLE
        self._next_job_requested = False
        self._timer: Optional[asyncio.TimerHandle] = None
        self._abort_ctrl: Optional[AbortController] = None
        self._payload: Any = _NO_PAYLOAD
        self._generation = 0
        self._tasks: Set[asyncio.Task] = set()
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def state(self) -> JobState:
        """Current state of the job."""
        return self._state

    @property
    def generation(self) -> int:
        """Generation number of the current (or last) run."""
        return self._generation

    def is_current(self, generation: int) -> bool:
        """Whether a run of the given generation is still the current one."""
        return generation == self._generation

    def request(self, payload: P, force: bool = False) -> None:
        """Request a new run of the job.

        Args:
            payload: Payload handed to the handler
            force: Abort any running run and start immediately
        """
        self._payload = payload

        if force or self._state == JobState.IDLE:
            self._run_job()
        elif self._state == JobState.RUNNING:
            self._next_job_requested = True
        else:
            self._transition_to_scheduled()

    def reset(self) -> None:
        """Cancel scheduled and running work and return to idle."""
        self._reset_timer()
        if self._abort_ctrl is not None:
            self._abort_ctrl.abort("reset")
            self._abort_ctrl = None
        self._generation += 1
        self._payload = _NO_PAYLOAD
        self._next_job_requested = False
        self._set_state(JobState.IDLE)

    async def wait_idle(self) -> None:
        """Wait until the job has nothing running or scheduled."""
        while self._state != JobState.IDLE:
            await self._idle.wait()

    def _set_state(self, state: JobState) -> None:
        if state == self._state:
            return
        old_state = self._state
        self._state = state
        if state == JobState.IDLE:
            self._idle.set()
        else:
            self._idle.clear()
        self.events.emit(ValidatorEvent.create(
            EventType.JOB_STATE_CHANGED,
            self.job_id,
            {"from": old_state.value, "to": state.value},
        ))

    def _transition_to_scheduled(self) -> None:
        self._reset_timer()
        self._set_state(JobState.SCHEDULED)
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.scheduled_run_delay_ms / 1000, self._run_job)

    def _reset_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _run_job(self) -> None:
        loop = asyncio.get_running_loop()
        self._reset_timer()

        if self._abort_ctrl is not None:
            logger.debug("Aborting run %d of %s", self._generation, self.job_id)
            self._abort_ctrl.abort("superseded")
        self._generation += 1
        generation = self._generation
        abort_ctrl = AbortController(generation)
        self._abort_ctrl = abort_ctrl

        payload, self._payload = self._payload, _NO_PAYLOAD
        self._next_job_requested = False
        if payload is _NO_PAYLOAD:
            self._abort_ctrl = None
            self._set_state(JobState.IDLE)
            return

        self._set_state(JobState.RUNNING)
        task = loop.create_task(
            self._execute(generation, payload, abort_ctrl.signal)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _execute(self, generation: int, payload: Any, signal: AbortSignal) -> None:
        try:
            await self._handler(payload, signal)
        except Exception as e:
            if signal.aborted:
                logger.debug("Aborted run %d of %s raised %r", generation, self.job_id, e)
            else:
                logger.exception("Job %s failed on run %d", self.job_id, generation)
                self.events.emit(ValidatorEvent.create(
                    EventType.JOB_FAILED,
                    self.job_id,
                    {"generation": generation, "error": repr(e)},
                ))

        if not self.is_current(generation):
            return
        self._abort_ctrl = None
        if self._next_job_requested:
            self._next_job_requested = False
            self._transition_to_scheduled()
        else:
            self._set_state(JobState.IDLE)


__all__ = [
    "AbortController",
    "AbortSignal",
    "AsyncJob",
    "JobHandler",
]
