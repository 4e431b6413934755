"""Shared state of one grid run and the gate bounding its in-flight jobs."""

import logging
import threading
from collections import deque
from typing import Any, Callable, Hashable

from errors import GridError

logger = logging.getLogger(__name__)


class RunState:
    """State shared by the submission loop, backend callbacks and the streamer.

    All mutation goes through the methods below, under a single lock. The
    error slot and cancellation flag may be read without the lock.
    """

    def __init__(self, max_simul: int):
        """Initialize run state.

        Args:
            max_simul: Maximum number of jobs in flight at once
        """
        if max_simul < 1:
            raise ValueError(f"max_simul must be at least 1, got {max_simul}")
        self.max_simul = max_simul
        self._lock = threading.Lock()
        self._changed = threading.Condition(self._lock)
        self._wake = threading.Event()
        self._in_flight: set[Hashable] = set()
        self._outputs: deque[dict] = deque()
        self._generated: dict[str, Any] = {}
        self._error: BaseException | None = None
        self._cancel_requested = False
        self.peak_in_flight = 0

    # Error slot

    @property
    def error(self) -> BaseException | None:
        """The first error recorded for this run, if any."""
        return self._error

    @property
    def has_fatal_error(self) -> bool:
        return isinstance(self._error, GridError) and self._error.fatal

    def set_error(self, exc: BaseException) -> bool:
        """Record an error. Only the first one is kept.

        Returns:
            True if this call filled the slot
        """
        with self._lock:
            first = self._error is None
            if first:
                self._error = exc
        if first:
            logger.error(f"Grid generator hit error: {exc}")
        else:
            logger.error(f"Grid generator hit further error (not reported): {exc}")
        self._wake.set()
        return first

    # Cancellation

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    def request_cancel(self) -> None:
        with self._changed:
            if not self._cancel_requested:
                logger.debug("Grid run cancellation requested")
            self._cancel_requested = True
            self._changed.notify_all()
        self._wake.set()

    # Output queue and wake signal

    def add_output(self, event: dict) -> None:
        """Queue an event for the streamer and wake it."""
        with self._lock:
            self._outputs.append(event)
        self._wake.set()

    def drain_outputs(self) -> list[dict]:
        """Remove and return every queued event, oldest first."""
        with self._lock:
            events = list(self._outputs)
            self._outputs.clear()
        return events

    def has_outputs(self) -> bool:
        with self._lock:
            return bool(self._outputs)

    def signal(self) -> None:
        self._wake.set()

    def wait_for_wake(self, timeout: float) -> bool:
        """Block until signalled or until timeout, then reset the signal.

        Returns:
            True if the signal fired
        """
        fired = self._wake.wait(timeout)
        self._wake.clear()
        return fired

    # Generated outputs for composite mode

    def store_output(self, path_key: str, image: Any) -> None:
        with self._lock:
            self._generated[path_key] = image

    def generated_outputs(self) -> dict[str, Any]:
        """Snapshot of generated outputs keyed by path key."""
        with self._lock:
            return dict(self._generated)

    # In-flight set

    def in_flight_count(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def admit(self, job: Hashable, should_stop: Callable[[], bool], poll: float) -> bool:
        """Wait for a free slot, then register ``job`` as in flight.

        ``should_stop`` is checked under the lock and must not call back into
        this object's locking methods.

        Returns:
            False if ``should_stop`` became true before a slot was taken
        """
        with self._changed:
            while len(self._in_flight) >= self.max_simul:
                if should_stop():
                    return False
                self._changed.wait(poll)
            if should_stop():
                return False
            self._in_flight.add(job)
            self.peak_in_flight = max(self.peak_in_flight, len(self._in_flight))
            return True

    def release(self, job: Hashable) -> None:
        with self._changed:
            self._in_flight.discard(job)
            self._changed.notify_all()
        self._wake.set()

    def wait_until_idle(self, poll: float) -> None:
        """Block until nothing is in flight."""
        with self._changed:
            while self._in_flight:
                self._changed.wait(poll)


class ConcurrencyGate:
    """Admits at most ``max_simul`` jobs at a time.

    This is backpressure applied before handing a job to the backend; the gate
    never runs jobs itself.
    """

    def __init__(self, state: RunState, should_stop: Callable[[], bool], poll: float = 1.0):
        self.state = state
        self.should_stop = should_stop
        self.poll = poll

    def admit(self, job: Hashable) -> bool:
        """Block until the job may be submitted.

        Returns:
            False if the run should stop instead of submitting
        """
        return self.state.admit(job, self.should_stop, self.poll)

    def release(self, job: Hashable) -> None:
        self.state.release(job)
