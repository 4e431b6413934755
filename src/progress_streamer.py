"""Forward queued run events to a live subscriber as they arrive."""

import logging
from typing import Callable, Iterator

from backends import ProgressSink, SessionClaim
from run_state import RunState

logger = logging.getLogger(__name__)


class ProgressStreamer:
    """Drains a run's output queue, independent of the submission thread."""

    def __init__(self, state: RunState, claim: SessionClaim | None = None, poll_interval: float = 1.0):
        """Initialize the streamer.

        Args:
            state: Run state whose output queue is drained
            claim: Session claim polled for cancellation on every wake
            poll_interval: Longest wait between liveness checks, in seconds
        """
        self.state = state
        self.claim = claim
        self.poll_interval = poll_interval

    def stream(self, is_running: Callable[[], bool]) -> Iterator[dict]:
        """Yield events until the run has stopped and everything is drained.

        Args:
            is_running: Returns True while the submission loop is still going
        """
        while is_running() or self.state.in_flight_count() or self.state.has_outputs():
            self.state.wait_for_wake(self.poll_interval)
            if self.claim is not None and self.claim.should_cancel and not self.state.cancel_requested:
                logger.debug("Streamer observed cancellation request")
                self.state.request_cancel()
            yield from self.state.drain_outputs()
        yield from self.state.drain_outputs()

    def pump(self, is_running: Callable[[], bool], sink: ProgressSink) -> int:
        """Send every streamed event to a sink.

        Returns:
            Number of events sent
        """
        count = 0
        for event in self.stream(is_running):
            sink.send(event)
            count += 1
        return count
