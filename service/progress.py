"""
Progress reporting for long-running scheduling runs.

The solver publishes ``ProgressEvent`` values to a reporter. A reporter is any
callable taking one event; ``ProgressChannel`` is the queue-backed reporter a
caller drains at its own pace, so publishing never waits on the consumer.
"""
import logging
import queue
from typing import Callable, Iterator, List, Optional

from models.schemas import ProgressEvent

logger = logging.getLogger(__name__)

ProgressReporter = Callable[[ProgressEvent], None]


class ProgressChannel:
    """Thread-safe, unbounded event channel between a run and its caller."""

    _CLOSED = object()

    def __init__(self):
        self._queue: "queue.Queue" = queue.Queue()
        self._closed = False

    def __call__(self, event: ProgressEvent) -> None:
        self.publish(event)

    def publish(self, event: ProgressEvent) -> None:
        if self._closed:
            return
        self._queue.put_nowait(event)

    def close(self) -> None:
        """Mark the end of the stream; consumers stop after the queued events."""
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(self._CLOSED)

    @property
    def closed(self) -> bool:
        return self._closed

    def drain(self) -> List[ProgressEvent]:
        """Return every event published so far without blocking."""
        events = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return events
            if item is self._CLOSED:
                # keep the close marker visible to blocking consumers
                self._queue.put_nowait(item)
                return events
            events.append(item)

    def events(self, timeout: Optional[float] = None) -> Iterator[ProgressEvent]:
        """Yield events until the channel is closed (or ``timeout`` elapses between events)."""
        while True:
            try:
                item = self._queue.get(timeout=timeout)
            except queue.Empty:
                return
            if item is self._CLOSED:
                return
            yield item


class ProgressTracker:
    """Builds events for one run and forwards them to the caller's reporter."""

    def __init__(self, reporter: Optional[ProgressReporter], total_count: int = 0):
        self.reporter = reporter
        self.total_count = total_count

    def report(self, stage: str, percentage: int, message: str, assigned_count: int = 0) -> None:
        logger.debug(f"[{stage}] {percentage}% {message}")
        if self.reporter is None:
            return
        event = ProgressEvent(
            stage=stage,
            percentage=max(0, min(100, percentage)),
            message=message,
            assigned_count=assigned_count,
            total_count=self.total_count,
        )
        try:
            self.reporter(event)
        except Exception:
            logger.warning("Progress reporter raised; continuing without it", exc_info=True)
