"""
Push-based progress reporting for one job.

A ProgressChannel has one producer (the job) and at most one consumer.
Producers call ``emit`` without ever blocking; the consumer iterates
``events()`` until the terminal event. The channel also owns two of the
job's timeout layers: a heartbeat that keeps idle transports alive, and
a wall-clock deadline that forces a terminal error.
"""
import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncIterator, Callable

from .config import HEARTBEAT_INTERVAL, JOB_TIMEOUT
from .errors import JobCancelled, JobTimeout, classify_error

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class EventType(str, Enum):
    INIT = "init"
    BROWSER_LAUNCH = "browser_launch"
    FETCHING_FIRST_PAGE = "fetching_first_page"
    PAGES_FOUND = "pages_found"
    PAGE_START = "page_start"
    PAGE_EXTRACTED = "page_extracted"
    PAGE_COMPLETE = "page_complete"
    MEMORY_CLEANUP = "memory_cleanup"
    SCRAPING_PROFILE = "scraping_profile"
    PROFILE_COMPLETE = "profile_complete"
    PROFILE_WARNING = "profile_warning"
    SCRAPING_RATINGS = "scraping_ratings"
    SAVING_RATINGS = "saving_ratings"
    RATINGS_COMPLETE = "ratings_complete"
    RATINGS_WARNING = "ratings_warning"
    SAVING = "saving"
    COMPLETE = "complete"
    ERROR = "error"
    HEARTBEAT = "heartbeat"


TERMINAL_EVENTS = frozenset({EventType.COMPLETE, EventType.ERROR})


@dataclass(frozen=True)
class ProgressEvent:
    type: EventType
    message: str
    data: dict = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "message": self.message,
            "timestamp": datetime.fromtimestamp(self.timestamp, tz=timezone.utc).isoformat(),
            **self.data,
        }

    def to_sse(self) -> str:
        """Server-sent-events frame for this event."""
        return f"data: {json.dumps(self.to_dict(), default=str)}\n\n"


_END_OF_STREAM = object()


class ProgressChannel:
    """
    Ordered event stream for a single job.

    Writes are dropped once a terminal event has been sent or the consumer
    has disconnected. Cancellation (disconnect or deadline) is signalled to
    the job through ``cancelled`` / ``raise_if_cancelled`` and to any
    ``on_cancel`` callbacks; in-flight work is not interrupted by the
    channel itself.
    """

    def __init__(self, heartbeat_interval: float | None = HEARTBEAT_INTERVAL, job_timeout: float | None = JOB_TIMEOUT):
        self.heartbeat_interval = heartbeat_interval
        self.job_timeout = job_timeout
        self.history: list[ProgressEvent] = []
        self.dropped = 0
        self.cancel_reason: str | None = None

        self._queue: asyncio.Queue = asyncio.Queue()
        self._activity = asyncio.Event()
        self._terminal_sent = False
        self._disconnected = False
        self._subscribed = False
        self._heartbeat_task: asyncio.Task | None = None
        self._deadline: asyncio.TimerHandle | None = None
        self._cancel_callbacks: list[Callable[[str], None]] = []
        self._opened_at = time.monotonic()

    # Lifecycle

    def open(self) -> "ProgressChannel":
        """Start the heartbeat and the deadline timer (needs a running loop)."""
        loop = asyncio.get_running_loop()
        self._opened_at = time.monotonic()
        if self.heartbeat_interval and self._heartbeat_task is None:
            self._heartbeat_task = loop.create_task(self._heartbeat_loop())
        if self.job_timeout and self._deadline is None:
            self._deadline = loop.call_later(self.job_timeout, self._on_deadline)
        return self

    def close(self) -> None:
        """Stop timers; a consumer still waiting is released."""
        self._stop_timers()
        if not self._terminal_sent and not self._disconnected:
            self._queue.put_nowait(_END_OF_STREAM)

    async def __aenter__(self):
        return self.open()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _stop_timers(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None
        if self._deadline is not None:
            self._deadline.cancel()
            self._deadline = None

    @property
    def closed(self) -> bool:
        return self._terminal_sent or self._disconnected

    @property
    def terminal_sent(self) -> bool:
        return self._terminal_sent

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self._opened_at

    # Producer side

    def emit(self, event_type: EventType, message: str, **data) -> bool:
        """Queue an event for the consumer. Returns False if it was dropped."""
        if self.closed:
            self.dropped += 1
            logger.debug(f"Dropped {event_type.value} event after channel closed")
            return False

        event = ProgressEvent(type=event_type, message=message, data=data)
        self.history.append(event)
        self._queue.put_nowait(event)

        if event_type is not EventType.HEARTBEAT:
            self._activity.set()
        if event.is_terminal:
            self._terminal_sent = True
            self._stop_timers()
        return True

    def complete(self, message: str, **data) -> bool:
        return self.emit(EventType.COMPLETE, message, **data)

    def fail(self, exc: BaseException) -> bool:
        message, code = classify_error(exc)
        return self.emit(EventType.ERROR, message, code=code)

    # Cancellation

    def on_cancel(self, callback: Callable[[str], None]) -> None:
        """Register a callback run once with the reason ('disconnect' or 'timeout')."""
        self._cancel_callbacks.append(callback)

    @property
    def cancelled(self) -> bool:
        return self.cancel_reason is not None

    def raise_if_cancelled(self) -> None:
        if self.cancel_reason == "timeout":
            raise JobTimeout(f"Job exceeded {self.job_timeout:.0f}s")
        if self.cancel_reason == "disconnect":
            raise JobCancelled("Consumer disconnected")

    def disconnect(self) -> None:
        """Consumer went away: stop writing and start the job's cleanup."""
        if self._disconnected:
            return
        self._disconnected = True
        self._stop_timers()
        logger.info("Progress consumer disconnected")
        if not self._terminal_sent:
            self._trigger_cancel("disconnect")

    def _trigger_cancel(self, reason: str) -> None:
        if self.cancel_reason is not None:
            return
        self.cancel_reason = reason
        for callback in self._cancel_callbacks:
            try:
                callback(reason)
            except Exception as exc:
                logger.warning(f"Cancel callback {callback!r} failed: {exc}")

    def _on_deadline(self) -> None:
        self._deadline = None
        if self.closed:
            return
        logger.error(f"Job exceeded wall-clock limit of {self.job_timeout:.0f}s")
        self.fail(JobTimeout(f"Job exceeded {self.job_timeout:.0f}s"))
        self._trigger_cancel("timeout")

    async def _heartbeat_loop(self) -> None:
        while not self.closed:
            self._activity.clear()
            try:
                await asyncio.wait_for(self._activity.wait(), timeout=self.heartbeat_interval)
            except asyncio.TimeoutError:
                self.emit(EventType.HEARTBEAT, "Still working...", elapsed=round(self.elapsed, 1))

    # Consumer side

    async def events(self) -> AsyncIterator[ProgressEvent]:
        """
        Yield events in emission order until the terminal one.

        Only one consumer may subscribe.
        """
        if self._subscribed:
            raise RuntimeError("ProgressChannel supports a single consumer")
        self._subscribed = True

        while True:
            event = await self._queue.get()
            if event is _END_OF_STREAM:
                return
            yield event
            if event.is_terminal:
                return
