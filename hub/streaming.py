"""Status events emitted by plugin operations.

Every reconciler operation reports what it is doing as a sequence of
StatusEvents that ends in exactly one terminal event. Events are handed to
an EventSink supplied by the caller; this module provides the stock sinks:

    - EventCollector: keeps every event in a list
    - CallbackSink: forwards each event to a plain callable
    - EventQueue: bounded async queue a consumer can iterate over
    - LoggingSink: writes each event to the structured log
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

from .interfaces import EventSink
from .models import NotAvailableReason, OperationStatus

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

logger = structlog.get_logger(__name__)

# Queue size for bounded event queues
DEFAULT_QUEUE_SIZE = 1000


@dataclass(slots=True)
class StatusEvent:
    """One step of a plugin operation.

    Attributes:
        plugin_name: Plugin the operation targets.
        status: Current state of the operation.
        bytes: Bytes transferred so far (downloading only).
        percent: Download progress 0-100, None if the size is unknown.
        error: Operator-facing error message (failed only).
        version: Resolved version (checks and completed installs).
        reason: Why the plugin is not available (not_available only).
        message: Optional human-readable detail.
        timestamp: When the event was generated.
    """

    plugin_name: str
    status: OperationStatus
    bytes: int | None = None
    percent: float | None = None
    error: str | None = None
    version: str | None = None
    reason: NotAvailableReason | None = None
    message: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    @property
    def is_terminal(self) -> bool:
        """Whether this event ends its operation."""
        return self.status.is_terminal

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire shape sent across the core boundary."""
        d: dict[str, Any] = {
            "pluginName": self.plugin_name,
            "status": self.status.value,
        }
        # Only include non-None optional fields
        if self.bytes is not None:
            d["bytes"] = self.bytes
        if self.percent is not None:
            d["percent"] = self.percent
        if self.error is not None:
            d["error"] = self.error
        if self.version is not None:
            d["version"] = self.version
        if self.reason is not None:
            d["reason"] = self.reason.value
        if self.message is not None:
            d["message"] = self.message
        return d

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict())


class EventCollector(EventSink):
    """Sink that records every event, mostly for tests and batch callers."""

    def __init__(self) -> None:
        """Initialize an empty collector."""
        self.events: list[StatusEvent] = []

    def emit(self, event: StatusEvent) -> None:
        """Record an event."""
        self.events.append(event)

    @property
    def statuses(self) -> list[OperationStatus]:
        """Statuses of all recorded events, in order."""
        return [e.status for e in self.events]

    @property
    def last(self) -> StatusEvent | None:
        """The most recent event, if any."""
        return self.events[-1] if self.events else None

    def for_plugin(self, plugin_name: str) -> list[StatusEvent]:
        """Events recorded for one plugin."""
        return [e for e in self.events if e.plugin_name == plugin_name]

    def clear(self) -> None:
        """Forget all recorded events."""
        self.events.clear()


class CallbackSink(EventSink):
    """Sink that forwards every event to a callable."""

    def __init__(self, callback: Callable[[StatusEvent], None]) -> None:
        """Initialize the sink.

        Args:
            callback: Called synchronously with each event.
        """
        self._callback = callback

    def emit(self, event: StatusEvent) -> None:
        """Forward an event."""
        self._callback(event)


class LoggingSink(EventSink):
    """Sink that writes events to the structured log."""

    def __init__(self) -> None:
        """Initialize the sink."""
        self._log = logger.bind(component="event_log")

    def emit(self, event: StatusEvent) -> None:
        """Log an event; progress at debug, failures at error."""
        fields = event.to_dict()
        fields.pop("status")
        if event.status == OperationStatus.FAILED:
            self._log.error("plugin_status", status=event.status.value, **fields)
        elif event.status == OperationStatus.DOWNLOADING:
            self._log.debug("plugin_status", status=event.status.value, **fields)
        else:
            self._log.info("plugin_status", status=event.status.value, **fields)


class FanOutSink(EventSink):
    """Sink that forwards every event to several sinks in order."""

    def __init__(self, *sinks: EventSink) -> None:
        """Initialize with the target sinks."""
        self._sinks = list(sinks)

    def emit(self, event: StatusEvent) -> None:
        """Forward an event to each sink."""
        for sink in self._sinks:
            sink.emit(event)


class EventQueue(EventSink):
    """Bounded async queue of status events.

    Progress events are dropped with a warning when the queue is full.
    Terminal events are never dropped, so a consumer always sees how an
    operation ended.

    Attributes:
        maxsize: Maximum number of buffered progress events.
        dropped_count: Number of progress events dropped due to overflow.
    """

    def __init__(self, maxsize: int = DEFAULT_QUEUE_SIZE) -> None:
        """Initialize the event queue.

        Args:
            maxsize: Maximum queue size (default: 1000)
        """
        self._queue: asyncio.Queue[StatusEvent | None] = asyncio.Queue()
        self._maxsize = maxsize
        self._dropped_count = 0
        self._log = logger.bind(component="status_event_queue")

    @property
    def maxsize(self) -> int:
        """Maximum queue size."""
        return self._maxsize

    @property
    def dropped_count(self) -> int:
        """Number of events dropped due to overflow."""
        return self._dropped_count

    def qsize(self) -> int:
        """Return the current queue size."""
        return self._queue.qsize()

    def emit(self, event: StatusEvent) -> None:
        """Put an event into the queue.

        Args:
            event: The event to add.
        """
        if not event.is_terminal and self._queue.qsize() >= self._maxsize:
            self._dropped_count += 1
            if self._dropped_count == 1 or self._dropped_count % 100 == 0:
                self._log.warning(
                    "event_queue_overflow",
                    dropped_count=self._dropped_count,
                    queue_size=self._maxsize,
                    status=event.status.value,
                )
            return
        self._queue.put_nowait(event)

    async def get(self) -> StatusEvent | None:
        """Get an event from the queue.

        Returns:
            The next event, or None if the queue is closed.
        """
        return await self._queue.get()

    def close(self) -> None:
        """Signal that no more events will be added."""
        self._queue.put_nowait(None)

    def __aiter__(self) -> AsyncIterator[StatusEvent]:
        """Iterate over events in the queue."""
        return self

    async def __anext__(self) -> StatusEvent:
        """Get the next event from the queue."""
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event
