"""
Device events, log lines, and per-source ingestion queues.

DeviceEvent is a closed set of tagged variants (Attached, Detached,
Reconfigured). Consumers dispatch on it with ``isinstance`` and raise on
anything else.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Union

from hidtrace.interceptor.descriptors import DeviceDescriptor, DeviceIdentity


logger = logging.getLogger(__name__)


class DeviceEventKind(str, Enum):
    """Device event variants."""

    ATTACHED = "attached"
    DETACHED = "detached"
    RECONFIGURED = "reconfigured"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Attached:
    """A descriptor appeared at an attachment point."""

    timestamp: datetime
    descriptor: DeviceDescriptor
    reenumeration: bool = False

    kind: ClassVar[DeviceEventKind] = DeviceEventKind.ATTACHED

    @property
    def identity(self) -> DeviceIdentity:
        return self.descriptor.identity


@dataclass(frozen=True)
class Detached:
    """
    An attachment point disappeared.

    ``descriptor`` is the last descriptor seen there, when known.
    """

    timestamp: datetime
    identity: DeviceIdentity
    descriptor: DeviceDescriptor | None = None
    reenumeration: bool = False

    kind: ClassVar[DeviceEventKind] = DeviceEventKind.DETACHED


@dataclass(frozen=True)
class Reconfigured:
    """A descriptor changed in place. Never produced by the tracker."""

    timestamp: datetime
    old: DeviceDescriptor
    new: DeviceDescriptor

    kind: ClassVar[DeviceEventKind] = DeviceEventKind.RECONFIGURED

    @property
    def identity(self) -> DeviceIdentity:
        return self.new.identity


DeviceEvent = Union[Attached, Detached, Reconfigured]


def scored_descriptor(event: DeviceEvent) -> DeviceDescriptor | None:
    """Return the descriptor an event should be scored on."""
    if isinstance(event, Attached):
        return event.descriptor
    if isinstance(event, Detached):
        return event.descriptor
    if isinstance(event, Reconfigured):
        return event.new
    raise TypeError(f"Unknown device event: {event!r}")


def event_to_dict(event: DeviceEvent) -> dict[str, Any]:
    """Convert a device event to a JSON-serialisable dictionary."""
    data: dict[str, Any] = {
        "kind": event.kind.value,
        "timestamp": event.timestamp.isoformat(),
        "bus": event.identity.bus,
        "address": event.identity.address,
    }
    if isinstance(event, Attached):
        data["reenumeration"] = event.reenumeration
        data["descriptor"] = event.descriptor.to_dict()
    elif isinstance(event, Detached):
        data["reenumeration"] = event.reenumeration
        data["descriptor"] = event.descriptor.to_dict() if event.descriptor else None
    elif isinstance(event, Reconfigured):
        data["old"] = event.old.to_dict()
        data["descriptor"] = event.new.to_dict()
    else:
        raise TypeError(f"Unknown device event: {event!r}")
    return data


@dataclass(frozen=True)
class LogLine:
    """A raw kernel/syslog line with the timestamp it was logged at."""

    timestamp: datetime
    text: str
    source: str = "kernel"


class EndOfStream:
    """Marker put on a source queue when its producer finishes."""

    def __repr__(self) -> str:
        return "<EndOfStream>"


END_OF_STREAM = EndOfStream()


class SourceQueue:
    """
    Bounded async queue for one input source.

    Producers ``put`` with a timeout so a stalled consumer never holds
    them indefinitely; items that can't be queued in time are dropped
    and counted.
    """

    def __init__(
        self,
        name: str,
        maxsize: int = 1000,
        put_timeout: float | None = 2.0,
    ) -> None:
        """
        Initialize source queue.

        Args:
            name: Source name used in logs and statistics
            maxsize: Maximum queue size (0 for unlimited)
            put_timeout: Seconds a producer may wait for space
                (None waits indefinitely and never drops)
        """
        self.name = name
        self.put_timeout = put_timeout
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.dropped = 0
        self.accepted = 0
        self.last_activity = time.monotonic()

    async def put(self, item: Any) -> bool:
        """
        Add an item, waiting at most ``put_timeout`` for space.

        Returns:
            True if queued, False if dropped.

        Raises:
            RuntimeError: If the queue has been closed.
        """
        if self._closed:
            raise RuntimeError(f"Source queue {self.name} is closed")
        try:
            if self.put_timeout is None:
                await self._queue.put(item)
            else:
                await asyncio.wait_for(self._queue.put(item), timeout=self.put_timeout)
        except asyncio.TimeoutError:
            self.dropped += 1
            logger.warning(
                "Source %s backlog full, dropped input (%d dropped so far)",
                self.name, self.dropped,
            )
            return False
        self.accepted += 1
        self.last_activity = time.monotonic()
        return True

    def heartbeat(self) -> None:
        """Record that the producer is alive even though it had nothing to send."""
        self.last_activity = time.monotonic()

    async def close(self) -> None:
        """Signal end of stream to the consumer."""
        if self._closed:
            return
        self._closed = True
        await self._queue.put(END_OF_STREAM)

    def get_nowait(self) -> Any | None:
        """
        Get next item without blocking.

        Returns:
            Next item or None if queue is empty
        """
        try:
            item = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        return item

    async def get(self) -> Any:
        """Wait for the next item."""
        return await self._queue.get()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def qsize(self) -> int:
        """Get current queue size."""
        return self._queue.qsize()

    @property
    def empty(self) -> bool:
        """Check if queue is empty."""
        return self._queue.empty()
