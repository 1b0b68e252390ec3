"""
Incident sinks.

The dispatcher task hands every emitted incident to each registered
sink in registration order. A failing sink is logged and skipped; it
never stops the others or the correlator.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import IO, TYPE_CHECKING, Any, Callable, Coroutine

from hidtrace.core.correlator import Incident

if TYPE_CHECKING:
    from hidtrace.audit.database import IncidentStore


logger = logging.getLogger(__name__)


# Type alias for incident sinks
IncidentSink = Callable[[Incident], Coroutine[Any, Any, None]]


class IncidentDispatcher:
    """
    Dispatcher with support for multiple sinks.

    Sinks are called in registration order.
    """

    def __init__(self) -> None:
        self._sinks: list[IncidentSink] = []
        self.dispatched = 0
        self.errors = 0

    def register(self, sink: IncidentSink) -> None:
        """
        Register a sink.

        Args:
            sink: Async callable taking an Incident
        """
        self._sinks.append(sink)
        logger.debug("Registered incident sink %s", getattr(sink, "name", sink))

    def unregister(self, sink: IncidentSink) -> None:
        """Unregister a sink."""
        if sink in self._sinks:
            self._sinks.remove(sink)

    @property
    def sinks(self) -> list[IncidentSink]:
        return list(self._sinks)

    async def dispatch(self, incident: Incident) -> None:
        """
        Hand an incident to all registered sinks.

        Args:
            incident: Incident in emission order
        """
        self.dispatched += 1
        for sink in self._sinks:
            try:
                await sink(incident)
            except Exception as e:
                self.errors += 1
                logger.error(
                    "Sink %s failed for incident #%d: %s",
                    getattr(sink, "name", sink), incident.sequence, e,
                )

    async def close(self) -> None:
        """Close every sink that holds resources."""
        for sink in self._sinks:
            close = getattr(sink, "close", None)
            if close is None:
                continue
            try:
                result = close()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error("Error closing sink %s: %s", getattr(sink, "name", sink), e)


def format_incident(incident: Incident) -> str:
    """One-line operator summary of an incident."""
    event = incident.event
    descriptor = getattr(event, "descriptor", None) or getattr(event, "new", None)
    device = f"{descriptor.vid_pid} {descriptor.class_name}" if descriptor else "unknown device"
    flags = []
    if incident.cut_short:
        flags.append("cut short")
    if incident.degraded:
        flags.append("degraded")
    suffix = f" [{', '.join(flags)}]" if flags else ""
    return (
        f"#{incident.sequence} {event.kind.value} {incident.identity} ({device}): "
        f"confidence {incident.confidence:.2f}, anomaly {incident.anomaly.score:.2f}, "
        f"{len(incident.matches)} log matches, {incident.close_reason.value}{suffix}"
    )


class LoggingSink:
    """Logs every incident; alerts at WARNING, the rest at INFO."""

    name = "logging"

    def __init__(self, alerts_only: bool = False) -> None:
        self.alerts_only = alerts_only

    async def __call__(self, incident: Incident) -> None:
        if incident.alert:
            logger.warning("ALERT: %s", format_incident(incident))
            for reason in incident.anomaly.reasons:
                logger.warning("  reason: %s", reason)
            for match in incident.matches:
                logger.warning("  [%s] %s", match.severity.value, match.line)
        elif not self.alerts_only:
            logger.info("Incident %s", format_incident(incident))


class JsonLinesSink:
    """Writes each incident as one canonical JSON line."""

    name = "jsonl"

    def __init__(self, target: str | Path | IO[str]) -> None:
        """
        Args:
            target: File path (appended to) or an open text stream
        """
        if isinstance(target, (str, Path)):
            path = Path(target)
            path.parent.mkdir(parents=True, exist_ok=True)
            self._stream: IO[str] = open(path, "a")
            self._owned = True
        else:
            self._stream = target
            self._owned = False

    async def __call__(self, incident: Incident) -> None:
        self._stream.write(incident.to_json() + "\n")
        self._stream.flush()

    def close(self) -> None:
        if self._owned and not self._stream.closed:
            self._stream.close()


class CollectingSink:
    """Keeps incidents in memory (replay and tests)."""

    name = "collect"

    def __init__(self) -> None:
        self.incidents: list[Incident] = []

    async def __call__(self, incident: Incident) -> None:
        self.incidents.append(incident)


class StoreSink:
    """Persists incidents to the append-only store off the event loop."""

    name = "store"

    def __init__(self, store: IncidentStore) -> None:
        self.store = store

    async def __call__(self, incident: Incident) -> None:
        await asyncio.to_thread(self.store.record, incident)

    def close(self) -> None:
        self.store.close()
