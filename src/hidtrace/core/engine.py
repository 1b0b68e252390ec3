"""
Correlation Engine - the single ingestion point.

Producers push USB snapshots and kernel log lines onto per-source
bounded queues. One consumer task merges them by timestamp, runs the
device state tracker and keyword matcher, and drives the correlator.
Closed incidents go through a bounded queue to a dispatcher task so
sinks never run inside the correlation step.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Iterable

from hidtrace.analyzer.keywords import KeywordMatcher
from hidtrace.analyzer.scoring import DescriptorScorer
from hidtrace.config import HidTraceConfig
from hidtrace.core.correlator import CloseReason, Correlator, Incident
from hidtrace.core.sinks import IncidentDispatcher
from hidtrace.interceptor.descriptors import DeviceSnapshot
from hidtrace.interceptor.events import END_OF_STREAM, LogLine, SourceQueue
from hidtrace.interceptor.tracker import DeviceStateTracker
from hidtrace.policy.models import Policy


logger = logging.getLogger(__name__)

USB_SOURCE = "usb"
KERNEL_LOG_SOURCE = "kernel_log"

# Device events sort before log lines carrying the same timestamp
SOURCE_PRIORITY = {USB_SOURCE: 0, KERNEL_LOG_SOURCE: 1}

SOURCE_TYPES: dict[str, type] = {USB_SOURCE: DeviceSnapshot, KERNEL_LOG_SOURCE: LogLine}


@dataclass(frozen=True)
class StreamStall:
    """A source that produced nothing (not even a heartbeat) for too long."""

    source: str
    detected_at: datetime
    idle_seconds: float


class CorrelationEngine:
    """
    Merges both evidence streams and emits incidents.

    In live mode the correlator clock also advances with wall time while
    inputs are idle, so windows close on schedule. In replay mode the
    clock is driven by input timestamps only, and windows still open when
    every source has ended close with reason "exhausted".
    """

    def __init__(
        self,
        config: HidTraceConfig,
        policy: Policy,
        dispatcher: IncidentDispatcher | None = None,
        live: bool = True,
    ) -> None:
        """
        Initialize the engine.

        Args:
            config: Full configuration (correlation, ingest, usb sections)
            policy: Validated scoring and matching policy
            dispatcher: Sink dispatcher (a new empty one if None)
            live: Advance the clock with wall time while idle
        """
        self.config = config
        self.policy = policy
        self.live = live
        self.dispatcher = dispatcher or IncidentDispatcher()

        ingest = config.ingest
        self.reorder_slack = ingest.reorder_slack
        self.stall_timeout = ingest.stall_timeout
        self.idle_tick = ingest.idle_tick

        self.tracker = DeviceStateTracker(config.usb.baseline_initial_snapshot)
        self.scorer = DescriptorScorer(policy)
        self.matcher = KeywordMatcher(policy.rules)
        self.correlator = Correlator(config.correlation, self.scorer)

        # Replay producers wait for space; dropping would make replays differ
        put_timeout = ingest.put_timeout if live else None
        self.sources: dict[str, SourceQueue] = {
            name: SourceQueue(name, maxsize=ingest.queue_size, put_timeout=put_timeout)
            for name in (USB_SOURCE, KERNEL_LOG_SOURCE)
        }
        self._incident_queue_size = ingest.incident_queue_size
        self._incidents: asyncio.Queue[Incident | None] | None = None

        self._heads: dict[str, Any] = {}
        self._getters: dict[str, asyncio.Task[Any]] = {}
        self._ended: set[str] = set()
        self._stalled: set[str] = set()
        self._hold_since: float | None = None
        self._stop = asyncio.Event()
        self.running = False

        self.stalls: list[StreamStall] = []
        self._emitted = 0

    # Producer side

    async def put_snapshot(self, snapshot: DeviceSnapshot) -> bool:
        """Queue a USB snapshot. Returns False if it was dropped."""
        return await self.sources[USB_SOURCE].put(snapshot)

    async def put_line(self, line: LogLine) -> bool:
        """Queue a kernel log line. Returns False if it was dropped."""
        return await self.sources[KERNEL_LOG_SOURCE].put(line)

    async def close_source(self, name: str) -> None:
        """Signal that a source has no more input."""
        await self.sources[name].close()

    async def feed(
        self,
        name: str,
        items: AsyncIterator[Any] | Iterable[Any],
        close: bool = True,
    ) -> None:
        """
        Pump a producer into a source queue.

        ``None`` items count as heartbeats. A failing producer is logged
        and ends its source; the engine carries on with the others.

        Args:
            name: Source name (USB_SOURCE or KERNEL_LOG_SOURCE)
            items: Async or plain iterable of snapshots / log lines
            close: Close the source when the producer finishes
        """
        queue = self.sources[name]
        try:
            if hasattr(items, "__aiter__"):
                async for item in items:
                    await self._feed_one(queue, item)
            else:
                for item in items:
                    await self._feed_one(queue, item)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Source %s failed: %s", name, e)
        if close:
            await queue.close()

    @staticmethod
    async def _feed_one(queue: SourceQueue, item: Any) -> None:
        if item is None:
            queue.heartbeat()
        else:
            await queue.put(item)

    # Consumer side

    async def run(self) -> None:
        """
        Consume until every source has ended or ``stop()`` is called.

        On stop, open windows are flushed as cut-short incidents. All
        emitted incidents are dispatched before this returns.
        """
        self.running = True
        self._incidents = asyncio.Queue(maxsize=self._incident_queue_size)
        dispatcher_task = asyncio.create_task(self._dispatch_loop())
        stop_waiter = asyncio.create_task(self._stop.wait())
        logger.info("Correlation engine started (%s mode)", "live" if self.live else "replay")

        try:
            await self._consume(stop_waiter)
            if self._stop.is_set():
                await self._emit(self.correlator.flush(CloseReason.SHUTDOWN))
            else:
                await self._emit(self.correlator.flush(CloseReason.EXHAUSTED))
        finally:
            stop_waiter.cancel()
            for task in self._getters.values():
                task.cancel()
            self._getters.clear()
            await self._incidents.put(None)
            await dispatcher_task
            self.running = False
            logger.info("Correlation engine stopped: %d incidents", self._emitted)

    def stop(self) -> None:
        """Request cooperative shutdown."""
        self._stop.set()

    async def _consume(self, stop_waiter: asyncio.Task[Any]) -> None:
        loop = asyncio.get_running_loop()
        while not self._stop.is_set():
            self._collect_heads()
            if len(self._ended) == len(self.sources) and not self._heads:
                logger.info("All sources ended")
                return
            self._check_stalls()

            pending = [
                name for name in self.sources
                if name not in self._heads and name not in self._ended
            ]
            if self._heads:
                blocking = [name for name in pending if name not in self._stalled]
                if blocking:
                    if self._hold_since is None:
                        self._hold_since = loop.time()
                    remaining = self._hold_since + self.reorder_slack - loop.time()
                    if not self.live:
                        # Replay holds until the lagging source delivers or ends
                        remaining = self.idle_tick
                    if remaining > 0:
                        await self._wait_any(blocking, stop_waiter, remaining)
                        continue
                name = min(
                    self._heads,
                    key=lambda n: (self._heads[n].timestamp, SOURCE_PRIORITY[n]),
                )
                item = self._heads.pop(name)
                self._hold_since = None
                await self._handle(name, item)
            else:
                got = await self._wait_any(pending, stop_waiter, self.idle_tick)
                if not got and self.live:
                    await self._tick()

    def _ensure_getters(self, names: Iterable[str]) -> list[asyncio.Task[Any]]:
        tasks = []
        for name in names:
            task = self._getters.get(name)
            if task is None:
                task = asyncio.create_task(self.sources[name].get())
                self._getters[name] = task
            tasks.append(task)
        return tasks

    async def _wait_any(
        self,
        names: list[str],
        stop_waiter: asyncio.Task[Any],
        timeout: float,
    ) -> bool:
        tasks = self._ensure_getters(names)
        done, _ = await asyncio.wait(
            [*tasks, stop_waiter],
            timeout=timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )
        return any(task in done for task in tasks)

    def _collect_heads(self) -> None:
        for name, task in list(self._getters.items()):
            if not task.done():
                continue
            del self._getters[name]
            item = task.result()
            if item is END_OF_STREAM:
                self._ended.add(name)
                self._stalled.discard(name)
                logger.info("Source %s ended", name)
            elif not isinstance(item, SOURCE_TYPES[name]):
                raise TypeError(
                    f"Expected {SOURCE_TYPES[name].__name__} on {name}, got {item!r}"
                )
            else:
                self._heads[name] = item

    def _check_stalls(self) -> None:
        # Replays hold for lagging sources, so wall-clock idleness is not a stall
        if not self.live:
            return
        now = time.monotonic()
        for name, queue in self.sources.items():
            if name in self._ended:
                continue
            busy = name in self._heads or not queue.empty
            idle = now - queue.last_activity
            if name in self._stalled:
                if busy or idle < self.stall_timeout:
                    self._stalled.discard(name)
                    logger.info("Source %s resumed after stall", name)
            elif not busy and idle >= self.stall_timeout:
                self._stalled.add(name)
                stall = StreamStall(
                    source=name,
                    detected_at=datetime.now(timezone.utc),
                    idle_seconds=idle,
                )
                self.stalls.append(stall)
                flagged = self.correlator.mark_degraded()
                logger.warning(
                    "Source %s stalled: no input for %.1fs (%d open windows degraded)",
                    name, idle, flagged,
                )

    async def _handle(self, name: str, item: Any) -> None:
        if name == USB_SOURCE:
            events = self.tracker.update(item)
            if not events:
                await self._emit(self.correlator.advance(item.timestamp))
            for event in events:
                await self._emit(self.correlator.on_device_event(event))
        elif name == KERNEL_LOG_SOURCE:
            match = self.matcher.match(item)
            if match is None:
                await self._emit(self.correlator.advance(item.timestamp))
            else:
                logger.debug("Log match %s: %s", match.rule_id, match.line)
                await self._emit(self.correlator.on_log_match(match))
        else:
            raise ValueError(f"Unknown source: {name}")

        if self._stalled:
            self.correlator.mark_degraded()

    async def _tick(self) -> None:
        now = datetime.now(timezone.utc) - timedelta(seconds=self.reorder_slack)
        await self._emit(self.correlator.advance(now))

    async def _emit(self, incidents: list[Incident]) -> None:
        if self._incidents is None:
            raise RuntimeError("Engine is not running")
        for incident in incidents:
            self._emitted += 1
            await self._incidents.put(incident)

    async def _dispatch_loop(self) -> None:
        if self._incidents is None:
            raise RuntimeError("Engine is not running")
        while True:
            incident = await self._incidents.get()
            if incident is None:
                return
            await self.dispatcher.dispatch(incident)

    def get_statistics(self) -> dict[str, Any]:
        """Get engine statistics."""
        return {
            "running": self.running,
            "incidents_emitted": self._emitted,
            "stalls": len(self.stalls),
            "stalled_sources": sorted(self._stalled),
            "sources": {
                name: {
                    "accepted": queue.accepted,
                    "dropped": queue.dropped,
                    "queued": queue.qsize,
                    "ended": name in self._ended,
                }
                for name, queue in self.sources.items()
            },
            "tracker": self.tracker.get_statistics(),
            "matcher": self.matcher.get_statistics(),
            "correlator": self.correlator.get_statistics(),
            "sink_errors": self.dispatcher.errors,
        }
