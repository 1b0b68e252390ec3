"""
Correlator - time-windowed evidence fusion.

Every device event opens a window of length W. Keyword matches from the
kernel log that land inside an open window are captured by it; when the
window closes it becomes an Incident whose confidence combines the
device's anomaly score with the time-decayed weight of the captured
matches.

The correlator is synchronous and owns its window table. It is driven by
a single consumer (see hidtrace.core.engine) and never touched by
producers.
"""

from __future__ import annotations

import json
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from hidtrace.analyzer.keywords import LogMatch
from hidtrace.analyzer.scoring import AnomalyScore, DescriptorScorer, clamp
from hidtrace.config import CorrelationConfig
from hidtrace.interceptor.descriptors import DeviceIdentity
from hidtrace.interceptor.events import (
    Attached,
    DeviceEvent,
    Detached,
    Reconfigured,
    event_to_dict,
    scored_descriptor,
)


logger = logging.getLogger(__name__)


class CloseReason(str, Enum):
    """Why a window stopped collecting evidence."""

    TIMEOUT = "timeout"
    TERMINAL_EVENT = "terminal_event"
    EXHAUSTED = "exhausted"
    SHUTDOWN = "shutdown"

    def __str__(self) -> str:
        return self.value


class WindowState(Enum):
    OPEN = "open"
    CLOSING = "closing"
    EMITTED = "emitted"


@dataclass(frozen=True)
class ClockSkew:
    """An input older than the correlator clock, clamped forward."""

    source: str
    observed: datetime
    clamped_to: datetime

    @property
    def lag(self) -> timedelta:
        return self.clamped_to - self.observed


@dataclass(frozen=True)
class Incident:
    """
    A closed correlation window.

    Immutable once emitted. ``sequence`` gives the total emission order.
    """

    sequence: int
    event: DeviceEvent
    anomaly: AnomalyScore
    base_confidence: float
    confidence: float
    matches: tuple[LogMatch, ...]
    window_start: datetime
    window_end: datetime
    closed_at: datetime
    close_reason: CloseReason
    cut_short: bool = False
    degraded: bool = False
    alert: bool = False

    @property
    def identity(self) -> DeviceIdentity:
        return self.event.identity

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for output and storage."""
        return {
            "sequence": self.sequence,
            "event": event_to_dict(self.event),
            "anomaly": self.anomaly.to_dict(),
            "base_confidence": self.base_confidence,
            "confidence": self.confidence,
            "matches": [m.to_dict() for m in self.matches],
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
            "closed_at": self.closed_at.isoformat(),
            "close_reason": self.close_reason.value,
            "cut_short": self.cut_short,
            "degraded": self.degraded,
            "alert": self.alert,
        }

    def to_json(self) -> str:
        """Canonical JSON form: identical incidents give identical bytes."""
        return json.dumps(self.to_dict(), sort_keys=True)


@dataclass
class _Capture:
    match: LogMatch
    at: datetime  # match time after clock clamping


@dataclass
class _Window:
    opened: int
    event: DeviceEvent
    anomaly: AnomalyScore
    base: float
    start: datetime
    end: datetime
    captures: list[_Capture] = field(default_factory=list)
    degraded: bool = False
    state: WindowState = WindowState.OPEN

    @property
    def identity(self) -> DeviceIdentity:
        return self.event.identity

    @property
    def sort_key(self) -> tuple[datetime, int]:
        return (self.end, self.opened)


class Correlator:
    """
    Active-window table plus the confidence model.

    Every ``on_*`` / ``advance`` / ``flush`` call returns the incidents it
    closed, in close order.
    """

    def __init__(self, config: CorrelationConfig, scorer: DescriptorScorer) -> None:
        """
        Initialize the correlator.

        Args:
            config: Window length, decay and weight settings
            scorer: Descriptor anomaly scorer
        """
        self.config = config
        self.scorer = scorer
        self.window = config.window
        self._windows: dict[DeviceIdentity, list[_Window]] = {}
        self._clock: datetime | None = None
        self._opened = 0
        self._sequence = 0

        self.skews: deque[ClockSkew] = deque(maxlen=100)

        # Statistics
        self._events = 0
        self._matches_assigned = 0
        self._matches_dropped = 0
        self._skew_counts: dict[str, int] = {}
        self._incidents = 0
        self._alerts = 0

    @property
    def clock(self) -> datetime | None:
        """Latest timestamp processed (inputs never move it backwards)."""
        return self._clock

    @property
    def open_windows(self) -> int:
        return sum(len(w) for w in self._windows.values())

    def _observe(self, timestamp: datetime, source: str) -> datetime:
        if self._clock is None or timestamp >= self._clock:
            self._clock = timestamp
            return timestamp

        skew = ClockSkew(source=source, observed=timestamp, clamped_to=self._clock)
        self.skews.append(skew)
        count = self._skew_counts.get(source, 0) + 1
        self._skew_counts[source] = count
        if count == 1:
            logger.warning(
                "Clock skew on %s: input %.3fs behind correlator clock, clamped",
                source, skew.lag.total_seconds(),
            )
        else:
            logger.debug(
                "Clock skew on %s: %.3fs (%d so far)",
                source, skew.lag.total_seconds(), count,
            )
        return self._clock

    def _all_windows(self) -> list[_Window]:
        windows = [w for ws in self._windows.values() for w in ws]
        windows.sort(key=lambda w: w.sort_key)
        return windows

    def _remove(self, window: _Window) -> None:
        bucket = self._windows[window.identity]
        bucket.remove(window)
        if not bucket:
            del self._windows[window.identity]

    def _decay(self, delay: timedelta) -> float:
        fraction = delay / self.window
        return max(self.config.decay_floor, 1.0 - fraction)

    def confidence(self, base: float, captures: list[_Capture], start: datetime) -> float:
        weights = self.config.severity_weights
        total = base
        for capture in captures:
            weight = getattr(weights, capture.match.severity.value)
            total += weight * self._decay(capture.at - start)
        return round(clamp(total), 6)

    def _close(
        self,
        window: _Window,
        reason: CloseReason,
        closed_at: datetime,
    ) -> Incident:
        if window.state is not WindowState.OPEN:
            raise RuntimeError(f"Window for {window.identity} already {window.state.value}")
        window.state = WindowState.CLOSING
        self._remove(window)

        confidence = self.confidence(window.base, window.captures, window.start)
        self._sequence += 1
        incident = Incident(
            sequence=self._sequence,
            event=window.event,
            anomaly=window.anomaly,
            base_confidence=round(clamp(window.base), 6),
            confidence=confidence,
            matches=tuple(c.match for c in window.captures),
            window_start=window.start,
            window_end=window.end,
            closed_at=closed_at,
            close_reason=reason,
            cut_short=reason is CloseReason.SHUTDOWN,
            degraded=window.degraded,
            alert=confidence >= self.config.alert_threshold,
        )
        window.state = WindowState.EMITTED

        self._incidents += 1
        if incident.alert:
            self._alerts += 1
        logger.debug(
            "Closed window #%d for %s (%s): confidence %.2f, %d matches",
            incident.sequence, incident.identity, reason.value,
            confidence, len(incident.matches),
        )
        return incident

    def _expire(self) -> list[Incident]:
        if self._clock is None:
            return []
        expired = [w for w in self._all_windows() if w.end < self._clock]
        return [self._close(w, CloseReason.TIMEOUT, w.end) for w in expired]

    def advance(self, now: datetime) -> list[Incident]:
        """
        Move the clock forward without an input and close elapsed windows.

        A time earlier than the clock is ignored.
        """
        if self._clock is None or now > self._clock:
            self._clock = now
        return self._expire()

    def on_device_event(self, event: DeviceEvent) -> list[Incident]:
        """
        Score a device event and open its window.

        A Detached first closes any open Attached/Reconfigured window for
        the same identity.

        Args:
            event: Event from the device state tracker

        Returns:
            Incidents closed as a consequence
        """
        if not isinstance(event, (Attached, Detached, Reconfigured)):
            raise TypeError(f"Unknown device event: {event!r}")

        start = self._observe(event.timestamp, "usb")
        closed = self._expire()
        self._events += 1

        brief_presence = False
        if isinstance(event, Detached):
            for window in sorted(self._windows.get(event.identity, []), key=lambda w: w.sort_key):
                if isinstance(window.event, (Attached, Reconfigured)):
                    closed.append(self._close(window, CloseReason.TERMINAL_EVENT, start))
                    brief_presence = True

        descriptor = scored_descriptor(event)
        if descriptor is None:
            anomaly = AnomalyScore(0.0, ("no descriptor recorded for detached device",))
        else:
            anomaly = self.scorer.score(descriptor)

        base = anomaly.score
        if isinstance(event, Detached):
            base *= self.config.detach_factor
            if brief_presence:
                base += self.config.brief_presence_weight
        if getattr(event, "reenumeration", False):
            base += self.config.reenumeration_weight

        self._opened += 1
        window = _Window(
            opened=self._opened,
            event=event,
            anomaly=anomaly,
            base=base,
            start=start,
            end=start + self.window,
        )
        self._windows.setdefault(event.identity, []).append(window)
        logger.debug(
            "Opened window for %s %s: anomaly %.2f, base %.2f",
            event.identity, event.kind.value, anomaly.score, base,
        )
        return closed

    def on_log_match(self, match: LogMatch) -> list[Incident]:
        """
        Assign a keyword match to every open window it falls inside.

        Matches with no open window are dropped and counted.
        """
        at = self._observe(match.timestamp, "kernel_log")
        closed = self._expire()

        windows = [w for w in self._all_windows() if w.end >= at]
        if not windows:
            self._matches_dropped += 1
            logger.debug("Dropped log match %s: no open window", match.rule_id)
            return closed

        for window in windows:
            if any(c.match is match for c in window.captures):
                continue
            window.captures.append(_Capture(match=match, at=at))
        self._matches_assigned += 1
        return closed

    def mark_degraded(self) -> int:
        """Flag every open window as degraded. Returns how many were flagged."""
        count = 0
        for window in self._all_windows():
            if not window.degraded:
                window.degraded = True
                count += 1
        return count

    def flush(self, reason: CloseReason = CloseReason.SHUTDOWN) -> list[Incident]:
        """
        Close every open window in end order.

        SHUTDOWN marks the incidents cut short; EXHAUSTED closes them
        normally once all inputs have ended.
        """
        windows = self._all_windows()
        closed_at = self._clock
        incidents = []
        for window in windows:
            at = closed_at if closed_at is not None else window.start
            if reason is CloseReason.EXHAUSTED:
                at = window.end
            incidents.append(self._close(window, reason, at))
        if incidents:
            logger.info("Flushed %d open windows (%s)", len(incidents), reason.value)
        return incidents

    def get_statistics(self) -> dict[str, Any]:
        return {
            "device_events": self._events,
            "matches_assigned": self._matches_assigned,
            "matches_dropped": self._matches_dropped,
            "clock_skew": dict(self._skew_counts),
            "incidents": self._incidents,
            "alerts": self._alerts,
            "open_windows": self.open_windows,
        }
