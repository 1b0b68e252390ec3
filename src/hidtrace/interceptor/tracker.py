"""
Device State Tracker.

Diffs successive full USB enumeration snapshots into device events.
A descriptor that changes at a stable (bus, address) is reported as a
Detached/Attached pair, never as an in-place mutation: that pair is the
re-enumeration signature implants produce after a power-up delay.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Mapping

from hidtrace.interceptor.descriptors import DeviceDescriptor, DeviceIdentity, DeviceSnapshot
from hidtrace.interceptor.events import Attached, DeviceEvent, Detached, Reconfigured


logger = logging.getLogger(__name__)

DeviceMap = Mapping[DeviceIdentity, DeviceDescriptor]


def diff_snapshots(
    old: DeviceMap,
    new: DeviceMap,
    timestamp: datetime,
) -> list[DeviceEvent]:
    """
    Produce the ordered events that explain the transition old -> new.

    Events are ordered by identity; for a changed descriptor the
    Detached(old) event immediately precedes the Attached(new) event.

    Args:
        old: Previous snapshot devices keyed by identity
        new: Current snapshot devices keyed by identity
        timestamp: Capture time of the new snapshot

    Returns:
        List of device events (empty when nothing changed)
    """
    events: list[DeviceEvent] = []
    for identity in sorted(set(old) | set(new)):
        before = old.get(identity)
        after = new.get(identity)

        if before is None and after is not None:
            events.append(Attached(timestamp=timestamp, descriptor=after))
        elif after is None and before is not None:
            events.append(Detached(timestamp=timestamp, identity=identity, descriptor=before))
        elif before != after:
            events.append(Detached(
                timestamp=timestamp,
                identity=identity,
                descriptor=before,
                reenumeration=True,
            ))
            events.append(Attached(
                timestamp=timestamp,
                descriptor=after,
                reenumeration=True,
            ))
    return events


def apply_events(
    devices: DeviceMap,
    events: Iterable[DeviceEvent],
) -> dict[DeviceIdentity, DeviceDescriptor]:
    """
    Replay events against a device map.

    ``apply_events(old, diff_snapshots(old, new, t)) == new`` for any pair
    of snapshots.

    Raises:
        TypeError: On an unknown event kind.
    """
    result = dict(devices)
    for event in events:
        if isinstance(event, Attached):
            result[event.identity] = event.descriptor
        elif isinstance(event, Detached):
            result.pop(event.identity, None)
        elif isinstance(event, Reconfigured):
            result.pop(event.old.identity, None)
            result[event.identity] = event.new
        else:
            raise TypeError(f"Unknown device event: {event!r}")
    return result


class DeviceStateTracker:
    """
    Stateful wrapper that remembers the previous snapshot between polls.
    """

    def __init__(self, baseline_initial_snapshot: bool = False) -> None:
        """
        Initialize the tracker.

        Args:
            baseline_initial_snapshot: Treat devices present in the first
                snapshot as already known (no Attached events for them)
        """
        self.baseline_initial_snapshot = baseline_initial_snapshot
        self._previous: DeviceSnapshot | None = None
        self._snapshots = 0
        self._events = 0

    @property
    def previous(self) -> DeviceSnapshot | None:
        return self._previous

    def update(self, snapshot: DeviceSnapshot) -> list[DeviceEvent]:
        """
        Diff a new snapshot against the previous one and remember it.

        Args:
            snapshot: Full enumeration just captured

        Returns:
            Events explaining the transition
        """
        self._snapshots += 1
        if self._previous is None:
            self._previous = snapshot
            if self.baseline_initial_snapshot:
                logger.info(
                    "Baseline snapshot: %d devices already attached", len(snapshot)
                )
                return []
            events = diff_snapshots({}, snapshot.devices, snapshot.timestamp)
        else:
            events = diff_snapshots(
                self._previous.devices, snapshot.devices, snapshot.timestamp
            )
            self._previous = snapshot

        self._events += len(events)
        for event in events:
            logger.debug(
                "Device %s %s%s",
                event.identity, event.kind.value,
                " (re-enumeration)" if getattr(event, "reenumeration", False) else "",
            )
        return events

    def get_statistics(self) -> dict[str, int]:
        return {
            "snapshots": self._snapshots,
            "device_events": self._events,
            "attached_now": len(self._previous) if self._previous else 0,
        }
