"""
Replay of recorded evidence streams.

A recording is a JSON-lines file holding two kinds of records:

    {"type": "snapshot", "timestamp": "...", "devices": [{...}, ...]}
    {"type": "log", "timestamp": "...", "line": "usb 1-2: ..."}

Log records may omit ``timestamp``; the line's own prefix is parsed
instead. Feeding the same recording through a fresh engine always yields
the same incidents.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from hidtrace.config import HidTraceConfig
from hidtrace.core.correlator import Incident
from hidtrace.core.engine import KERNEL_LOG_SOURCE, USB_SOURCE, CorrelationEngine
from hidtrace.core.sinks import CollectingSink, IncidentDispatcher, IncidentSink
from hidtrace.interceptor.descriptors import DeviceDescriptor, DeviceSnapshot
from hidtrace.interceptor.events import LogLine
from hidtrace.interceptor.kernel_log import parse_log_line
from hidtrace.policy.models import Policy


logger = logging.getLogger(__name__)


class RecordingError(ValueError):
    """Malformed recording."""

    pass


def _parse_time(value: Any) -> datetime:
    ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def parse_record(data: dict[str, Any]) -> DeviceSnapshot | LogLine:
    """
    Convert one recording record.

    Raises:
        RecordingError: On an unknown type or missing fields.
    """
    kind = data.get("type")
    try:
        if kind == "snapshot":
            devices = [DeviceDescriptor.from_dict(d) for d in data.get("devices", [])]
            return DeviceSnapshot.from_descriptors(devices, timestamp=_parse_time(data["timestamp"]))
        if kind == "log":
            if data.get("timestamp"):
                return LogLine(timestamp=_parse_time(data["timestamp"]), text=data["line"])
            return parse_log_line(data["line"], default_tz=timezone.utc)
    except (KeyError, TypeError, ValueError) as e:
        raise RecordingError(f"Invalid {kind} record: {e}") from e
    raise RecordingError(f"Unknown record type: {kind!r}")


def load_recording(path: str | Path) -> tuple[list[DeviceSnapshot], list[LogLine]]:
    """
    Load a recording file.

    Args:
        path: JSON-lines recording

    Returns:
        Tuple of (snapshots, log lines), each in file order

    Raises:
        FileNotFoundError: If the file doesn't exist
        RecordingError: On the first malformed line
    """
    snapshots: list[DeviceSnapshot] = []
    lines: list[LogLine] = []
    with open(path) as f:
        for line_no, raw in enumerate(f, start=1):
            if not raw.strip() or raw.lstrip().startswith("#"):
                continue
            try:
                item = parse_record(json.loads(raw))
            except json.JSONDecodeError as e:
                raise RecordingError(f"{path}:{line_no}: invalid JSON: {e}") from e
            except RecordingError as e:
                raise RecordingError(f"{path}:{line_no}: {e}") from e
            if isinstance(item, DeviceSnapshot):
                snapshots.append(item)
            else:
                lines.append(item)
    logger.info("Loaded %d snapshots and %d log lines from %s", len(snapshots), len(lines), path)
    return snapshots, lines


async def replay(
    config: HidTraceConfig,
    policy: Policy,
    snapshots: Iterable[DeviceSnapshot],
    lines: Iterable[LogLine],
    sinks: Iterable[IncidentSink] = (),
) -> list[Incident]:
    """
    Run recorded streams through a fresh engine in replay mode.

    Args:
        config: Configuration (correlation and ingest sections)
        policy: Validated policy
        snapshots: USB snapshots in capture order
        lines: Kernel log lines in arrival order
        sinks: Extra sinks to receive incidents as they are emitted

    Returns:
        All emitted incidents in emission order
    """
    collector = CollectingSink()
    dispatcher = IncidentDispatcher()
    dispatcher.register(collector)
    for sink in sinks:
        dispatcher.register(sink)

    engine = CorrelationEngine(config, policy, dispatcher=dispatcher, live=False)
    runner = asyncio.create_task(engine.run())
    await asyncio.gather(
        engine.feed(USB_SOURCE, list(snapshots)),
        engine.feed(KERNEL_LOG_SOURCE, list(lines)),
    )
    await runner
    return collector.incidents
