"""
USB and kernel log evidence sources.

Captures full USB enumeration snapshots, diffs them into device events,
and reads timestamped kernel log lines.
"""

from hidtrace.interceptor.constants import (
    LinkSpeed,
    USBClass,
    get_class_info,
    get_class_name,
)
from hidtrace.interceptor.descriptors import (
    DeviceDescriptor,
    DeviceIdentity,
    DeviceSnapshot,
    create_test_descriptor,
    extract_device_info,
)
from hidtrace.interceptor.events import (
    Attached,
    DeviceEvent,
    Detached,
    LogLine,
    Reconfigured,
    SourceQueue,
)
from hidtrace.interceptor.kernel_log import DmesgReader, FileTailReader, parse_log_line
from hidtrace.interceptor.linux import SnapshotPoller, USBEnumerator, USBMonitor
from hidtrace.interceptor.tracker import DeviceStateTracker, apply_events, diff_snapshots

__all__ = [
    # Constants
    "LinkSpeed",
    "USBClass",
    "get_class_info",
    "get_class_name",
    # Descriptors
    "DeviceDescriptor",
    "DeviceIdentity",
    "DeviceSnapshot",
    "create_test_descriptor",
    "extract_device_info",
    # Events
    "Attached",
    "DeviceEvent",
    "Detached",
    "LogLine",
    "Reconfigured",
    "SourceQueue",
    # Sources
    "DmesgReader",
    "FileTailReader",
    "parse_log_line",
    "SnapshotPoller",
    "USBEnumerator",
    "USBMonitor",
    # Tracker
    "DeviceStateTracker",
    "apply_events",
    "diff_snapshots",
]
