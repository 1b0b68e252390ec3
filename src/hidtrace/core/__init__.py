"""
Correlation core.

The correlator fuses device events and log matches into time-windowed
incidents; the engine feeds it from both evidence streams.
"""

from hidtrace.core.correlator import (
    ClockSkew,
    CloseReason,
    Correlator,
    Incident,
)
from hidtrace.core.engine import (
    KERNEL_LOG_SOURCE,
    USB_SOURCE,
    CorrelationEngine,
    StreamStall,
)
from hidtrace.core.sinks import (
    CollectingSink,
    IncidentDispatcher,
    JsonLinesSink,
    LoggingSink,
    StoreSink,
)

__all__ = [
    # Correlator
    "ClockSkew",
    "CloseReason",
    "Correlator",
    "Incident",
    # Engine
    "KERNEL_LOG_SOURCE",
    "USB_SOURCE",
    "CorrelationEngine",
    "StreamStall",
    # Sinks
    "CollectingSink",
    "IncidentDispatcher",
    "JsonLinesSink",
    "LoggingSink",
    "StoreSink",
]
