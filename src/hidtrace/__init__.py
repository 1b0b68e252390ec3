"""
hidtrace - USB implant detection by evidence correlation.

Correlates USB device telemetry (advertised power draw, negotiated link
speed, descriptor fields) with kernel log evidence to flag hardware that
behaves like a covert keystroke-injection implant.
"""

__version__ = "0.1.0"
__author__ = "hidtrace Contributors"

from hidtrace.config import HidTraceConfig, load_config

__all__ = ["HidTraceConfig", "load_config", "__version__"]
