"""
Configuration management for hidtrace.

Handles loading, validation, and access to daemon and engine settings.
Scoring envelopes and keyword rules live in the separate policy file
(see hidtrace.policy.parser).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml


# Default configuration paths
DEFAULT_CONFIG_PATH = Path("/etc/hidtrace/hidtrace.yaml")
DEFAULT_POLICY_PATH = Path("/etc/hidtrace/policy.yaml")
DEFAULT_DB_PATH = Path("/var/lib/hidtrace/incidents.db")
CONFIG_ENV_VAR = "HIDTRACE_CONFIG"


class ConfigurationError(Exception):
    """Invalid or missing configuration. Fatal at startup."""

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or [message]


@dataclass
class DaemonConfig:
    """Daemon general settings."""

    log_level: str = "info"
    log_file: str | None = None


@dataclass
class PolicyConfig:
    """Policy file location."""

    rules_file: str = str(DEFAULT_POLICY_PATH)


@dataclass
class SeverityWeights:
    """Confidence contribution of one log match at zero delay."""

    low: float = 0.1
    medium: float = 0.25
    high: float = 0.45

    def to_dict(self) -> dict[str, float]:
        return {"low": self.low, "medium": self.medium, "high": self.high}


@dataclass
class CorrelationConfig:
    """Correlator settings."""

    window_seconds: float = 5.0
    decay_floor: float = 0.1
    detach_factor: float = 0.5
    reenumeration_weight: float = 0.15
    brief_presence_weight: float = 0.1
    alert_threshold: float = 0.6
    severity_weights: SeverityWeights = field(default_factory=SeverityWeights)

    def __post_init__(self) -> None:
        # Convert dict to SeverityWeights if needed
        if isinstance(self.severity_weights, dict):
            self.severity_weights = SeverityWeights(**self.severity_weights)

    @property
    def window(self) -> timedelta:
        return timedelta(seconds=self.window_seconds)


@dataclass
class IngestConfig:
    """Ingestion point settings (queues, ordering, stall detection)."""

    queue_size: int = 1000
    put_timeout: float = 2.0
    reorder_slack: float = 0.5
    stall_timeout: float = 10.0
    idle_tick: float = 0.25
    incident_queue_size: int = 256


@dataclass
class USBConfig:
    """USB snapshot source settings."""

    poll_interval: float = 1.0
    udev_wakeup: bool = True
    read_strings: bool = True
    baseline_initial_snapshot: bool = False


@dataclass
class KernelLogConfig:
    """Kernel log reader settings."""

    source: str = "dmesg"
    dmesg_command: list[str] = field(
        default_factory=lambda: ["dmesg", "--follow-new", "--time-format=iso"]
    )
    file_path: str = "/var/log/kern.log"
    start_at_end: bool = True
    heartbeat_interval: float = 1.0


@dataclass
class DatabaseConfig:
    """Incident store settings."""

    enabled: bool = True
    path: str = str(DEFAULT_DB_PATH)
    wal_mode: bool = True


@dataclass
class OutputConfig:
    """Incident output settings."""

    jsonl_file: str | None = None
    log_incidents: bool = True


@dataclass
class HidTraceConfig:
    """Main configuration container."""

    daemon: DaemonConfig = field(default_factory=DaemonConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    correlation: CorrelationConfig = field(default_factory=CorrelationConfig)
    ingest: IngestConfig = field(default_factory=IngestConfig)
    usb: USBConfig = field(default_factory=USBConfig)
    kernel_log: KernelLogConfig = field(default_factory=KernelLogConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    output: OutputConfig = field(default_factory=OutputConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HidTraceConfig:
        """
        Create configuration from dictionary.

        Raises:
            ConfigurationError: If a section is malformed or has unknown keys.
        """
        if not isinstance(data, dict):
            raise ConfigurationError("Configuration must be a mapping")

        sections = {
            "daemon": DaemonConfig,
            "policy": PolicyConfig,
            "correlation": CorrelationConfig,
            "ingest": IngestConfig,
            "usb": USBConfig,
            "kernel_log": KernelLogConfig,
            "database": DatabaseConfig,
            "output": OutputConfig,
        }
        unknown = set(data) - set(sections)
        if unknown:
            raise ConfigurationError(
                f"Unknown configuration sections: {', '.join(sorted(unknown))}"
            )

        kwargs = {}
        for name, section_cls in sections.items():
            section = data.get(name) or {}
            if not isinstance(section, dict):
                raise ConfigurationError(f"Section '{name}' must be a mapping")
            try:
                kwargs[name] = section_cls(**section)
            except TypeError as e:
                raise ConfigurationError(f"Invalid '{name}' section: {e}") from e
        return cls(**kwargs)


def load_config(path: str | Path | None = None) -> HidTraceConfig:
    """
    Load configuration from YAML file.

    Args:
        path: Path to configuration file. If None, uses $HIDTRACE_CONFIG
            or the default paths.

    Returns:
        HidTraceConfig instance with loaded settings.

    Raises:
        FileNotFoundError: If an explicit config file is not found.
        yaml.YAMLError: If config file is invalid YAML.
        ConfigurationError: If the content has the wrong shape.
    """
    if path is None:
        path = os.environ.get(CONFIG_ENV_VAR) or None

    if path is None:
        # Try default locations
        candidates = [
            DEFAULT_CONFIG_PATH,
            Path("config/hidtrace.yaml"),
            Path("hidtrace.yaml"),
        ]
        for candidate in candidates:
            if candidate.exists():
                path = candidate
                break

    if path is None:
        # Return default configuration
        return HidTraceConfig()

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    return HidTraceConfig.from_dict(data)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_range(
    errors: list[str],
    label: str,
    value: Any,
    low: float = 0,
    high: float | None = None,
    strict: bool = False,
) -> None:
    """Append an error if value is not a number within [low, high]."""
    if not _is_number(value):
        errors.append(f"Invalid {label}: {value!r} (must be a number)")
    elif (value <= low if strict else value < low) or (high is not None and value > high):
        errors.append(f"Invalid {label}: {value}")


def validate_config(config: HidTraceConfig) -> list[str]:
    """
    Validate configuration and return list of errors.

    Args:
        config: Configuration to validate.

    Returns:
        List of error messages. Empty list if valid.
    """
    errors: list[str] = []

    # Validate log level
    valid_log_levels = {"debug", "info", "warning", "error"}
    if config.daemon.log_level not in valid_log_levels:
        errors.append(f"Invalid log_level: {config.daemon.log_level}")

    corr = config.correlation
    _check_range(errors, "correlation window", corr.window_seconds, strict=True)
    for name in (
        "decay_floor",
        "detach_factor",
        "alert_threshold",
        "reenumeration_weight",
        "brief_presence_weight",
    ):
        _check_range(errors, f"{name} (must be 0-1)", getattr(corr, name), high=1)
    for name, value in corr.severity_weights.to_dict().items():
        _check_range(errors, f"severity weight for {name} (must be 0-1)", value, high=1)

    ingest = config.ingest
    for name in ("queue_size", "incident_queue_size"):
        value = getattr(ingest, name)
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"Invalid {name}: {value!r} (must be an integer)")
        elif value < 1:
            errors.append(f"Invalid {name}: {value}")
    for name in ("put_timeout", "stall_timeout", "idle_tick"):
        _check_range(errors, name, getattr(ingest, name), strict=True)
    _check_range(errors, "reorder_slack", ingest.reorder_slack)

    _check_range(errors, "USB poll_interval", config.usb.poll_interval, strict=True)
    _check_range(
        errors, "kernel_log heartbeat_interval", config.kernel_log.heartbeat_interval, strict=True
    )

    # Validate kernel log source
    valid_sources = {"dmesg", "file", "none"}
    if config.kernel_log.source not in valid_sources:
        errors.append(f"Invalid kernel_log source: {config.kernel_log.source}")
    if config.kernel_log.source == "dmesg" and not config.kernel_log.dmesg_command:
        errors.append("dmesg_command must not be empty")

    return errors


def require_valid(config: HidTraceConfig) -> HidTraceConfig:
    """
    Validate configuration, raising on any error.

    Raises:
        ConfigurationError: With every validation message attached.
    """
    errors = validate_config(config)
    if errors:
        raise ConfigurationError(
            f"Invalid configuration ({len(errors)} errors)", errors
        )
    return config
