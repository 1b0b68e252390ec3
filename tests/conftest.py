"""
Pytest configuration and shared fixtures for hidtrace tests.
"""

from __future__ import annotations

import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator

import pytest
import yaml

from hidtrace.analyzer.scoring import DescriptorScorer
from hidtrace.audit.database import IncidentStore
from hidtrace.config import CorrelationConfig, HidTraceConfig
from hidtrace.core.correlator import Correlator
from hidtrace.interceptor.constants import LinkSpeed
from hidtrace.interceptor.descriptors import DeviceDescriptor, create_test_descriptor
from hidtrace.policy.defaults import DEFAULT_POLICY, create_default_policy
from hidtrace.policy.models import Policy


T0 = datetime(2024, 1, 15, 10, 30, 0, tzinfo=timezone.utc)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def t0() -> datetime:
    """Fixed reference time for deterministic windows."""
    return T0


@pytest.fixture
def sample_config(temp_dir: Path) -> Path:
    """Create a sample configuration file."""
    config_path = temp_dir / "hidtrace.yaml"
    config_data = {
        "daemon": {
            "log_level": "debug",
        },
        "policy": {
            "rules_file": str(temp_dir / "policy.yaml"),
        },
        "correlation": {
            "window_seconds": 5.0,
            "alert_threshold": 0.6,
        },
        "kernel_log": {
            "source": "none",
        },
        "database": {
            "path": str(temp_dir / "incidents.db"),
        },
    }
    with open(config_path, "w") as f:
        yaml.dump(config_data, f)
    return config_path


@pytest.fixture
def sample_policy(temp_dir: Path) -> Path:
    """Create a sample policy file (the built-in policy written out)."""
    policy_path = temp_dir / "policy.yaml"
    with open(policy_path, "w") as f:
        yaml.safe_dump(DEFAULT_POLICY, f, sort_keys=False)
    return policy_path


@pytest.fixture
def policy() -> Policy:
    """The built-in default policy."""
    return create_default_policy()


@pytest.fixture
def scorer(policy: Policy) -> DescriptorScorer:
    return DescriptorScorer(policy)


@pytest.fixture
def correlator(scorer: DescriptorScorer) -> Correlator:
    """Correlator with a 5s window and default weights."""
    return Correlator(CorrelationConfig(), scorer)


@pytest.fixture
def config() -> HidTraceConfig:
    """Default configuration with fast ingest timings."""
    config = HidTraceConfig()
    config.ingest.idle_tick = 0.02
    config.ingest.reorder_slack = 0.02
    return config


@pytest.fixture
def normal_keyboard() -> DeviceDescriptor:
    """Full-speed keyboard inside the HID envelope."""
    return create_test_descriptor(
        bus=1,
        address=4,
        vid="046d",
        pid="c31c",
        max_power_ma=100,
        speed=LinkSpeed.LOW,
        manufacturer="Logitech",
        product="USB Keyboard",
    )


@pytest.fixture
def implant_keyboard() -> DeviceDescriptor:
    """HID device negotiated at High speed: the classic implant tell."""
    return create_test_descriptor(
        bus=1,
        address=7,
        vid="16c0",
        pid="0486",
        max_power_ma=100,
        speed=LinkSpeed.HIGH,
        product="Keyboard",
    )


@pytest.fixture
def test_store() -> Generator[IncidentStore, None, None]:
    """In-memory incident store."""
    store = IncidentStore(":memory:", run_id="test-run")
    yield store
    store.close()
