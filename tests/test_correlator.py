"""
Tests for the correlator: windows, confidence, close reasons and ordering.
"""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from hidtrace.analyzer.keywords import LogMatch
from hidtrace.analyzer.scoring import DescriptorScorer
from hidtrace.config import CorrelationConfig
from hidtrace.core.correlator import CloseReason, Correlator
from hidtrace.interceptor.constants import LinkSpeed
from hidtrace.interceptor.descriptors import DeviceDescriptor, DeviceIdentity, create_test_descriptor
from hidtrace.interceptor.events import Attached, Detached, Reconfigured
from hidtrace.policy.models import Severity


def at(t0: datetime, seconds: float) -> datetime:
    return t0 + timedelta(seconds=seconds)


def log_match(
    timestamp: datetime,
    severity: Severity = Severity.HIGH,
    rule_id: str = "new-high-speed",
) -> LogMatch:
    return LogMatch(
        rule_id=rule_id,
        pattern="new high-speed",
        severity=severity,
        timestamp=timestamp,
        line="usb 1-7: new high-speed USB device number 7 using xhci_hcd",
    )


class TestWindows:
    """Tests for window lifecycle."""

    def test_event_opens_window(
        self, correlator: Correlator, implant_keyboard: DeviceDescriptor, t0: datetime
    ) -> None:
        closed = correlator.on_device_event(Attached(t0, implant_keyboard))

        assert closed == []
        assert correlator.open_windows == 1
        assert correlator.clock == t0

    def test_timeout_close(
        self, correlator: Correlator, implant_keyboard: DeviceDescriptor, t0: datetime
    ) -> None:
        """A window closes once the clock passes its end, stamped at the end."""
        correlator.on_device_event(Attached(t0, implant_keyboard))

        assert correlator.advance(at(t0, 5)) == []
        incidents = correlator.advance(at(t0, 5.5))

        assert len(incidents) == 1
        incident = incidents[0]
        assert incident.close_reason is CloseReason.TIMEOUT
        assert incident.closed_at == at(t0, 5)
        assert incident.window_start == t0
        assert incident.window_end == at(t0, 5)
        assert incident.cut_short is False
        assert correlator.open_windows == 0

    def test_advance_never_moves_backwards(self, correlator: Correlator, t0: datetime) -> None:
        correlator.advance(at(t0, 10))
        correlator.advance(t0)

        assert correlator.clock == at(t0, 10)

    def test_unknown_event_type(self, correlator: Correlator) -> None:
        with pytest.raises(TypeError):
            correlator.on_device_event("attached")  # type: ignore[arg-type]


class TestConfidence:
    """Tests for the confidence model."""

    def test_anomaly_only(
        self, correlator: Correlator, implant_keyboard: DeviceDescriptor, t0: datetime
    ) -> None:
        """Without matches, confidence equals the anomaly score."""
        correlator.on_device_event(Attached(t0, implant_keyboard))
        incident = correlator.flush(CloseReason.EXHAUSTED)[0]

        assert incident.anomaly.score == 0.45
        assert incident.base_confidence == 0.45
        assert incident.confidence == 0.45
        assert incident.alert is False

    def test_match_raises_confidence(
        self, correlator: Correlator, implant_keyboard: DeviceDescriptor, t0: datetime
    ) -> None:
        """A High match 1s into a 5s window adds 0.45 * 0.8."""
        correlator.on_device_event(Attached(t0, implant_keyboard))
        correlator.on_log_match(log_match(at(t0, 1)))
        incident = correlator.advance(at(t0, 6))[0]

        assert incident.confidence == pytest.approx(0.81)
        assert incident.confidence > incident.base_confidence
        assert incident.alert is True
        assert len(incident.matches) == 1

    def test_match_at_window_end_uses_floor(
        self, correlator: Correlator, implant_keyboard: DeviceDescriptor, t0: datetime
    ) -> None:
        """A match exactly at the window end is captured with the decay floor."""
        correlator.on_device_event(Attached(t0, implant_keyboard))
        correlator.on_log_match(log_match(at(t0, 5)))
        incident = correlator.advance(at(t0, 6))[0]

        assert len(incident.matches) == 1
        assert incident.confidence == pytest.approx(0.45 + 0.45 * 0.1)

    def test_confidence_clamped(
        self, correlator: Correlator, implant_keyboard: DeviceDescriptor, t0: datetime
    ) -> None:
        correlator.on_device_event(Attached(t0, implant_keyboard))
        for i in range(4):
            correlator.on_log_match(log_match(at(t0, i * 0.1)))
        incident = correlator.flush(CloseReason.EXHAUSTED)[0]

        assert incident.confidence == 1.0

    def test_benign_device_with_matches(
        self, correlator: Correlator, normal_keyboard: DeviceDescriptor, t0: datetime
    ) -> None:
        """Ordinary enumeration chatter alone stays under the alert threshold."""
        correlator.on_device_event(Attached(t0, normal_keyboard))
        correlator.on_log_match(log_match(at(t0, 0.2), Severity.LOW, "new-low-full-speed"))
        correlator.on_log_match(log_match(at(t0, 0.4), Severity.MEDIUM, "hid-generic"))
        incident = correlator.advance(at(t0, 10))[0]

        assert incident.alert is False
        assert incident.confidence == pytest.approx(0.1 * 0.96 + 0.25 * 0.92)

    def test_end_to_end_implant_alerts(
        self, correlator: Correlator, t0: datetime
    ) -> None:
        """Anomalous descriptor plus suspicious log lines crosses the threshold."""
        implant = create_test_descriptor(address=9, max_power_ma=10, speed=LinkSpeed.HIGH)
        correlator.on_device_event(Attached(t0, implant))
        correlator.on_log_match(log_match(at(t0, 0.1)))
        incident = correlator.advance(at(t0, 6))[0]

        assert incident.confidence == 1.0
        assert incident.alert is True


class TestMatchAssignment:
    """Tests for assigning log matches to windows."""

    def test_match_without_window_dropped(self, correlator: Correlator, t0: datetime) -> None:
        assert correlator.on_log_match(log_match(t0)) == []

        stats = correlator.get_statistics()
        assert stats["matches_dropped"] == 1
        assert stats["matches_assigned"] == 0

    def test_late_match_dropped(
        self, correlator: Correlator, implant_keyboard: DeviceDescriptor, t0: datetime
    ) -> None:
        """A match after the window has closed is not attached to its incident."""
        correlator.on_device_event(Attached(t0, implant_keyboard))
        closed = correlator.on_log_match(log_match(at(t0, 6)))

        assert len(closed) == 1
        assert closed[0].matches == ()
        assert correlator.get_statistics()["matches_dropped"] == 1

    def test_fan_out(self, correlator: Correlator, t0: datetime) -> None:
        """A match inside two windows counts toward both."""
        a = create_test_descriptor(address=2, speed=LinkSpeed.HIGH)
        b = create_test_descriptor(address=3, speed=LinkSpeed.FULL)
        correlator.on_device_event(Attached(t0, a))
        correlator.on_device_event(Attached(at(t0, 0.5), b))
        correlator.on_log_match(log_match(at(t0, 1)))

        incidents = correlator.flush(CloseReason.EXHAUSTED)

        assert [len(i.matches) for i in incidents] == [1, 1]
        assert incidents[0].matches[0] is incidents[1].matches[0]
        assert correlator.get_statistics()["matches_assigned"] == 1

    def test_close_order(self, correlator: Correlator, t0: datetime) -> None:
        """Windows close in end order, sequences strictly increase."""
        correlator.on_device_event(Attached(t0, create_test_descriptor(address=2)))
        correlator.on_device_event(Attached(at(t0, 1), create_test_descriptor(address=3)))
        incidents = correlator.advance(at(t0, 10))

        assert [i.identity for i in incidents] == [DeviceIdentity(1, 2), DeviceIdentity(1, 3)]
        assert [i.sequence for i in incidents] == [1, 2]


class TestTerminalEvents:
    """Tests for Detached closing earlier windows."""

    def test_detach_closes_attach_window(
        self, correlator: Correlator, implant_keyboard: DeviceDescriptor, t0: datetime
    ) -> None:
        correlator.on_device_event(Attached(t0, implant_keyboard))
        closed = correlator.on_device_event(
            Detached(at(t0, 2), implant_keyboard.identity, implant_keyboard)
        )

        assert len(closed) == 1
        assert closed[0].close_reason is CloseReason.TERMINAL_EVENT
        assert closed[0].closed_at == at(t0, 2)
        assert correlator.open_windows == 1

        detach = correlator.flush(CloseReason.EXHAUSTED)[0]
        # anomaly * detach_factor + brief presence
        assert detach.base_confidence == pytest.approx(0.45 * 0.5 + 0.1)
        assert isinstance(detach.event, Detached)

    def test_detach_other_identity_untouched(
        self, correlator: Correlator, implant_keyboard: DeviceDescriptor, t0: datetime
    ) -> None:
        correlator.on_device_event(Attached(t0, implant_keyboard))
        closed = correlator.on_device_event(Detached(at(t0, 1), DeviceIdentity(9, 9)))

        assert closed == []
        assert correlator.open_windows == 2

    def test_detach_without_descriptor(self, correlator: Correlator, t0: datetime) -> None:
        correlator.on_device_event(Detached(t0, DeviceIdentity(1, 2)))
        incident = correlator.flush(CloseReason.EXHAUSTED)[0]

        assert incident.anomaly.score == 0.0
        assert incident.anomaly.reasons == ("no descriptor recorded for detached device",)

    def test_reenumeration_pair(
        self, correlator: Correlator, implant_keyboard: DeviceDescriptor, t0: datetime
    ) -> None:
        """Both halves of a re-enumeration carry the extra weight."""
        old = create_test_descriptor(address=implant_keyboard.address, speed=LinkSpeed.FULL)
        correlator.on_device_event(
            Detached(t0, old.identity, old, reenumeration=True)
        )
        correlator.on_device_event(
            Attached(t0, implant_keyboard, reenumeration=True)
        )
        detached, attached = correlator.flush(CloseReason.EXHAUSTED)

        assert detached.base_confidence == pytest.approx(0.0 * 0.5 + 0.15)
        assert attached.base_confidence == pytest.approx(0.45 + 0.15)

    def test_reconfigured_scores_new_descriptor(
        self, correlator: Correlator, normal_keyboard: DeviceDescriptor, t0: datetime
    ) -> None:
        new = create_test_descriptor(
            bus=normal_keyboard.bus, address=normal_keyboard.address, speed=LinkSpeed.HIGH
        )
        correlator.on_device_event(Reconfigured(t0, normal_keyboard, new))
        incident = correlator.flush(CloseReason.EXHAUSTED)[0]

        assert incident.anomaly.score == 0.45


class TestClockSkew:
    """Tests for inputs older than the correlator clock."""

    def test_old_match_clamped(
        self, correlator: Correlator, implant_keyboard: DeviceDescriptor, t0: datetime
    ) -> None:
        correlator.on_device_event(Attached(at(t0, 10), implant_keyboard))
        correlator.on_log_match(log_match(at(t0, 3)))

        assert correlator.clock == at(t0, 10)
        assert correlator.get_statistics()["clock_skew"] == {"kernel_log": 1}
        assert correlator.skews[0].lag == timedelta(seconds=7)

        incident = correlator.flush(CloseReason.EXHAUSTED)[0]
        # Captured at the clamped time, so no decay
        assert incident.confidence == pytest.approx(0.9)


class TestFlush:
    """Tests for flushing open windows."""

    def test_shutdown_cut_short(
        self, correlator: Correlator, implant_keyboard: DeviceDescriptor, t0: datetime
    ) -> None:
        correlator.on_device_event(Attached(t0, implant_keyboard))
        correlator.advance(at(t0, 2))
        incident = correlator.flush()[0]

        assert incident.close_reason is CloseReason.SHUTDOWN
        assert incident.cut_short is True
        assert incident.closed_at == at(t0, 2)

    def test_exhausted_closes_at_end(
        self, correlator: Correlator, implant_keyboard: DeviceDescriptor, t0: datetime
    ) -> None:
        correlator.on_device_event(Attached(t0, implant_keyboard))
        incident = correlator.flush(CloseReason.EXHAUSTED)[0]

        assert incident.cut_short is False
        assert incident.closed_at == at(t0, 5)

    def test_degraded_flag(
        self, correlator: Correlator, implant_keyboard: DeviceDescriptor, t0: datetime
    ) -> None:
        correlator.on_device_event(Attached(t0, implant_keyboard))

        assert correlator.mark_degraded() == 1
        assert correlator.mark_degraded() == 0
        assert correlator.flush()[0].degraded is True

    def test_flush_empty(self, correlator: Correlator) -> None:
        assert correlator.flush() == []


class TestDeterminism:
    """Same inputs, same incidents."""

    def _run(self, scorer: DescriptorScorer, t0: datetime) -> list[str]:
        correlator = Correlator(CorrelationConfig(), scorer)
        out = []
        a = create_test_descriptor(address=2, speed=LinkSpeed.HIGH)
        b = create_test_descriptor(address=3, max_power_ma=600)
        out += correlator.on_device_event(Attached(t0, a))
        out += correlator.on_log_match(log_match(at(t0, 0.5)))
        out += correlator.on_device_event(Attached(at(t0, 1), b))
        out += correlator.on_log_match(log_match(at(t0, 2), Severity.MEDIUM, "hid-generic"))
        out += correlator.on_device_event(Detached(at(t0, 3), a.identity, a))
        out += correlator.advance(at(t0, 20))
        return [i.to_json() for i in out]

    def test_identical_output(self, scorer: DescriptorScorer, t0: datetime) -> None:
        first = self._run(scorer, t0)
        second = self._run(scorer, t0)

        assert len(first) == 3
        assert first == second
