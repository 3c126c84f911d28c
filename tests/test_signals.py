"""Tests for telemetry normalisation and signal collection."""

from datetime import datetime, timedelta, timezone

import pytest

from src.pipeline.signals import (
    SignalCollector,
    normalize_email,
    normalize_fingerprint,
    normalize_ip,
)
from src.schemas.schemas import SignalsSubmission


class TestNormalizers:
    """Tests for the field-level normalisation helpers."""

    def test_email_is_lowercased_and_split(self):
        assert normalize_email("  Jane.Doe@Gmail.COM ") == ("jane.doe@gmail.com", "gmail.com")

    @pytest.mark.parametrize("raw", [None, "", "   ", "no-at-sign", "@domain.com", "local@"])
    def test_unusable_email_is_dropped(self, raw):
        assert normalize_email(raw) == (None, None)

    @pytest.mark.parametrize("raw", [None, "", "unknown", "UNKNOWN", " null ", "undefined"])
    def test_placeholder_fingerprint_means_missing(self, raw):
        assert normalize_fingerprint(raw) is None

    def test_real_fingerprint_is_kept(self):
        assert normalize_fingerprint(" a1b2c3 ") == "a1b2c3"

    def test_forwarded_for_list_keeps_client_hop(self):
        assert normalize_ip("203.0.113.7, 10.0.0.1") == "203.0.113.7"

    def test_ipv6_is_canonicalised(self):
        assert normalize_ip("2001:DB8:0:0:0:0:0:1") == "2001:db8::1"

    @pytest.mark.parametrize("raw", [None, "", "not-an-ip", "999.1.1.1"])
    def test_invalid_ip_becomes_none(self, raw):
        assert normalize_ip(raw) is None


class TestSignalCollector:
    """Tests for ``SignalCollector.collect``."""

    def test_session_timings_are_converted_to_seconds(self):
        payload = SignalsSubmission(
            email="a@b.com",
            device_fingerprint="fp",
            ip_address="8.8.8.8",
            session={"duration_ms": 12_500, "max_idle_ms": 1_900_000, "total_interactions": 3},
        )
        signals = SignalCollector().collect("bk_1", payload)

        assert signals.session_duration_seconds == 12.5
        assert signals.max_idle_seconds == 1900.0
        assert signals.interaction_count == 3
        assert signals.missing_signals == ()

    def test_missing_signals_are_recorded_not_fatal(self):
        payload = SignalsSubmission(device_fingerprint="unknown")
        signals = SignalCollector().collect("bk_2", payload)

        assert signals.device_fingerprint is None
        assert signals.missing_signals == (
            "email",
            "device_fingerprint",
            "ip_address",
            "session_duration_seconds",
        )

    def test_bot_signals_become_automation_signals(self):
        payload = SignalsSubmission(bot_signals=["webdriver", " ", "headless"])
        signals = SignalCollector().collect("bk_3", payload)

        assert signals.automation_signals == ("webdriver", "headless")

    def test_naive_capture_time_is_treated_as_utc(self):
        naive = datetime(2026, 3, 1, 12, 0, 0)
        signals = SignalCollector().collect("bk_4", SignalsSubmission(captured_at=naive))

        assert signals.captured_at == datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def test_offset_capture_time_is_converted_to_utc(self):
        local = datetime(2026, 3, 1, 14, 0, 0, tzinfo=timezone(timedelta(hours=2)))
        signals = SignalCollector().collect("bk_5", SignalsSubmission(captured_at=local))

        assert signals.captured_at == datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def test_record_round_trip_preserves_signals(self, make_submission):
        from src.models.database import RiskSignalsRecord
        from src.pipeline.signals import RiskSignals

        signals = SignalCollector().collect("bk_6", make_submission(bot_signals=["webdriver"]))
        record = RiskSignalsRecord(**signals.to_record_kwargs())

        assert RiskSignals.from_record(record) == signals
