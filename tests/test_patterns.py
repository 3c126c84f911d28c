"""Tests for suspicious pattern detection over signal snapshots."""

from datetime import timedelta

import pytest

from src.config import Settings
from src.pipeline.aggregator import RiskLevel, RiskPolicy
from src.pipeline.clustering import SignalsSnapshot
from src.pipeline.patterns import PatternType, SuspiciousPatternDetector
from src.pipeline.signals import utcnow


def _snapshot(*signals, scores=None) -> SignalsSnapshot:
    now = utcnow()
    return SignalsSnapshot(
        as_of=now,
        window_start=now - timedelta(days=7),
        signals=tuple(signals),
        scores=scores or {},
    )


@pytest.fixture
def detector() -> SuspiciousPatternDetector:
    config = Settings()
    return SuspiciousPatternDetector(RiskPolicy.from_settings(config), config)


class TestRelationshipClusters:

    def test_cluster_severity_follows_highest_member_score(self, detector, make_signals):
        ring = [
            make_signals(f"bk_{suffix}", device_fingerprint="ring")
            for suffix in ("a", "b", "c", "d")
        ]
        patterns = detector.detect(_snapshot(*ring, scores={"bk_a": 12.0, "bk_c": 90.0}))

        cluster = next(p for p in patterns if p.type == PatternType.RELATIONSHIP_CLUSTER)
        assert cluster.severity == RiskLevel.CRITICAL
        assert cluster.max_score == 90.0
        assert cluster.booking_ids == ("bk_a", "bk_b", "bk_c", "bk_d")
        assert cluster.shared_signals == ("device",)
        assert patterns[0] is cluster

    def test_unscored_cluster_is_low(self, detector, make_signals):
        pair = [make_signals("bk_a", ip_address="5.5.5.5"), make_signals("bk_b", ip_address="5.5.5.5")]
        (cluster,) = detector.detect(_snapshot(*pair))

        assert cluster.type == PatternType.RELATIONSHIP_CLUSTER
        assert cluster.severity == RiskLevel.LOW
        assert cluster.max_score is None


class TestDeviceClusters:

    def test_many_identities_on_one_device_is_high(self, detector, make_signals):
        ring = [
            make_signals(f"bk_{suffix}", device_fingerprint="ring")
            for suffix in ("a", "b", "c", "d")
        ]
        patterns = detector.detect(_snapshot(*ring))

        device = next(p for p in patterns if p.type == PatternType.DEVICE_CLUSTER)
        assert device.severity == RiskLevel.HIGH
        assert len(device.emails) == 4

    def test_same_identity_on_one_device_is_not_reported(self, detector, make_signals):
        repeat = [
            make_signals("bk_a", device_fingerprint="home", email="pat@example.com"),
            make_signals("bk_b", device_fingerprint="home", email="pat@example.com"),
        ]
        patterns = detector.detect(_snapshot(*repeat))
        assert PatternType.DEVICE_CLUSTER not in {p.type for p in patterns}


class TestIpVelocity:

    def test_busy_ip_across_devices_is_reported(self, detector, make_signals):
        bookings = [
            make_signals(f"bk_{suffix}", ip_address="9.9.9.9")
            for suffix in ("a", "b", "c", "d", "e")
        ]
        patterns = detector.detect(_snapshot(*bookings), min_severity=RiskLevel.MEDIUM)

        (velocity,) = patterns
        assert velocity.type == PatternType.IP_VELOCITY
        assert velocity.severity == RiskLevel.HIGH
        assert velocity.shared_signals == ("ip",)

    def test_below_booking_threshold_is_ignored(self, detector, make_signals):
        bookings = [
            make_signals(f"bk_{suffix}", ip_address="9.9.9.9") for suffix in ("a", "b", "c", "d")
        ]
        patterns = detector.detect(_snapshot(*bookings))
        assert PatternType.IP_VELOCITY not in {p.type for p in patterns}


class TestEmailPatterns:

    def test_sequential_mailboxes_are_high(self, detector, make_signals):
        bookings = [
            make_signals(f"bk_{suffix}", email=f"user{n}@mailbox.io", email_domain="mailbox.io")
            for suffix, n in (("a", 1), ("b", 2), ("c", 3))
        ]
        (pattern,) = detector.detect(_snapshot(*bookings))

        assert pattern.type == PatternType.EMAIL_PATTERN
        assert pattern.severity == RiskLevel.HIGH
        assert pattern.emails == ("user1@mailbox.io", "user2@mailbox.io", "user3@mailbox.io")

    def test_numbered_mailboxes_without_sequence_are_medium(self, detector, make_signals):
        bookings = [
            make_signals(f"bk_{suffix}", email=f"user{n}@mailbox.io", email_domain="mailbox.io")
            for suffix, n in (("a", 7), ("b", 19), ("c", 42))
        ]
        (pattern,) = detector.detect(_snapshot(*bookings))
        assert pattern.severity == RiskLevel.MEDIUM


class TestGeographicAnomalies:

    def test_distant_pickups_close_together(self, detector, make_signals):
        now = utcnow()
        bookings = [
            make_signals("bk_a", email="g@example.com", pickup_city="San Francisco",
                         captured_at=now - timedelta(hours=5)),
            make_signals("bk_b", email="g@example.com", pickup_city="Los Angeles",
                         captured_at=now - timedelta(hours=2)),
        ]
        patterns = detector.detect(_snapshot(*bookings), min_severity=RiskLevel.HIGH)

        (anomaly,) = patterns
        assert anomaly.type == PatternType.GEOGRAPHIC_ANOMALY
        assert anomaly.booking_ids == ("bk_a", "bk_b")
        assert "3.0 hours apart" in anomaly.description

    def test_pickups_days_apart_are_ignored(self, detector, make_signals):
        now = utcnow()
        bookings = [
            make_signals("bk_a", email="g@example.com", pickup_city="San Francisco",
                         captured_at=now - timedelta(hours=50)),
            make_signals("bk_b", email="g@example.com", pickup_city="Los Angeles",
                         captured_at=now - timedelta(hours=2)),
        ]
        patterns = detector.detect(_snapshot(*bookings))
        assert PatternType.GEOGRAPHIC_ANOMALY not in {p.type for p in patterns}
