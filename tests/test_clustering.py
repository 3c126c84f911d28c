"""Tests for relationship clustering over signal snapshots."""

from datetime import timedelta

import pytest

from src.models.database import RiskSignalsRecord
from src.pipeline.clustering import (
    HistoricalSignalsStore,
    RelationshipClusterer,
    SignalsSnapshot,
    join_keys,
)
from src.pipeline.signals import utcnow


def _snapshot(*signals, scores=None, states=None) -> SignalsSnapshot:
    now = utcnow()
    return SignalsSnapshot(
        as_of=now,
        window_start=now - timedelta(days=90),
        signals=tuple(signals),
        scores=scores or {},
        states=states or {},
    )


@pytest.fixture
def clusterer() -> RelationshipClusterer:
    return RelationshipClusterer()


class TestJoinKeys:

    def test_null_values_are_never_keys(self, make_signals):
        signals = make_signals("bk_1", email=None, device_fingerprint=None, ip_address=None)
        assert join_keys(signals) == []

    def test_all_present_keys(self, make_signals):
        signals = make_signals("bk_1", ip_address="1.2.3.4")
        assert join_keys(signals) == [
            ("device", "fp-bk_1"),
            ("ip", "1.2.3.4"),
            ("email", "bk_1@example.com"),
        ]


class TestRelationshipClusterer:

    def test_direct_link_on_any_single_signal(self, clusterer, make_signals):
        a = make_signals("bk_a", device_fingerprint="shared")
        b = make_signals("bk_b", device_fingerprint="shared")
        related = clusterer.cluster("bk_a", _snapshot(a, b))

        assert [r.booking_id for r in related] == ["bk_b"]
        assert related[0].shared_signals == ("device",)

    def test_relation_is_transitive(self, clusterer, make_signals):
        a = make_signals("bk_a", device_fingerprint="fp-x")
        b = make_signals("bk_b", device_fingerprint="fp-x", ip_address="9.9.9.9")
        c = make_signals("bk_c", ip_address="9.9.9.9")
        snapshot = _snapshot(a, b, c)

        related = {r.booking_id: r for r in clusterer.cluster("bk_a", snapshot)}
        assert set(related) == {"bk_b", "bk_c"}
        # bk_c shares nothing with bk_a directly.
        assert related["bk_c"].shared_signals == ()

    def test_relation_is_symmetric(self, clusterer, make_signals):
        signals = [
            make_signals("bk_a", device_fingerprint="fp-x"),
            make_signals("bk_b", device_fingerprint="fp-x", ip_address="9.9.9.9"),
            make_signals("bk_c", ip_address="9.9.9.9", email="c@example.com"),
            make_signals("bk_d", email="c@example.com"),
            make_signals("bk_e"),
        ]
        snapshot = _snapshot(*signals)
        clusters = {
            s.booking_id: {r.booking_id for r in clusterer.cluster(s.booking_id, snapshot)}
            for s in signals
        }

        for anchor, members in clusters.items():
            for member in members:
                assert anchor in clusters[member]
        assert clusters["bk_e"] == set()
        assert clusters["bk_a"] == {"bk_b", "bk_c", "bk_d"}

    def test_missing_fingerprints_do_not_collapse_cluster(self, clusterer, make_signals):
        a = make_signals("bk_a", device_fingerprint=None)
        b = make_signals("bk_b", device_fingerprint=None)
        assert clusterer.cluster("bk_a", _snapshot(a, b)) == ()

    def test_anchor_outside_window_has_no_cluster(self, clusterer, make_signals):
        b = make_signals("bk_b", device_fingerprint="fp-x")
        assert clusterer.cluster("bk_a", _snapshot(b)) == ()

    def test_members_carry_score_and_state(self, clusterer, make_signals):
        a = make_signals("bk_a", ip_address="5.5.5.5")
        b = make_signals("bk_b", ip_address="5.5.5.5")
        snapshot = _snapshot(a, b, scores={"bk_b": 72.5}, states={"bk_b": "rejected"})

        (related,) = clusterer.cluster("bk_a", snapshot)
        assert related.score == 72.5
        assert related.state == "rejected"


class TestHistoricalSignalsStore:

    @pytest.mark.asyncio
    async def test_snapshot_respects_lookback_window(self, session_factory, make_signals):
        now = utcnow()
        recent = make_signals("bk_recent", captured_at=now - timedelta(days=10))
        stale = make_signals("bk_stale", captured_at=now - timedelta(days=120))
        future = make_signals("bk_future", captured_at=now + timedelta(hours=1))

        async with session_factory() as session:
            for signals in (recent, stale, future):
                session.add(RiskSignalsRecord(**signals.to_record_kwargs()))
            await session.commit()

            snapshot = await HistoricalSignalsStore(session).snapshot(now, 90)

        assert [s.booking_id for s in snapshot.signals] == ["bk_recent"]
        assert snapshot.window_start == now - timedelta(days=90)

    @pytest.mark.asyncio
    async def test_distinct_emails_for_device(self, make_signals):
        snapshot = _snapshot(
            make_signals("bk_1", device_fingerprint="ring", email="a@x.com"),
            make_signals("bk_2", device_fingerprint="ring", email="b@x.com"),
            make_signals("bk_3", device_fingerprint="ring", email="b@x.com"),
            make_signals("bk_4", device_fingerprint="other", email="c@x.com"),
        )
        assert snapshot.distinct_emails_for_device("ring") == 2
        assert snapshot.distinct_emails_for_device(None) == 0
