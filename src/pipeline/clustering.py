"""Relationship clustering across bookings.

Two bookings are directly related when they share an exact device
fingerprint, source IP, or email address.  Relationships are transitive, so
the cluster of a booking is its connected component under those links.  Any
single shared signal is enough (OR, not AND, across signal types).

Clustering always runs against an immutable ``SignalsSnapshot`` taken at
evaluation time, never a cached result, because new related bookings keep
arriving after a booking's first assessment.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.database import RiskAssessmentRecord, RiskSignalsRecord
from src.pipeline.ledger import AuditLedger
from src.pipeline.signals import RiskSignals

logger = logging.getLogger(__name__)

# Display labels for the join keys, in the order they are reported.
JOIN_SIGNALS: tuple[str, ...] = ("device", "ip", "email")


@dataclass(frozen=True, slots=True)
class RelatedBooking:
    """A member of a booking's relationship cluster.

    Attributes:
        booking_id: The related booking.
        score: Its most recent overall risk score, ``None`` if never assessed.
        state: Its active disposition state, ``None`` if it has none.
        shared_signals: Signal types it shares directly with the anchor
            booking.  Empty when it is related only transitively.
    """

    booking_id: str
    score: float | None = None
    state: str | None = None
    shared_signals: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class SignalsSnapshot:
    """Read-only view of historical signals at one instant.

    Attributes:
        as_of: Evaluation instant.  Nothing captured after it is included.
        window_start: Start of the lookback window.
        signals: Every booking captured inside the window.
        scores: Latest overall score per booking, as of ``as_of``.
        states: Latest disposition state per booking, as of ``as_of``.
    """

    as_of: datetime
    window_start: datetime
    signals: tuple[RiskSignals, ...] = ()
    scores: dict[str, float] = field(default_factory=dict)
    states: dict[str, str] = field(default_factory=dict)

    def distinct_emails_for_device(self, fingerprint: str | None) -> int:
        """Number of distinct emails seen with ``fingerprint`` in the window."""
        if not fingerprint:
            return 0
        return len(
            {
                s.email
                for s in self.signals
                if s.device_fingerprint == fingerprint and s.email
            }
        )


def join_keys(signals: RiskSignals) -> list[tuple[str, str]]:
    """Identity keys a booking can be joined on.

    Null and empty values are never keys; otherwise every unfingerprinted
    booking would collapse into one giant cluster.
    """
    keys: list[tuple[str, str]] = []
    if signals.device_fingerprint:
        keys.append(("device", signals.device_fingerprint))
    if signals.ip_address:
        keys.append(("ip", signals.ip_address))
    if signals.email:
        keys.append(("email", signals.email))
    return keys


class _DisjointSet:
    """Union-find with path compression and union by size."""

    def __init__(self, items: Iterable[str]) -> None:
        self._parent: dict[str, str] = {item: item for item in items}
        self._size: dict[str, int] = {item: 1 for item in self._parent}

    def find(self, item: str) -> str:
        root = item
        while self._parent[root] != root:
            root = self._parent[root]
        while self._parent[item] != root:
            self._parent[item], item = root, self._parent[item]
        return root

    def union(self, a: str, b: str) -> None:
        root_a, root_b = self.find(a), self.find(b)
        if root_a == root_b:
            return
        if self._size[root_a] < self._size[root_b]:
            root_a, root_b = root_b, root_a
        self._parent[root_b] = root_a
        self._size[root_a] += self._size[root_b]


class RelationshipClusterer:
    """Finds the relationship cluster of a booking inside a snapshot.

    Usage::

        snapshot = await HistoricalSignalsStore(session).snapshot(now, 90)
        related = RelationshipClusterer().cluster("bk_1", snapshot)
    """

    def cluster(self, booking_id: str, snapshot: SignalsSnapshot) -> tuple[RelatedBooking, ...]:
        """Return every other member of ``booking_id``'s cluster.

        A booking that is not itself inside the snapshot window has no
        cluster.  This keeps the relation symmetric: if A lists B, B lists A
        for the same snapshot.

        Args:
            booking_id: Anchor booking.
            snapshot: Historical view to cluster over.

        Returns:
            Related bookings sorted by booking id, each annotated with its
            last-known score and state.
        """
        by_id = {s.booking_id: s for s in snapshot.signals}
        anchor = by_id.get(booking_id)
        if anchor is None:
            logger.debug("Booking %s is outside the snapshot window", booking_id)
            return ()

        groups = _link(by_id)
        root = groups.find(booking_id)
        anchor_keys = dict(join_keys(anchor))

        related: list[RelatedBooking] = []
        for member_id in sorted(by_id):
            if member_id == booking_id or groups.find(member_id) != root:
                continue
            member_keys = dict(join_keys(by_id[member_id]))
            shared = tuple(
                name
                for name in JOIN_SIGNALS
                if name in anchor_keys and anchor_keys[name] == member_keys.get(name)
            )
            related.append(
                RelatedBooking(
                    booking_id=member_id,
                    score=snapshot.scores.get(member_id),
                    state=snapshot.states.get(member_id),
                    shared_signals=shared,
                )
            )

        logger.debug(
            "Booking %s cluster: %d related booking(s)", booking_id, len(related),
        )
        return tuple(related)

    def components(self, snapshot: SignalsSnapshot) -> list[tuple[str, ...]]:
        """Every cluster of two or more bookings in the snapshot.

        Returns:
            Sorted booking ids per cluster, largest clusters first.
        """
        by_id = {s.booking_id: s for s in snapshot.signals}
        groups = _link(by_id)
        members: dict[str, list[str]] = {}
        for booking_id in sorted(by_id):
            members.setdefault(groups.find(booking_id), []).append(booking_id)
        clusters = [tuple(ids) for ids in members.values() if len(ids) > 1]
        clusters.sort(key=lambda ids: (-len(ids), ids[0]))
        return clusters


def _link(by_id: dict[str, RiskSignals]) -> _DisjointSet:
    """Union every pair of bookings that share a join key."""
    groups = _DisjointSet(sorted(by_id))
    first_seen: dict[tuple[str, str], str] = {}
    for current_id in sorted(by_id):
        for key in join_keys(by_id[current_id]):
            owner = first_seen.setdefault(key, current_id)
            if owner != current_id:
                groups.union(owner, current_id)
    return groups


class HistoricalSignalsStore:
    """Query interface over persisted signals for the clusterer.

    Signals are append-only, so readers never need a lock; bounding every
    query by ``as_of`` keeps a concurrently submitted sibling from appearing
    halfway through one assessment.
    """

    def __init__(self, session: AsyncSession, ledger: AuditLedger | None = None) -> None:
        self.session = session
        self.ledger = ledger or AuditLedger()

    async def snapshot(self, as_of: datetime, lookback_days: float) -> SignalsSnapshot:
        """Read every booking captured in ``[as_of - lookback, as_of]``.

        Args:
            as_of: Evaluation instant.
            lookback_days: Window length in days.

        Returns:
            Immutable snapshot with scores and states as of ``as_of``.
        """
        window_start = as_of - timedelta(days=lookback_days)
        in_window = and_(
            RiskSignalsRecord.captured_at >= window_start,
            RiskSignalsRecord.captured_at <= as_of,
        )

        result = await self.session.execute(
            select(RiskSignalsRecord).where(in_window).order_by(RiskSignalsRecord.booking_id)
        )
        signals = tuple(RiskSignals.from_record(r) for r in result.scalars().all())

        latest = (
            select(
                RiskAssessmentRecord.booking_id.label("booking_id"),
                func.max(RiskAssessmentRecord.sequence).label("sequence"),
            )
            .join(RiskSignalsRecord, RiskSignalsRecord.booking_id == RiskAssessmentRecord.booking_id)
            .where(in_window, RiskAssessmentRecord.computed_at <= as_of)
            .group_by(RiskAssessmentRecord.booking_id)
            .subquery()
        )
        score_rows = await self.session.execute(
            select(RiskAssessmentRecord.booking_id, RiskAssessmentRecord.overall_score).join(
                latest,
                and_(
                    RiskAssessmentRecord.booking_id == latest.c.booking_id,
                    RiskAssessmentRecord.sequence == latest.c.sequence,
                ),
            )
        )
        scores = {booking_id: score for booking_id, score in score_rows.all()}

        states = await self.ledger.current_states(
            self.session, [s.booking_id for s in signals], as_of=as_of,
        )

        logger.debug(
            "Snapshot as of %s: %d booking(s) in %g-day window",
            as_of.isoformat(),
            len(signals),
            lookback_days,
        )
        return SignalsSnapshot(
            as_of=as_of,
            window_start=window_start,
            signals=signals,
            scores=scores,
            states=states,
        )
