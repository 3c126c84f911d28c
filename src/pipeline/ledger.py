"""Override/audit ledger.

Insert-only record of every disposition transition, automatic or human.
There is deliberately no update or delete path in this module.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.database import LedgerEntry
from src.pipeline.signals import as_utc, utcnow

logger = logging.getLogger(__name__)

# Keeps IN (...) lists under SQLite's bound-parameter limit.
_STATE_QUERY_CHUNK = 500


@dataclass(frozen=True, slots=True)
class LedgerRecord:
    """One transition as read back from the ledger."""

    id: int
    booking_id: str
    from_state: str | None
    to_state: str
    actor: str | None
    reason: str | None
    assessment_id: int | None
    recorded_at: datetime

    @classmethod
    def from_row(cls, row: LedgerEntry) -> LedgerRecord:
        return cls(
            id=row.id,
            booking_id=row.booking_id,
            from_state=row.from_state,
            to_state=row.to_state,
            actor=row.actor,
            reason=row.reason,
            assessment_id=row.assessment_id,
            recorded_at=as_utc(row.recorded_at),
        )


class AuditLedger:
    """Append-only audit trail keyed by booking id.

    The ledger writes into the caller's session so that a transition and its
    audit entry commit (or roll back) together.
    """

    async def record_decision(
        self,
        session: AsyncSession,
        booking_id: str,
        from_state: str | None,
        to_state: str,
        actor: str | None,
        reason: str | None,
        assessment_ref: int | None,
        recorded_at: datetime | None = None,
    ) -> LedgerEntry:
        """Append one transition.

        Args:
            session: Session of the enclosing transition.
            booking_id: Booking whose state changed.
            from_state: Previous state, ``None`` when the booking is created.
            to_state: New state.
            actor: Admin identifier, ``None`` for automatic decisions.
            reason: Free-text justification.
            assessment_ref: Id of the assessment the decision was based on.
            recorded_at: Timestamp override, defaults to now.

        Returns:
            The pending ``LedgerEntry`` row.
        """
        entry = LedgerEntry(
            booking_id=booking_id,
            from_state=from_state,
            to_state=to_state,
            actor=actor,
            reason=reason,
            assessment_id=assessment_ref,
            recorded_at=recorded_at or utcnow(),
        )
        session.add(entry)
        logger.info(
            "Ledger: booking %s %s -> %s (actor=%s)",
            booking_id,
            from_state,
            to_state,
            actor or "system",
        )
        return entry

    async def history(self, session: AsyncSession, booking_id: str) -> list[LedgerRecord]:
        """All entries for a booking, oldest first."""
        result = await session.execute(
            select(LedgerEntry)
            .where(LedgerEntry.booking_id == booking_id)
            .order_by(LedgerEntry.recorded_at, LedgerEntry.id)
        )
        return [LedgerRecord.from_row(row) for row in result.scalars().all()]

    async def current_states(
        self,
        session: AsyncSession,
        booking_ids: Sequence[str],
        as_of: datetime | None = None,
    ) -> dict[str, str]:
        """Latest recorded state per booking, optionally as of an instant.

        Used by the relationship clusterer to find related bookings that were
        already rejected or found fraudulent.

        Args:
            session: Active async database session.
            booking_ids: Bookings to look up.
            as_of: Ignore entries recorded after this instant.

        Returns:
            Mapping of booking id to state.  Bookings without entries are
            absent from the mapping.
        """
        states: dict[str, str] = {}
        ids = list(dict.fromkeys(booking_ids))
        for start in range(0, len(ids), _STATE_QUERY_CHUNK):
            chunk = ids[start:start + _STATE_QUERY_CHUNK]
            conditions = [LedgerEntry.booking_id.in_(chunk)]
            if as_of is not None:
                conditions.append(LedgerEntry.recorded_at <= as_of)

            latest = (
                select(
                    LedgerEntry.booking_id.label("booking_id"),
                    func.max(LedgerEntry.id).label("id"),
                )
                .where(*conditions)
                .group_by(LedgerEntry.booking_id)
                .subquery()
            )
            rows = await session.execute(
                select(LedgerEntry.booking_id, LedgerEntry.to_state).join(
                    latest,
                    and_(
                        LedgerEntry.booking_id == latest.c.booking_id,
                        LedgerEntry.id == latest.c.id,
                    ),
                )
            )
            states.update({booking_id: state for booking_id, state in rows.all()})
        return states
