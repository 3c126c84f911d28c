"""Booking risk evaluation engine.

This module provides the ``BookingRiskEngine`` class that orchestrates the
full lifecycle of a booking's risk evaluation: signal capture, relationship
clustering, concurrent category scoring, aggregation, the disposition state
machine, the audit ledger, and notification of the booking workflow and the
admin dashboard.

Supported entry points:
    - ``submit_signals``: booking creation (booking workflow)
    - ``reevaluate``: admin "refresh"
    - ``record_human_decision``: admin approve / reject / override
    - ``cancel_booking``: booking workflow cancellation notice
    - ``get_suspicious_patterns``: admin fraud pattern report
    - ``replay_from_json`` / ``replay_from_list``: batch replay tooling
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable, Coroutine
from pathlib import Path
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import Settings, settings as default_settings
from src.errors import ConcurrentTransitionConflict, DuplicateSignals, UnknownBooking
from src.models.database import (
    BookingCancellation,
    DispositionRecord,
    FraudIndicator,
    RiskAssessmentRecord,
    RiskSignalsRecord,
    async_session,
)
from src.pipeline.aggregator import RiskAggregator, RiskAssessment, RiskLevel, RiskPolicy
from src.pipeline.clustering import HistoricalSignalsStore, RelatedBooking, RelationshipClusterer
from src.pipeline.decisions import (
    DecisionEngine,
    Disposition,
    DispositionState,
    HumanAction,
    Transition,
)
from src.pipeline.ledger import AuditLedger, LedgerRecord
from src.pipeline.patterns import SuspiciousPattern, SuspiciousPatternDetector
from src.pipeline.scorers import CategoryScore, CategoryScorers, HistoricalContext
from src.pipeline.signals import RiskSignals, SignalCollector, as_utc, utcnow
from src.schemas.schemas import ReplayRecord, SignalsSubmission

logger = logging.getLogger(__name__)

# Type alias for the optional WebSocket broadcast callback.
BroadcastCallback = Callable[[dict[str, Any]], Coroutine[Any, Any, None]]

# Decides a transition given the session and the active disposition.
_Decider = Callable[
    [AsyncSession, Disposition | None],
    Awaitable[tuple[Transition | None, int | None]],
]

_SEVERITY_BY_LEVEL: dict[RiskLevel, str] = {
    RiskLevel.LOW: "LOW",
    RiskLevel.MEDIUM: "MEDIUM",
    RiskLevel.HIGH: "HIGH",
    RiskLevel.CRITICAL: "HIGH",
}

_FLAGGED_STATES = frozenset({
    DispositionState.FLAGGED_FOR_REVIEW.value,
    DispositionState.FRAUDULENT.value,
})


class BookingWorkflowHooks:
    """Callbacks into the booking workflow collaborator.

    The default implementation only logs.  The booking service subclasses it
    to release the booking on approval, and to send the cancellation notice
    and void the held payment authorization on rejection.
    """

    async def booking_approved(self, disposition: Disposition) -> None:
        logger.info("Booking %s unblocked for confirmation", disposition.booking_id)

    async def booking_rejected(self, disposition: Disposition) -> None:
        logger.info(
            "Booking %s %s: cancellation notice queued, held authorization released",
            disposition.booking_id,
            disposition.state.value,
        )


class BookingRiskEngine:
    """End-to-end booking risk evaluation.

    Args:
        session_factory: Async session factory.  Defaults to the shared
            ``async_session`` bound to ``DATABASE_URL``.
        config: Settings to read thresholds and weights from.
        broadcast_callback: Optional async callable invoked with every
            disposition change.  Designed for WebSocket push to the admin
            dashboard.
        workflow_hooks: Booking workflow callbacks for approvals and
            rejections.

    Raises:
        InvalidConfiguration: If the configured policy is inconsistent.  No
            part of an invalid policy is ever applied.

    Attributes:
        assessed_count: Running total of assessments computed.
        flagged_count: Running total of transitions into
            ``flagged_for_review`` or ``fraudulent``.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        config: Settings | None = None,
        broadcast_callback: BroadcastCallback | None = None,
        workflow_hooks: BookingWorkflowHooks | None = None,
    ) -> None:
        self.config = config or default_settings
        self.policy = RiskPolicy.from_settings(self.config)
        self.session_factory = session_factory or async_session
        self.broadcast_callback = broadcast_callback
        self.workflow_hooks = workflow_hooks or BookingWorkflowHooks()

        self.collector = SignalCollector()
        self.scorers = CategoryScorers(self.config)
        self.clusterer = RelationshipClusterer()
        self.aggregator = RiskAggregator(self.policy)
        self.decisions = DecisionEngine(self.policy)
        self.ledger = AuditLedger()
        self.patterns = SuspiciousPatternDetector(self.policy, self.config, self.clusterer)

        self.assessed_count: int = 0
        self.flagged_count: int = 0

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def submit_signals(
        self,
        booking_id: str,
        payload: SignalsSubmission,
    ) -> RiskAssessment:
        """Capture a new booking's signals, assess it, and decide.

        Steps:
            1. Reject a second submission for the same booking.
            2. Persist the signals and the initial ``pending_review``
               disposition.
            3. Cluster, score and aggregate; persist the assessment.
            4. Apply the automatic decision rules.

        Args:
            booking_id: Booking identifier.
            payload: Telemetry captured by the booking workflow.

        Returns:
            The persisted assessment.

        Raises:
            DuplicateSignals: If signals were already captured.
        """
        signals = self.collector.collect(booking_id, payload)

        async with self.session_factory() as session:
            if await session.get(RiskSignalsRecord, booking_id) is not None:
                logger.warning("Duplicate submission for booking %s -- rejected", booking_id)
                raise DuplicateSignals(booking_id)

            submitted_at = utcnow()
            session.add(RiskSignalsRecord(**signals.to_record_kwargs()))
            session.add(
                DispositionRecord(
                    booking_id=booking_id,
                    sequence=1,
                    state=DispositionState.PENDING_REVIEW.value,
                    assessment_id=None,
                    actor=None,
                    reason="booking submitted",
                    created_at=submitted_at,
                )
            )
            await self.ledger.record_decision(
                session,
                booking_id,
                from_state=None,
                to_state=DispositionState.PENDING_REVIEW.value,
                actor=None,
                reason="booking submitted",
                assessment_ref=None,
                recorded_at=submitted_at,
            )
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise DuplicateSignals(booking_id) from exc

        assessment = await self._assess(signals)
        await self._apply_automatic(assessment)
        return assessment

    async def reevaluate(self, booking_id: str) -> RiskAssessment:
        """Recompute a booking's assessment against current history.

        The result may differ from earlier assessments when related bookings
        appeared or changed state since.  Earlier assessments are kept.

        Raises:
            UnknownBooking: If no signals exist for the booking.
        """
        async with self.session_factory() as session:
            record = await session.get(RiskSignalsRecord, booking_id)
            if record is None:
                raise UnknownBooking(booking_id)
            signals = RiskSignals.from_record(record)

        logger.info("Re-evaluating booking %s", booking_id)
        assessment = await self._assess(signals)
        await self._apply_automatic(assessment)
        return assessment

    async def record_human_decision(
        self,
        booking_id: str,
        action: HumanAction | str,
        actor: str,
        reason: str,
    ) -> Disposition:
        """Apply an admin's approve / reject / override.

        Args:
            booking_id: Booking to decide.
            action: ``approve``, ``reject`` or ``override``.
            actor: Admin identifier, recorded in the ledger.
            reason: Justification, recorded in the ledger.

        Returns:
            The new active disposition.

        Raises:
            UnknownBooking: If no signals exist for the booking.
            InvalidTransition: If the action is not allowed from the current
                state.
            ConcurrentTransitionConflict: If concurrent writers kept winning.
            ValueError: If ``actor`` or ``reason`` is blank.
        """
        action = HumanAction(action)
        if not actor or not actor.strip():
            raise ValueError("actor is required for human decisions")
        if not reason or not reason.strip():
            raise ValueError("reason is required for human decisions")

        async def decide(
            session: AsyncSession,
            current: Disposition | None,
        ) -> tuple[Transition | None, int | None]:
            if current is None:
                raise UnknownBooking(booking_id)
            transition = self.decisions.human(
                booking_id, action, current.state, actor.strip(), reason.strip(),
            )
            latest = await self._latest_assessment_row(session, booking_id)
            return transition, latest.id if latest is not None else current.assessment_id

        disposition = await self._check_and_set(booking_id, decide)
        if disposition is None:
            raise UnknownBooking(booking_id)
        return disposition

    async def cancel_booking(
        self,
        booking_id: str,
        reason: str | None = None,
    ) -> Disposition | None:
        """Record that the booking workflow cancelled a booking.

        A booking still awaiting review is rejected with reason "booking
        cancelled before review".  If scoring is still running, the decision
        step of that evaluation applies the same rule once the assessment is
        stored.

        Returns:
            The booking's active disposition after the cancellation, or
            ``None`` if no signals have been submitted yet.
        """
        async with self.session_factory() as session:
            if await session.get(BookingCancellation, booking_id) is None:
                session.add(
                    BookingCancellation(
                        booking_id=booking_id,
                        reason=reason,
                        cancelled_at=utcnow(),
                    )
                )
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
            latest = await self._latest_assessment_row(session, booking_id)
            current = await self._active_disposition(session, booking_id)

        logger.info("Booking %s cancelled by workflow (%s)", booking_id, reason or "no reason")
        if latest is None:
            return current
        changed = await self._apply_automatic(self._assessment_from_row(latest))
        return changed or current

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_assessment(self, booking_id: str) -> RiskAssessment | None:
        """Current assessment, or ``None`` for an unknown booking."""
        async with self.session_factory() as session:
            row = await self._latest_assessment_row(session, booking_id)
        return self._assessment_from_row(row) if row is not None else None

    async def get_assessment_history(self, booking_id: str) -> list[RiskAssessment]:
        """Every assessment of a booking, oldest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(RiskAssessmentRecord)
                .where(RiskAssessmentRecord.booking_id == booking_id)
                .order_by(RiskAssessmentRecord.sequence)
            )
            rows = result.scalars().all()
        return [self._assessment_from_row(row) for row in rows]

    async def get_disposition_history(self, booking_id: str) -> list[Disposition]:
        """Every disposition of a booking, oldest first.  Empty if unknown."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(DispositionRecord)
                .where(DispositionRecord.booking_id == booking_id)
                .order_by(DispositionRecord.sequence)
            )
            rows = result.scalars().all()
        return [Disposition.from_row(row) for row in rows]

    async def get_related_bookings(self, booking_id: str) -> list[RelatedBooking] | None:
        """Live relationship cluster, or ``None`` for an unknown booking."""
        async with self.session_factory() as session:
            if await session.get(RiskSignalsRecord, booking_id) is None:
                return None
            snapshot = await HistoricalSignalsStore(session, self.ledger).snapshot(
                utcnow(), self.config.LOOKBACK_WINDOW_DAYS,
            )
        return list(self.clusterer.cluster(booking_id, snapshot))

    async def get_ledger(self, booking_id: str) -> list[LedgerRecord]:
        """Audit ledger entries of a booking, oldest first."""
        async with self.session_factory() as session:
            return await self.ledger.history(session, booking_id)

    async def get_suspicious_patterns(
        self,
        hours: float = 168,
        min_severity: RiskLevel | str = RiskLevel.LOW,
    ) -> list[SuspiciousPattern]:
        """Coordinated booking patterns captured in the last ``hours``.

        Args:
            hours: Length of the window ending now.
            min_severity: Drop patterns rated below this level.
        """
        async with self.session_factory() as session:
            snapshot = await HistoricalSignalsStore(session, self.ledger).snapshot(
                utcnow(), hours / 24,
            )
        return self.patterns.detect(snapshot, RiskLevel(min_severity))

    # ------------------------------------------------------------------
    # Replay
    # ------------------------------------------------------------------

    async def replay_from_json(
        self,
        file_path: str,
        delay_seconds: float = 0.0,
    ) -> dict[str, Any]:
        """Replay booking submissions from a JSON file.

        The file must contain a JSON array of ``ReplayRecord`` objects at the
        top level.

        Args:
            file_path: Path to the JSON file.
            delay_seconds: Artificial delay between submissions to simulate
                real-time arrival.

        Returns:
            A summary dictionary with keys ``total``, ``flagged``,
            ``skipped`` and ``processing_time_seconds``.
        """
        path = Path(file_path)
        logger.info("Loading booking submissions from %s", path.resolve())

        with path.open("r", encoding="utf-8") as fh:
            raw: list[dict[str, Any]] = json.load(fh)

        return await self.replay_from_list(raw, delay_seconds)

    async def replay_from_list(
        self,
        records: list[dict[str, Any]],
        delay_seconds: float = 0.0,
    ) -> dict[str, Any]:
        """Replay booking submissions from an in-memory list.

        Each record is submitted, then its optional ``review`` is applied as
        a human decision, so historical outcomes feed later clustering.

        The summary counts this replay only: ``total`` is the number of
        bookings assessed and ``flagged`` the number of them whose active
        disposition ended in ``flagged_for_review`` or ``fraudulent``.
        """
        total = len(records)
        logger.info("Starting replay of %d booking submissions", total)
        start_time = time.perf_counter()
        skipped = 0
        assessed: list[str] = []

        for idx, raw in enumerate(records, start=1):
            record = ReplayRecord.model_validate(raw)
            try:
                assessment = await self.submit_signals(record.booking_id, record.signals)
            except DuplicateSignals:
                skipped += 1
                print(f"Processing [{idx}/{total}] {record.booking_id} | SKIPPED (duplicate)")
                continue
            assessed.append(record.booking_id)

            if record.review is not None:
                await self.record_human_decision(
                    record.booking_id,
                    record.review.action,
                    record.review.actor,
                    record.review.reason,
                )

            print(
                f"Processing [{idx}/{total}] {record.booking_id} | "
                f"Score: {assessment.overall_score:g} ({assessment.risk_level.value}) | "
                f"Related: {len(assessment.related_bookings)}"
            )

            if delay_seconds > 0:
                await asyncio.sleep(delay_seconds)

        async with self.session_factory() as session:
            final_states = await self.ledger.current_states(session, assessed)
        flagged = sum(
            1 for state in final_states.values() if state in _FLAGGED_STATES
        )

        elapsed = time.perf_counter() - start_time
        summary: dict[str, Any] = {
            "total": len(assessed),
            "flagged": flagged,
            "skipped": skipped,
            "processing_time_seconds": round(elapsed, 4),
        }
        logger.info("Replay complete: %s", summary)
        return summary

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _assess(self, signals: RiskSignals) -> RiskAssessment:
        """Cluster, score, aggregate and persist one assessment."""
        as_of = max(utcnow(), signals.captured_at)
        lookback = self.config.LOOKBACK_WINDOW_DAYS

        async with self.session_factory() as session:
            snapshot = await HistoricalSignalsStore(session, self.ledger).snapshot(as_of, lookback)
            related = self.clusterer.cluster(signals.booking_id, snapshot)
            context = HistoricalContext(
                related=related,
                device_email_count=snapshot.distinct_emails_for_device(
                    signals.device_fingerprint,
                ),
                lookback_days=lookback,
            )
            scores = await self.scorers.evaluate_all(signals, context)
            assessment = self.aggregator.aggregate(
                signals.booking_id, scores, related, computed_at=as_of,
            )
            # The read transaction ends here; the append below starts fresh.
            await session.rollback()

            for attempt in range(1, self.config.MAX_TRANSITION_RETRIES + 1):
                try:
                    stored = await self._store_assessment(session, assessment)
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    logger.warning(
                        "Assessment sequence conflict for %s (attempt %d)",
                        signals.booking_id,
                        attempt,
                    )
                    continue
                self.assessed_count += 1
                return stored

        raise ConcurrentTransitionConflict(
            signals.booking_id, self.config.MAX_TRANSITION_RETRIES,
        )

    async def _store_assessment(
        self,
        session: AsyncSession,
        assessment: RiskAssessment,
    ) -> RiskAssessment:
        sequence = (
            await session.scalar(
                select(func.max(RiskAssessmentRecord.sequence)).where(
                    RiskAssessmentRecord.booking_id == assessment.booking_id,
                )
            )
            or 0
        ) + 1
        row = RiskAssessmentRecord(
            booking_id=assessment.booking_id,
            sequence=sequence,
            overall_score=assessment.overall_score,
            risk_level=assessment.risk_level.value,
            category_scores=[s.to_dict() for s in assessment.category_scores],
            related_bookings=[
                {
                    "booking_id": r.booking_id,
                    "score": r.score,
                    "state": r.state,
                    "shared_signals": list(r.shared_signals),
                }
                for r in assessment.related_bookings
            ],
            computed_at=assessment.computed_at,
        )
        session.add(row)
        await session.flush()

        severity = _SEVERITY_BY_LEVEL[assessment.risk_level]
        for score in assessment.category_scores:
            if score.score <= 0:
                continue
            for factor in score.factors:
                session.add(
                    FraudIndicator(
                        booking_id=assessment.booking_id,
                        assessment_id=row.id,
                        category=score.category.value,
                        indicator=factor,
                        severity=severity,
                    )
                )
        return assessment.persisted(row.id, sequence)

    async def _apply_automatic(self, assessment: RiskAssessment) -> Disposition | None:
        """Run the automatic decision rules against a stored assessment.

        When the booking stays in ``pending_review``, the rule that kept it
        there is logged and broadcast as a ``review_pending`` event.
        """
        waiting: Transition | None = None

        async def decide(
            session: AsyncSession,
            current: Disposition | None,
        ) -> tuple[Transition | None, int | None]:
            nonlocal waiting
            cancelled = await session.get(BookingCancellation, assessment.booking_id) is not None
            transition = self.decisions.automatic(assessment, current, cancelled)
            waiting = None
            if (
                transition is None
                and current is not None
                and current.state == DispositionState.PENDING_REVIEW
            ):
                waiting = self.decisions.proposed(assessment)
            return transition, assessment.id

        changed = await self._check_and_set(assessment.booking_id, decide)
        if changed is None and waiting is not None:
            await self._review_pending(assessment, waiting.reason)
        return changed

    async def _review_pending(self, assessment: RiskAssessment, reason: str) -> None:
        logger.info("Booking %s awaiting review: %s", assessment.booking_id, reason)
        if self.broadcast_callback is not None:
            await self.broadcast_callback(
                {
                    "type": "review_pending",
                    "booking_id": assessment.booking_id,
                    "state": DispositionState.PENDING_REVIEW.value,
                    "reason": reason,
                    "assessment_id": assessment.id,
                    "overall_score": assessment.overall_score,
                    "risk_level": assessment.risk_level.value,
                }
            )

    async def _check_and_set(
        self,
        booking_id: str,
        decide: _Decider,
    ) -> Disposition | None:
        """Optimistic check-and-set of a booking's disposition.

        Reads the active disposition, lets ``decide`` choose a transition,
        and inserts it with the next sequence number.  A concurrent writer
        that took that sequence first makes the insert fail; the whole
        read-decide-write cycle is then retried with fresh state.

        Returns:
            The new disposition, or ``None`` when ``decide`` chose no
            transition.

        Raises:
            ConcurrentTransitionConflict: After ``MAX_TRANSITION_RETRIES``
                failed attempts.
        """
        attempts = self.config.MAX_TRANSITION_RETRIES
        for attempt in range(1, attempts + 1):
            async with self.session_factory() as session:
                current = await self._active_disposition(session, booking_id)
                transition, assessment_id = await decide(session, current)
                if transition is None:
                    return None

                from_state = current.state if current else None
                sequence = (current.sequence if current else 0) + 1
                now = utcnow()
                row = DispositionRecord(
                    booking_id=booking_id,
                    sequence=sequence,
                    state=transition.to_state.value,
                    assessment_id=assessment_id,
                    actor=transition.actor,
                    reason=transition.reason,
                    created_at=now,
                )
                session.add(row)
                await self.ledger.record_decision(
                    session,
                    booking_id,
                    from_state=from_state.value if from_state else None,
                    to_state=transition.to_state.value,
                    actor=transition.actor,
                    reason=transition.reason,
                    assessment_ref=assessment_id,
                    recorded_at=now,
                )
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    logger.warning(
                        "Disposition conflict on booking %s (attempt %d/%d); retrying",
                        booking_id,
                        attempt,
                        attempts,
                    )
                    continue

                disposition = Disposition.from_row(row)

            await self._after_transition(disposition, from_state)
            return disposition

        raise ConcurrentTransitionConflict(booking_id, attempts)

    async def _after_transition(
        self,
        disposition: Disposition,
        from_state: DispositionState | None,
    ) -> None:
        state = disposition.state
        if state in (DispositionState.FLAGGED_FOR_REVIEW, DispositionState.FRAUDULENT):
            self.flagged_count += 1

        log = logger.warning if state == DispositionState.FRAUDULENT else logger.info
        log(
            "Booking %s: %s -> %s (%s)",
            disposition.booking_id,
            from_state.value if from_state else None,
            state.value,
            disposition.reason,
        )

        try:
            if state == DispositionState.APPROVED:
                await self.workflow_hooks.booking_approved(disposition)
            elif state in (DispositionState.REJECTED, DispositionState.FRAUDULENT):
                await self.workflow_hooks.booking_rejected(disposition)
        except Exception:
            # The transition is committed; the workflow reconciles from the ledger.
            logger.exception("Workflow hook failed for booking %s", disposition.booking_id)

        if self.broadcast_callback is not None:
            await self.broadcast_callback(
                {
                    "type": "disposition",
                    "booking_id": disposition.booking_id,
                    "from_state": from_state.value if from_state else None,
                    "state": state.value,
                    "actor": disposition.actor,
                    "reason": disposition.reason,
                    "assessment_id": disposition.assessment_id,
                    "created_at": disposition.created_at.isoformat(),
                }
            )

    async def _active_disposition(
        self,
        session: AsyncSession,
        booking_id: str,
    ) -> Disposition | None:
        row = await session.scalar(
            select(DispositionRecord)
            .where(DispositionRecord.booking_id == booking_id)
            .order_by(DispositionRecord.sequence.desc())
            .limit(1)
        )
        return Disposition.from_row(row) if row is not None else None

    async def _latest_assessment_row(
        self,
        session: AsyncSession,
        booking_id: str,
    ) -> RiskAssessmentRecord | None:
        return await session.scalar(
            select(RiskAssessmentRecord)
            .where(RiskAssessmentRecord.booking_id == booking_id)
            .order_by(RiskAssessmentRecord.sequence.desc())
            .limit(1)
        )

    @staticmethod
    def _assessment_from_row(row: RiskAssessmentRecord) -> RiskAssessment:
        return RiskAssessment(
            booking_id=row.booking_id,
            overall_score=row.overall_score,
            risk_level=RiskLevel(row.risk_level),
            category_scores=tuple(CategoryScore.from_dict(d) for d in row.category_scores),
            related_bookings=tuple(
                RelatedBooking(
                    booking_id=d["booking_id"],
                    score=d.get("score"),
                    state=d.get("state"),
                    shared_signals=tuple(d.get("shared_signals") or ()),
                )
                for d in row.related_bookings
            ),
            computed_at=as_utc(row.computed_at),
            id=row.id,
            sequence=row.sequence,
        )
