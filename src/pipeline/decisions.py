"""Disposition state machine.

Every booking starts in ``pending_review``.  The automatic rules move it
only toward stricter states; humans can approve, reject, or clear a
rejection/fraud flag, always with an actor and a reason.  This module is
pure: it decides *what* the next state is.  Persisting it (with the
optimistic check-and-set) is ``BookingRiskEngine``'s job.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from src.errors import InvalidTransition
from src.pipeline.aggregator import RiskAssessment, RiskLevel, RiskPolicy
from src.pipeline.signals import as_utc

logger = logging.getLogger(__name__)

CANCELLED_REASON = "booking cancelled before review"


class DispositionState(str, Enum):
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    FLAGGED_FOR_REVIEW = "flagged_for_review"
    FRAUDULENT = "fraudulent"
    OVERRIDE_CLEARED = "override_cleared"


class HumanAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    OVERRIDE = "override"


TERMINAL_STATES = frozenset({DispositionState.REJECTED, DispositionState.FRAUDULENT})

# Strictness order used by automatic transitions.
_STRICTNESS: dict[DispositionState, int] = {
    DispositionState.APPROVED: 0,
    DispositionState.OVERRIDE_CLEARED: 0,
    DispositionState.PENDING_REVIEW: 1,
    DispositionState.FLAGGED_FOR_REVIEW: 2,
    DispositionState.FRAUDULENT: 3,
    DispositionState.REJECTED: 3,
}

HUMAN_TRANSITIONS: dict[HumanAction, tuple[frozenset[DispositionState], DispositionState]] = {
    HumanAction.APPROVE: (
        frozenset({
            DispositionState.PENDING_REVIEW,
            DispositionState.FLAGGED_FOR_REVIEW,
            DispositionState.FRAUDULENT,
            DispositionState.OVERRIDE_CLEARED,
        }),
        DispositionState.APPROVED,
    ),
    HumanAction.REJECT: (
        frozenset({
            DispositionState.PENDING_REVIEW,
            DispositionState.FLAGGED_FOR_REVIEW,
            DispositionState.FRAUDULENT,
            DispositionState.APPROVED,
            DispositionState.OVERRIDE_CLEARED,
        }),
        DispositionState.REJECTED,
    ),
    HumanAction.OVERRIDE: (
        frozenset({DispositionState.FRAUDULENT, DispositionState.REJECTED}),
        DispositionState.OVERRIDE_CLEARED,
    ),
}


@dataclass(frozen=True, slots=True)
class Disposition:
    """One moderation decision.  The highest ``sequence`` is active."""

    booking_id: str
    sequence: int
    state: DispositionState
    assessment_id: int | None
    actor: str | None
    reason: str | None
    created_at: datetime
    id: int | None = None

    @classmethod
    def from_row(cls, row) -> Disposition:  # type: ignore[no-untyped-def]
        return cls(
            booking_id=row.booking_id,
            sequence=row.sequence,
            state=DispositionState(row.state),
            assessment_id=row.assessment_id,
            actor=row.actor,
            reason=row.reason,
            created_at=as_utc(row.created_at),
            id=row.id,
        )


@dataclass(frozen=True, slots=True)
class Transition:
    """A decided but not yet persisted state change."""

    to_state: DispositionState
    reason: str
    actor: str | None = None


class DecisionEngine:
    """Decides disposition transitions.

    Usage::

        decisions = DecisionEngine(policy)
        transition = decisions.automatic(assessment, current, cancelled=False)
        if transition is not None:
            ...persist it...
    """

    def __init__(self, policy: RiskPolicy) -> None:
        self.policy = policy

    def proposed(self, assessment: RiskAssessment) -> Transition:
        """State the automatic rules would choose, ignoring the current state."""
        score = assessment.overall_score
        level = assessment.risk_level
        bad_related = sorted(
            r.booking_id
            for r in assessment.related_bookings
            if r.state in (DispositionState.REJECTED.value, DispositionState.FRAUDULENT.value)
        )

        if level == RiskLevel.CRITICAL and bad_related:
            return Transition(
                DispositionState.FRAUDULENT,
                f"critical risk score {score:g} corroborated by related booking(s) "
                + ", ".join(bad_related),
            )
        if level in (RiskLevel.HIGH, RiskLevel.CRITICAL):
            return Transition(
                DispositionState.FLAGGED_FOR_REVIEW,
                f"{level.value} risk score {score:g}",
            )

        unavailable = [s.category.value for s in assessment.category_scores if not s.available]
        if unavailable:
            return Transition(
                DispositionState.PENDING_REVIEW,
                "scorer(s) unavailable: " + ", ".join(unavailable),
            )

        critical_categories = [
            s.category.value
            for s in assessment.category_scores
            if s.score >= self.policy.critical_threshold
        ]
        if score < self.policy.auto_approve_threshold and not critical_categories:
            return Transition(
                DispositionState.APPROVED,
                f"risk score {score:g} below auto-approve threshold "
                f"{self.policy.auto_approve_threshold:g}",
            )

        if critical_categories:
            return Transition(
                DispositionState.PENDING_REVIEW,
                "critical category score(s): " + ", ".join(critical_categories),
            )
        return Transition(
            DispositionState.PENDING_REVIEW,
            f"{level.value} risk score {score:g} requires human review",
        )

    def automatic(
        self,
        assessment: RiskAssessment,
        current: Disposition | None,
        cancelled: bool = False,
    ) -> Transition | None:
        """Next automatic transition, or ``None`` to leave the booking alone.

        Automatic transitions never leave a terminal state, never undo a
        human decision, and never move to a less strict state except for the
        initial ``pending_review`` -> ``approved`` step.  An approved booking
        only moves on to ``flagged_for_review`` or ``fraudulent``; it never
        returns to ``pending_review``.

        Args:
            assessment: The assessment just computed.
            current: The booking's active disposition.
            cancelled: Whether the booking workflow cancelled the booking.
        """
        current_state = current.state if current else DispositionState.PENDING_REVIEW

        if current is not None and current.actor is not None:
            logger.debug(
                "Booking %s was decided by %s; automatic rules skipped",
                assessment.booking_id,
                current.actor,
            )
            return None
        if current_state in TERMINAL_STATES:
            return None

        if cancelled:
            if current_state == DispositionState.PENDING_REVIEW:
                return Transition(DispositionState.REJECTED, CANCELLED_REASON)
            return None

        target = self.proposed(assessment)
        if target.to_state == current_state:
            return None
        if current_state == DispositionState.PENDING_REVIEW:
            return target
        if target.to_state == DispositionState.PENDING_REVIEW:
            return None
        if _STRICTNESS[target.to_state] > _STRICTNESS[current_state]:
            return target
        return None

    def human(
        self,
        booking_id: str,
        action: HumanAction,
        current_state: DispositionState,
        actor: str,
        reason: str,
    ) -> Transition:
        """Transition for a human action.

        Raises:
            InvalidTransition: If ``action`` is not allowed from
                ``current_state``.
        """
        allowed_from, target = HUMAN_TRANSITIONS[action]
        if current_state not in allowed_from:
            raise InvalidTransition(booking_id, action.value, current_state.value)
        return Transition(target, reason, actor=actor)
