"""Tests for the disposition state machine."""

import pytest

from src.config import Settings
from src.errors import InvalidTransition
from src.pipeline.aggregator import RiskAssessment, RiskPolicy
from src.pipeline.clustering import RelatedBooking
from src.pipeline.decisions import (
    CANCELLED_REASON,
    DecisionEngine,
    Disposition,
    DispositionState,
    HumanAction,
)
from src.pipeline.scorers import Category, CategoryScore
from src.pipeline.signals import utcnow

State = DispositionState


@pytest.fixture
def policy() -> RiskPolicy:
    return RiskPolicy.from_settings(Settings())


@pytest.fixture
def decisions(policy) -> DecisionEngine:
    return DecisionEngine(policy)


def _assessment(policy, score, related=(), category_scores=None) -> RiskAssessment:
    scores = category_scores or tuple(CategoryScore(c, 0) for c in Category)
    return RiskAssessment(
        booking_id="bk_1",
        overall_score=score,
        risk_level=policy.level_for(score),
        category_scores=scores,
        related_bookings=tuple(related),
        id=1,
        sequence=1,
    )


def _current(state, actor=None, sequence=1) -> Disposition:
    return Disposition(
        booking_id="bk_1",
        sequence=sequence,
        state=state,
        assessment_id=None,
        actor=actor,
        reason=None,
        created_at=utcnow(),
    )


class TestProposedState:

    def test_low_score_auto_approves(self, decisions, policy):
        transition = decisions.proposed(_assessment(policy, 12.0))
        assert transition.to_state == State.APPROVED
        assert transition.actor is None

    def test_medium_score_needs_review(self, decisions, policy):
        assert decisions.proposed(_assessment(policy, 45.0)).to_state == State.PENDING_REVIEW

    def test_high_score_is_flagged(self, decisions, policy):
        assert decisions.proposed(_assessment(policy, 64.5)).to_state == State.FLAGGED_FOR_REVIEW

    def test_critical_without_corroboration_is_only_flagged(self, decisions, policy):
        related = [RelatedBooking("bk_2", 20.0, "approved", ("ip",))]
        transition = decisions.proposed(_assessment(policy, 95.0, related))
        assert transition.to_state == State.FLAGGED_FOR_REVIEW

    def test_critical_with_bad_related_booking_is_fraudulent(self, decisions, policy):
        related = [RelatedBooking("bk_2", 70.0, "rejected", ("device",))]
        transition = decisions.proposed(_assessment(policy, 88.0, related))
        assert transition.to_state == State.FRAUDULENT
        assert "bk_2" in transition.reason

    def test_high_with_bad_related_booking_is_not_fraudulent(self, decisions, policy):
        related = [RelatedBooking("bk_2", 70.0, "fraudulent", ("device",))]
        transition = decisions.proposed(_assessment(policy, 70.0, related))
        assert transition.to_state == State.FLAGGED_FOR_REVIEW

    def test_critical_category_blocks_auto_approval(self, decisions, policy):
        scores = tuple(
            CategoryScore(c, 90 if c == Category.LOCATION else 0) for c in Category
        )
        transition = decisions.proposed(_assessment(policy, 13.5, category_scores=scores))
        assert transition.to_state == State.PENDING_REVIEW
        assert "location" in transition.reason

    def test_unavailable_scorer_blocks_auto_approval(self, decisions, policy):
        scores = tuple(
            CategoryScore(c, 0, available=c != Category.VELOCITY) for c in Category
        )
        transition = decisions.proposed(_assessment(policy, 0.0, category_scores=scores))
        assert transition.to_state == State.PENDING_REVIEW
        assert transition.reason == "scorer(s) unavailable: velocity"


class TestAutomaticTransitions:

    def test_pending_moves_to_proposed_state(self, decisions, policy):
        transition = decisions.automatic(_assessment(policy, 5.0), _current(State.PENDING_REVIEW))
        assert transition.to_state == State.APPROVED

    def test_only_moves_toward_stricter_states(self, decisions, policy):
        approved = _current(State.APPROVED, sequence=2)
        assert decisions.automatic(_assessment(policy, 5.0), approved) is None
        transition = decisions.automatic(_assessment(policy, 70.0), approved)
        assert transition.to_state == State.FLAGGED_FOR_REVIEW

        flagged = _current(State.FLAGGED_FOR_REVIEW, sequence=3)
        assert decisions.automatic(_assessment(policy, 5.0), flagged) is None

    def test_approved_booking_never_returns_to_review(self, decisions, policy):
        approved = _current(State.APPROVED, sequence=2)
        assert decisions.automatic(_assessment(policy, 45.0), approved) is None

        scores = tuple(
            CategoryScore(c, 90 if c == Category.LOCATION else 0) for c in Category
        )
        critical_category = _assessment(policy, 13.5, category_scores=scores)
        assert decisions.automatic(critical_category, approved) is None

        unavailable = tuple(
            CategoryScore(c, 0, available=c != Category.DEVICE) for c in Category
        )
        assert decisions.automatic(
            _assessment(policy, 0.0, category_scores=unavailable), approved,
        ) is None

    def test_approved_booking_can_still_escalate_to_fraud(self, decisions, policy):
        approved = _current(State.APPROVED, sequence=2)
        related = [RelatedBooking("bk_2", 70.0, "rejected", ("device",))]
        transition = decisions.automatic(_assessment(policy, 90.0, related), approved)
        assert transition.to_state == State.FRAUDULENT

    @pytest.mark.parametrize("state", [State.REJECTED, State.FRAUDULENT])
    def test_terminal_states_are_never_left(self, decisions, policy, state):
        assert decisions.automatic(_assessment(policy, 0.0), _current(state)) is None

    def test_human_decisions_are_not_overridden(self, decisions, policy):
        cleared = _current(State.OVERRIDE_CLEARED, actor="analyst@example.com")
        related = [RelatedBooking("bk_2", 70.0, "rejected", ("device",))]
        assert decisions.automatic(_assessment(policy, 99.0, related), cleared) is None

    def test_cancelled_pending_booking_is_rejected(self, decisions, policy):
        transition = decisions.automatic(
            _assessment(policy, 95.0), _current(State.PENDING_REVIEW), cancelled=True,
        )
        assert transition.to_state == State.REJECTED
        assert transition.reason == CANCELLED_REASON

    def test_cancellation_does_not_touch_decided_booking(self, decisions, policy):
        approved = _current(State.APPROVED, sequence=2)
        assert decisions.automatic(_assessment(policy, 5.0), approved, cancelled=True) is None


class TestHumanTransitions:

    @pytest.mark.parametrize(
        "action, current, expected",
        [
            (HumanAction.APPROVE, State.PENDING_REVIEW, State.APPROVED),
            (HumanAction.APPROVE, State.FLAGGED_FOR_REVIEW, State.APPROVED),
            (HumanAction.APPROVE, State.FRAUDULENT, State.APPROVED),
            (HumanAction.REJECT, State.APPROVED, State.REJECTED),
            (HumanAction.REJECT, State.FLAGGED_FOR_REVIEW, State.REJECTED),
            (HumanAction.OVERRIDE, State.FRAUDULENT, State.OVERRIDE_CLEARED),
            (HumanAction.OVERRIDE, State.REJECTED, State.OVERRIDE_CLEARED),
        ],
    )
    def test_allowed_transitions(self, decisions, action, current, expected):
        transition = decisions.human("bk_1", action, current, "analyst", "checked ID")
        assert transition.to_state == expected
        assert transition.actor == "analyst"
        assert transition.reason == "checked ID"

    @pytest.mark.parametrize(
        "action, current",
        [
            (HumanAction.APPROVE, State.REJECTED),
            (HumanAction.REJECT, State.REJECTED),
            (HumanAction.OVERRIDE, State.APPROVED),
            (HumanAction.OVERRIDE, State.PENDING_REVIEW),
        ],
    )
    def test_rejected_transitions(self, decisions, action, current):
        with pytest.raises(InvalidTransition):
            decisions.human("bk_1", action, current, "analyst", "checked ID")
