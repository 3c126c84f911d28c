"""Tests for score aggregation and risk policy validation."""

import math

import pytest

from src.config import Settings
from src.errors import InvalidConfiguration
from src.pipeline.aggregator import RiskAggregator, RiskLevel, RiskPolicy
from src.pipeline.scorers import Category, CategoryScore


def _scores(**by_category: int) -> list[CategoryScore]:
    return [CategoryScore(category=c, score=by_category.get(c.value, 0)) for c in Category]


@pytest.fixture
def aggregator() -> RiskAggregator:
    return RiskAggregator(RiskPolicy.from_settings(Settings()))


class TestOverallScore:

    def test_weighted_sum(self, aggregator):
        scores = _scores(email=100, session=100, device=80, location=90)
        assert aggregator.overall_score(scores) == 64.5

    def test_all_zero_and_all_max(self, aggregator):
        assert aggregator.overall_score(_scores()) == 0.0
        full = _scores(email=100, session=100, device=100, location=100, velocity=100)
        assert aggregator.overall_score(full) == 100.0

    def test_aggregate_orders_categories(self, aggregator):
        shuffled = list(reversed(_scores(velocity=60)))
        assessment = aggregator.aggregate("bk_1", shuffled)

        assert [s.category for s in assessment.category_scores] == list(Category)
        assert assessment.overall_score == 18.0
        assert assessment.risk_level == RiskLevel.LOW
        assert assessment.id is None


class TestRiskLevels:

    @pytest.mark.parametrize(
        "score, level",
        [
            (0.0, RiskLevel.LOW),
            (29.99, RiskLevel.LOW),
            (30.0, RiskLevel.MEDIUM),
            (59.99, RiskLevel.MEDIUM),
            (60.0, RiskLevel.HIGH),
            (84.99, RiskLevel.HIGH),
            (85.0, RiskLevel.CRITICAL),
            (100.0, RiskLevel.CRITICAL),
        ],
    )
    def test_level_boundaries(self, score, level):
        assert RiskPolicy.from_settings(Settings()).level_for(score) == level


class TestPolicyValidation:

    def test_default_settings_are_valid(self):
        policy = RiskPolicy.from_settings(Settings())
        assert math.isclose(sum(policy.weights.values()), 1.0)

    def test_weights_must_sum_to_one(self):
        with pytest.raises(InvalidConfiguration, match="sum to 1.0"):
            RiskPolicy.from_settings(Settings(WEIGHT_EMAIL=0.5))

    def test_negative_weight_rejected(self):
        config = Settings(WEIGHT_EMAIL=-0.1, WEIGHT_VELOCITY=0.6)
        with pytest.raises(InvalidConfiguration, match="non-negative"):
            RiskPolicy.from_settings(config)

    def test_non_monotonic_boundaries_rejected(self):
        with pytest.raises(InvalidConfiguration, match="boundaries"):
            RiskPolicy.from_settings(Settings(RISK_LEVEL_HIGH=20.0))

    def test_missing_weight_rejected(self):
        policy = RiskPolicy(weights={Category.EMAIL: 1.0})
        with pytest.raises(InvalidConfiguration, match="Missing weights"):
            policy.validate()

    def test_engine_refuses_invalid_policy(self, session_factory):
        from src.pipeline.engine import BookingRiskEngine

        with pytest.raises(InvalidConfiguration):
            BookingRiskEngine(session_factory=session_factory, config=Settings(WEIGHT_DEVICE=0.9))
