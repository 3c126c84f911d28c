"""Aggregation of category scores into an overall risk assessment.

Combines the five ``CategoryScore`` results with the configured weights into
a single score in ``[0, 100]``, maps it to a risk level, and packages the
result together with the relationship cluster as a ``RiskAssessment``.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum

from src.config import Settings, settings as default_settings
from src.errors import InvalidConfiguration
from src.pipeline.clustering import RelatedBooking
from src.pipeline.scorers import Category, CategoryScore
from src.pipeline.signals import utcnow

logger = logging.getLogger(__name__)

_WEIGHT_TOLERANCE = 1e-6


class RiskLevel(str, Enum):
    """Risk level bands, from least to most severe."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True, slots=True)
class RiskPolicy:
    """Weights and thresholds that turn category scores into decisions.

    Build with ``RiskPolicy.from_settings`` (which validates) rather than
    the constructor.

    Attributes:
        weights: Weight per category; must sum to 1.0.
        medium_threshold: Lowest ``medium`` score.
        high_threshold: Lowest ``high`` score.
        critical_threshold: Lowest ``critical`` score.  Also the per-category
            score at which a single category blocks auto-approval.
        auto_approve_threshold: Overall score below which a booking may be
            approved automatically.
    """

    weights: dict[Category, float]
    medium_threshold: float = 30.0
    high_threshold: float = 60.0
    critical_threshold: float = 85.0
    auto_approve_threshold: float = 30.0

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> RiskPolicy:
        """Build and validate the policy from application settings.

        Raises:
            InvalidConfiguration: If the weights or thresholds are unusable.
        """
        config = config or default_settings
        policy = cls(
            weights={
                Category.EMAIL: config.WEIGHT_EMAIL,
                Category.SESSION: config.WEIGHT_SESSION,
                Category.DEVICE: config.WEIGHT_DEVICE,
                Category.LOCATION: config.WEIGHT_LOCATION,
                Category.VELOCITY: config.WEIGHT_VELOCITY,
            },
            medium_threshold=config.RISK_LEVEL_MEDIUM,
            high_threshold=config.RISK_LEVEL_HIGH,
            critical_threshold=config.RISK_LEVEL_CRITICAL,
            auto_approve_threshold=config.AUTO_APPROVE_THRESHOLD,
        )
        policy.validate()
        return policy

    def validate(self) -> None:
        """Reject the whole policy if any part of it is inconsistent.

        Raises:
            InvalidConfiguration: On missing or negative weights, weights not
                summing to 1.0, or non-monotonic level boundaries.
        """
        missing = [c.value for c in Category if c not in self.weights]
        if missing:
            raise InvalidConfiguration(f"Missing weights for categories: {missing}")

        for category, weight in self.weights.items():
            if not math.isfinite(weight) or weight < 0:
                raise InvalidConfiguration(
                    f"Weight for '{category.value}' must be a non-negative number, got {weight}"
                )

        total = sum(self.weights.values())
        if abs(total - 1.0) > _WEIGHT_TOLERANCE:
            raise InvalidConfiguration(f"Category weights must sum to 1.0, got {total:.6f}")

        bounds = (self.medium_threshold, self.high_threshold, self.critical_threshold)
        if not 0 < bounds[0] < bounds[1] < bounds[2] <= 100:
            raise InvalidConfiguration(
                "Risk level boundaries must satisfy 0 < medium < high < critical <= 100, "
                f"got {bounds}"
            )

        if not 0 <= self.auto_approve_threshold <= 100:
            raise InvalidConfiguration(
                f"Auto-approve threshold must be within [0, 100], got {self.auto_approve_threshold}"
            )

    def level_for(self, score: float) -> RiskLevel:
        """Map an overall score to its risk level."""
        if score >= self.critical_threshold:
            return RiskLevel.CRITICAL
        if score >= self.high_threshold:
            return RiskLevel.HIGH
        if score >= self.medium_threshold:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW


@dataclass(frozen=True, slots=True)
class RiskAssessment:
    """Overall risk assessment of one booking at one point in time.

    ``id`` and ``sequence`` are ``None`` until the assessment is persisted.
    """

    booking_id: str
    overall_score: float
    risk_level: RiskLevel
    category_scores: tuple[CategoryScore, ...]
    related_bookings: tuple[RelatedBooking, ...] = ()
    computed_at: datetime = field(default_factory=utcnow)
    id: int | None = None
    sequence: int | None = None

    def category(self, category: Category) -> CategoryScore | None:
        for score in self.category_scores:
            if score.category == category:
                return score
        return None

    @property
    def factors(self) -> list[str]:
        """Every factor of every category, in category order."""
        return [f for score in self.category_scores for f in score.factors]

    def persisted(self, assessment_id: int, sequence: int) -> RiskAssessment:
        return replace(self, id=assessment_id, sequence=sequence)


class RiskAggregator:
    """Combines category scores into a ``RiskAssessment``.

    Usage::

        aggregator = RiskAggregator(RiskPolicy.from_settings())
        assessment = aggregator.aggregate("bk_1", scores, related)
    """

    def __init__(self, policy: RiskPolicy | None = None) -> None:
        self.policy = policy or RiskPolicy.from_settings()
        self.policy.validate()

    def overall_score(self, category_scores: list[CategoryScore]) -> float:
        """Weighted sum of the category scores, clamped to ``[0, 100]``."""
        raw = sum(
            self.policy.weights[score.category] * score.score
            for score in category_scores
        )
        return round(min(max(raw, 0.0), 100.0), 2)

    def aggregate(
        self,
        booking_id: str,
        category_scores: list[CategoryScore],
        related: tuple[RelatedBooking, ...] = (),
        computed_at: datetime | None = None,
    ) -> RiskAssessment:
        """Produce an unsaved assessment.

        Args:
            booking_id: Booking being assessed.
            category_scores: One score per category.
            related: Relationship cluster used for the velocity score.
            computed_at: Timestamp override, defaults to now.

        Returns:
            A ``RiskAssessment`` with ``id``/``sequence`` unset.
        """
        ordered = tuple(sorted(category_scores, key=lambda s: list(Category).index(s.category)))
        score = self.overall_score(list(ordered))
        level = self.policy.level_for(score)

        logger.info(
            "Risk score for %s: %.2f (%s) categories=%s related=%d",
            booking_id,
            score,
            level.value,
            {s.category.value: s.score for s in ordered},
            len(related),
        )

        return RiskAssessment(
            booking_id=booking_id,
            overall_score=score,
            risk_level=level,
            category_scores=ordered,
            related_bookings=related,
            computed_at=computed_at or utcnow(),
        )
