"""Pydantic v2 schemas for request validation and response serialization.

This module defines all data transfer objects (DTOs) used across the
booking risk engine:

- ``SessionTelemetry``: client-side form session measurements.
- ``SignalsSubmission``: booking-time telemetry posted by the booking workflow.
- ``CategoryScoreResponse``: one category's score and factors.
- ``RelatedBookingResponse``: one member of a booking's relationship cluster.
- ``AssessmentResponse``: a full risk assessment.
- ``HumanDecisionRequest``: body of POST /bookings/{id}/decisions.
- ``CancellationRequest``: body of POST /bookings/{id}/cancel.
- ``DispositionResponse``: one moderation decision.
- ``LedgerEntryResponse``: one audit ledger entry.
- ``ReplayRecord``: one line of a replay file for the batch runner.
- ``MetricsResponse``: aggregate metrics for the admin dashboard.
- ``PatternsResponse``: suspicious booking patterns for the fraud dashboard.

All models use ``from __future__ import annotations`` for deferred evaluation
of type hints, enabling forward references within the same module.
"""

from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field

from src.pipeline.aggregator import RiskAssessment, RiskLevel
from src.pipeline.clustering import RelatedBooking
from src.pipeline.decisions import Disposition, HumanAction
from src.pipeline.ledger import LedgerRecord
from src.pipeline.patterns import SuspiciousPattern
from src.pipeline.scorers import CategoryScore


class SessionTelemetry(BaseModel):
    """Form session measurements captured by the client SDK.

    Attributes:
        session_id: Client session identifier.
        duration_ms: Time from first render to submit, in milliseconds.
        max_idle_ms: Longest gap between two interactions, in milliseconds.
        total_interactions: Mouse and keyboard events recorded.
        copy_paste_used: Whether any field was filled by pasting.
    """

    session_id: str | None = None
    duration_ms: float | None = Field(default=None, ge=0)
    max_idle_ms: float | None = Field(default=None, ge=0)
    total_interactions: int | None = Field(default=None, ge=0)
    copy_paste_used: bool = False


class SignalsSubmission(BaseModel):
    """Booking-time telemetry, as posted by the booking workflow.

    Every field is optional: missing telemetry lowers confidence but never
    blocks an assessment.

    Attributes:
        email: Guest email address.
        display_name: Guest name as typed on the booking form.
        email_verified: Whether the email address was confirmed.
        phone: Guest phone number.
        phone_verified: Whether the phone number was confirmed.
        device_fingerprint: Opaque device hash.  ``"unknown"`` when the
            client could not compute one.
        ip_address: Source IP of the booking request.
        ip_city: City from IP geolocation.
        ip_country: ISO 3166-1 alpha-2 country from IP geolocation.
        ip_latitude: Latitude from IP geolocation.
        ip_longitude: Longitude from IP geolocation.
        pickup_city: City where the car is collected.
        pickup_latitude: Latitude of the pickup location.
        pickup_longitude: Longitude of the pickup location.
        session: Form session measurements.
        bot_signals: Automation markers detected by the client SDK.
        user_agent: Raw ``User-Agent`` header.
        date_of_birth: Declared date of birth.
        captured_at: When the telemetry was captured.  Defaults to the time
            of submission.
    """

    email: str | None = Field(default=None, description="Guest email address.")
    display_name: str | None = Field(default=None, description="Guest name from the form.")
    email_verified: bool = False
    phone: str | None = None
    phone_verified: bool = False
    device_fingerprint: str | None = Field(
        default=None,
        description="Opaque device hash; 'unknown' when fingerprinting was blocked.",
    )
    ip_address: str | None = Field(default=None, description="Source IP address.")
    ip_city: str | None = None
    ip_country: str | None = None
    ip_latitude: float | None = Field(default=None, ge=-90, le=90)
    ip_longitude: float | None = Field(default=None, ge=-180, le=180)
    pickup_city: str | None = None
    pickup_latitude: float | None = Field(default=None, ge=-90, le=90)
    pickup_longitude: float | None = Field(default=None, ge=-180, le=180)
    session: SessionTelemetry | None = None
    bot_signals: list[str] = Field(default_factory=list)
    user_agent: str | None = None
    date_of_birth: date | None = None
    captured_at: datetime | None = None


class CategoryScoreResponse(BaseModel):
    """One category's contribution to the overall score."""

    category: str = Field(..., description="email, session, device, location or velocity.")
    score: int = Field(..., ge=0, le=100)
    factors: list[str] = Field(default_factory=list)
    available: bool = Field(
        default=True,
        description="False when the scorer timed out or failed.",
    )

    @classmethod
    def from_domain(cls, score: CategoryScore) -> CategoryScoreResponse:
        return cls(
            category=score.category.value,
            score=score.score,
            factors=list(score.factors),
            available=score.available,
        )


class RelatedBookingResponse(BaseModel):
    """A related booking and its last-known risk."""

    booking_id: str
    score: float | None = Field(default=None, description="Latest overall score.")
    state: str | None = Field(default=None, description="Active disposition state.")
    shared_signals: list[str] = Field(
        default_factory=list,
        description="Signals shared directly with the anchor booking.",
    )

    @classmethod
    def from_domain(cls, related: RelatedBooking) -> RelatedBookingResponse:
        return cls(
            booking_id=related.booking_id,
            score=related.score,
            state=related.state,
            shared_signals=list(related.shared_signals),
        )


class AssessmentResponse(BaseModel):
    """A risk assessment as returned by the API.

    Attributes:
        assessment_id: Database identifier of the assessment.
        booking_id: Booking the assessment belongs to.
        sequence: Per-booking sequence; the highest is current.
        overall_score: Weighted score in ``[0, 100]``.
        risk_level: low, medium, high or critical.
        category_scores: The five category scores.
        related_bookings: The relationship cluster.
        computed_at: When the assessment was computed.
    """

    assessment_id: int | None = None
    booking_id: str
    sequence: int | None = None
    overall_score: float = Field(..., ge=0, le=100)
    risk_level: str
    category_scores: list[CategoryScoreResponse]
    related_bookings: list[RelatedBookingResponse] = Field(default_factory=list)
    computed_at: datetime

    @classmethod
    def from_domain(cls, assessment: RiskAssessment) -> AssessmentResponse:
        return cls(
            assessment_id=assessment.id,
            booking_id=assessment.booking_id,
            sequence=assessment.sequence,
            overall_score=assessment.overall_score,
            risk_level=assessment.risk_level.value,
            category_scores=[
                CategoryScoreResponse.from_domain(s) for s in assessment.category_scores
            ],
            related_bookings=[
                RelatedBookingResponse.from_domain(r) for r in assessment.related_bookings
            ],
            computed_at=assessment.computed_at,
        )


class HumanDecisionRequest(BaseModel):
    """Request body for ``POST /api/bookings/{booking_id}/decisions``.

    Attributes:
        action: ``approve``, ``reject`` or ``override``.
        actor: Identifier of the admin taking the action.
        reason: Justification recorded in the audit ledger.
    """

    action: HumanAction
    actor: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)


class CancellationRequest(BaseModel):
    """Request body for ``POST /api/bookings/{booking_id}/cancel``."""

    reason: str | None = None


class DispositionResponse(BaseModel):
    """A moderation decision as returned by the API."""

    disposition_id: int | None = None
    booking_id: str
    sequence: int
    state: str
    assessment_id: int | None = None
    actor: str | None = None
    reason: str | None = None
    created_at: datetime

    @classmethod
    def from_domain(cls, disposition: Disposition) -> DispositionResponse:
        return cls(
            disposition_id=disposition.id,
            booking_id=disposition.booking_id,
            sequence=disposition.sequence,
            state=disposition.state.value,
            assessment_id=disposition.assessment_id,
            actor=disposition.actor,
            reason=disposition.reason,
            created_at=disposition.created_at,
        )


class LedgerEntryResponse(BaseModel):
    """An audit ledger entry as returned by the API."""

    id: int
    booking_id: str
    from_state: str | None = None
    to_state: str
    actor: str | None = None
    reason: str | None = None
    assessment_id: int | None = None
    recorded_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_domain(cls, record: LedgerRecord) -> LedgerEntryResponse:
        return cls.model_validate(record)


class ReplayReview(BaseModel):
    """Optional human decision applied after a replayed submission."""

    action: HumanAction
    actor: str = "replay"
    reason: str = "historical outcome"


class ReplayRecord(BaseModel):
    """One entry of a replay file consumed by ``scripts/run_pipeline.py``."""

    booking_id: str
    signals: SignalsSubmission
    review: ReplayReview | None = None


class MetricsResponse(BaseModel):
    """Aggregate metrics for the admin dashboard.

    Attributes:
        total_assessments: Current assessments computed inside the window.
        risk_level_counts: Bookings per risk level of their current assessment.
        disposition_counts: Bookings per active disposition state.
        score_distribution: Current assessments bucketed by 10-point bands.
            Each element: ``{"bucket": "70-79", "count": 12}``.
        top_factors: Most frequently raised indicators, descending.
            Each element: ``{"factor": "Device fingerprint missing", "count": 9}``.
        top_shared_devices: Fingerprints seen on the most bookings.
            Each element: ``{"device_fingerprint": "ab12", "count": 4}``.
        top_shared_ips: IPs seen on the most bookings.
            Each element: ``{"ip": "1.2.3.4", "count": 3}``.
        human_decisions: Ledger entries with an actor inside the window.
    """

    total_assessments: int
    risk_level_counts: dict[str, int]
    disposition_counts: dict[str, int]
    score_distribution: list[dict]
    top_factors: list[dict]
    top_shared_devices: list[dict]
    top_shared_ips: list[dict]
    human_decisions: int


class SuspiciousPatternResponse(BaseModel):
    """A coordinated group of bookings as returned by the API."""

    type: str
    severity: str
    booking_ids: list[str]
    description: str
    emails: list[str]
    names: list[str]
    shared_signals: list[str]
    max_score: float | None = None
    first_seen: datetime
    last_seen: datetime

    @classmethod
    def from_domain(cls, pattern: SuspiciousPattern) -> SuspiciousPatternResponse:
        return cls(
            type=pattern.type.value,
            severity=pattern.severity.value,
            booking_ids=list(pattern.booking_ids),
            description=pattern.description,
            emails=list(pattern.emails),
            names=list(pattern.names),
            shared_signals=list(pattern.shared_signals),
            max_score=pattern.max_score,
            first_seen=pattern.first_seen,
            last_seen=pattern.last_seen,
        )


class PatternStats(BaseModel):
    """Summary of a pattern report.

    Attributes:
        total_patterns: Patterns returned.
        critical_patterns: Patterns rated ``critical``.
        high_patterns: Patterns rated ``high``.
        affected_bookings: Distinct bookings across all patterns.
        hours: Window length the report covers.
        generated_at: When the report was computed.
    """

    total_patterns: int
    critical_patterns: int
    high_patterns: int
    affected_bookings: int
    hours: int
    generated_at: datetime


class PatternsResponse(BaseModel):
    """Suspicious pattern report for the admin fraud dashboard."""

    patterns: list[SuspiciousPatternResponse]
    stats: PatternStats

    @classmethod
    def from_domain(
        cls,
        patterns: list[SuspiciousPattern],
        hours: int,
        generated_at: datetime,
    ) -> PatternsResponse:
        return cls(
            patterns=[SuspiciousPatternResponse.from_domain(p) for p in patterns],
            stats=PatternStats(
                total_patterns=len(patterns),
                critical_patterns=sum(1 for p in patterns if p.severity == RiskLevel.CRITICAL),
                high_patterns=sum(1 for p in patterns if p.severity == RiskLevel.HIGH),
                affected_bookings=len({b for p in patterns for b in p.booking_ids}),
                hours=hours,
                generated_at=generated_at,
            ),
        )
