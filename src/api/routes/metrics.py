"""Metrics aggregation endpoints for the admin review dashboard."""
from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, Query
from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.database import (
    DispositionRecord,
    FraudIndicator,
    LedgerEntry,
    RiskAssessmentRecord,
    RiskSignalsRecord,
    get_db,
)
from src.schemas.schemas import MetricsResponse

logger = logging.getLogger(__name__)

metrics_router = APIRouter(prefix="/api/metrics", tags=["metrics"])

_BUCKET_LABELS = [
    "0-9", "10-19", "20-29", "30-39", "40-49",
    "50-59", "60-69", "70-79", "80-89", "90-100",
]


def _build_score_buckets(scores: list[float]) -> list[dict[str, int | str]]:
    """Build the overall score distribution across 10-point buckets.

    Args:
        scores: Overall scores of the current assessments.

    Returns:
        List of dicts with 'bucket' label and 'count' for each range.
    """
    bucket_counts = dict.fromkeys(_BUCKET_LABELS, 0)
    for score in scores:
        idx = min(int(score // 10), len(_BUCKET_LABELS) - 1)
        bucket_counts[_BUCKET_LABELS[idx]] += 1
    return [{"bucket": label, "count": bucket_counts[label]} for label in _BUCKET_LABELS]


async def _top_shared(
    db: AsyncSession,
    column,  # type: ignore[no-untyped-def]
    cutoff: datetime,
    label: str,
    top_n: int = 5,
) -> list[dict[str, int | str]]:
    """Identity values seen on more than one booking inside the window."""
    count = func.count(RiskSignalsRecord.booking_id)
    stmt = (
        select(column, count)
        .where(column.is_not(None), RiskSignalsRecord.captured_at >= cutoff)
        .group_by(column)
        .having(count > 1)
        .order_by(count.desc(), column)
        .limit(top_n)
    )
    rows = (await db.execute(stmt)).all()
    return [{label: value, "count": n} for value, n in rows]


@metrics_router.get("", response_model=MetricsResponse)
async def get_metrics(
    hours: int = Query(default=24, ge=1, description="Lookback window in hours"),
    db: AsyncSession = Depends(get_db),
) -> MetricsResponse:
    """Summarise recent risk assessments and moderation activity.

    Args:
        hours: Number of hours to look back from now.
        db: Async database session dependency.

    Returns:
        Risk level and disposition counts, score distribution, the most
        frequent risk factors, the most shared devices and IPs, and the
        number of human decisions in the window.
    """
    cutoff = datetime.now(timezone.utc) - timedelta(hours=hours)

    # 1. Current assessment per booking, restricted to the window
    latest_assessment = (
        select(
            RiskAssessmentRecord.booking_id.label("booking_id"),
            func.max(RiskAssessmentRecord.sequence).label("sequence"),
        )
        .group_by(RiskAssessmentRecord.booking_id)
        .subquery()
    )
    result = await db.execute(
        select(RiskAssessmentRecord)
        .join(
            latest_assessment,
            and_(
                RiskAssessmentRecord.booking_id == latest_assessment.c.booking_id,
                RiskAssessmentRecord.sequence == latest_assessment.c.sequence,
            ),
        )
        .where(RiskAssessmentRecord.computed_at >= cutoff)
    )
    assessments = list(result.scalars().all())

    risk_level_counts = Counter(a.risk_level for a in assessments)
    score_distribution = _build_score_buckets([a.overall_score for a in assessments])

    # 2. Most frequent factors on those assessments
    top_factors: list[dict[str, int | str]] = []
    assessment_ids = [a.id for a in assessments]
    if assessment_ids:
        indicator_rows = await db.execute(
            select(FraudIndicator.indicator).where(
                FraudIndicator.assessment_id.in_(assessment_ids),
            )
        )
        factor_counter: Counter[str] = Counter(indicator_rows.scalars().all())
        top_factors = [
            {"factor": factor, "count": count}
            for factor, count in factor_counter.most_common(10)
        ]

    # 3. Active disposition per booking captured in the window
    latest_disposition = (
        select(
            DispositionRecord.booking_id.label("booking_id"),
            func.max(DispositionRecord.sequence).label("sequence"),
        )
        .group_by(DispositionRecord.booking_id)
        .subquery()
    )
    disposition_rows = await db.execute(
        select(DispositionRecord.state, func.count())
        .join(
            latest_disposition,
            and_(
                DispositionRecord.booking_id == latest_disposition.c.booking_id,
                DispositionRecord.sequence == latest_disposition.c.sequence,
            ),
        )
        .join(RiskSignalsRecord, RiskSignalsRecord.booking_id == DispositionRecord.booking_id)
        .where(RiskSignalsRecord.captured_at >= cutoff)
        .group_by(DispositionRecord.state)
    )
    disposition_counts = {state: count for state, count in disposition_rows.all()}

    # 4. Identity values shared across bookings
    top_shared_devices = await _top_shared(
        db, RiskSignalsRecord.device_fingerprint, cutoff, "device_fingerprint",
    )
    top_shared_ips = await _top_shared(db, RiskSignalsRecord.ip_address, cutoff, "ip")

    # 5. Human decisions in the window
    human_decisions = await db.scalar(
        select(func.count())
        .select_from(LedgerEntry)
        .where(LedgerEntry.actor.is_not(None), LedgerEntry.recorded_at >= cutoff)
    )

    return MetricsResponse(
        total_assessments=len(assessments),
        risk_level_counts=dict(risk_level_counts),
        disposition_counts=disposition_counts,
        score_distribution=score_distribution,
        top_factors=top_factors,
        top_shared_devices=top_shared_devices,
        top_shared_ips=top_shared_ips,
        human_decisions=human_decisions or 0,
    )
