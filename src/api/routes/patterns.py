"""Suspicious booking pattern report for the admin fraud dashboard."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query

from src.api.routes.bookings import get_risk_engine
from src.pipeline.aggregator import RiskLevel
from src.pipeline.engine import BookingRiskEngine
from src.pipeline.signals import utcnow
from src.schemas.schemas import PatternsResponse

logger = logging.getLogger(__name__)

patterns_router = APIRouter(prefix="/api/patterns", tags=["patterns"])


@patterns_router.get("", response_model=PatternsResponse)
async def get_suspicious_patterns(
    hours: int = Query(default=168, ge=1, le=2160, description="Look-back window in hours"),
    min_severity: RiskLevel = Query(
        default=RiskLevel.LOW, description="Lowest pattern severity to include",
    ),
    engine: BookingRiskEngine = Depends(get_risk_engine),
) -> PatternsResponse:
    """Report device rings, shared IPs, numbered mailboxes and impossible travel.

    Args:
        hours: Only bookings captured in the last N hours are scanned.
        min_severity: Patterns rated below this level are left out.
        engine: Injected risk engine.

    Returns:
        The patterns, most severe first, with summary counts.
    """
    patterns = await engine.get_suspicious_patterns(hours, min_severity)
    logger.debug("Pattern report for %dh at >= %s: %d", hours, min_severity.value, len(patterns))
    return PatternsResponse.from_domain(patterns, hours, utcnow())
