"""Booking risk endpoints: signal submission, assessments and moderation."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from src.api.websocket import manager
from src.errors import (
    ConcurrentTransitionConflict,
    DuplicateSignals,
    InvalidTransition,
    UnknownBooking,
)
from src.pipeline.engine import BookingRiskEngine
from src.schemas.schemas import (
    AssessmentResponse,
    CancellationRequest,
    DispositionResponse,
    HumanDecisionRequest,
    LedgerEntryResponse,
    RelatedBookingResponse,
    SignalsSubmission,
)

logger = logging.getLogger(__name__)

bookings_router = APIRouter(prefix="/api/bookings", tags=["bookings"])

_engine: BookingRiskEngine | None = None


def get_risk_engine() -> BookingRiskEngine:
    """Shared engine instance, created on first use.

    Tests override this dependency to bind a temporary database.
    """
    global _engine
    if _engine is None:
        _engine = BookingRiskEngine(broadcast_callback=manager.broadcast)
    return _engine


def _not_found(booking_id: str) -> HTTPException:
    return HTTPException(status_code=404, detail=f"Booking '{booking_id}' not found")


@bookings_router.post(
    "/{booking_id}/signals",
    response_model=AssessmentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def submit_signals(
    booking_id: str,
    body: SignalsSubmission,
    engine: BookingRiskEngine = Depends(get_risk_engine),
) -> AssessmentResponse:
    """Capture booking-time telemetry and return the first assessment.

    Args:
        booking_id: Booking identifier issued by the booking workflow.
        body: Captured telemetry.  Every field is optional.
        engine: Risk engine dependency.

    Returns:
        The assessment computed from the submitted signals.

    Raises:
        HTTPException: 409 if signals were already captured for the booking
            or the disposition kept changing concurrently.
    """
    try:
        assessment = await engine.submit_signals(booking_id, body)
    except (DuplicateSignals, ConcurrentTransitionConflict) as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return AssessmentResponse.from_domain(assessment)


@bookings_router.post("/{booking_id}/reevaluate", response_model=AssessmentResponse)
async def reevaluate(
    booking_id: str,
    engine: BookingRiskEngine = Depends(get_risk_engine),
) -> AssessmentResponse:
    """Recompute the booking's assessment against current history.

    Raises:
        HTTPException: 404 if the booking is unknown, 409 on a persistent
            concurrent transition conflict.
    """
    try:
        assessment = await engine.reevaluate(booking_id)
    except UnknownBooking as exc:
        raise _not_found(booking_id) from exc
    except ConcurrentTransitionConflict as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return AssessmentResponse.from_domain(assessment)


@bookings_router.post("/{booking_id}/decisions", response_model=DispositionResponse)
async def record_decision(
    booking_id: str,
    body: HumanDecisionRequest,
    engine: BookingRiskEngine = Depends(get_risk_engine),
) -> DispositionResponse:
    """Apply an admin's approve / reject / override.

    Args:
        booking_id: Booking to decide.
        body: Action, actor and reason.
        engine: Risk engine dependency.

    Returns:
        The new active disposition.

    Raises:
        HTTPException: 404 if the booking is unknown, 409 if the action is
            not allowed from the current state or lost a concurrent race,
            422 if actor or reason is blank.
    """
    try:
        disposition = await engine.record_human_decision(
            booking_id, body.action, body.actor, body.reason,
        )
    except UnknownBooking as exc:
        raise _not_found(booking_id) from exc
    except (InvalidTransition, ConcurrentTransitionConflict) as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return DispositionResponse.from_domain(disposition)


@bookings_router.post("/{booking_id}/cancel", response_model=DispositionResponse)
async def cancel_booking(
    booking_id: str,
    body: CancellationRequest,
    engine: BookingRiskEngine = Depends(get_risk_engine),
) -> DispositionResponse:
    """Record a cancellation from the booking workflow.

    Raises:
        HTTPException: 404 if no signals were ever submitted for the booking.
    """
    try:
        disposition = await engine.cancel_booking(booking_id, body.reason)
    except ConcurrentTransitionConflict as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if disposition is None:
        raise _not_found(booking_id)
    return DispositionResponse.from_domain(disposition)


@bookings_router.get("/{booking_id}/assessment", response_model=AssessmentResponse)
async def get_assessment(
    booking_id: str,
    engine: BookingRiskEngine = Depends(get_risk_engine),
) -> AssessmentResponse:
    """Return the booking's current assessment."""
    assessment = await engine.get_assessment(booking_id)
    if assessment is None:
        raise _not_found(booking_id)
    return AssessmentResponse.from_domain(assessment)


@bookings_router.get("/{booking_id}/assessments", response_model=list[AssessmentResponse])
async def get_assessment_history(
    booking_id: str,
    engine: BookingRiskEngine = Depends(get_risk_engine),
) -> list[AssessmentResponse]:
    """Return every assessment of the booking, oldest first."""
    history = await engine.get_assessment_history(booking_id)
    if not history:
        raise _not_found(booking_id)
    return [AssessmentResponse.from_domain(a) for a in history]


@bookings_router.get("/{booking_id}/dispositions", response_model=list[DispositionResponse])
async def get_disposition_history(
    booking_id: str,
    engine: BookingRiskEngine = Depends(get_risk_engine),
) -> list[DispositionResponse]:
    """Return the booking's disposition history, oldest first."""
    history = await engine.get_disposition_history(booking_id)
    if not history:
        raise _not_found(booking_id)
    return [DispositionResponse.from_domain(d) for d in history]


@bookings_router.get("/{booking_id}/related", response_model=list[RelatedBookingResponse])
async def get_related_bookings(
    booking_id: str,
    engine: BookingRiskEngine = Depends(get_risk_engine),
) -> list[RelatedBookingResponse]:
    """Return the booking's live relationship cluster.

    The cluster is recomputed on every call, so bookings that arrived after
    the last assessment are included.
    """
    related = await engine.get_related_bookings(booking_id)
    if related is None:
        raise _not_found(booking_id)
    return [RelatedBookingResponse.from_domain(r) for r in related]


@bookings_router.get("/{booking_id}/ledger", response_model=list[LedgerEntryResponse])
async def get_ledger(
    booking_id: str,
    engine: BookingRiskEngine = Depends(get_risk_engine),
) -> list[LedgerEntryResponse]:
    """Return the booking's audit trail, oldest first."""
    entries = await engine.get_ledger(booking_id)
    if not entries:
        raise _not_found(booking_id)
    return [LedgerEntryResponse.from_domain(e) for e in entries]
