"""FastAPI application entry point for the booking risk engine admin API."""
from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import BackgroundTasks, Depends, FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from src.api.routes.bookings import bookings_router, get_risk_engine
from src.api.routes.metrics import metrics_router
from src.api.routes.patterns import patterns_router
from src.api.websocket import manager
from src.config import settings
from src.models.database import create_tables
from src.pipeline.aggregator import RiskPolicy
from src.pipeline.engine import BookingRiskEngine

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler for startup and shutdown tasks.

    Validates the risk policy (an invalid policy aborts startup) and creates
    database tables.

    Args:
        app: The FastAPI application instance.
    """
    RiskPolicy.from_settings(settings)
    await create_tables()
    logger.info("%s started. Risk policy valid, database tables ready.", settings.APP_TITLE)
    yield


app = FastAPI(
    title=settings.APP_TITLE,
    description="Booking risk assessment, relationship clustering and moderation API",
    version=settings.APP_VERSION,
    lifespan=lifespan,
)

# CORS middleware for the admin dashboard
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(bookings_router)
app.include_router(metrics_router)
app.include_router(patterns_router)


# ---------------------------------------------------------------------------
# WebSocket endpoint
# ---------------------------------------------------------------------------
@app.websocket("/ws/dispositions")
async def websocket_dispositions(websocket: WebSocket) -> None:
    """Stream disposition changes to the admin review queue.

    Accepts a connection, sends a confirmation message, then keeps the
    connection alive until the client disconnects.
    """
    await manager.connect(websocket)
    try:
        await websocket.send_json(
            {"type": "connected", "message": "Connected to disposition stream"}
        )
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(websocket)


# ---------------------------------------------------------------------------
# Synthetic replay trigger
# ---------------------------------------------------------------------------
class GenerateRequest(BaseModel):
    """Request body for the generate-and-replay endpoint."""

    count: int = Field(default=300, ge=1, le=5000)
    seed: int = 42


class GenerateResponse(BaseModel):
    """Response after a generate job is accepted."""

    status: str
    count: int
    seed: int
    message: str


async def _run_generate_replay(engine: BookingRiskEngine, count: int, seed: int) -> None:
    """Background task: generate synthetic bookings then replay them."""
    try:
        import random

        from faker import Faker

        from data.generate_data import generate_dataset

        random.seed(seed)
        Faker.seed(seed)
        bookings = generate_dataset(total=count)
        summary = await engine.replay_from_list(bookings)
        logger.info(
            "Generate replay done: total=%s flagged=%s",
            summary.get("total"), summary.get("flagged"),
        )
    except Exception:
        logger.exception("Generate replay failed")


@app.post("/api/pipeline/generate", response_model=GenerateResponse, tags=["pipeline"])
async def generate_and_replay(
    body: GenerateRequest,
    background_tasks: BackgroundTasks,
    engine: BookingRiskEngine = Depends(get_risk_engine),
) -> GenerateResponse:
    """Generate synthetic bookings and replay them through the risk engine.

    Bookings are generated in memory and submitted directly; disposition
    changes stream to connected dashboards as they happen.

    Args:
        body: count (number of bookings) and seed (for reproducibility).
        background_tasks: FastAPI background task manager.
        engine: Risk engine dependency.

    Returns:
        Confirmation with job parameters.
    """
    background_tasks.add_task(_run_generate_replay, engine, body.count, body.seed)
    logger.info("Generate replay triggered: count=%s seed=%s", body.count, body.seed)
    return GenerateResponse(
        status="started",
        count=body.count,
        seed=body.seed,
        message=f"Generating {body.count} bookings in background (seed={body.seed})",
    )
