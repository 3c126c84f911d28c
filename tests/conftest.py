"""
Pytest Configuration and Fixtures.

Provides a temporary SQLite database per test, a risk engine bound to it,
and factories for booking telemetry.
"""

import os
from datetime import timedelta
from typing import Any

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from src.config import Settings  # noqa: E402
from src.models.database import build_engine, build_sessionmaker, create_tables  # noqa: E402
from src.pipeline.engine import BookingRiskEngine  # noqa: E402
from src.pipeline.signals import RiskSignals, utcnow  # noqa: E402
from src.schemas.schemas import SignalsSubmission  # noqa: E402
from tests.factories import clean_payload  # noqa: E402


# ============================================================================
# DATABASE FIXTURES
# ============================================================================


@pytest.fixture
async def db_engine(tmp_path):
    """Fresh SQLite database file for one test."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_sessionmaker(db_engine)


# ============================================================================
# ENGINE FIXTURES
# ============================================================================


@pytest.fixture
def config() -> Settings:
    return Settings()


@pytest.fixture
def events() -> list[dict[str, Any]]:
    """Collects every event broadcast by the engine."""
    return []


@pytest.fixture
def risk_engine(session_factory, config, events) -> BookingRiskEngine:
    async def broadcast(message: dict[str, Any]) -> None:
        events.append(message)

    return BookingRiskEngine(
        session_factory=session_factory,
        config=config,
        broadcast_callback=broadcast,
    )


# ============================================================================
# TELEMETRY FACTORIES
# ============================================================================


@pytest.fixture
def make_submission():
    """Factory building a ``SignalsSubmission`` from clean defaults."""

    def _make(**overrides: Any) -> SignalsSubmission:
        return SignalsSubmission.model_validate(clean_payload(**overrides))

    return _make


@pytest.fixture
def make_signals():
    """Factory building ``RiskSignals`` directly, bypassing the collector."""

    def _make(booking_id: str, **overrides: Any) -> RiskSignals:
        values: dict[str, Any] = {
            "email": f"{booking_id}@example.com",
            "email_domain": "example.com",
            "device_fingerprint": f"fp-{booking_id}",
            "ip_address": None,
            "session_duration_seconds": 240.0,
            "captured_at": utcnow() - timedelta(hours=1),
        }
        values.update(overrides)
        return RiskSignals(booking_id=booking_id, **values)

    return _make
