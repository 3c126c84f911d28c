"""SQLAlchemy 2.0 async database layer.

This module provides:

- ``Base``: declarative base class shared by all ORM models.
- ``RiskSignalsRecord``: booking-time telemetry, one immutable row per booking.
- ``RiskAssessmentRecord``: append-only risk assessments, sequenced per booking.
- ``DispositionRecord``: append-only moderation decisions, sequenced per booking.
- ``LedgerEntry``: append-only audit trail of every state transition.
- ``FraudIndicator``: one row per factor raised by a scorer.
- ``BookingCancellation``: cancellation notices from the booking workflow.
- ``engine``: shared ``AsyncEngine`` instance.
- ``async_session``: ``async_sessionmaker`` factory bound to ``engine``.
- ``get_db``: async generator for use with FastAPI ``Depends``.
- ``create_tables``: coroutine that issues ``CREATE TABLE IF NOT EXISTS`` for all models.

SQLite is configured to run in WAL (Write-Ahead Logging) mode so that the
admin API can read assessments while new signals are being appended.

Nothing in this schema is ever updated in place.  The current assessment and
the active disposition are simply the rows with the highest ``sequence`` for
a booking; the ``(booking_id, sequence)`` unique constraints are what the
disposition check-and-set relies on to detect concurrent writers.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import date, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    event,
)
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from src.config import settings

# ---------------------------------------------------------------------------
# Engine & session factory
# ---------------------------------------------------------------------------


def _set_sqlite_wal(dbapi_connection: Any, connection_record: Any) -> None:  # noqa: ANN401
    """Enable WAL mode immediately after each new SQLite connection is created.

    Args:
        dbapi_connection: The raw DBAPI connection handed to the listener by
            SQLAlchemy's ``connect`` event.
        connection_record: Internal SQLAlchemy connection pool record
            (not used here but required by the event signature).
    """
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.close()


def build_engine(database_url: str) -> AsyncEngine:
    """Create an async engine, enabling WAL mode for SQLite backends."""
    new_engine = create_async_engine(database_url, echo=False, future=True)
    if "sqlite" in database_url:
        event.listen(new_engine.sync_engine, "connect", _set_sqlite_wal)
    return new_engine


def build_sessionmaker(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create a session factory with the project's session defaults."""
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
        autocommit=False,
    )


engine: AsyncEngine = build_engine(settings.DATABASE_URL)

async_session: async_sessionmaker[AsyncSession] = build_sessionmaker(engine)

# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all ORM models."""


# ---------------------------------------------------------------------------
# ORM Models
# ---------------------------------------------------------------------------


class RiskSignalsRecord(Base):
    """ORM model for the ``risk_signals`` table.

    One row per booking, written once at submission time.  The clusterer
    range-queries this table by ``captured_at`` and joins on the three
    indexed identity columns.
    """

    __tablename__ = "risk_signals"

    __table_args__ = (
        Index("ix_risk_signals_captured_at", "captured_at"),
        Index("ix_risk_signals_device_fingerprint", "device_fingerprint"),
        Index("ix_risk_signals_ip_address", "ip_address"),
        Index("ix_risk_signals_email", "email"),
    )

    booking_id: Mapped[str] = mapped_column(
        String,
        primary_key=True,
        doc="Booking identifier issued by the booking workflow.",
    )
    email: Mapped[str | None] = mapped_column(
        String,
        nullable=True,
        doc="Lower-cased guest email address.",
    )
    email_domain: Mapped[str | None] = mapped_column(String, nullable=True)
    display_name: Mapped[str | None] = mapped_column(String, nullable=True)
    email_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    phone: Mapped[str | None] = mapped_column(String, nullable=True)
    phone_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    device_fingerprint: Mapped[str | None] = mapped_column(
        String,
        nullable=True,
        doc="Opaque client fingerprint.  Null when fingerprinting was blocked.",
    )
    ip_address: Mapped[str | None] = mapped_column(
        String,
        nullable=True,
        doc="Normalised source IP address of the booking request.",
    )
    ip_city: Mapped[str | None] = mapped_column(String, nullable=True)
    ip_country: Mapped[str | None] = mapped_column(String, nullable=True)
    ip_latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    ip_longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    pickup_city: Mapped[str | None] = mapped_column(String, nullable=True)
    pickup_latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    pickup_longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    session_duration_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_idle_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    interaction_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    copy_paste_used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    automation_signals: Mapped[Any] = mapped_column(
        JSON,
        nullable=False,
        default=list,
        doc="Bot/automation markers reported by the client SDK.",
    )
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    date_of_birth: Mapped[date | None] = mapped_column(Date, nullable=True)
    missing_signals: Mapped[Any] = mapped_column(JSON, nullable=False, default=list)
    captured_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        doc="UTC timestamp at which the telemetry was captured.",
    )


class RiskAssessmentRecord(Base):
    """ORM model for the ``risk_assessments`` table.

    Recomputation inserts a new row with the next ``sequence``; the row with
    the highest sequence is the booking's current assessment.
    """

    __tablename__ = "risk_assessments"

    __table_args__ = (
        UniqueConstraint("booking_id", "sequence", name="uq_risk_assessments_booking_seq"),
        Index("ix_risk_assessments_computed_at", "computed_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[str] = mapped_column(
        String,
        ForeignKey("risk_signals.booking_id"),
        nullable=False,
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    overall_score: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        doc="Weighted overall score in the range [0, 100].",
    )
    risk_level: Mapped[str] = mapped_column(
        String,
        nullable=False,
        doc="One of: low, medium, high, critical.",
    )
    category_scores: Mapped[Any] = mapped_column(
        JSON,
        nullable=False,
        doc="List of {category, score, factors, available} objects in category order.",
    )
    related_bookings: Mapped[Any] = mapped_column(
        JSON,
        nullable=False,
        doc="List of {booking_id, score} objects for the relationship cluster.",
    )
    computed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class DispositionRecord(Base):
    """ORM model for the ``dispositions`` table.

    Valid ``state`` values:
        - ``pending_review``: initial state, awaiting automatic or human decision.
        - ``approved``: booking may proceed.
        - ``rejected``: terminal unless overridden.
        - ``flagged_for_review``: high risk, needs an analyst.
        - ``fraudulent``: critical risk corroborated by the cluster.
        - ``override_cleared``: an analyst cleared a rejection or fraud flag.
    """

    __tablename__ = "dispositions"

    __table_args__ = (
        UniqueConstraint("booking_id", "sequence", name="uq_dispositions_booking_seq"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[str] = mapped_column(
        String,
        ForeignKey("risk_signals.booking_id"),
        nullable=False,
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    state: Mapped[str] = mapped_column(String, nullable=False)
    assessment_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("risk_assessments.id"),
        nullable=True,
    )
    actor: Mapped[str | None] = mapped_column(
        String,
        nullable=True,
        doc="Admin identifier for human decisions.  Null for automatic ones.",
    )
    reason: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class LedgerEntry(Base):
    """ORM model for the ``ledger_entries`` table (insert-only audit trail)."""

    __tablename__ = "ledger_entries"

    __table_args__ = (
        Index("ix_ledger_entries_booking_id", "booking_id", "id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[str] = mapped_column(String, nullable=False)
    from_state: Mapped[str | None] = mapped_column(String, nullable=True)
    to_state: Mapped[str] = mapped_column(String, nullable=False)
    actor: Mapped[str | None] = mapped_column(String, nullable=True)
    reason: Mapped[str | None] = mapped_column(String, nullable=True)
    assessment_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class FraudIndicator(Base):
    """ORM model for the ``fraud_indicators`` table.

    Flattened copy of the factors raised by an assessment, so analysts can
    query "which bookings were flagged for X" without unpacking JSON.
    """

    __tablename__ = "fraud_indicators"

    __table_args__ = (
        Index("ix_fraud_indicators_booking_id", "booking_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[str] = mapped_column(String, nullable=False)
    assessment_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("risk_assessments.id"),
        nullable=False,
    )
    category: Mapped[str] = mapped_column(String, nullable=False)
    indicator: Mapped[str] = mapped_column(String, nullable=False)
    severity: Mapped[str] = mapped_column(
        String,
        nullable=False,
        doc="LOW, MEDIUM or HIGH, derived from the assessment's risk level.",
    )


class BookingCancellation(Base):
    """ORM model for the ``booking_cancellations`` table."""

    __tablename__ = "booking_cancellations"

    booking_id: Mapped[str] = mapped_column(String, primary_key=True)
    reason: Mapped[str | None] = mapped_column(String, nullable=True)
    cancelled_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


# ---------------------------------------------------------------------------
# Database lifecycle helpers
# ---------------------------------------------------------------------------


async def create_tables(bind: AsyncEngine | None = None) -> None:
    """Create all ORM-mapped tables if they do not already exist.

    Safe to call on every application startup because it is a no-op when
    tables already exist.

    Args:
        bind: Engine to create the tables on.  Defaults to the shared
            module-level ``engine``.
    """
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Async generator that yields a database session for each request.

    Designed for use with FastAPI's ``Depends`` dependency injection system.

    Yields:
        AsyncSession: A live SQLAlchemy async session bound to ``engine``.
    """
    async with async_session() as session:
        try:
            yield session
        finally:
            await session.close()
