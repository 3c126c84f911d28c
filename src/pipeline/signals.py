"""Signal collection: raw booking telemetry -> canonical ``RiskSignals``.

The booking workflow posts whatever its client SDK managed to capture.  This
module normalises that payload once, at submission time, into an immutable
record that every scorer and the clusterer read from.  Normalisation rules:

- email is trimmed and lower-cased; the domain is derived from it
- a fingerprint of ``""`` or ``"unknown"`` means fingerprinting was blocked
  and is stored as ``None`` so it can never become a cluster join key
- the IP address is parsed and re-serialised; unparseable values become ``None``
- session timings arrive in milliseconds and are stored in seconds
"""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from src.models.database import RiskSignalsRecord
    from src.schemas.schemas import SignalsSubmission

logger = logging.getLogger(__name__)

_PLACEHOLDER_FINGERPRINTS = frozenset({"", "unknown", "none", "null", "undefined"})

# Fields a complete submission is expected to carry.  Absence is recorded,
# never fatal.
REQUIRED_SIGNALS: tuple[str, ...] = (
    "email",
    "device_fingerprint",
    "ip_address",
    "session_duration_seconds",
)


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes (as SQLite returns them) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True, slots=True)
class RiskSignals:
    """Canonical, immutable booking-time telemetry.

    Attributes:
        booking_id: Booking identifier issued by the booking workflow.
        email: Lower-cased email address, or ``None``.
        email_domain: Part after the ``@``, or ``None``.
        display_name: Name the guest typed on the booking form.
        email_verified: Whether the email was confirmed.
        phone: Phone number as submitted.
        phone_verified: Whether the phone was confirmed.
        device_fingerprint: Opaque device hash, ``None`` when blocked.
        ip_address: Normalised source IP, ``None`` when absent or invalid.
        ip_city: City derived from IP geolocation.
        ip_country: Country derived from IP geolocation.
        ip_latitude: Latitude derived from IP geolocation.
        ip_longitude: Longitude derived from IP geolocation.
        pickup_city: City where the car is collected.
        pickup_latitude: Latitude of the pickup location.
        pickup_longitude: Longitude of the pickup location.
        session_duration_seconds: Time spent on the booking form.
        max_idle_seconds: Longest gap between form interactions.
        interaction_count: Number of recorded mouse/keyboard interactions.
        copy_paste_used: Whether form fields were pasted into.
        automation_signals: Bot markers reported by the client SDK.
        user_agent: Raw ``User-Agent`` header.
        date_of_birth: Declared date of birth.
        captured_at: Aware UTC capture timestamp.
        missing_signals: Names of expected fields that were absent.
    """

    booking_id: str
    email: str | None = None
    email_domain: str | None = None
    display_name: str | None = None
    email_verified: bool = False
    phone: str | None = None
    phone_verified: bool = False
    device_fingerprint: str | None = None
    ip_address: str | None = None
    ip_city: str | None = None
    ip_country: str | None = None
    ip_latitude: float | None = None
    ip_longitude: float | None = None
    pickup_city: str | None = None
    pickup_latitude: float | None = None
    pickup_longitude: float | None = None
    session_duration_seconds: float | None = None
    max_idle_seconds: float | None = None
    interaction_count: int | None = None
    copy_paste_used: bool = False
    automation_signals: tuple[str, ...] = ()
    user_agent: str | None = None
    date_of_birth: date | None = None
    captured_at: datetime = field(default_factory=utcnow)
    missing_signals: tuple[str, ...] = ()

    @property
    def email_local_part(self) -> str | None:
        """Portion of the email before the ``@``."""
        if not self.email or "@" not in self.email:
            return None
        return self.email.rsplit("@", 1)[0]

    @classmethod
    def from_record(cls, record: RiskSignalsRecord) -> RiskSignals:
        """Rebuild signals from their persisted row."""
        return cls(
            booking_id=record.booking_id,
            email=record.email,
            email_domain=record.email_domain,
            display_name=record.display_name,
            email_verified=record.email_verified,
            phone=record.phone,
            phone_verified=record.phone_verified,
            device_fingerprint=record.device_fingerprint,
            ip_address=record.ip_address,
            ip_city=record.ip_city,
            ip_country=record.ip_country,
            ip_latitude=record.ip_latitude,
            ip_longitude=record.ip_longitude,
            pickup_city=record.pickup_city,
            pickup_latitude=record.pickup_latitude,
            pickup_longitude=record.pickup_longitude,
            session_duration_seconds=record.session_duration_seconds,
            max_idle_seconds=record.max_idle_seconds,
            interaction_count=record.interaction_count,
            copy_paste_used=record.copy_paste_used,
            automation_signals=tuple(record.automation_signals or ()),
            user_agent=record.user_agent,
            date_of_birth=record.date_of_birth,
            captured_at=as_utc(record.captured_at),
            missing_signals=tuple(record.missing_signals or ()),
        )

    def to_record_kwargs(self) -> dict[str, object]:
        """Column values for a new ``RiskSignalsRecord``."""
        return {
            "booking_id": self.booking_id,
            "email": self.email,
            "email_domain": self.email_domain,
            "display_name": self.display_name,
            "email_verified": self.email_verified,
            "phone": self.phone,
            "phone_verified": self.phone_verified,
            "device_fingerprint": self.device_fingerprint,
            "ip_address": self.ip_address,
            "ip_city": self.ip_city,
            "ip_country": self.ip_country,
            "ip_latitude": self.ip_latitude,
            "ip_longitude": self.ip_longitude,
            "pickup_city": self.pickup_city,
            "pickup_latitude": self.pickup_latitude,
            "pickup_longitude": self.pickup_longitude,
            "session_duration_seconds": self.session_duration_seconds,
            "max_idle_seconds": self.max_idle_seconds,
            "interaction_count": self.interaction_count,
            "copy_paste_used": self.copy_paste_used,
            "automation_signals": list(self.automation_signals),
            "user_agent": self.user_agent,
            "date_of_birth": self.date_of_birth,
            "captured_at": self.captured_at,
            "missing_signals": list(self.missing_signals),
        }


def normalize_email(raw: str | None) -> tuple[str | None, str | None]:
    """Return ``(email, domain)``; both ``None`` for blank or malformed input."""
    if raw is None:
        return None, None
    email = raw.strip().lower()
    if not email or "@" not in email:
        return None, None
    local, _, domain = email.rpartition("@")
    if not local or not domain:
        return None, None
    return email, domain


def normalize_fingerprint(raw: str | None) -> str | None:
    if raw is None:
        return None
    value = raw.strip()
    if value.lower() in _PLACEHOLDER_FINGERPRINTS:
        return None
    return value


def normalize_ip(raw: str | None) -> str | None:
    """Parse and re-serialise an IP address; invalid input becomes ``None``."""
    if raw is None or not raw.strip():
        return None
    # X-Forwarded-For style lists: the first hop is the client.
    candidate = raw.split(",")[0].strip()
    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError:
        logger.debug("Discarding unparseable IP address %r", raw)
        return None


def _clean_text(raw: str | None) -> str | None:
    if raw is None:
        return None
    value = raw.strip()
    return value or None


def _ms_to_seconds(value: float | None) -> float | None:
    if value is None:
        return None
    return round(max(value, 0.0) / 1000.0, 3)


class SignalCollector:
    """Turns a ``SignalsSubmission`` payload into ``RiskSignals``.

    Usage::

        collector = SignalCollector()
        signals = collector.collect("bk_123", payload)
    """

    def collect(
        self,
        booking_id: str,
        payload: SignalsSubmission,
        captured_at: datetime | None = None,
    ) -> RiskSignals:
        """Normalise one booking's telemetry.

        Args:
            booking_id: Booking identifier.
            payload: Validated submission from the booking workflow.
            captured_at: Capture time override; defaults to the payload's
                own timestamp, then to now.

        Returns:
            Immutable ``RiskSignals`` with ``missing_signals`` populated.
        """
        email, domain = normalize_email(payload.email)
        session = payload.session

        duration = _ms_to_seconds(session.duration_ms) if session else None
        max_idle = _ms_to_seconds(session.max_idle_ms) if session else None
        interactions = session.total_interactions if session else None
        copy_paste = bool(session.copy_paste_used) if session else False

        ts = captured_at or payload.captured_at or utcnow()

        values: dict[str, object] = {
            "email": email,
            "device_fingerprint": normalize_fingerprint(payload.device_fingerprint),
            "ip_address": normalize_ip(payload.ip_address),
            "session_duration_seconds": duration,
        }
        missing = tuple(name for name in REQUIRED_SIGNALS if values[name] is None)
        if missing:
            logger.info(
                "Booking %s submitted with missing signals: %s", booking_id, missing,
            )

        return RiskSignals(
            booking_id=booking_id,
            email=email,
            email_domain=domain,
            display_name=_clean_text(payload.display_name),
            email_verified=payload.email_verified,
            phone=_clean_text(payload.phone),
            phone_verified=payload.phone_verified,
            device_fingerprint=values["device_fingerprint"],  # type: ignore[arg-type]
            ip_address=values["ip_address"],  # type: ignore[arg-type]
            ip_city=_clean_text(payload.ip_city),
            ip_country=_clean_text(payload.ip_country),
            ip_latitude=payload.ip_latitude,
            ip_longitude=payload.ip_longitude,
            pickup_city=_clean_text(payload.pickup_city),
            pickup_latitude=payload.pickup_latitude,
            pickup_longitude=payload.pickup_longitude,
            session_duration_seconds=duration,
            max_idle_seconds=max_idle,
            interaction_count=interactions,
            copy_paste_used=copy_paste,
            automation_signals=tuple(
                s.strip() for s in payload.bot_signals if s and s.strip()
            ),
            user_agent=_clean_text(payload.user_agent),
            date_of_birth=payload.date_of_birth,
            captured_at=as_utc(ts),
            missing_signals=missing,
        )
