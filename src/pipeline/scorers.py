"""Category scorers for the booking risk engine.

Five independent scorers, one per risk category, each turning
``RiskSignals`` plus a ``HistoricalContext`` into a ``CategoryScore``:

    email     -- disposable/free domains, unverified address, name mismatch.
    device    -- missing fingerprint, fingerprint shared across emails, automation.
    session   -- implausibly fast form completion, long idle gaps, no interaction.
    location  -- datacenter/proxy IPs, IP far from the pickup location.
    velocity  -- size of the relationship cluster and how much of it went bad.

Every triggered flag adds a fixed weight; the sum is capped at 100.  Factor
strings are emitted in a fixed order so identical inputs always produce
identical output.

The set of categories is closed.  ``evaluate_all`` runs the five scorers as
concurrent tasks, each under its own timeout, and never lets one scorer's
failure hide or block the others.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import math
import re
from dataclasses import dataclass, field
from enum import Enum

from src.config import Settings, settings as default_settings
from src.errors import ScorerTimeout, SignalMissing
from src.pipeline.clustering import RelatedBooking
from src.pipeline.signals import RiskSignals

logger = logging.getLogger(__name__)


class Category(str, Enum):
    """The five risk categories, in reporting order."""

    EMAIL = "email"
    SESSION = "session"
    DEVICE = "device"
    LOCATION = "location"
    VELOCITY = "velocity"


# Flag weights.
EMAIL_DISPOSABLE = 60
EMAIL_FREE_PROVIDER = 10
EMAIL_UNVERIFIED = 25
EMAIL_NAME_MISMATCH = 20
EMAIL_NUMERIC_LOCAL_PART = 15

DEVICE_MISSING_FINGERPRINT = 80
DEVICE_SHARED_ACROSS_EMAILS = 60
DEVICE_AUTOMATION_SIGNALS = 70
DEVICE_AUTOMATION_USER_AGENT = 40

SESSION_TOO_SHORT = 70
SESSION_IMPLAUSIBLY_FAST = 30
SESSION_LONG_IDLE = 40
SESSION_LOW_INTERACTION = 25
SESSION_COPY_PASTE = 10

LOCATION_HIGH_RISK_RANGE = 90
LOCATION_TOO_FAR = 50
LOCATION_CITY_MISMATCH = 30
LOCATION_NON_ROUTABLE = 20

VELOCITY_PER_RELATED = 20
VELOCITY_COUNT_CAP = 40
VELOCITY_CONTAGION_MAX = 60
# A lone bad neighbour may be a historical false positive.
VELOCITY_SINGLE_CONTAGION_CAP = 40

BAD_STATES = frozenset({"rejected", "fraudulent"})

_AUTOMATION_AGENT_MARKERS = (
    "headless",
    "webdriver",
    "selenium",
    "puppeteer",
    "playwright",
    "phantomjs",
)
_DIGIT_RUN = re.compile(r"\d{4,}")
_NAME_TOKEN = re.compile(r"[a-z]{3,}")

_EARTH_RADIUS_KM = 6371.0088


@dataclass(frozen=True, slots=True)
class CategoryScore:
    """Immutable result produced by a single category scorer.

    Attributes:
        category: One of the five ``Category`` values.
        score: Integer score in ``[0, 100]``.
        factors: Human-readable explanations, in a fixed order.
        available: ``False`` when the scorer timed out or failed and the
            score is a zero placeholder rather than a measurement.
    """

    category: Category
    score: int
    factors: tuple[str, ...] = ()
    available: bool = True

    def to_dict(self) -> dict[str, object]:
        return {
            "category": self.category.value,
            "score": self.score,
            "factors": list(self.factors),
            "available": self.available,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> CategoryScore:
        return cls(
            category=Category(data["category"]),
            score=int(data["score"]),  # type: ignore[arg-type]
            factors=tuple(data.get("factors") or ()),  # type: ignore[arg-type]
            available=bool(data.get("available", True)),
        )


@dataclass(frozen=True, slots=True)
class HistoricalContext:
    """What the scorers may know beyond the booking's own signals.

    Attributes:
        related: The booking's relationship cluster.
        device_email_count: Distinct emails seen with the booking's
            fingerprint inside the lookback window.
        lookback_days: Length of the lookback window.
    """

    related: tuple[RelatedBooking, ...] = ()
    device_email_count: int = 0
    lookback_days: int = 90


@dataclass(slots=True)
class _Flags:
    """Accumulates weighted flags for one scorer."""

    total: int = 0
    factors: list[str] = field(default_factory=list)

    def add(self, weight: int, factor: str) -> None:
        self.total += weight
        self.factors.append(factor)

    def result(self, category: Category) -> CategoryScore:
        return CategoryScore(
            category=category,
            score=max(0, min(self.total, 100)),
            factors=tuple(self.factors),
        )


def _haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    return 2 * _EARTH_RADIUS_KM * math.asin(math.sqrt(a))


class CategoryScorers:
    """Runs the five category scorers against one booking.

    Each ``score_*`` method is pure: its output depends only on the signals,
    the historical context and the settings, never on execution order.

    Usage::

        scorers = CategoryScorers()
        scores = await scorers.evaluate_all(signals, context)
    """

    def __init__(self, config: Settings | None = None) -> None:
        self.config = config or default_settings
        self.timeout_ms = self.config.SCORER_TIMEOUT_MS
        self._disposable = frozenset(d.lower() for d in self.config.DISPOSABLE_EMAIL_DOMAINS)
        self._free = frozenset(d.lower() for d in self.config.FREE_EMAIL_DOMAINS)
        self._risky_networks = [
            (ipaddress.ip_network(cidr, strict=False), label)
            for cidr, label in sorted(self.config.HIGH_RISK_IP_RANGES.items())
        ]

    async def score_email(
        self,
        signals: RiskSignals,
        context: HistoricalContext,
    ) -> CategoryScore:
        """Score the guest's email address.

        Raises:
            SignalMissing: When the booking carries no usable email.
        """
        if not signals.email or not signals.email_domain:
            raise SignalMissing("email")

        flags = _Flags()
        domain = signals.email_domain
        if domain in self._disposable:
            flags.add(EMAIL_DISPOSABLE, f"Disposable email domain ({domain})")
        elif domain in self._free:
            flags.add(EMAIL_FREE_PROVIDER, f"Free webmail domain ({domain})")

        if not signals.email_verified:
            flags.add(EMAIL_UNVERIFIED, "Email address not verified")

        local = signals.email_local_part or ""
        if signals.display_name:
            tokens = _NAME_TOKEN.findall(signals.display_name.lower())
            if tokens and not any(token in local for token in tokens):
                flags.add(
                    EMAIL_NAME_MISMATCH,
                    "Display name does not appear in email local part",
                )

        digits = sum(ch.isdigit() for ch in local)
        if _DIGIT_RUN.search(local) or (local and digits / len(local) > 0.5):
            flags.add(EMAIL_NUMERIC_LOCAL_PART, "Email local part is mostly numeric")

        logger.debug("email scorer: %s -> %d", signals.booking_id, flags.total)
        return flags.result(Category.EMAIL)

    async def score_device(
        self,
        signals: RiskSignals,
        context: HistoricalContext,
    ) -> CategoryScore:
        """Score the client device.

        A missing fingerprint means fingerprinting was blocked or spoofed and
        is treated as suspicious, not neutral.
        """
        flags = _Flags()
        if not signals.device_fingerprint:
            flags.add(DEVICE_MISSING_FINGERPRINT, "Device fingerprint missing")
        elif context.device_email_count >= self.config.DEVICE_REUSE_EMAIL_THRESHOLD:
            flags.add(
                DEVICE_SHARED_ACROSS_EMAILS,
                f"Device fingerprint used by {context.device_email_count} distinct "
                f"emails in the last {context.lookback_days} days",
            )

        if signals.automation_signals:
            flags.add(
                DEVICE_AUTOMATION_SIGNALS,
                "Automation signals reported: " + ", ".join(sorted(signals.automation_signals)),
            )

        agent = (signals.user_agent or "").lower()
        markers = [m for m in _AUTOMATION_AGENT_MARKERS if m in agent]
        if markers:
            flags.add(
                DEVICE_AUTOMATION_USER_AGENT,
                f"Automation user agent ({', '.join(markers)})",
            )

        logger.debug("device scorer: %s -> %d", signals.booking_id, flags.total)
        return flags.result(Category.DEVICE)

    async def score_session(
        self,
        signals: RiskSignals,
        context: HistoricalContext,
    ) -> CategoryScore:
        """Score how the booking form was filled in.

        Raises:
            SignalMissing: When no session duration was captured.
        """
        duration = signals.session_duration_seconds
        if duration is None:
            raise SignalMissing("session_duration_seconds")

        flags = _Flags()
        threshold = self.config.SHORT_SESSION_SECONDS
        if duration < threshold:
            flags.add(
                SESSION_TOO_SHORT,
                f"Booking completed in {duration:g}s (threshold {threshold}s)",
            )
            if duration < threshold / 2:
                flags.add(SESSION_IMPLAUSIBLY_FAST, "Form completion faster than a human can type")

        idle = signals.max_idle_seconds
        if idle is not None and idle > self.config.IDLE_GAP_SECONDS:
            flags.add(
                SESSION_LONG_IDLE,
                f"Idle gap of {idle:g}s suggests scripted replay",
            )

        interactions = signals.interaction_count
        if interactions is not None and interactions < self.config.MIN_SESSION_INTERACTIONS:
            flags.add(
                SESSION_LOW_INTERACTION,
                f"Only {interactions} form interaction(s) recorded",
            )

        if signals.copy_paste_used:
            flags.add(SESSION_COPY_PASTE, "Form fields filled by pasting")

        logger.debug("session scorer: %s -> %d", signals.booking_id, flags.total)
        return flags.result(Category.SESSION)

    async def score_location(
        self,
        signals: RiskSignals,
        context: HistoricalContext,
    ) -> CategoryScore:
        """Score the source IP against known risky networks and the pickup place.

        Raises:
            SignalMissing: When no usable source IP was captured.
        """
        if not signals.ip_address:
            raise SignalMissing("ip_address")

        flags = _Flags()
        address = ipaddress.ip_address(signals.ip_address)

        for network, label in self._risky_networks:
            if address.version == network.version and address in network:
                flags.add(
                    LOCATION_HIGH_RISK_RANGE,
                    f"Source IP {address} is in a high-risk range ({label})",
                )
                break

        if (
            signals.ip_latitude is not None
            and signals.ip_longitude is not None
            and signals.pickup_latitude is not None
            and signals.pickup_longitude is not None
        ):
            distance = _haversine_km(
                signals.ip_latitude,
                signals.ip_longitude,
                signals.pickup_latitude,
                signals.pickup_longitude,
            )
            limit = self.config.LOCATION_MAX_DISTANCE_KM
            if distance > limit:
                flags.add(
                    LOCATION_TOO_FAR,
                    f"IP location is {distance:.0f} km from pickup (limit {limit:g} km)",
                )
        elif (
            signals.ip_city
            and signals.pickup_city
            and signals.ip_city.casefold() != signals.pickup_city.casefold()
        ):
            flags.add(
                LOCATION_CITY_MISMATCH,
                f"IP city ({signals.ip_city}) differs from pickup city ({signals.pickup_city})",
            )

        if address.is_private or address.is_loopback or address.is_link_local:
            flags.add(LOCATION_NON_ROUTABLE, f"Non-routable source IP {address}")

        logger.debug("location scorer: %s -> %d", signals.booking_id, flags.total)
        return flags.result(Category.LOCATION)

    async def score_velocity(
        self,
        signals: RiskSignals,
        context: HistoricalContext,
    ) -> CategoryScore:
        """Score the relationship cluster.

        Grows with the number of related bookings and with the share of them
        already rejected or found fraudulent.  While only one related booking
        is bad, its contagion contribution is capped.
        """
        related = context.related
        if not related:
            return CategoryScore(
                category=Category.VELOCITY,
                score=0,
                factors=("No related bookings in lookback window",),
            )

        flags = _Flags()
        count = len(related)
        flags.add(
            min(VELOCITY_PER_RELATED * count, VELOCITY_COUNT_CAP),
            f"{count} related booking(s) in the last {context.lookback_days} days",
        )

        bad = [r for r in related if r.state in BAD_STATES]
        if bad:
            contagion = round(VELOCITY_CONTAGION_MAX * len(bad) / count)
            if len(bad) == 1:
                contagion = min(contagion, VELOCITY_SINGLE_CONTAGION_CAP)
            flags.add(
                contagion,
                f"{len(bad)} of {count} related booking(s) rejected or fraudulent: "
                + ", ".join(r.booking_id for r in bad),
            )

        logger.debug("velocity scorer: %s -> %d", signals.booking_id, flags.total)
        return flags.result(Category.VELOCITY)

    async def evaluate_all(
        self,
        signals: RiskSignals,
        context: HistoricalContext,
    ) -> list[CategoryScore]:
        """Run every scorer concurrently and collect one score per category.

        Args:
            signals: The booking's telemetry.
            context: Historical context shared by all scorers.

        Returns:
            Five ``CategoryScore`` objects in ``Category`` order.  Scorers
            that time out, fail, or lack a required signal contribute a zero
            score whose factors say so.
        """
        runners = {
            Category.EMAIL: self.score_email,
            Category.SESSION: self.score_session,
            Category.DEVICE: self.score_device,
            Category.LOCATION: self.score_location,
            Category.VELOCITY: self.score_velocity,
        }
        results = await asyncio.gather(
            *(
                self._run(category, scorer(signals, context))
                for category, scorer in runners.items()
            )
        )
        unavailable = [r.category.value for r in results if not r.available]
        if unavailable:
            logger.warning(
                "Booking %s scored with unavailable scorer(s): %s",
                signals.booking_id,
                unavailable,
            )
        return list(results)

    async def _run(self, category: Category, call) -> CategoryScore:  # type: ignore[no-untyped-def]
        try:
            return await asyncio.wait_for(call, timeout=self.timeout_ms / 1000)
        except asyncio.TimeoutError:
            error = ScorerTimeout(category.value, self.timeout_ms)
            logger.warning("%s", error)
            return CategoryScore(
                category=category,
                score=0,
                factors=(f"scorer unavailable: timed out after {self.timeout_ms} ms",),
                available=False,
            )
        except SignalMissing as exc:
            logger.info("%s scorer: %s", category.value, exc)
            return CategoryScore(
                category=category,
                score=0,
                factors=(f"signal missing: {exc.field} (reduced confidence)",),
            )
        except Exception as exc:
            logger.exception("%s scorer failed", category.value)
            return CategoryScore(
                category=category,
                score=0,
                factors=(f"scorer unavailable: {type(exc).__name__}",),
                available=False,
            )
