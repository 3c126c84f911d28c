"""Suspicious pattern detection across recent bookings.

Scans one ``SignalsSnapshot`` for groups of bookings an analyst should review
together rather than one at a time:

- ``relationship_cluster``: a connected component of the relationship graph,
  rated by the highest score among its members.
- ``device_cluster``: one fingerprint used by several identities.
- ``ip_velocity``: many bookings from one IP on different devices.
- ``email_pattern``: numbered variants of one mailbox name on a domain.
- ``geographic_anomaly``: one email booking pickups in different cities
  within a short time.
"""

from __future__ import annotations

import logging
import re
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from src.config import Settings, settings as default_settings
from src.pipeline.aggregator import RiskLevel, RiskPolicy
from src.pipeline.clustering import (
    JOIN_SIGNALS,
    RelationshipClusterer,
    SignalsSnapshot,
    join_keys,
)
from src.pipeline.signals import RiskSignals

logger = logging.getLogger(__name__)

SEVERITY_RANK: dict[RiskLevel, int] = {
    RiskLevel.LOW: 0,
    RiskLevel.MEDIUM: 1,
    RiskLevel.HIGH: 2,
    RiskLevel.CRITICAL: 3,
}

_DIGITS = re.compile(r"\d+")


class PatternType(str, Enum):
    RELATIONSHIP_CLUSTER = "relationship_cluster"
    DEVICE_CLUSTER = "device_cluster"
    IP_VELOCITY = "ip_velocity"
    EMAIL_PATTERN = "email_pattern"
    GEOGRAPHIC_ANOMALY = "geographic_anomaly"


@dataclass(frozen=True, slots=True)
class SuspiciousPattern:
    """A group of bookings that looks coordinated.

    Attributes:
        type: Which detector raised the pattern.
        severity: How urgently the group needs review.
        booking_ids: Members, sorted.
        description: One-line summary for the review queue.
        first_seen: Capture time of the earliest member.
        last_seen: Capture time of the latest member.
        emails: Distinct emails across the members.
        names: Distinct display names across the members, lower-cased.
        shared_signals: Join signals held by more than one member.
        max_score: Highest current overall score among the members.
    """

    type: PatternType
    severity: RiskLevel
    booking_ids: tuple[str, ...]
    description: str
    first_seen: datetime
    last_seen: datetime
    emails: tuple[str, ...] = ()
    names: tuple[str, ...] = ()
    shared_signals: tuple[str, ...] = ()
    max_score: float | None = None


def _distinct(values: Iterable[str | None]) -> tuple[str, ...]:
    return tuple(sorted({v for v in values if v}))


def _shared_signals(members: list[RiskSignals]) -> tuple[str, ...]:
    owners: dict[tuple[str, str], set[str]] = defaultdict(set)
    for signals in members:
        for key in join_keys(signals):
            owners[key].add(signals.booking_id)
    kinds = {kind for (kind, _), ids in owners.items() if len(ids) > 1}
    return tuple(name for name in JOIN_SIGNALS if name in kinds)


class SuspiciousPatternDetector:
    """Runs every pattern detector over a snapshot.

    Args:
        policy: Risk policy used to rate clusters by their members' scores.
        config: Settings holding the detector thresholds.
        clusterer: Clusterer providing the relationship components.
    """

    def __init__(
        self,
        policy: RiskPolicy,
        config: Settings | None = None,
        clusterer: RelationshipClusterer | None = None,
    ) -> None:
        self.policy = policy
        self.config = config or default_settings
        self.clusterer = clusterer or RelationshipClusterer()

    def detect(
        self,
        snapshot: SignalsSnapshot,
        min_severity: RiskLevel = RiskLevel.LOW,
    ) -> list[SuspiciousPattern]:
        """Every pattern at or above ``min_severity``, most severe first."""
        patterns = [
            *self._relationship_clusters(snapshot),
            *self._device_clusters(snapshot),
            *self._ip_velocity(snapshot),
            *self._email_patterns(snapshot),
            *self._geographic_anomalies(snapshot),
        ]
        floor = SEVERITY_RANK[min_severity]
        kept = [p for p in patterns if SEVERITY_RANK[p.severity] >= floor]
        kept.sort(
            key=lambda p: (
                -SEVERITY_RANK[p.severity],
                -len(p.booking_ids),
                p.type.value,
                p.booking_ids,
            )
        )
        logger.info(
            "Pattern scan over %d booking(s): %d pattern(s) at or above %s",
            len(snapshot.signals),
            len(kept),
            min_severity.value,
        )
        return kept

    def _pattern(
        self,
        snapshot: SignalsSnapshot,
        pattern_type: PatternType,
        severity: RiskLevel,
        members: list[RiskSignals],
        description: str,
    ) -> SuspiciousPattern:
        scores = [
            snapshot.scores[s.booking_id] for s in members if s.booking_id in snapshot.scores
        ]
        captured = [s.captured_at for s in members]
        return SuspiciousPattern(
            type=pattern_type,
            severity=severity,
            booking_ids=tuple(sorted(s.booking_id for s in members)),
            description=description,
            first_seen=min(captured),
            last_seen=max(captured),
            emails=_distinct(s.email for s in members),
            names=_distinct(s.display_name.lower() if s.display_name else None for s in members),
            shared_signals=_shared_signals(members),
            max_score=max(scores) if scores else None,
        )

    def _relationship_clusters(self, snapshot: SignalsSnapshot) -> list[SuspiciousPattern]:
        by_id = {s.booking_id: s for s in snapshot.signals}
        patterns = []
        for ids in self.clusterer.components(snapshot):
            members = [by_id[booking_id] for booking_id in ids]
            scores = [snapshot.scores[i] for i in ids if i in snapshot.scores]
            severity = self.policy.level_for(max(scores)) if scores else RiskLevel.LOW
            shared = _shared_signals(members)
            patterns.append(
                self._pattern(
                    snapshot,
                    PatternType.RELATIONSHIP_CLUSTER,
                    severity,
                    members,
                    f"{len(ids)} related bookings sharing {', '.join(shared)}",
                )
            )
        return patterns

    def _device_clusters(self, snapshot: SignalsSnapshot) -> list[SuspiciousPattern]:
        by_device: dict[str, list[RiskSignals]] = defaultdict(list)
        for signals in snapshot.signals:
            if signals.device_fingerprint:
                by_device[signals.device_fingerprint].append(signals)

        patterns = []
        for fingerprint, members in sorted(by_device.items()):
            if len(members) < 2:
                continue
            emails = _distinct(s.email for s in members)
            names = _distinct(s.display_name.lower() if s.display_name else None for s in members)
            if len(emails) < 2 and len(names) < 2:
                continue
            if len(emails) > self.config.PATTERN_DEVICE_HIGH_EMAILS:
                severity = RiskLevel.HIGH
            elif len(emails) > 1:
                severity = RiskLevel.MEDIUM
            else:
                severity = RiskLevel.LOW
            patterns.append(
                self._pattern(
                    snapshot,
                    PatternType.DEVICE_CLUSTER,
                    severity,
                    members,
                    f"Device {fingerprint} used by {len(emails)} emails "
                    f"and {len(names)} names",
                )
            )
        return patterns

    def _ip_velocity(self, snapshot: SignalsSnapshot) -> list[SuspiciousPattern]:
        by_ip: dict[str, list[RiskSignals]] = defaultdict(list)
        for signals in snapshot.signals:
            if signals.ip_address:
                by_ip[signals.ip_address].append(signals)

        patterns = []
        for ip, members in sorted(by_ip.items()):
            if len(members) < self.config.PATTERN_IP_MIN_BOOKINGS:
                continue
            devices = _distinct(s.device_fingerprint for s in members)
            if len(devices) < 2:
                continue
            severity = RiskLevel.HIGH if len(devices) > 3 else RiskLevel.MEDIUM
            patterns.append(
                self._pattern(
                    snapshot,
                    PatternType.IP_VELOCITY,
                    severity,
                    members,
                    f"{len(members)} bookings from {ip} using {len(devices)} devices",
                )
            )
        return patterns

    def _email_patterns(self, snapshot: SignalsSnapshot) -> list[SuspiciousPattern]:
        by_stem: dict[tuple[str, str], list[RiskSignals]] = defaultdict(list)
        for signals in snapshot.signals:
            local = signals.email_local_part
            if not local or not signals.email_domain or not _DIGITS.search(local):
                continue
            by_stem[(signals.email_domain, _DIGITS.sub("", local))].append(signals)

        patterns = []
        for (domain, stem), members in sorted(by_stem.items()):
            emails = _distinct(s.email for s in members)
            if len(emails) < self.config.PATTERN_EMAIL_MIN_BOOKINGS:
                continue
            numbers = sorted(
                {int(_DIGITS.search(email.partition("@")[0]).group()) for email in emails}
            )
            sequential = any(b - a == 1 for a, b in zip(numbers, numbers[1:]))
            patterns.append(
                self._pattern(
                    snapshot,
                    PatternType.EMAIL_PATTERN,
                    RiskLevel.HIGH if sequential else RiskLevel.MEDIUM,
                    members,
                    f"{'Sequential' if sequential else 'Numbered'} '{stem}' mailboxes "
                    f"on {domain} ({len(emails)} emails)",
                )
            )
        return patterns

    def _geographic_anomalies(self, snapshot: SignalsSnapshot) -> list[SuspiciousPattern]:
        window = timedelta(hours=self.config.PATTERN_TRAVEL_WINDOW_HOURS)
        by_email: dict[str, list[RiskSignals]] = defaultdict(list)
        for signals in snapshot.signals:
            if signals.email and signals.pickup_city:
                by_email[signals.email].append(signals)

        patterns = []
        for email, bookings in sorted(by_email.items()):
            bookings.sort(key=lambda s: s.captured_at)
            for prev, curr in zip(bookings, bookings[1:]):
                if prev.pickup_city.lower() == curr.pickup_city.lower():
                    continue
                gap = curr.captured_at - prev.captured_at
                if gap >= window:
                    continue
                patterns.append(
                    self._pattern(
                        snapshot,
                        PatternType.GEOGRAPHIC_ANOMALY,
                        RiskLevel.HIGH,
                        [prev, curr],
                        f"{email} booked pickups in {prev.pickup_city} and "
                        f"{curr.pickup_city} {gap.total_seconds() / 3600:.1f} hours apart",
                    )
                )
        return patterns
