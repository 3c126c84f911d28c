#!/usr/bin/env python3
"""Generate synthetic booking telemetry for the booking risk engine demo.

Produces a replay file of car-rental bookings captured over the last two
weeks, with four embedded fraud patterns the category scorers and the
relationship clusterer are designed to catch.

Usage::

    python data/generate_data.py

Output:
    data/bookings.json  -- list of replay records
    (``{"booking_id", "signals", "review"}``).
"""

from __future__ import annotations

import json
import random
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Final

from faker import Faker

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

fake = Faker("en_US")

WINDOW_DAYS: Final[int] = 14

# (city, latitude, longitude)
PICKUP_CITIES: Final[list[tuple[str, float, float]]] = [
    ("San Francisco", 37.7749, -122.4194),
    ("Los Angeles", 34.0522, -118.2437),
    ("Seattle", 47.6062, -122.3321),
    ("Denver", 39.7392, -104.9903),
    ("Austin", 30.2672, -97.7431),
    ("Chicago", 41.8781, -87.6298),
    ("Miami", 25.7617, -80.1918),
    ("New York", 40.7128, -74.0060),
]

DISPOSABLE_DOMAINS: Final[list[str]] = [
    "tempmail.com",
    "mailinator.com",
    "guerrillamail.com",
    "10minutemail.com",
    "yopmail.com",
]

# Prefixes inside the configured high-risk ranges.
DATACENTER_PREFIXES: Final[list[tuple[str, str]]] = [
    ("3.15", "Ashburn"),
    ("34.80", "Council Bluffs"),
    ("104.131", "New York"),
    ("185.220.101", "Frankfurt"),
]

BROWSER_AGENTS: Final[list[str]] = [
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_4) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.4 Safari/605.1.15",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_4 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.4 Mobile/15E148 Safari/604.1",
]
HEADLESS_AGENT: Final[str] = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) HeadlessChrome/124.0.0.0 Safari/537.36"
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _booking_id() -> str:
    return f"bk_{uuid.uuid4().hex[:12]}"


def _random_timestamp(now: datetime) -> datetime:
    """Return a random capture time inside the last ``WINDOW_DAYS`` days."""
    offset = random.uniform(0, WINDOW_DAYS * 24 * 3600)
    return now - timedelta(seconds=offset)


def _fingerprint() -> str:
    return uuid.uuid4().hex[:16]


def _email_for(first: str, last: str, domain: str | None = None) -> str:
    """Build an email whose local part resembles the guest's name."""
    local = random.choice([
        f"{first}.{last}",
        f"{first}{last[0]}",
        f"{first[0]}{last}",
        f"{first}_{last}{random.randint(1, 99)}",
    ]).lower()
    return f"{local}@{domain or fake.free_email_domain()}"


def _jitter(value: float, spread: float = 0.05) -> float:
    return round(value + random.uniform(-spread, spread), 4)


def _build_booking(
    *,
    now: datetime,
    captured_at: datetime | None = None,
    email: str | None = None,
    display_name: str | None = None,
    email_verified: bool | None = None,
    device_fingerprint: str | None = ...,  # type: ignore[assignment]
    ip_address: str | None = None,
    ip_city: str | None = None,
    far_from_pickup: bool = False,
    duration_ms: float | None = None,
    max_idle_ms: float | None = None,
    total_interactions: int | None = None,
    copy_paste_used: bool | None = None,
    bot_signals: list[str] | None = None,
    user_agent: str | None = None,
    review: dict[str, str] | None = None,
) -> dict[str, object]:
    """Build a single replay record with defaults for unset fields.

    All keyword arguments override the randomly generated defaults of a
    legitimate-looking booking.

    Returns:
        A dictionary matching the ``ReplayRecord`` schema.
    """
    first, last = fake.first_name(), fake.last_name()
    city, lat, lon = random.choice(PICKUP_CITIES)

    if far_from_pickup:
        ip_city_name, ip_lat, ip_lon = random.choice(
            [c for c in PICKUP_CITIES if c[0] != city]
        )
        # Some pairs are close; push the IP across the ocean to be sure.
        ip_lat, ip_lon = ip_lat + 10.0, ip_lon + 60.0
    else:
        ip_city_name, ip_lat, ip_lon = city, _jitter(lat), _jitter(lon)

    dfp: str | None
    if device_fingerprint is ...:
        dfp = _fingerprint()
    else:
        dfp = device_fingerprint  # type: ignore[assignment]

    signals: dict[str, object] = {
        "email": email or _email_for(first, last),
        "display_name": display_name or f"{first} {last}",
        "email_verified": (
            email_verified if email_verified is not None else random.random() < 0.85
        ),
        "phone": fake.phone_number(),
        "phone_verified": random.random() < 0.7,
        "device_fingerprint": dfp,
        "ip_address": ip_address or fake.ipv4_public(),
        "ip_city": ip_city or ip_city_name,
        "ip_country": "US",
        "ip_latitude": round(ip_lat, 4),
        "ip_longitude": round(ip_lon, 4),
        "pickup_city": city,
        "pickup_latitude": lat,
        "pickup_longitude": lon,
        "session": {
            "session_id": uuid.uuid4().hex,
            "duration_ms": (
                duration_ms if duration_ms is not None
                else round(random.uniform(60_000, 600_000))
            ),
            "max_idle_ms": (
                max_idle_ms if max_idle_ms is not None
                else round(random.uniform(2_000, 120_000))
            ),
            "total_interactions": (
                total_interactions if total_interactions is not None
                else random.randint(20, 160)
            ),
            "copy_paste_used": (
                copy_paste_used if copy_paste_used is not None else random.random() < 0.1
            ),
        },
        "bot_signals": bot_signals or [],
        "user_agent": user_agent or random.choice(BROWSER_AGENTS),
        "date_of_birth": fake.date_of_birth(minimum_age=21, maximum_age=75).isoformat(),
        "captured_at": (captured_at or _random_timestamp(now)).isoformat(),
    }
    return {"booking_id": _booking_id(), "signals": signals, "review": review}


# ---------------------------------------------------------------------------
# Fraud pattern generators
# ---------------------------------------------------------------------------


def generate_device_rings(now: datetime) -> list[dict[str, object]]:
    """Pattern 1: Device rings -- 6 fingerprints, each behind 3-5 identities.

    Each ring books from one device with fresh names and emails inside a
    two-day span.  The first booking of every ring is rejected by an analyst,
    so later members are corroborated by a bad related booking.

    Returns:
        List of replay records (18-30 total).
    """
    bookings: list[dict[str, object]] = []

    for _ in range(6):
        fingerprint = _fingerprint()
        shared_ip = fake.ipv4_public()
        base_ts = _random_timestamp(now) - timedelta(days=2)
        members = random.randint(3, 5)

        for j in range(members):
            ts = min(base_ts + timedelta(hours=random.uniform(0, 48)), now)
            bookings.append(
                _build_booking(
                    now=now,
                    captured_at=ts,
                    device_fingerprint=fingerprint,
                    ip_address=shared_ip if random.random() < 0.5 else None,
                    email_verified=False,
                    duration_ms=round(random.uniform(15_000, 45_000)),
                    review=(
                        {"action": "reject", "actor": "analyst@replay", "reason": "device ring"}
                        if j == 0
                        else None
                    ),
                )
            )

    return bookings


def generate_disposable_emails(now: datetime) -> list[dict[str, object]]:
    """Pattern 2: Throwaway identities on disposable email domains.

    Returns:
        List of 10 replay records.
    """
    bookings: list[dict[str, object]] = []

    for _ in range(10):
        local = f"{fake.user_name()}{random.randint(1000, 99999)}"
        bookings.append(
            _build_booking(
                now=now,
                email=f"{local}@{random.choice(DISPOSABLE_DOMAINS)}",
                email_verified=False,
            )
        )

    return bookings


def generate_datacenter_bookings(now: datetime) -> list[dict[str, object]]:
    """Pattern 3: Bookings routed through cloud, VPS or Tor exit ranges.

    Returns:
        List of 10 replay records, half of them far from the pickup city.
    """
    bookings: list[dict[str, object]] = []

    for i in range(10):
        prefix, city = random.choice(DATACENTER_PREFIXES)
        octets = 4 - len(prefix.split("."))
        ip = ".".join([prefix, *(str(random.randint(1, 254)) for _ in range(octets))])
        bookings.append(
            _build_booking(
                now=now,
                ip_address=ip,
                ip_city=city,
                far_from_pickup=i % 2 == 0,
            )
        )

    return bookings


def generate_scripted_sessions(now: datetime) -> list[dict[str, object]]:
    """Pattern 4: Automated form submission.

    Sessions complete in a few seconds with almost no interaction, pasted
    fields, automation markers and headless user agents.  A third of them
    also block fingerprinting entirely.

    Returns:
        List of 10 replay records.
    """
    bookings: list[dict[str, object]] = []

    for i in range(10):
        bookings.append(
            _build_booking(
                now=now,
                device_fingerprint="unknown" if i % 3 == 0 else ...,  # type: ignore[arg-type]
                duration_ms=round(random.uniform(3_000, 12_000)),
                max_idle_ms=round(random.uniform(0, 500)),
                total_interactions=random.randint(0, 2),
                copy_paste_used=True,
                bot_signals=random.sample(["webdriver", "headless", "no_plugins"], k=2),
                user_agent=HEADLESS_AGENT,
            )
        )

    return bookings


# ---------------------------------------------------------------------------
# Clean booking generator
# ---------------------------------------------------------------------------


def generate_clean_bookings(now: datetime, count: int) -> list[dict[str, object]]:
    """Generate legitimate-looking bookings with natural variation.

    Args:
        now: Reference instant; captures fall in the preceding window.
        count: Number of clean bookings to produce.

    Returns:
        List of *count* replay records.
    """
    return [_build_booking(now=now) for _ in range(count)]


# ---------------------------------------------------------------------------
# Dataset assembly
# ---------------------------------------------------------------------------


def generate_dataset(total: int = 300, now: datetime | None = None) -> list[dict[str, object]]:
    """Assemble the full synthetic dataset with embedded fraud patterns.

    Generates fraud patterns first, then fills the remainder with clean
    bookings to reach *total*.  The final list is sorted chronologically by
    capture time so a replay sees history in the order it happened.

    Args:
        total: Minimum total number of bookings to produce.
        now: Reference instant, defaults to the current UTC time.

    Returns:
        A list of at least *total* replay records.
    """
    now = now or datetime.now(timezone.utc)
    bookings: list[dict[str, object]] = []

    bookings.extend(generate_device_rings(now))
    bookings.extend(generate_disposable_emails(now))
    bookings.extend(generate_datacenter_bookings(now))
    bookings.extend(generate_scripted_sessions(now))

    clean_needed = max(0, total - len(bookings))
    bookings.extend(generate_clean_bookings(now, clean_needed))

    bookings.sort(key=lambda b: str(b["signals"]["captured_at"]))  # type: ignore[index]
    return bookings


def _print_summary(bookings: list[dict[str, object]]) -> None:
    """Print a summary of the generated dataset to stdout."""
    total = len(bookings)
    signals = [b["signals"] for b in bookings]

    disposable = sum(
        1 for s in signals if str(s["email"]).rsplit("@", 1)[-1] in DISPOSABLE_DOMAINS  # type: ignore[index]
    )
    scripted = sum(1 for s in signals if s["bot_signals"])  # type: ignore[index]
    missing_fp = sum(1 for s in signals if s["device_fingerprint"] in (None, "unknown"))  # type: ignore[index]
    reviewed = sum(1 for b in bookings if b["review"])

    fingerprints: dict[str, int] = {}
    for s in signals:
        fp = s["device_fingerprint"]  # type: ignore[index]
        if fp and fp != "unknown":
            fingerprints[fp] = fingerprints.get(fp, 0) + 1
    shared = sum(1 for count in fingerprints.values() if count > 1)

    print(f"\n{'=' * 60}")
    print("  Synthetic Booking Telemetry Summary")
    print(f"{'=' * 60}")
    print(f"  Total bookings:          {total}")
    print(f"  Window:                  last {WINDOW_DAYS} days")
    print()
    print("  --- Fraud Pattern Indicators ---")
    print(f"    Shared fingerprints:   {shared}")
    print(f"    Disposable emails:     {disposable}")
    print(f"    Scripted sessions:     {scripted}")
    print(f"    Missing fingerprints:  {missing_fp}")
    print(f"    Analyst reviews:       {reviewed}")
    print(f"{'=' * 60}\n")


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Generate synthetic booking telemetry")
    parser.add_argument(
        "--count", type=int, default=300,
        help="Total number of bookings to generate (default: 300)",
    )
    parser.add_argument(
        "--seed", type=int, default=42,
        help="Random seed for reproducibility (default: 42)",
    )
    parser.add_argument(
        "--output", type=str, default=None,
        help="Output file path (default: data/bookings.json)",
    )
    args = parser.parse_args()

    random.seed(args.seed)
    Faker.seed(args.seed)

    print(f"Generating {args.count} bookings (seed={args.seed})...")
    dataset = generate_dataset(total=args.count)

    script_dir = Path(__file__).resolve().parent
    output_path = Path(args.output) if args.output else script_dir / "bookings.json"

    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(dataset, f, indent=2, default=str)

    print(f"Generated {len(dataset)} bookings -> {output_path}")
    _print_summary(dataset)
