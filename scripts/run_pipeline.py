#!/usr/bin/env python3
"""Booking Risk Engine replay runner.

CLI entry point that initialises the database, loads booking submissions
from a JSON replay file, and processes them through ``BookingRiskEngine``.

Usage::

    python scripts/run_pipeline.py [--data-file data/bookings.json] [--delay 0.01]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys

# ---------------------------------------------------------------------------
# Ensure the project root is on ``sys.path`` so that ``src.*`` imports work
# when this script is invoked directly from the command line.
# ---------------------------------------------------------------------------
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from src.config import settings  # noqa: E402
from src.models.database import create_tables  # noqa: E402
from src.pipeline.engine import BookingRiskEngine  # noqa: E402


def _configure_logging(verbose: bool = False) -> None:
    """Set up root logger with a clean console format."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


async def main() -> None:
    """Parse arguments, initialise the database, and replay the submissions."""
    parser = argparse.ArgumentParser(
        description="Replay booking submissions through the booking risk engine",
    )
    parser.add_argument(
        "--data-file",
        default="data/bookings.json",
        help="Path to the replay JSON file (default: data/bookings.json)",
    )
    parser.add_argument(
        "--delay",
        type=float,
        default=0.0,
        help="Delay in seconds between submissions to simulate real-time (default: 0)",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log individual rule decisions",
    )
    args = parser.parse_args()
    _configure_logging(args.verbose)

    print("=== Booking Risk Engine Replay ===")
    print("Initializing database...")
    await create_tables()

    print(f"Loading submissions from {args.data_file}...")
    engine = BookingRiskEngine()
    summary = await engine.replay_from_json(args.data_file, delay_seconds=args.delay)

    total: int = summary["total"]
    flagged: int = summary["flagged"]
    skipped: int = summary["skipped"]
    elapsed: float = summary["processing_time_seconds"]
    pct = (flagged / total * 100) if total > 0 else 0.0

    print("\n=== Replay Summary ===")
    print(f"Bookings Assessed:  {total}")
    print(f"Flagged / Fraud:    {flagged} ({pct:.1f}%)")
    print(f"Skipped Duplicates: {skipped}")
    print(f"Processing Time:    {elapsed:.2f}s")
    print(f"\nDatabase: {settings.DATABASE_URL}")
    print("Run 'uvicorn src.api.main:app --reload' to start the admin API")


if __name__ == "__main__":
    asyncio.run(main())
