"""Subscription expiration sweep worker.

Usage:
    python -m marketbill.workers.expiration_sweep --once
    python -m marketbill.workers.expiration_sweep --loop

For deployments that run the sweep outside the API process (set
SWEEP_ENABLED=0 on the API). Settings:
- SWEEP_INTERVAL_SECONDS (default 3600)
- EXPIRY_LOOKAHEAD_DAYS (default 3)
"""
from __future__ import annotations

import argparse
import time
from typing import List, Optional

from marketbill.core.config import settings
from marketbill.core.database import create_all_tables
from marketbill.core.logging import configure_logging
from marketbill.features.subscriptions.sweeper import run_sweep, SweepResult


def _run_once(lookahead_days: int) -> SweepResult:
    result = run_sweep(lookahead_days=lookahead_days)
    print(
        f"[sweep-worker] expiring={result.expiring_count} expired={result.expired_count}"
        + (" (skipped: run in progress)" if result.skipped else "")
    )
    return result


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Subscription expiration sweep worker")
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    parser.add_argument("--loop", action="store_true", help="Run in continuous loop")
    parser.add_argument(
        "--lookahead-days",
        type=int,
        default=settings.EXPIRY_LOOKAHEAD_DAYS,
        help="Window for expiring-soon reminders",
    )
    parser.add_argument(
        "--sleep",
        type=int,
        default=settings.SWEEP_INTERVAL_SECONDS,
        help="Seconds to sleep between sweeps (when --loop)",
    )
    args = parser.parse_args(argv)

    configure_logging(settings.ENV)
    create_all_tables()

    if args.once:
        _run_once(args.lookahead_days)
        return

    # Default to loop mode when not explicitly once
    print(f"[sweep-worker] Starting loop (sleep={args.sleep}s). CTRL+C to stop.")
    try:
        while True:
            _run_once(args.lookahead_days)
            time.sleep(args.sleep)
    except KeyboardInterrupt:
        print("[sweep-worker] Stopped")


if __name__ == "__main__":
    main()
