"""
Repair media left inconsistent by half-completed uploads, renames and deletes.
"""

from __future__ import annotations

import argparse
import logging
import random
import sys
import time
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tripkit.config import get_settings
from tripkit.gateway import build_gateway
from tripkit.orphans import reconcile_orphans

logger = logging.getLogger(__name__)


def main() -> int:
    parser = argparse.ArgumentParser(description="Orphaned media reconciliation sweep")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List open ledger entries without repairing them",
    )
    parser.add_argument(
        "--interval-seconds",
        type=int,
        default=0,
        help="Repeat the sweep every N seconds (0 runs once)",
    )
    parser.add_argument(
        "--jitter-seconds",
        type=int,
        default=30,
        help="Max random jitter added to sleep",
    )
    args = parser.parse_args()

    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
        datefmt="%m/%d/%Y %I:%M:%S %p",
    )

    gateway = build_gateway(settings)
    try:
        while True:
            report = reconcile_orphans(gateway, dry_run=args.dry_run)
            logger.info(
                "Sweep complete: %d resolved, %d still open",
                len(report.resolved),
                len(report.still_open),
            )
            if args.interval_seconds <= 0:
                return 1 if report.still_open and not args.dry_run else 0
            sleep_for = args.interval_seconds + random.uniform(0, args.jitter_seconds)
            logger.info("Sleeping for %.1fs", sleep_for)
            time.sleep(sleep_for)
    finally:
        gateway.close()


if __name__ == "__main__":
    raise SystemExit(main())
