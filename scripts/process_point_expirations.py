#!/usr/bin/env python3
"""Point Expirations — daily cron wrapper for SRO and GBRO.

Designed to run once a day shortly after midnight UTC:
    5 0 * * *

Runs, in order:
  - SRO   every due point (6 months, 12 months for NCNS)
  - GBRO  at most one cohort of two per user, once per calendar day

Usage:
    python scripts/process_point_expirations.py              # real run
    python scripts/process_point_expirations.py --dry-run    # report only
    python scripts/process_point_expirations.py --force      # rerun GBRO today
    python scripts/process_point_expirations.py --date 2025-03-06 --json

Requires .env at project root (DATABASE_URL, JWT_SECRET).
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import time
from datetime import datetime, timezone
from pathlib import Path

# ── Path setup ────────────────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from dotenv import load_dotenv

load_dotenv(PROJECT_ROOT / ".env")

from discipline.common.constants import DATE_FORMAT
from discipline.config import settings
from discipline.database import async_session_factory, engine
from discipline.points.expiration import ExpirationService
from discipline.points.schemas import ExpirationPassOptions, ExpirationPassSummary

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("process_point_expirations")


def _parse_date(value: str) -> datetime:
    try:
        parsed = datetime.strptime(value, DATE_FORMAT)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a YYYY-MM-DD date: {value!r}")
    return parsed.replace(tzinfo=timezone.utc)


async def run(now: datetime | None, options: ExpirationPassOptions) -> ExpirationPassSummary:
    async with async_session_factory() as session:
        try:
            summary = await ExpirationService.run_expiration_pass(
                session, now=now, options=options,
            )
            if options.dry_run:
                await session.rollback()
            else:
                await session.commit()
        except Exception:
            await session.rollback()
            raise
    await engine.dispose()
    return summary


def _print_summary(summary: ExpirationPassSummary, elapsed: float) -> None:
    print(f"""
{'=' * 60}
  POINT EXPIRATIONS — {summary.run_date}  (batch {summary.batch_id})
  Dry run       : {summary.dry_run}
  SRO expired   : {summary.sro_expired}
  GBRO expired  : {summary.gbro_expired}{'  (skipped)' if summary.gbro_skipped else ''}
  Dates updated : {summary.dates_updated}
  Failures      : {len(summary.failures)}
  Elapsed       : {elapsed:.1f}s
{'=' * 60}
""")
    for item in summary.expired:
        print(
            f"  {item.kind.value.upper():<5} {item.shift_date}  "
            f"{item.point_type.value:<26} {item.points:>5}  user={item.user_id}"
        )
    for failure in summary.failures:
        print(f"  FAILED [{failure.stage}] point={failure.point_id} user={failure.user_id}: {failure.error}")
    for warning in summary.warnings:
        print(f"  WARNING {warning}")


# ══════════════════════════════════════════════════════════════════════
# Main
# ══════════════════════════════════════════════════════════════════════

def main():
    parser = argparse.ArgumentParser(
        description="Apply Standard and Good Behavior Roll Offs to attendance points",
    )
    parser.add_argument("--dry-run", action="store_true", help="Report what would expire; write nothing")
    parser.add_argument("--force", action="store_true", help="Run GBRO even if it already ran today")
    parser.add_argument("--no-notify", action="store_true", help="Do not notify employees")
    parser.add_argument("--date", type=_parse_date, help="Evaluate as of this UTC date (YYYY-MM-DD)")
    parser.add_argument("--json", action="store_true", help="Print the summary as JSON")
    args = parser.parse_args()

    options = ExpirationPassOptions(
        dry_run=args.dry_run,
        force=args.force,
        notify=not args.no_notify,
    )

    start_time = time.time()
    try:
        summary = asyncio.run(run(args.date, options))
    except Exception:
        logger.exception("Expiration pass aborted")
        sys.exit(1)

    if args.json:
        print(summary.model_dump_json(indent=2))
    else:
        _print_summary(summary, time.time() - start_time)

    if summary.failures:
        sys.exit(1)


if __name__ == "__main__":
    main()
