#!/usr/bin/env python3
"""Point maintenance — operator repair tools for the attendance point table.

Usage:
    python scripts/manage_points.py stats
    python scripts/manage_points.py initialize-gbro-dates --dry-run
    python scripts/manage_points.py fix-gbro-dates
    python scripts/manage_points.py recompute-sro-dates
    python scripts/manage_points.py reset-expired --user <uuid> --from 2025-01-01 --to 2025-06-30
    python scripts/manage_points.py remove-duplicates --dry-run
    python scripts/manage_points.py recalculate-gbro --user <uuid>

Every command except ``stats`` accepts --dry-run, which rolls the session
back instead of committing.

Requires .env at project root (DATABASE_URL, JWT_SECRET).
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import uuid
from datetime import date, datetime, timezone
from pathlib import Path

# ── Path setup ────────────────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from dotenv import load_dotenv

load_dotenv(PROJECT_ROOT / ".env")

from discipline.common.constants import DATE_FORMAT
from discipline.config import settings
from discipline.database import async_session_factory, engine
from discipline.points.maintenance import MaintenanceService

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("manage_points")

COMMANDS = [
    "stats",
    "initialize-gbro-dates",
    "fix-gbro-dates",
    "recompute-sro-dates",
    "reset-expired",
    "remove-duplicates",
    "recalculate-gbro",
]


def _parse_date(value: str) -> date:
    try:
        return datetime.strptime(value, DATE_FORMAT).date()
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a YYYY-MM-DD date: {value!r}")


async def _dispatch(session, args, now: datetime):
    dry_run = args.dry_run
    if args.command == "stats":
        return await MaintenanceService.management_stats(session, now)
    if args.command == "initialize-gbro-dates":
        return await MaintenanceService.initialize_gbro_dates(session, now, dry_run=dry_run)
    if args.command == "fix-gbro-dates":
        return await MaintenanceService.fix_gbro_dates(session, now, dry_run=dry_run)
    if args.command == "recompute-sro-dates":
        return await MaintenanceService.recompute_sro_dates(session, dry_run=dry_run)
    if args.command == "reset-expired":
        return await MaintenanceService.reset_expired(
            session, now,
            user_ids=args.user or None,
            date_from=args.date_from,
            date_to=args.date_to,
            dry_run=dry_run,
        )
    if args.command == "remove-duplicates":
        return await MaintenanceService.remove_duplicates(session, dry_run=dry_run)
    if args.command == "recalculate-gbro":
        results = []
        for user_id in args.user:
            results.append(
                await MaintenanceService.recalculate_user_gbro(
                    session, user_id, now, dry_run=dry_run,
                )
            )
        return results
    raise ValueError(f"Unknown command: {args.command}")


async def run(args) -> object:
    now = datetime.now(timezone.utc)
    async with async_session_factory() as session:
        try:
            result = await _dispatch(session, args, now)
            if args.dry_run or args.command == "stats":
                await session.rollback()
            else:
                await session.commit()
        except Exception:
            await session.rollback()
            raise
    await engine.dispose()
    return result


def _dump(result) -> str:
    if isinstance(result, list):
        return json.dumps([r.model_dump(mode="json") for r in result], indent=2)
    return result.model_dump_json(indent=2)


# ══════════════════════════════════════════════════════════════════════
# Main
# ══════════════════════════════════════════════════════════════════════

def main():
    parser = argparse.ArgumentParser(description="Attendance point maintenance tools")
    parser.add_argument("command", choices=COMMANDS)
    parser.add_argument("--user", type=uuid.UUID, action="append", default=[],
                        help="Restrict to this user (repeatable)")
    parser.add_argument("--from", dest="date_from", type=_parse_date,
                        help="Earliest shift date (reset-expired)")
    parser.add_argument("--to", dest="date_to", type=_parse_date,
                        help="Latest shift date (reset-expired)")
    parser.add_argument("--dry-run", action="store_true", help="Report changes; roll back")
    args = parser.parse_args()

    if args.command == "recalculate-gbro" and not args.user:
        parser.error("recalculate-gbro requires at least one --user")

    try:
        result = asyncio.run(run(args))
    except Exception:
        logger.exception("%s failed", args.command)
        sys.exit(1)

    print(_dump(result))


if __name__ == "__main__":
    main()
