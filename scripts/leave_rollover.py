#!/usr/bin/env python3
"""Leave Rollover — yearly balance lifecycle and scheduled jobs.

Subcommands:
  open-year    Create ANNUAL / OFFERED balances for a year from office defaults
  carry-over   Carry unused ANNUAL days into the next year (capped per office)
  seed-types   Insert the default leave-type catalogue for every office
  reminders    Remind approvers of requests pending too long

Every subcommand runs in one retried transaction; balance events are
written to the audit trail before the process exits.

Usage:
    python -m scripts.leave_rollover open-year --year 2027
    python -m scripts.leave_rollover carry-over --from-year 2026
    python -m scripts.leave_rollover seed-types
    python -m scripts.leave_rollover reminders

Requires in .env (project root):
    DATABASE_URL, JWT_SECRET
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import date

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

import leaveflow.common.audit  # noqa: F401
import leaveflow.notifications.models  # noqa: F401
from leaveflow.common.exceptions import AppException
from leaveflow.common.logging import setup_logging
from leaveflow.common.transactions import run_transaction
from leaveflow.core_hr.models import Office
from leaveflow.database import engine, get_session_factory
from leaveflow.leave.reminders import send_pending_reminders
from leaveflow.leave.seed import seed_leave_types
from leaveflow.leave.service import LeaveService
from leaveflow.notifications.dispatcher import NotificationRecorder, build_dispatcher

logger = logging.getLogger("leave_rollover")


async def _seed_all_offices(db: AsyncSession) -> int:
    offices = (await db.execute(select(Office))).scalars().all()
    for office in offices:
        await seed_leave_types(db, office)
    return len(offices)


async def _run(args: argparse.Namespace) -> str:
    session_factory = get_session_factory()
    dispatcher = build_dispatcher(get_session_factory)
    try:
        if args.command == "open-year":
            count = await run_transaction(
                session_factory, LeaveService.open_year, args.year,
                dispatcher=dispatcher,
            )
            return f"Opened {args.year} balances for {count} employee(s)"
        if args.command == "carry-over":
            count = await run_transaction(
                session_factory, LeaveService.carry_over_year, args.from_year,
                dispatcher=dispatcher,
            )
            return (
                f"Carried {args.from_year} balances into {args.from_year + 1} "
                f"for {count} employee(s)"
            )
        if args.command == "seed-types":
            count = await run_transaction(session_factory, _seed_all_offices)
            return f"Seeded leave types for {count} office(s)"

        result = await send_pending_reminders(
            session_factory, NotificationRecorder(get_session_factory),
        )
        return f"Reminders: found={result.found} sent={result.sent} errors={result.errors}"
    finally:
        await dispatcher.drain()
        await engine.dispose()


def main():
    parser = argparse.ArgumentParser(
        description="Leave Rollover — yearly balances and scheduled leave jobs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s open-year --year 2027          # open next year's balances
  %(prog)s carry-over --from-year 2026    # 2026 leftovers into 2027
  %(prog)s reminders                      # same job as POST /cron/reminders
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    open_year = sub.add_parser("open-year", help="Open yearly balances")
    open_year.add_argument("--year", type=int, default=date.today().year,
                           help="Balance year (default: current year)")

    carry = sub.add_parser("carry-over", help="Carry unused ANNUAL days forward")
    carry.add_argument("--from-year", type=int, default=date.today().year - 1,
                       help="Source year (default: last year)")

    sub.add_parser("seed-types", help="Seed default leave types per office")
    sub.add_parser("reminders", help="Send pending-approval reminders")

    args = parser.parse_args()
    setup_logging()

    try:
        summary = asyncio.run(_run(args))
    except AppException as exc:
        logger.error("%s failed: %s", args.command, exc.detail)
        sys.exit(1)

    logger.info(summary)


if __name__ == "__main__":
    main()
