#!/usr/bin/env python3
"""
Daily subscription maintenance, run once a day by cron or a systemd timer.
Usage: python run_daily_maintenance.py [YYYY-MM-DD]
"""

import asyncio
import logging
import sys
from datetime import date
from typing import Optional

from config import settings
from database import SessionLocal, create_db_and_tables
from renewal_service import RenewalService
from ses_service import get_mailer


async def run(today: Optional[date] = None):
    await create_db_and_tables()
    async with SessionLocal() as db:
        return await RenewalService.run_daily_maintenance(db, settings.policy(), get_mailer(), today)


def main():
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    today = None
    if len(sys.argv) > 1:
        try:
            today = date.fromisoformat(sys.argv[1])
        except ValueError:
            print("Usage: python run_daily_maintenance.py [YYYY-MM-DD]")
            sys.exit(1)

    report = asyncio.run(run(today))
    print(f"Renewals created: {report.renewals_created}")
    print(f"Marked overdue:   {report.marked_overdue}")
    print(f"Marked lapsed:    {report.marked_lapsed}")


if __name__ == "__main__":
    main()
