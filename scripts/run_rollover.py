#!/usr/bin/env python3
"""Run the task rollover engine from the command line (e.g. from cron).

Usage:
    python scripts/run_rollover.py                         # fleet run for all users
    python scripts/run_rollover.py --backfill 3 --days 2   # replay 2 missed days for user 3

Prints the JSON report. Uses DATABASE_URL like the server does.
"""
import os
import sys
proj_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if proj_root not in sys.path:
    sys.path.insert(0, proj_root)

import argparse
import asyncio
import json
import logging

logger = logging.getLogger(__name__)


async def run(backfill_user: int | None, days: int | None) -> int:
    from planner.db import init_db, async_session
    from planner.errors import ConfigurationError, StorageUnavailable
    from planner.store import build_engine, SqlUserDirectory

    await init_db()
    engine = build_engine(async_session)
    if backfill_user is None:
        report = await engine.run_for_all_users()
        print(report.model_dump_json(indent=2))
        return 0 if not report.failed_user_ids else 1

    user = await SqlUserDirectory(async_session).get_user(backfill_user)
    if user is None:
        print(f"user {backfill_user} not found", file=sys.stderr)
        return 2
    try:
        results = await engine.backfill(user.id, user.timezone, days)
    except (ValueError, ConfigurationError) as e:
        print(str(e), file=sys.stderr)
        return 2
    except StorageUnavailable as e:
        logger.error('backfill aborted: %s', e)
        return 1
    print(json.dumps([r.model_dump(mode='json') for r in results], indent=2))
    return 0


def main(argv=None):
    ap = argparse.ArgumentParser(description="Run daily task rollover")
    ap.add_argument('--backfill', type=int, metavar='USER_ID', help='backfill a single user instead of the fleet run')
    ap.add_argument('--days', type=int, default=1, help='number of missed days to replay (with --backfill)')
    args = ap.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s:%(name)s: %(message)s')
    return asyncio.run(run(args.backfill, args.days))


if __name__ == '__main__':
    raise SystemExit(main())
