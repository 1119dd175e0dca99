"""
Cron script: create the partitions needed for the look-ahead horizon.
Run daily: 0 1 * * * python scripts/ensure_partitions.py

Idempotent: a run that finds full coverage creates nothing.
"""

import argparse
import asyncio
import sys
from datetime import date, timedelta

import structlog

from partkeeper import database as db
from partkeeper.config import get_settings
from partkeeper.exceptions import BoundaryConflict, StorageError
from partkeeper.log import configure_logging
from partkeeper.services.lifecycle import PartitionLifecycleManager

logger = structlog.get_logger("ensure_partitions")


async def ensure_partitions(as_of: date, horizon_days: int, ensure_default: bool, dsn: str | None) -> int:
    settings = get_settings()
    await db.init_db(dsn)
    manager = PartitionLifecycleManager.from_settings(settings)

    try:
        await manager.verify_table()
        result = await manager.ensure_coverage(
            as_of,
            timedelta(days=horizon_days),
            interval_width=settings.PARTITION_INTERVAL,
            epoch=settings.PARTITION_EPOCH,
            ensure_default=ensure_default,
        )
        for boundary in result.created:
            print(f"Created partition: {boundary.name} [{boundary.start} → {boundary.end})")
        if result.is_noop:
            print("Coverage already satisfied")
        return 0
    except BoundaryConflict as e:
        print(f"Boundary conflict: {e.message}", file=sys.stderr)
        return 2
    except StorageError as e:
        print(f"Error creating partitions: {e.message}", file=sys.stderr)
        return 1
    finally:
        await db.close_db()


def main() -> int:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Create missing range partitions ahead of need.")
    parser.add_argument("--as-of", type=date.fromisoformat, default=date.today())
    parser.add_argument("--horizon-days", type=int, default=settings.PARTITION_HORIZON_DAYS)
    parser.add_argument("--no-default", action="store_true", help="do not create the catch-all partition")
    parser.add_argument("--dsn", default=None, help="override DATABASE_URL")
    args = parser.parse_args()

    if args.horizon_days < 0:
        parser.error("--horizon-days must not be negative")

    configure_logging(settings.LOG_LEVEL)
    ensure_default = settings.CREATE_DEFAULT_PARTITION and not args.no_default
    return asyncio.run(ensure_partitions(args.as_of, args.horizon_days, ensure_default, args.dsn))


if __name__ == "__main__":
    sys.exit(main())
