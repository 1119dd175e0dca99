"""
Operator script: retire (drop or detach) one expired partition.

    python scripts/retire_partition.py --list
    python scripts/retire_partition.py 2023_Q1 --mode detach

Retirement is irreversible and never runs from cron.
"""

import argparse
import asyncio
import sys
from datetime import date

from partkeeper import database as db
from partkeeper.config import get_settings
from partkeeper.exceptions import PartitionError
from partkeeper.log import configure_logging
from partkeeper.models.schemas import RetireMode
from partkeeper.services.lifecycle import PartitionLifecycleManager, default_cutoff


async def retire_partition(name: str | None, mode: RetireMode, as_of: date, cutoff: date, dsn: str | None) -> int:
    await db.init_db(dsn)
    manager = PartitionLifecycleManager.from_settings(get_settings())

    try:
        if name is None:
            expired = await manager.expired_boundaries(min(cutoff, as_of))
            print(f"{len(expired)} partitions ended on or before {min(cutoff, as_of)}")
            for boundary in expired:
                print(f"  - {boundary.name}  [{boundary.start} → {boundary.end})  table={boundary.table}")
            return 0

        result = await manager.retire(name, mode, as_of=as_of, retention_cutoff=cutoff)
        if result.archived_as:
            print(f"Detached {result.boundary.name} → {result.archived_as}")
        else:
            print(f"Dropped {result.boundary.name}")
        return 0
    except PartitionError as e:
        print(f"Retire failed: {e.message}", file=sys.stderr)
        return 1
    finally:
        await db.close_db()


def main() -> int:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Retire an expired range partition.")
    parser.add_argument("name", nargs="?", help="boundary name, e.g. 2023_Q1")
    parser.add_argument("--list", action="store_true", help="only list partitions eligible for retirement")
    parser.add_argument("--mode", choices=[m.value for m in RetireMode], default=settings.RETIRE_MODE)
    parser.add_argument("--as-of", type=date.fromisoformat, default=date.today())
    parser.add_argument("--cutoff", type=date.fromisoformat, default=None, help="retention cutoff (default: as-of minus RETENTION_DAYS)")
    parser.add_argument("--dsn", default=None, help="override DATABASE_URL")
    args = parser.parse_args()

    if not args.list and not args.name:
        parser.error("a boundary name is required unless --list is given")

    configure_logging(settings.LOG_LEVEL)
    cutoff = args.cutoff or default_cutoff(args.as_of, settings.RETENTION_DAYS)
    name = None if args.list else args.name
    return asyncio.run(retire_partition(name, RetireMode(args.mode), args.as_of, cutoff, args.dsn))


if __name__ == "__main__":
    sys.exit(main())
