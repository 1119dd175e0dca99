"""
PostgreSQL partition catalog, the only place that issues partition DDL.

Reads the live partition list from ``pg_inherits`` on every call and
creates, drops or detaches child tables of one range-partitioned parent.
Driver errors are translated into ``StorageError`` (or ``BoundaryExists``
for a relation-name collision).
"""

from __future__ import annotations

import re
from contextlib import contextmanager
from datetime import date
from typing import Iterator, Optional

import asyncpg
import structlog

from partkeeper import database as db
from partkeeper.config import IDENTIFIER_RE, Settings
from partkeeper.exceptions import BoundaryExists, StorageError
from partkeeper.models.schemas import CatalogSnapshot, PartitionBoundary, PartitionStats
from partkeeper.services.boundaries import DEFAULT_BOUNDARY_NAME

logger = structlog.get_logger(__name__)

# pg_get_expr() output for a single-column range partition,
# e.g. FOR VALUES FROM ('2024-01-01') TO ('2024-04-01')
_RANGE_BOUND_RE = re.compile(r"^FOR VALUES FROM \('([^']+)'\) TO \('([^']+)'\)$", re.IGNORECASE)

_LIST_PARTITIONS_SQL = """
    SELECT c.relname AS name,
           pg_get_expr(c.relpartbound, c.oid) AS bound
    FROM pg_inherits i
    JOIN pg_class c ON c.oid = i.inhrelid
    WHERE i.inhparent = $1::regclass
    ORDER BY c.relname
"""

_PARTITION_STATS_SQL = """
    SELECT c.relname AS name,
           pg_total_relation_size(c.oid) AS total_bytes,
           COALESCE(s.n_live_tup, 0) AS live_rows,
           COALESCE(s.seq_scan, 0) AS seq_scan,
           COALESCE(s.idx_scan, 0) AS idx_scan
    FROM pg_inherits i
    JOIN pg_class c ON c.oid = i.inhrelid
    LEFT JOIN pg_stat_user_tables s ON s.relid = c.oid
    WHERE i.inhparent = $1::regclass
    ORDER BY c.relname
"""

_PARENT_INFO_SQL = """
    SELECT pt.partstrat AS strategy,
           pt.partnatts AS key_count,
           a.attname AS key_column
    FROM pg_partitioned_table pt
    LEFT JOIN pg_attribute a
           ON a.attrelid = pt.partrelid AND a.attnum = pt.partattrs[0]
    WHERE pt.partrelid = $1::regclass
"""


def _parse_bound_date(literal: str) -> date:
    # Timestamp columns render as '2024-01-01 00:00:00[+00]'; keep the date part.
    return date.fromisoformat(literal[:10])


@contextmanager
def _storage_errors(operation: str, **context) -> Iterator[None]:
    try:
        yield
    except asyncpg.DuplicateTableError:
        raise BoundaryExists(context.get("name", "?"))
    except (asyncpg.PostgresError, OSError) as e:
        logger.error("partition_storage_error", operation=operation, error=str(e), **context)
        raise StorageError(f"{operation} failed: {e}", {"operation": operation, **context}) from e


class PostgresPartitionStore:
    """Partition catalog of ``{schema}.{table}``."""

    def __init__(self, schema: str, table: str, key: Optional[str] = None, prefix: Optional[str] = None):
        for ident in (schema, table, key or "_", prefix or "_"):
            if not IDENTIFIER_RE.match(ident):
                raise ValueError(f"'{ident}' is not a plain lower-case SQL identifier")
        self.schema = schema
        self.table = table
        self.key = key
        self.prefix = prefix or table

    @classmethod
    def from_settings(cls, settings: Settings) -> PostgresPartitionStore:
        return cls(
            settings.PARTITION_SCHEMA,
            settings.PARTITION_TABLE,
            settings.PARTITION_KEY,
            prefix=settings.PARTITION_PREFIX,
        )

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.table}"

    # ── Naming ───────────────────────────────────────────────────

    def physical_name(self, name: str) -> str:
        relname = f"{self.prefix}_{name}".lower()
        if not IDENTIFIER_RE.match(relname):
            raise ValueError(f"Boundary name '{name}' does not form a valid table name")
        return relname

    def boundary_name(self, relname: str) -> str:
        """Canonical boundary name of a child table (``booking_2024_q1`` -> ``2024_Q1``)."""
        prefix = f"{self.prefix}_"
        if relname.startswith(prefix):
            return relname[len(prefix):].upper()
        return relname.upper()

    # ── Catalog reads ────────────────────────────────────────────

    async def list_partitions(self) -> CatalogSnapshot:
        with _storage_errors("list_partitions", table=self.qualified_name):
            rows = await db.fetch_all(_LIST_PARTITIONS_SQL, self.qualified_name)

        boundaries: list[PartitionBoundary] = []
        default_table: Optional[str] = None
        for row in rows:
            bound = (row["bound"] or "").strip()
            if bound.upper() == "DEFAULT":
                default_table = row["name"]
                continue
            match = _RANGE_BOUND_RE.match(bound)
            if not match:
                logger.warning("partition_bound_unparsed", partition=row["name"], bound=bound)
                continue
            boundaries.append(
                PartitionBoundary(
                    name=self.boundary_name(row["name"]),
                    start=_parse_bound_date(match.group(1)),
                    end=_parse_bound_date(match.group(2)),
                    table=row["name"],
                )
            )
        boundaries.sort(key=lambda b: b.start)
        return CatalogSnapshot(
            boundaries=boundaries,
            has_default=default_table is not None,
            default_table=default_table,
        )

    async def partition_stats(self) -> list[PartitionStats]:
        with _storage_errors("partition_stats", table=self.qualified_name):
            rows = await db.fetch_all(_PARTITION_STATS_SQL, self.qualified_name)
        return [
            PartitionStats(
                name=self.boundary_name(row["name"]),
                table=row["name"],
                total_bytes=row["total_bytes"],
                live_rows=row["live_rows"],
                seq_scan=row["seq_scan"],
                idx_scan=row["idx_scan"],
            )
            for row in rows
        ]

    async def verify_parent(self) -> None:
        """Check the parent is RANGE-partitioned on a single column, ``self.key`` when set."""
        with _storage_errors("verify_parent", table=self.qualified_name):
            row = await db.fetch_one(_PARENT_INFO_SQL, self.qualified_name)
        if row is None:
            raise StorageError(f"{self.qualified_name} is not a partitioned table", {"table": self.qualified_name})
        if row["strategy"] != "r" or row["key_count"] != 1:
            raise StorageError(
                f"{self.qualified_name} must be RANGE partitioned on one column",
                {"table": self.qualified_name, "strategy": row["strategy"]},
            )
        if self.key and row["key_column"] != self.key:
            raise StorageError(
                f"{self.qualified_name} is partitioned on {row['key_column']}, expected {self.key}",
                {"table": self.qualified_name, "key_column": row["key_column"]},
            )

    # ── DDL ──────────────────────────────────────────────────────

    async def create_partition(self, boundary: PartitionBoundary, default_table: Optional[str] = None) -> str:
        """
        CREATE without IF NOT EXISTS: a name collision must surface.

        With a default partition present (``default_table``), PostgreSQL
        refuses the new range if the default already holds rows in it. The
        default is then detached, the range created, its rows moved over and
        the default re-attached, all in one transaction.
        """
        relname = self.physical_name(boundary.name)
        sql = (
            f"CREATE TABLE {self.schema}.{relname} PARTITION OF {self.qualified_name} "
            f"FOR VALUES FROM ('{boundary.start.isoformat()}') TO ('{boundary.end.isoformat()}')"
        )
        moved = 0
        with _storage_errors("create_partition", name=boundary.name):
            if default_table and self.key and IDENTIFIER_RE.match(default_table):
                moved = await self._create_beside_default(sql, boundary, default_table)
            else:
                await db.execute(sql)
        logger.info(
            "partition_created",
            partition=relname,
            start=boundary.start.isoformat(),
            end=boundary.end.isoformat(),
            rows_moved=moved,
        )
        return relname

    async def _create_beside_default(self, create_sql: str, boundary: PartitionBoundary, default_table: str) -> int:
        default_qualified = f"{self.schema}.{default_table}"
        async with db.Transaction() as conn:
            await conn.execute(f"ALTER TABLE {self.qualified_name} DETACH PARTITION {default_qualified}")
            await conn.execute(create_sql)
            status = await conn.execute(
                f"WITH moved AS ("
                f"DELETE FROM {default_qualified} WHERE {self.key} >= $1 AND {self.key} < $2 RETURNING *"
                f") INSERT INTO {self.qualified_name} SELECT * FROM moved",
                boundary.start,
                boundary.end,
            )
            await conn.execute(f"ALTER TABLE {self.qualified_name} ATTACH PARTITION {default_qualified} DEFAULT")
        # Status tag is "INSERT 0 <rows>".
        moved = int(status.rsplit(" ", 1)[-1]) if status else 0
        if moved:
            logger.info("default_rows_moved", partition=boundary.name, default=default_table, rows=moved)
        return moved

    async def create_default_partition(self) -> str:
        relname = self.physical_name(DEFAULT_BOUNDARY_NAME)
        with _storage_errors("create_default_partition", name=DEFAULT_BOUNDARY_NAME):
            await db.execute(f"CREATE TABLE {self.schema}.{relname} PARTITION OF {self.qualified_name} DEFAULT")
        logger.info("default_partition_created", partition=relname)
        return relname

    async def drop_partition(self, boundary: PartitionBoundary) -> None:
        relname = boundary.table or self.physical_name(boundary.name)
        with _storage_errors("drop_partition", name=boundary.name):
            await db.execute(f"DROP TABLE {self.schema}.{relname}")
        logger.info("partition_dropped", partition=relname)

    async def detach_partition(self, boundary: PartitionBoundary, archive_schema: Optional[str] = None) -> str:
        """Detach and optionally move into ``archive_schema``; returns the archived table's name."""
        relname = boundary.table or self.physical_name(boundary.name)
        if archive_schema is not None and not IDENTIFIER_RE.match(archive_schema):
            raise ValueError(f"'{archive_schema}' is not a plain lower-case SQL identifier")

        with _storage_errors("detach_partition", name=boundary.name):
            async with db.Transaction() as conn:
                await conn.execute(f"ALTER TABLE {self.qualified_name} DETACH PARTITION {self.schema}.{relname}")
                if archive_schema:
                    await conn.execute(f"ALTER TABLE {self.schema}.{relname} SET SCHEMA {archive_schema}")

        archived_as = f"{archive_schema or self.schema}.{relname}"
        logger.info("partition_detached", partition=relname, archived_as=archived_as)
        return archived_as
