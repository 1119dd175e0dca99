"""
Shared fixtures: an in-memory partition store with the same contract as
PostgresPartitionStore (name uniqueness, overlap rejection, fresh reads,
default-partition rows that block a new range unless moved).
"""

from __future__ import annotations

import asyncio
from datetime import date
from typing import Optional

import pytest

from partkeeper.exceptions import BoundaryExists, StorageError
from partkeeper.models.schemas import CatalogSnapshot, PartitionBoundary, PartitionStats


class InMemoryPartitionStore:
    def __init__(self, table: str = "booking_partitioned"):
        self.table = table
        self.partitions: dict[str, PartitionBoundary] = {}
        self.has_default = False
        # keys stored in the default partition / in each range partition
        self.default_rows: list[date] = []
        self.rows: dict[str, list[date]] = {}
        self.detached: dict[str, PartitionBoundary] = {}
        self.create_calls: list[str] = []
        self.list_calls = 0
        # name -> exception raised on create
        self.fail_on: dict[str, Exception] = {}

    @property
    def default_table(self) -> Optional[str]:
        return f"{self.table}_default" if self.has_default else None

    def add(self, name: str, start: date, end: date) -> PartitionBoundary:
        boundary = PartitionBoundary(name=name, start=start, end=end, table=f"{self.table}_{name}".lower())
        self.partitions[name] = boundary
        self.rows.setdefault(name, [])
        return boundary

    async def list_partitions(self) -> CatalogSnapshot:
        self.list_calls += 1
        await asyncio.sleep(0)
        boundaries = sorted(self.partitions.values(), key=lambda b: b.start)
        return CatalogSnapshot(boundaries=boundaries, has_default=self.has_default, default_table=self.default_table)

    async def partition_stats(self) -> list[PartitionStats]:
        return [PartitionStats(name=b.name, table=b.table or b.name) for b in self.partitions.values()]

    async def verify_parent(self) -> None:
        return None

    async def create_partition(self, boundary: PartitionBoundary, default_table: Optional[str] = None) -> str:
        self.create_calls.append(boundary.name)
        await asyncio.sleep(0)
        if boundary.name in self.fail_on:
            raise self.fail_on[boundary.name]
        if boundary.name in self.partitions:
            raise BoundaryExists(boundary.name)
        for other in self.partitions.values():
            if other.overlaps(boundary):
                raise StorageError(f"partition {boundary.name} would overlap partition {other.name}")
        held = [key for key in self.default_rows if boundary.contains(key)]
        if held and default_table is None:
            raise StorageError("updated partition constraint for default partition would be violated")
        self.add(boundary.name, boundary.start, boundary.end)
        self.rows[boundary.name] = held
        self.default_rows = [key for key in self.default_rows if not boundary.contains(key)]
        return f"{self.table}_{boundary.name}".lower()

    async def create_default_partition(self) -> str:
        await asyncio.sleep(0)
        if self.has_default:
            raise BoundaryExists("DEFAULT")
        self.has_default = True
        return f"{self.table}_default"

    async def drop_partition(self, boundary: PartitionBoundary) -> None:
        del self.partitions[boundary.name]

    async def detach_partition(self, boundary: PartitionBoundary, archive_schema: Optional[str] = None) -> str:
        self.detached[boundary.name] = self.partitions.pop(boundary.name)
        return f"{archive_schema or 'public'}.{boundary.table}"


@pytest.fixture
def store():
    return InMemoryPartitionStore()
