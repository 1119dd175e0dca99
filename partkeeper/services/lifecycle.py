"""
Partition lifecycle manager.

Keeps a range-partitioned table covered ahead of incoming writes and retires
expired partitions on request. All state lives in the database catalog, which
is re-read on every call; the manager itself holds only its store.

Usage:
    manager = PartitionLifecycleManager.from_settings(get_settings())
    await manager.ensure_coverage(date.today(), timedelta(days=90),
                                  interval_width="quarterly", epoch=date(2023, 1, 1))
    async for boundary in manager.list_boundaries():
        ...
    await manager.retire("2023_Q1", "detach", as_of=date.today())
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import AsyncIterator, Optional

import structlog

from partkeeper.config import Settings
from partkeeper.exceptions import (
    ActiveBoundaryError,
    BoundaryConflict,
    BoundaryExists,
    BoundaryNotFound,
    RetentionCutoffError,
    StorageError,
)
from partkeeper.models.schemas import (
    CoverageReport,
    CreatedBoundaries,
    PartitionBoundary,
    PartitionStats,
    RetireMode,
    RetireResult,
)
from partkeeper.services.boundaries import (
    DEFAULT_BOUNDARY_NAME,
    IntervalWidth,
    as_key,
    compute_missing,
    find_gaps,
    find_overlaps,
)
from partkeeper.services.catalog import PostgresPartitionStore

logger = structlog.get_logger(__name__)


def default_cutoff(as_of: date | datetime, retention_days: int) -> date:
    """Retention cutoff derived from a day count; 0 means "as_of itself"."""
    as_of = as_key(as_of)
    if retention_days <= 0:
        return as_of
    return as_of - timedelta(days=retention_days)


class BoundaryListing:
    """
    Lazy view over the live catalog.

    Nothing is read until iteration starts, and every new ``async for``
    queries the database again.
    """

    def __init__(self, store) -> None:
        self._store = store

    def __aiter__(self) -> AsyncIterator[PartitionBoundary]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[PartitionBoundary]:
        snapshot = await self._store.list_partitions()
        for boundary in snapshot.boundaries:
            yield boundary

    async def fetch(self) -> list[PartitionBoundary]:
        snapshot = await self._store.list_partitions()
        return list(snapshot.boundaries)


class PartitionLifecycleManager:
    """Creates missing boundaries ahead of need and retires expired ones."""

    def __init__(self, store, *, archive_schema: Optional[str] = None) -> None:
        self._store = store
        self.archive_schema = archive_schema

    @classmethod
    def from_settings(cls, settings: Settings) -> PartitionLifecycleManager:
        return cls(PostgresPartitionStore.from_settings(settings), archive_schema=settings.ARCHIVE_SCHEMA)

    # ── Coverage ─────────────────────────────────────────────────

    async def ensure_coverage(
        self,
        as_of: date | datetime,
        horizon: timedelta,
        *,
        interval_width: IntervalWidth | str,
        epoch: date,
        ensure_default: bool = False,
    ) -> CreatedBoundaries:
        """
        Create every boundary needed so keys in ``[as_of, as_of + horizon)``
        have a partition.

        Raises:
            BoundaryConflict: a computed name exists with a different range.
                Raised after the other boundaries were processed; carries the
                partial result.
            StorageError: any other database failure. Processing stops,
                boundaries created so far remain.
        """
        if horizon < timedelta(0):
            raise ValueError("horizon must not be negative")
        width = IntervalWidth(interval_width)

        snapshot = await self._store.list_partitions()
        existing = snapshot.by_name()
        result = CreatedBoundaries()
        conflicts: list[str] = []

        try:
            for boundary in compute_missing(snapshot.boundaries, as_of, horizon, width, epoch):
                current = existing.get(boundary.name)
                if current is not None:
                    if not current.same_range(boundary):
                        logger.error(
                            "boundary_conflict",
                            boundary=boundary.name,
                            existing_start=current.start.isoformat(),
                            existing_end=current.end.isoformat(),
                            wanted_start=boundary.start.isoformat(),
                            wanted_end=boundary.end.isoformat(),
                        )
                        conflicts.append(boundary.name)
                    continue

                try:
                    await self._store.create_partition(boundary, snapshot.default_table)
                except BoundaryExists:
                    if await self._created_concurrently(boundary):
                        logger.info("boundary_created_concurrently", boundary=boundary.name)
                        result.already_present.append(boundary)
                    else:
                        logger.error("boundary_conflict", boundary=boundary.name)
                        conflicts.append(boundary.name)
                    continue
                result.created.append(boundary)

            if ensure_default and not snapshot.has_default:
                try:
                    await self._store.create_default_partition()
                    result.default_created = True
                except BoundaryExists:
                    logger.info("default_partition_created_concurrently")
        except StorageError as e:
            logger.error(
                "ensure_coverage_aborted",
                error=e.message,
                created=[b.name for b in result.created],
            )
            raise

        logger.info(
            "coverage_ensured",
            as_of=as_key(as_of).isoformat(),
            horizon_days=horizon.days,
            interval=width.value,
            created=[b.name for b in result.created],
            already_present=[b.name for b in result.already_present],
            default_created=result.default_created,
        )
        if conflicts:
            raise BoundaryConflict(conflicts, result)
        return result

    async def _created_concurrently(self, boundary: PartitionBoundary) -> bool:
        """After a duplicate-name rejection: is the winner's range identical to ours?"""
        snapshot = await self._store.list_partitions()
        current = snapshot.by_name().get(boundary.name)
        return current is not None and current.same_range(boundary)

    def list_boundaries(self) -> BoundaryListing:
        return BoundaryListing(self._store)

    async def coverage(self, as_of: date | datetime, horizon: timedelta) -> CoverageReport:
        start = as_key(as_of)
        end = start + horizon
        snapshot = await self._store.list_partitions()
        for a, b in find_overlaps(snapshot.boundaries):
            logger.warning("boundary_overlap", first=a.name, second=b.name)
        gaps = find_gaps(snapshot.boundaries, start, end)
        return CoverageReport(
            start=start,
            end=end,
            covered=not gaps,
            gaps=gaps,
            has_default=snapshot.has_default,
        )

    async def partition_stats(self) -> list[PartitionStats]:
        return await self._store.partition_stats()

    async def verify_table(self) -> None:
        """Raise StorageError unless the parent table is range-partitioned as configured."""
        await self._store.verify_parent()

    # ── Retirement ───────────────────────────────────────────────

    async def expired_boundaries(self, retention_cutoff: date | datetime) -> list[PartitionBoundary]:
        """Boundaries ending at or before the cutoff, oldest first."""
        cutoff = as_key(retention_cutoff)
        return [b for b in await self.list_boundaries().fetch() if b.end <= cutoff]

    async def retire(
        self,
        boundary_name: str,
        mode: RetireMode | str,
        *,
        as_of: date | datetime,
        retention_cutoff: date | datetime | None = None,
    ) -> RetireResult:
        """
        Drop or detach one expired boundary. Irreversible.

        ``retention_cutoff`` defaults to ``as_of``. The boundary's ``end``
        must be at or before both.
        """
        mode = RetireMode(mode)
        as_of = as_key(as_of)
        cutoff = as_key(retention_cutoff) if retention_cutoff is not None else as_of
        name = boundary_name.upper()

        if name == DEFAULT_BOUNDARY_NAME:
            raise ActiveBoundaryError(name, "The default partition receives out-of-range keys and cannot be retired")

        snapshot = await self._store.list_partitions()
        boundary = snapshot.by_name().get(name)
        if boundary is None:
            raise BoundaryNotFound(name)
        if boundary.end > as_of:
            raise ActiveBoundaryError(name, f"Boundary '{name}' ends {boundary.end} after {as_of} and may still receive writes")
        if boundary.end > cutoff:
            raise RetentionCutoffError(name, f"Boundary '{name}' ends {boundary.end} after retention cutoff {cutoff}")

        archived_as = None
        if mode is RetireMode.DROP:
            await self._store.drop_partition(boundary)
        else:
            archived_as = await self._store.detach_partition(boundary, self.archive_schema)

        logger.info(
            "boundary_retired",
            boundary=name,
            mode=mode.value,
            end=boundary.end.isoformat(),
            archived_as=archived_as,
        )
        return RetireResult(
            boundary=boundary,
            mode=mode,
            archived_as=archived_as,
            retired_at=datetime.now(timezone.utc),
        )
