"""
Partition management API endpoints.

- Health check
- Live boundary listing, coverage audit and size statistics
- Look-ahead creation (same as the cron run)
- Operator retirement of expired partitions (drop / detach)
"""

from __future__ import annotations

import secrets
from datetime import date, timedelta
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request

from partkeeper import database as db
from partkeeper.config import get_settings
from partkeeper.exceptions import (
    ActiveBoundaryError,
    BoundaryConflict,
    BoundaryNotFound,
    RetentionCutoffError,
    StorageError,
)
from partkeeper.models.schemas import (
    CoverageReport,
    CreatedBoundaries,
    EnsureRequest,
    HealthResponse,
    PartitionBoundary,
    PartitionStats,
    RetireMode,
    RetireResult,
)
from partkeeper.services.lifecycle import PartitionLifecycleManager, default_cutoff

logger = structlog.get_logger(__name__)

VERSION = "1.0.0"

router = APIRouter(tags=["partitions"])


def _get_manager() -> PartitionLifecycleManager:
    return PartitionLifecycleManager.from_settings(get_settings())


async def require_admin(request: Request) -> None:
    """Dependency: mutating endpoints need the shared admin token."""
    token = request.headers.get("X-Admin-Token")
    if not token or not secrets.compare_digest(token, get_settings().ADMIN_TOKEN):
        raise HTTPException(401, "Unauthorized")


# ── Health ───────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    database_ok = await db.ping()
    return HealthResponse(status="ok" if database_ok else "degraded", version=VERSION, database=database_ok)


# ── Catalog ──────────────────────────────────────────────────────


@router.get("/partitions", response_model=list[PartitionBoundary])
async def list_partitions():
    try:
        return [b async for b in _get_manager().list_boundaries()]
    except StorageError as e:
        raise HTTPException(503, e.message)


@router.get("/partitions/coverage", response_model=CoverageReport)
async def partition_coverage(as_of: Optional[date] = None, horizon_days: Optional[int] = None):
    settings = get_settings()
    horizon = settings.PARTITION_HORIZON_DAYS if horizon_days is None else horizon_days
    if horizon < 0:
        raise HTTPException(400, "horizon_days must not be negative")
    try:
        return await _get_manager().coverage(as_of or date.today(), timedelta(days=horizon))
    except StorageError as e:
        raise HTTPException(503, e.message)


@router.get("/partitions/stats", response_model=list[PartitionStats])
async def partition_stats():
    try:
        return await _get_manager().partition_stats()
    except StorageError as e:
        raise HTTPException(503, e.message)


# ── Lifecycle ────────────────────────────────────────────────────


@router.post("/partitions/ensure", response_model=CreatedBoundaries, dependencies=[Depends(require_admin)])
async def ensure_partitions(body: EnsureRequest):
    """Create the boundaries missing for ``[as_of, as_of + horizon)``."""
    settings = get_settings()
    horizon_days = settings.PARTITION_HORIZON_DAYS if body.horizon_days is None else body.horizon_days
    ensure_default = settings.CREATE_DEFAULT_PARTITION if body.ensure_default is None else body.ensure_default

    try:
        return await _get_manager().ensure_coverage(
            body.as_of or date.today(),
            timedelta(days=horizon_days),
            interval_width=settings.PARTITION_INTERVAL,
            epoch=settings.PARTITION_EPOCH,
            ensure_default=ensure_default,
        )
    except BoundaryConflict as e:
        raise HTTPException(409, e.message)
    except StorageError as e:
        raise HTTPException(503, e.message)


@router.delete("/partitions/{name}", response_model=RetireResult, dependencies=[Depends(require_admin)])
async def retire_partition(
    name: str,
    mode: Optional[RetireMode] = None,
    as_of: Optional[date] = None,
    retention_cutoff: Optional[date] = None,
):
    """
    Retire one expired partition. Irreversible.

    ``retention_cutoff`` defaults to ``as_of - RETENTION_DAYS``.
    """
    settings = get_settings()
    as_of = as_of or date.today()
    cutoff = retention_cutoff or default_cutoff(as_of, settings.RETENTION_DAYS)

    try:
        return await _get_manager().retire(
            name,
            mode or RetireMode(settings.RETIRE_MODE),
            as_of=as_of,
            retention_cutoff=cutoff,
        )
    except BoundaryNotFound as e:
        raise HTTPException(404, e.message)
    except (ActiveBoundaryError, RetentionCutoffError) as e:
        raise HTTPException(409, e.message)
    except StorageError as e:
        raise HTTPException(503, e.message)
