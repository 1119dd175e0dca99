"""
Pydantic models / schemas for the partition manager.
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator


# ── Catalog models ───────────────────────────────────────────────

class PartitionBoundary(BaseModel):
    """Half-open key range ``[start, end)`` owned by one partition."""

    name: str
    start: date
    end: date
    # Physical table name, set when the boundary was read from the catalog.
    table: Optional[str] = None

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_order(self) -> PartitionBoundary:
        if self.start >= self.end:
            raise ValueError(f"Boundary {self.name}: start {self.start} must be before end {self.end}")
        return self

    def contains(self, key: date) -> bool:
        return self.start <= key < self.end

    def overlaps(self, other: PartitionBoundary) -> bool:
        return not (self.end <= other.start or other.end <= self.start)

    def same_range(self, other: PartitionBoundary) -> bool:
        return self.start == other.start and self.end == other.end


class CatalogSnapshot(BaseModel):
    """Live partition list as read from the database at one instant."""

    boundaries: list[PartitionBoundary] = Field(default_factory=list)
    has_default: bool = False
    default_table: Optional[str] = None

    def by_name(self) -> dict[str, PartitionBoundary]:
        return {b.name: b for b in self.boundaries}


class RetireMode(str, Enum):
    DROP = "drop"
    DETACH = "detach"


# ── Operation results ────────────────────────────────────────────

class CreatedBoundaries(BaseModel):
    created: list[PartitionBoundary] = Field(default_factory=list)
    # Created concurrently by another run between our catalog read and CREATE.
    already_present: list[PartitionBoundary] = Field(default_factory=list)
    default_created: bool = False

    @property
    def is_noop(self) -> bool:
        return not self.created and not self.default_created


class RetireResult(BaseModel):
    boundary: PartitionBoundary
    mode: RetireMode
    archived_as: Optional[str] = None
    retired_at: datetime


class CoverageGap(BaseModel):
    start: date
    end: date


class CoverageReport(BaseModel):
    start: date
    end: date
    covered: bool
    gaps: list[CoverageGap] = Field(default_factory=list)
    has_default: bool = False


class PartitionStats(BaseModel):
    """Size and access counters for one partition (default included)."""

    name: str
    table: str
    total_bytes: int = 0
    live_rows: int = 0
    seq_scan: int = 0
    idx_scan: int = 0


# ── API request / response schemas ───────────────────────────────

class EnsureRequest(BaseModel):
    as_of: Optional[date] = None
    horizon_days: Optional[int] = Field(None, ge=0)
    ensure_default: Optional[bool] = None


class HealthResponse(BaseModel):
    status: str
    version: str
    database: bool
