"""
Custom exception classes for the partition manager.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from partkeeper.models.schemas import CreatedBoundaries


class PartitionError(Exception):
    """Base class for every partition lifecycle failure."""

    def __init__(self, message: str = "Partition operation failed"):
        self.message = message
        super().__init__(self.message)


class StorageError(PartitionError):
    """Raised when the database rejects a catalog or DDL operation."""

    def __init__(self, message: str = "Storage operation failed", details: dict[str, Any] | None = None):
        self.details = details or {}
        super().__init__(message)


class BoundaryExists(StorageError):
    """Raised by the store when a partition with the same name already exists."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Partition '{name}' already exists", {"name": name})


class BoundaryConflict(PartitionError):
    """Raised when existing partitions share a name but not a range with a computed boundary."""

    def __init__(self, names: list[str], result: CreatedBoundaries | None = None):
        self.names = names
        self.result = result
        super().__init__(f"Boundary name collision with different range: {', '.join(names)}")


class BoundaryNotFound(PartitionError):
    """Raised when a boundary name is not in the live catalog."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Boundary '{name}' not found")


class ActiveBoundaryError(PartitionError):
    """Raised when retiring a boundary that may still receive writes."""

    def __init__(self, name: str, message: str | None = None):
        self.name = name
        super().__init__(message or f"Boundary '{name}' is still active")


class RetentionCutoffError(PartitionError):
    """Raised when retiring a boundary that ends after the retention cutoff."""

    def __init__(self, name: str, message: str | None = None):
        self.name = name
        super().__init__(message or f"Boundary '{name}' is inside the retention window")
