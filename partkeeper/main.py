"""
FastAPI application entry point with lifespan management.
"""

from __future__ import annotations

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from partkeeper.config import get_settings
from partkeeper.database import close_db, init_db
from partkeeper.exceptions import StorageError
from partkeeper.log import configure_logging
from partkeeper.routers import partitions
from partkeeper.services.lifecycle import PartitionLifecycleManager

logger = structlog.get_logger(__name__)

configure_logging(get_settings().LOG_LEVEL)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup / shutdown lifecycle."""
    settings = get_settings()
    logger.info("partkeeper_starting", version=partitions.VERSION, table=settings.PARTITION_TABLE)

    await init_db()

    # A misconfigured parent is reported, not fatal: /health stays reachable.
    try:
        await PartitionLifecycleManager.from_settings(settings).verify_table()
    except StorageError as e:
        logger.warning("partitioned_table_check_failed", error=e.message)

    logger.info("partkeeper_started")

    yield

    await close_db()
    logger.info("partkeeper_stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="partkeeper",
        version=partitions.VERSION,
        description="Range partition lifecycle manager for PostgreSQL",
        lifespan=lifespan,
    )
    app.include_router(partitions.router)
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "partkeeper.main:app",
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL,
        reload=False,
    )
