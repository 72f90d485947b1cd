"""FastAPI lifecycle management for shared resources.

This module centralizes startup and shutdown handling for:
- DatabaseManager (engine and sessionmaker)
- the shared rate-limited fetcher and its ``requests.Session``
- the DiscoveryPipeline wired from both

Resources already present on ``app.state`` (for example, set by tests) are
left alone, and every resource is exposed through a dependency function so
route handlers can be exercised with ``app.dependency_overrides``.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from src.crawler.fetcher import RateLimitedFetcher
from src.models.database import DatabaseManager
from src.pipeline.phases import DiscoveryPipeline

logger = logging.getLogger(__name__)


def _missing(app: FastAPI, name: str) -> bool:
    return getattr(app.state, name, None) is None


async def startup_resources(app: FastAPI) -> None:
    """Initialize shared resources for the FastAPI app."""
    logger.info("Starting resource initialization...")

    # 1. DatabaseManager
    try:
        if _missing(app, "db_manager"):
            from src import config as app_config

            app.state.db_manager = DatabaseManager(app_config.DATABASE_URL)
            logger.info(
                "DatabaseManager initialized: %s...", app_config.DATABASE_URL[:50]
            )
        else:
            logger.info("DatabaseManager already provided on app.state; skipping init")
    except Exception as exc:
        logger.exception("Failed to initialize DatabaseManager", exc_info=exc)
        app.state.db_manager = None

    # 2. Shared fetcher
    try:
        if _missing(app, "fetcher"):
            app.state.fetcher = RateLimitedFetcher()
            logger.info("Rate-limited fetcher initialized")
        else:
            logger.info("Fetcher already provided on app.state; skipping init")
    except Exception as exc:
        logger.exception("Failed to initialize fetcher", exc_info=exc)
        app.state.fetcher = None

    # 3. Pipeline
    if _missing(app, "pipeline") and app.state.db_manager and app.state.fetcher:
        try:
            from src.pipeline.builder import build_pipeline

            app.state.pipeline = build_pipeline(
                app.state.db_manager, app.state.fetcher
            )
            logger.info("Discovery pipeline initialized")
        except Exception as exc:
            logger.exception("Failed to initialize pipeline", exc_info=exc)
            app.state.pipeline = None

    app.state.ready = True
    logger.info("All resources initialized, app is ready")


async def shutdown_resources(app: FastAPI) -> None:
    """Clean up shared resources gracefully."""
    logger.info("Starting resource cleanup...")

    fetcher = getattr(app.state, "fetcher", None)
    if fetcher:
        try:
            fetcher.close()
            logger.info("Fetcher session closed")
        except Exception as exc:
            logger.exception("Error closing fetcher", exc_info=exc)

    db_manager = getattr(app.state, "db_manager", None)
    if db_manager:
        try:
            db_manager.close()
            logger.info("DatabaseManager engine disposed")
        except Exception as exc:
            logger.exception("Error disposing DatabaseManager", exc_info=exc)

    app.state.ready = False
    logger.info("Resource cleanup complete")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Initialize resources before serving and release them afterwards."""
    await startup_resources(app)
    yield
    await shutdown_resources(app)


# Dependency injection functions for route handlers


def get_db_manager(request: Request) -> Optional[DatabaseManager]:
    """Dependency that provides the shared DatabaseManager, or None."""
    return getattr(request.app.state, "db_manager", None)


def get_pipeline(request: Request) -> Optional[DiscoveryPipeline]:
    """Dependency that provides the shared DiscoveryPipeline.

    Tests override this dependency to inject a pipeline bound to a
    temporary database and fake collaborators.
    """
    return getattr(request.app.state, "pipeline", None)


def is_ready(request: Request) -> bool:
    return getattr(request.app.state, "ready", False)


def check_db_health(db_manager: Optional[DatabaseManager]) -> tuple[bool, str]:
    """Run ``SELECT 1`` and return ``(is_healthy, message)``."""
    if db_manager is None:
        return False, "DatabaseManager not initialized"

    try:
        with db_manager.get_session() as session:
            session.execute(text("SELECT 1"))
        return True, "Database connection OK"
    except OperationalError as exc:
        return False, f"Database connection failed: {exc}"
    except Exception as exc:
        return False, f"Database health check error: {exc}"
