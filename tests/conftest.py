"""Pytest-wide fixtures and hooks for the pipeline tests."""

from __future__ import annotations

import os
import tempfile

import pytest

# Force tests onto a throwaway SQLite file before src.config is imported.
if "DATABASE_URL" not in os.environ or os.environ.get("PYTEST_KEEP_DB_ENV") != "true":
    test_db_path = os.path.join(tempfile.gettempdir(), "test_news_pipeline.db")
    os.environ["DATABASE_URL"] = f"sqlite:///{test_db_path}"

# Completion and extraction services are never contacted from tests.
for key in ("OPENAI_API_KEY", "EXTRACTION_API_KEY", "FIRECRAWL_API_KEY"):
    os.environ.pop(key, None)


@pytest.fixture(scope="session", autouse=True)
def cleanup_test_database():
    """Remove the shared SQLite test database after the session."""
    yield
    test_db_path = os.path.join(tempfile.gettempdir(), "test_news_pipeline.db")
    if os.path.exists(test_db_path):
        try:
            os.remove(test_db_path)
        except OSError:
            pass


@pytest.fixture
def db():
    """A DatabaseManager bound to a fresh temporary SQLite file."""
    from src.models.database import DatabaseManager
    from tests.helpers.fakes import temporary_database

    with temporary_database() as (db_url, _):
        manager = DatabaseManager(database_url=db_url)
        try:
            yield manager
        finally:
            manager.close()
