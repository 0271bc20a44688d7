"""
Pytest configuration and fixtures for feedflow tests.

Tests run against an in-memory SQLite engine that is shared across threads
so worker pool jobs and the test body see the same data. Upload and export
directories are redirected to a per-test temporary directory.
"""

import os

# The application lifespan must not try to reach the configured database.
os.environ.setdefault("SKIP_DB_INIT", "1")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from feedflow.core.config import settings
from feedflow.db.models import create_tables
from feedflow.db.session import set_engine
from feedflow.domain.worker_pool import WorkerPool


@pytest.fixture(scope="session", autouse=True)
def announce_test_database():
    """
    Print the database mode for the session.

    Scope: session (runs once for all tests)
    Autouse: True (runs automatically without explicit reference)
    """
    print("\n" + "=" * 80)
    print("PYTEST SETUP: feedflow tests use per-test in-memory SQLite engines")
    if os.getenv("SKIP_DB_INIT") == "1":
        print("  SKIP_DB_INIT=1 detected; application startup will not bootstrap tables")
    print("=" * 80 + "\n")
    yield


@pytest.fixture
def engine():
    """Fresh in-memory database with every feedflow table, installed as the process engine."""
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_tables(test_engine)
    set_engine(test_engine)
    yield test_engine
    set_engine(None)
    test_engine.dispose()


@pytest.fixture
def workdirs(tmp_path, monkeypatch):
    """Point upload and export directories at a temporary location."""
    upload_dir = tmp_path / "uploads"
    export_dir = tmp_path / "exports"
    upload_dir.mkdir()
    export_dir.mkdir()
    monkeypatch.setattr(settings, "upload_dir", str(upload_dir))
    monkeypatch.setattr(settings, "export_dir", str(export_dir))
    return tmp_path


@pytest.fixture
def pool():
    """Single-worker pool; ``pool.shutdown(wait=True)`` waits for queued operations."""
    worker_pool = WorkerPool(max_workers=1, name="feedflow-test")
    yield worker_pool
    worker_pool.shutdown(wait=True)
