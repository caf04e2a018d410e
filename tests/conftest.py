"""
Global test configuration and fixtures for the session store

This module provides shared fixtures: an in-memory SQLite database, a
controllable clock, and a store with its table already created.
"""

from typing import Any, Dict, Optional

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.pool import StaticPool

from dbsession.core.config import SessionStoreConfig
from dbsession.core.utils.session_store import SessionStore
from dbsession.db.base import create_metadata
from dbsession.db.session import TransactionRunner, create_db_engine
from tests.utils.helpers import T0, FakeClock


# ============================================================================
# Clock
# ============================================================================

@pytest.fixture(scope="function")
def clock():
    """Clock fixed at T0 until advanced"""
    return FakeClock(T0)


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture(scope="function")
def engine():
    """In-memory SQLite engine shared by every session in a test"""
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    yield test_engine
    test_engine.dispose()


@pytest.fixture(scope="function")
def file_engine(tmp_path):
    """File-backed SQLite engine for tests that use several threads"""
    test_engine = create_db_engine(f"sqlite:///{tmp_path / 'sessions.db'}")
    yield test_engine
    test_engine.dispose()


@pytest.fixture(scope="function")
def metadata():
    """Fresh MetaData so each test registers its own session table"""
    return create_metadata()


@pytest.fixture(scope="function")
def store_config():
    return SessionStoreConfig(table_name="test_sessions")


@pytest.fixture(scope="function")
def runner(engine):
    return TransactionRunner.for_engine(engine)


@pytest.fixture(scope="function")
def store(runner, store_config, clock, metadata):
    """Session store with its table created"""
    session_store = SessionStore(runner, store_config, clock=clock, metadata=metadata)
    assert session_store.ensure_schema()
    return session_store


@pytest.fixture(scope="function")
def fetch_row(store):
    """Read a raw row straight from the session table"""
    def _fetch(session_id: str) -> Optional[Dict[str, Any]]:
        stmt = select(store.table).where(store.table.c.sessionId == session_id)
        with store.engine.connect() as conn:
            row = conn.execute(stmt).first()
        return dict(row._mapping) if row is not None else None
    return _fetch


@pytest.fixture(scope="function")
def all_session_ids(store):
    """List every session id currently stored"""
    def _ids() -> list:
        with store.engine.connect() as conn:
            return sorted(conn.execute(select(store.table.c.sessionId)).scalars())
    return _ids


# ============================================================================
# Test Markers and Configuration
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line(
        "markers", "unit: fast tests with no database"
    )
    config.addinivalue_line(
        "markers", "integration: tests against a real SQLite database"
    )
    config.addinivalue_line(
        "markers", "concurrency: tests that run several writers at once"
    )
