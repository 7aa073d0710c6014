"""
Pytest configuration and shared fixtures for backend tests.
"""
import os
import sys
from pathlib import Path

import pytest
from sqlalchemy.orm import sessionmaker

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

# Set test config directory before importing modules
os.environ["CONFIG_DIR"] = "/tmp/catalog_test_config"

# Ensure test config directory exists
Path("/tmp/catalog_test_config").mkdir(parents=True, exist_ok=True)

from database import Base, create_catalog_engine
import models  # noqa: F401  Registers tables


@pytest.fixture(scope="function")
def test_engine():
    """Create an in-memory SQLite engine for testing."""
    # Same connect/begin hooks as production so SAVEPOINTs and FKs behave
    engine = create_catalog_engine("sqlite:///:memory:")
    # Create all tables
    Base.metadata.create_all(bind=engine)
    yield engine
    # Cleanup
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_engine):
    """
    Session factory bound to the test engine.

    expire_on_commit=False allows accessing object attributes after commit/close.
    Production code commits and closes its sessions, but tests need to
    verify attributes on returned objects.
    """
    return sessionmaker(autocommit=False, autoflush=False, bind=test_engine, expire_on_commit=False)


@pytest.fixture(scope="function")
def test_session(session_factory):
    """Create a test database session."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture(scope="function")
def patched_sessions(session_factory):
    """
    Point database.get_session() at the test engine.

    Services and routers call get_session() directly rather than through
    dependency injection.
    """
    import database

    original_session_local = database._SessionLocal
    database._SessionLocal = session_factory
    yield session_factory
    database._SessionLocal = original_session_local


@pytest.fixture(scope="function")
async def async_client(patched_sessions):
    """Create an async test client for the FastAPI app (lifespan not run)."""
    from httpx import AsyncClient, ASGITransport
    from main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture(autouse=True)
def reset_singletons():
    """Drop process-wide service instances between tests."""
    yield
    import rule_builder
    import sync_engine
    import task_engine

    rule_builder._rule_builder = None
    sync_engine._sync_engine = None
    task_engine._engine = None
