"""
Pytest configuration and shared fixtures.

Test environment variables are set here, before any app import, and the
settings cache is cleared so they are picked up.
"""

import os
import tempfile

import pytest

os.environ.setdefault(
    "DATABASE_URL",
    "sqlite:///" + os.path.join(tempfile.gettempdir(), "message_board_test.db"),
)
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("MESSAGE_MAX_LENGTH", "2048")

# Clear settings cache before any app imports to ensure test env vars are used
from app.config import get_settings  # noqa: E402
get_settings.cache_clear()

from fastapi.testclient import TestClient  # noqa: E402

from app.main import app  # noqa: E402
from app.storage import SessionLocal, Base, engine  # noqa: E402
from app import models  # noqa: E402,F401


@pytest.fixture(scope="function")
def client():
    """Create test client with fresh database for each test."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)

    with TestClient(app) as test_client:
        yield test_client

    # Cleanup - drop all tables after test
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db():
    """Session against a fresh schema, for calling the store directly."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
