"""
Shared test configuration.

Settings are read at import time, so the environment is prepared here
before any application module is imported.
"""

import os

os.environ.setdefault("PYTHON_ENV", "test")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("RESEND_API_KEY", "")

from unittest.mock import AsyncMock, MagicMock  # noqa: E402

import pytest  # noqa: E402

from app.core.rate_limit import clear_memory_store  # noqa: E402


@pytest.fixture
def mock_db():
    """Create a mock database session."""
    db = AsyncMock()
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    db.refresh = AsyncMock()
    db.flush = AsyncMock()
    db.execute = AsyncMock()
    db.add = MagicMock()
    return db


@pytest.fixture(autouse=True)
def reset_rate_limits():
    """Each test starts with empty in-memory rate limit counters."""
    clear_memory_store()
    yield
    clear_memory_store()
