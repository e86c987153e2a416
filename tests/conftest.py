"""
Shared pytest fixtures and configuration for flume tests.

This module provides:
- A quiet structlog configuration so engine logs never reach stdout
- Settings cache isolation
- Common collaborators (recording observer, in-memory db and publisher)

Usage:
    Fixtures are auto-discovered by pytest. Simply use them as function
    arguments:

    async def test_something(observer, deps):
        ...
"""

import sys
from pathlib import Path
from typing import Generator

import pytest
import structlog

# Ensure flume package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from flume.core.settings import get_settings
from flume.orchestration.testing import (
    InMemoryDatabase,
    InMemoryEventPublisher,
    RecordingObserver,
    make_deps,
)


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Mark all tests without explicit markers as unit tests."""
    for item in items:
        markers = {mark.name for mark in item.iter_markers()}
        if "unit" not in markers:
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Isolation Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def quiet_structlog() -> Generator[None, None, None]:
    """
    Route structlog output nowhere for the duration of a test.

    Loggers are never cached, so ``structlog.testing.capture_logs`` keeps
    working for module-level loggers.
    """
    structlog.configure(
        processors=[structlog.processors.KeyValueRenderer()],
        logger_factory=structlog.ReturnLoggerFactory(),
        cache_logger_on_first_use=False,
    )
    structlog.contextvars.clear_contextvars()
    yield
    structlog.contextvars.clear_contextvars()
    structlog.reset_defaults()


@pytest.fixture(autouse=True)
def fresh_settings() -> Generator[None, None, None]:
    """Drop cached settings before and after each test."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# =============================================================================
# Collaborator Fixtures
# =============================================================================


@pytest.fixture
def observer() -> RecordingObserver:
    return RecordingObserver()


@pytest.fixture
def db() -> InMemoryDatabase:
    return InMemoryDatabase()


@pytest.fixture
def publisher() -> InMemoryEventPublisher:
    return InMemoryEventPublisher()


@pytest.fixture
def deps(db: InMemoryDatabase, publisher: InMemoryEventPublisher):
    """Dependencies wired to the ``db`` and ``publisher`` fixtures."""
    return make_deps(db=db, event_publisher=publisher)
