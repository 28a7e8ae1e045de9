"""
Pytest Configuration and Fixtures

Provides the Flask application (TestingConfig, in-memory SQLite), the test
client, database session access, and the access-control fixtures shared by
the unit and integration suites: a fixed clock, an in-memory role assignment
store and a PermissionChecker wired to both.

Testing Architecture:
- Application Layer: app factory fixtures with a fresh database per test
- Service Layer: checker and lifecycle service fixtures
- Data Layer: db session and factory_boy factories (tests/factories.py)
"""

import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Add project root to Python path for imports
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from app import create_app
from models import db, drop_all_tables
from services.condition_evaluator import ConditionEvaluator
from services.extension import get_permission_checker
from services.permission_cache import PermissionCache
from services.permission_checker import PermissionChecker, PermissionCheckerConfig
from services.role_assignment_store import InMemoryRoleAssignmentStore

FIXED_NOW = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


# =============================================================================
# PYTEST CONFIGURATION AND MARKERS
# =============================================================================

def pytest_configure(config):
    """Register custom markers for test categorization."""
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line("markers", "integration: Integration tests for services and storage")
    config.addinivalue_line("markers", "api: API tests through the Flask test client")


def pytest_collection_modifyitems(config, items):
    """Apply markers based on test location."""
    for item in items:
        path = str(item.fspath)
        if "unit" in path:
            item.add_marker(pytest.mark.unit)
        elif "api" in path:
            item.add_marker(pytest.mark.api)
            item.add_marker(pytest.mark.integration)
        elif "integration" in path:
            item.add_marker(pytest.mark.integration)


# =============================================================================
# TIME FIXTURES
# =============================================================================

class FakeMonotonicClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fixed_now():
    return FIXED_NOW


@pytest.fixture
def clock(fixed_now):
    """Wall clock frozen at FIXED_NOW."""
    return lambda: fixed_now


@pytest.fixture
def monotonic_clock():
    return FakeMonotonicClock()


# =============================================================================
# ACCESS-CONTROL FIXTURES
# =============================================================================

@pytest.fixture
def memory_store(clock):
    return InMemoryRoleAssignmentStore(clock=clock)


@pytest.fixture
def checker_config():
    return PermissionCheckerConfig(cache_enabled=True, cache_ttl=300, bulk_check_limit=100)


@pytest.fixture
def checker(memory_store, clock, monotonic_clock, checker_config):
    """PermissionChecker over the in-memory store with frozen clocks."""
    return PermissionChecker(
        memory_store,
        config=checker_config,
        condition_evaluator=ConditionEvaluator(clock=clock),
        cache=PermissionCache(
            ttl_seconds=checker_config.cache_ttl,
            enabled=checker_config.cache_enabled,
            clock=monotonic_clock,
        ),
    )


# =============================================================================
# FLASK APPLICATION FIXTURES
# =============================================================================

@pytest.fixture
def app():
    """
    Application built with TestingConfig.

    Each test gets its own in-memory database; the application context stays
    pushed for the duration of the test.
    """
    app = create_app('testing')
    with app.app_context():
        yield app
        db.session.remove()
        drop_all_tables(app)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def db_session(app):
    return db.session


@pytest.fixture
def app_checker(app):
    """The checker owned by the application's PermissionServices extension."""
    return get_permission_checker()


@pytest.fixture
def auth_headers(app):
    """Build request headers authenticating as ``user_id``."""
    header_name = app.config['AUTH_USER_HEADER']

    def _headers(user_id):
        return {header_name: user_id}

    return _headers
