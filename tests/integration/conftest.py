"""
Pytest configuration and fixtures for integration tests.

Requires a reachable PostgreSQL: TEST_DATABASE_URL names the database, which
is created on first use. The whole ``public`` schema of that database is
dropped and recreated, so never point it at data you care about.
"""

import copy
import os
from pathlib import Path

import pytest

from pg_sandbox import ColumnSpec, IsolationEngine, ensure_database_exists
from pg_sandbox.config import Settings

MIGRATIONS = Path(__file__).parent / "migrations"

APP_SCHEMA = {
    "users": {
        "id": ColumnSpec("serial", nullable=False, primary_key=True),
        "name": ColumnSpec("text", nullable=False),
        "email": ColumnSpec("text", nullable=False),
        "status": ColumnSpec("user_status", nullable=False),
    },
    "posts": {
        "id": ColumnSpec("serial", nullable=False, primary_key=True),
        "title": ColumnSpec("text", nullable=False),
        "author_id": ColumnSpec("integer"),
    },
}


def pytest_collection_modifyitems(items):
    here = Path(__file__).parent
    for item in items:
        if here in item.path.parents:
            item.add_marker(pytest.mark.integration)


@pytest.fixture(scope="session")
def db_url():
    """
    Get database URL for integration tests.

    Skips the test when TEST_DATABASE_URL is not set.
    """
    url = os.getenv("TEST_DATABASE_URL")
    if not url:
        pytest.skip("TEST_DATABASE_URL not set - skipping integration tests")
    ensure_database_exists(url)
    return url


@pytest.fixture
def app_schema():
    return copy.deepcopy(APP_SCHEMA)


@pytest.fixture
def migrations():
    return MIGRATIONS


@pytest.fixture
def engine(db_url, app_schema, migrations):
    """Freshly set up engine for one test; torn down afterwards."""
    engine = IsolationEngine()
    engine.setup(app_schema, db_url, migrations_folder=migrations)
    yield engine
    engine.teardown()


@pytest.fixture
def admin_query(engine):
    """Run a statement on the engine's admin connection, outside any test transaction."""

    def query(statement, params=None):
        with engine.manager.state.admin_conn.cursor() as cur:
            cur.execute(statement, params)
            return cur.fetchall() if cur.description else []

    return query


# Plugin configuration for tests requesting sandbox_db


@pytest.fixture(scope="session")
def pg_sandbox_settings(db_url):
    return Settings(database_url=db_url, migrations_folder=str(MIGRATIONS))


@pytest.fixture(scope="session")
def pg_sandbox_schema():
    return APP_SCHEMA
