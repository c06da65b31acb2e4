"""
pytest plugin for pg_sandbox.

Registered through the ``pytest11`` entry point. Declare your schema by
overriding the ``pg_sandbox_schema`` fixture in conftest.py, then request
``sandbox_db`` in tests:

    @pytest.fixture(scope="session")
    def pg_sandbox_schema():
        return {"users": {"id": ColumnSpec("serial", nullable=False, primary_key=True)}}

    def test_insert(sandbox_db):
        with sandbox_db.cursor() as cur:
            cur.execute("INSERT INTO users DEFAULT VALUES")

    @pytest.mark.pg_sandbox(mode="truncate")
    def test_needs_commits(sandbox_db):
        ...

Tests requesting ``sandbox_db`` are skipped when no database URL is configured.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Iterator

import pytest

from pg_sandbox.bootstrap import ensure_database_exists
from pg_sandbox.config import Settings, load_settings
from pg_sandbox.engine import IsolationEngine, TestDatabase
from pg_sandbox.exceptions import ConfigurationError
from pg_sandbox.migrations import MigrateFn
from pg_sandbox.types import SchemaDefinition, TestMode

MARKER = "pg_sandbox"


def pytest_addoption(parser: pytest.Parser) -> None:
    group = parser.getgroup("pg_sandbox", "PostgreSQL test isolation")
    group.addoption(
        "--pg-sandbox-url",
        dest="pg_sandbox_url",
        default=None,
        help="DSN of the test database (overrides TEST_DATABASE_URL)",
    )
    group.addoption(
        "--pg-sandbox-migrations",
        dest="pg_sandbox_migrations",
        default=None,
        help="Folder of *.sql migrations applied when the schema changes",
    )
    group.addoption(
        "--pg-sandbox-mode",
        dest="pg_sandbox_mode",
        default=None,
        choices=[m.value for m in TestMode],
        help="Default isolation mode for sandbox_db",
    )
    parser.addini("pg_sandbox_url", "DSN of the test database", default=None)
    parser.addini("pg_sandbox_migrations", "Folder of *.sql migrations", default=None)
    parser.addini("pg_sandbox_mode", "Default isolation mode", default=None)


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        f"{MARKER}(mode): isolation mode ('savepoint' or 'truncate') for sandbox_db",
    )


def _option(config: pytest.Config, name: str) -> str | None:
    return config.getoption(name) or config.getini(name) or None


def _marker_mode(node: pytest.Item) -> str | None:
    marker = node.get_closest_marker(MARKER)
    if marker is None:
        return None
    if "mode" in marker.kwargs:
        return marker.kwargs["mode"]
    return marker.args[0] if marker.args else None


@pytest.fixture(scope="session")
def pg_sandbox_settings(pytestconfig: pytest.Config) -> Settings:
    """Settings from dotenv/YAML/environment, overridden by CLI options and ini."""
    settings = load_settings()
    overrides = {}

    url = _option(pytestconfig, "pg_sandbox_url")
    if url:
        overrides["database_url"] = url
    migrations = _option(pytestconfig, "pg_sandbox_migrations")
    if migrations:
        overrides["migrations_folder"] = migrations
    mode = _option(pytestconfig, "pg_sandbox_mode")
    if mode:
        try:
            overrides["mode"] = TestMode.parse(mode)
        except ValueError as e:
            raise ConfigurationError(str(e)) from None

    return dataclasses.replace(settings, **overrides)


@pytest.fixture(scope="session")
def pg_sandbox_schema() -> SchemaDefinition:
    """Declared schema. Override in conftest.py to enable drift detection."""
    return {}


@pytest.fixture(scope="session")
def pg_sandbox_migrate_fn() -> MigrateFn | None:
    """Replacement for the built-in migration step. Override in conftest.py."""
    return None


@pytest.fixture(scope="session")
def pg_sandbox_engine(
    pg_sandbox_settings: Settings,
    pg_sandbox_schema: SchemaDefinition,
    pg_sandbox_migrate_fn: MigrateFn | None,
) -> Iterator[IsolationEngine]:
    """Session-wide engine, set up once before the first database test."""
    if not pg_sandbox_settings.database_url:
        pytest.skip("TEST_DATABASE_URL not set - skipping database tests")

    database_url = pg_sandbox_settings.require_database_url()
    ensure_database_exists(database_url, pg_sandbox_settings.connection_timeout)

    engine = IsolationEngine.from_settings(pg_sandbox_settings)
    try:
        engine.setup(
            pg_sandbox_schema,
            database_url,
            migrations_folder=pg_sandbox_settings.migrations_folder,
            migrate_fn=pg_sandbox_migrate_fn,
        )
        yield engine
    finally:
        engine.teardown()


@pytest.fixture
def sandbox_db(
    request: pytest.FixtureRequest, pg_sandbox_engine: IsolationEngine
) -> Iterator[TestDatabase]:
    """Isolated database handle for one test."""
    database = pg_sandbox_engine.enter(mode=_marker_mode(request.node))
    try:
        yield database
    finally:
        pg_sandbox_engine.exit()
