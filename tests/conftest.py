"""
Pytest configuration and fixtures for pg_sandbox tests.

Unit tests run against in-memory fakes of psycopg2 connections and pools that
record every executed statement. Integration tests (tests/integration) need a
real PostgreSQL reachable through TEST_DATABASE_URL.
"""

from __future__ import annotations

import os
from typing import Any
from unittest.mock import patch

import psycopg2
import pytest
from psycopg2 import pool, sql
from psycopg2.extensions import TRANSACTION_STATUS_IDLE

from pg_sandbox.types import ColumnSpec


def render(statement: Any) -> str:
    """Render a str or psycopg2.sql object without a live connection."""
    if isinstance(statement, str):
        return statement
    if isinstance(statement, sql.Identifier):
        return ".".join(f'"{part}"' for part in statement.strings)
    if isinstance(statement, sql.SQL):
        return statement.string
    if isinstance(statement, sql.Composed):
        return "".join(render(part) for part in statement.seq)
    if isinstance(statement, sql.Literal):
        return repr(statement.wrapped)
    raise TypeError(f"Cannot render {type(statement).__name__}")


class FakeCursor:
    """Cursor that records statements on its connection."""

    def __init__(self, conn: FakeConnection) -> None:
        self._conn = conn
        self._rows: list[tuple] = []

    def __enter__(self) -> FakeCursor:
        return self

    def __exit__(self, *exc: Any) -> None:
        return None

    def execute(self, statement: Any, params: Any = None) -> None:
        if self._conn.closed:
            raise psycopg2.InterfaceError("connection already closed")

        text = " ".join(render(statement).split())
        self._conn.executed.append(text)

        for key, error in self._conn.failures.items():
            if key in text:
                if isinstance(error, list):
                    if error:
                        raise error.pop(0)
                else:
                    raise error

        self._rows = []
        for key, rows in self._conn.results.items():
            if key in text:
                self._rows = list(rows)
                break

    def fetchall(self) -> list[tuple]:
        return list(self._rows)

    def fetchone(self) -> tuple | None:
        return self._rows[0] if self._rows else None


class FakeConnection:
    """
    Stand-in for psycopg2.extensions.connection.

    Args:
        results: {statement substring: rows} returned by matching queries
        failures: {statement substring: exception, or list of exceptions
            raised one per matching execute}
    """

    def __init__(
        self,
        results: dict[str, list[tuple]] | None = None,
        failures: dict[str, Any] | None = None,
    ) -> None:
        self.results = results if results is not None else {}
        self.failures = failures if failures is not None else {}
        self.executed: list[str] = []
        self.autocommit = False
        self.closed = 0
        self.transaction_status = TRANSACTION_STATUS_IDLE
        self.cursor_factories: list[Any] = []

    def cursor(self, cursor_factory: Any = None) -> FakeCursor:
        self.cursor_factories.append(cursor_factory)
        return FakeCursor(self)

    def get_transaction_status(self) -> int:
        return self.transaction_status

    def close(self) -> None:
        self.closed = 1


class FakePool(pool.AbstractConnectionPool):
    """
    Connection pool handing out FakeConnections that share results/failures.

    Does not call AbstractConnectionPool.__init__, so nothing connects.
    """

    def __init__(
        self,
        results: dict[str, list[tuple]] | None = None,
        failures: dict[str, Any] | None = None,
    ) -> None:
        self.results = results if results is not None else {}
        self.failures = failures if failures is not None else {}
        self.closed = False
        self.handed_out: list[FakeConnection] = []
        self.returned: list[tuple[FakeConnection, bool]] = []

    def getconn(self, key: Any = None) -> FakeConnection:
        if self.closed:
            raise pool.PoolError("connection pool is closed")
        conn = FakeConnection(self.results, self.failures)
        self.handed_out.append(conn)
        return conn

    def putconn(self, conn: Any, key: Any = None, close: bool = False) -> None:
        if self.closed:
            raise pool.PoolError("connection pool is closed")
        self.returned.append((conn, close))
        if close:
            conn.close()

    def closeall(self) -> None:
        self.closed = True

    @property
    def admin(self) -> FakeConnection:
        return self.handed_out[0]


@pytest.fixture
def make_conn():
    """Factory for FakeConnection instances."""
    return FakeConnection


@pytest.fixture
def fake_conn() -> FakeConnection:
    return FakeConnection()


@pytest.fixture
def fake_pool() -> FakePool:
    """Pool whose catalog queries report a users and a posts table."""
    return FakePool(
        results={
            "FROM pg_tables": [("posts",), ("users",)],
            "FROM pg_class": [("posts_id_seq",), ("users_id_seq",)],
        }
    )


@pytest.fixture
def make_pool():
    """Factory for FakePool instances."""
    return FakePool


@pytest.fixture
def users_schema() -> dict:
    """Logical schema with a users table (unique email) and a posts table."""
    return {
        "users": {
            "id": ColumnSpec("serial", nullable=False, primary_key=True),
            "name": ColumnSpec("text", nullable=False),
            "email": ColumnSpec("text", nullable=False),
        },
        "posts": {
            "id": ColumnSpec("serial", nullable=False, primary_key=True),
            "title": ColumnSpec("text", nullable=False),
            "author_id": ColumnSpec("integer"),
        },
    }


@pytest.fixture
def clean_env(tmp_path, monkeypatch):
    """
    Empty environment and an empty working directory.

    Keeps .env.test / pg_sandbox.yaml of the repository (and any variables
    set by load_dotenv during the test) from leaking across tests.
    """
    monkeypatch.chdir(tmp_path)
    with patch.dict(os.environ, {}, clear=True):
        yield tmp_path
