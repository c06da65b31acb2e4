"""
Migration discovery and application.

A migrations folder holds ``*.sql`` scripts applied in ascending filename
order. Statements inside a script are separated by the literal marker
``--> statement-breakpoint`` and executed one at a time, so statements that
must commit on their own (enum value additions) work on an autocommit
connection.

Recovery policy: the first failure anywhere triggers exactly one
recreate-the-schema-and-start-over attempt. A second failure raises
MigrationFailedError carrying both error texts.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import psycopg2
from psycopg2 import sql

from pg_sandbox.catalog import TableCatalog, plain_cursor
from pg_sandbox.exceptions import MigrationFailedError

if TYPE_CHECKING:
    from psycopg2.extensions import connection

_logger = logging.getLogger(__name__)

STATEMENT_BREAKPOINT = "--> statement-breakpoint"

# Custom apply step: (admin connection, resolved migrations folder) -> None.
# Contract: applies the whole set against the current schema, raises on
# failure, and can be called a second time after the schema was recreated.
MigrateFn = Callable[["connection", Path], None]


@dataclass(frozen=True)
class MigrationScript:
    """
    One migration file.

    Attributes:
        name: File name, used for ordering and in the ledger
        path: Absolute path of the file
        statements: Non-empty statements in file order
        hash: SHA-256 of the file content
    """

    name: str
    path: Path
    statements: tuple[str, ...]
    hash: str

    @classmethod
    def from_file(cls, path: Path) -> MigrationScript:
        content = path.read_text(encoding="utf-8")
        return cls(
            name=path.name,
            path=path,
            statements=split_statements(content),
            hash=hashlib.sha256(content.encode("utf-8")).hexdigest(),
        )


def split_statements(content: str) -> tuple[str, ...]:
    """Split script content on the breakpoint marker, dropping empty fragments."""
    return tuple(
        statement.strip()
        for statement in content.split(STATEMENT_BREAKPOINT)
        if statement.strip()
    )


def discover_migrations(folder: str | Path) -> list[MigrationScript]:
    """
    Load every ``*.sql`` script in the folder, sorted by file name.

    Raises:
        MigrationFailedError: If the folder does not exist
    """
    path = Path(folder)
    if not path.is_dir():
        raise MigrationFailedError(f"Migrations folder not found: {path}")

    return [
        MigrationScript.from_file(file)
        for file in sorted(path.glob("*.sql"), key=lambda p: p.name)
    ]


class MigrationRunner:
    """
    Applies migration scripts with a single recreate-and-retry recovery.

    Example:
        runner = MigrationRunner(TableCatalog())
        runner.apply(admin_conn, "./migrations")

    Attributes:
        catalog: Catalog used to recreate the schema before the retry
        migrate_fn: Optional replacement for the built-in apply step
    """

    def __init__(
        self,
        catalog: TableCatalog,
        migrate_fn: MigrateFn | None = None,
    ) -> None:
        self.catalog = catalog
        self.migrate_fn = migrate_fn

    def apply(self, conn: connection, folder: str | Path) -> None:
        """
        Apply all migrations in the folder.

        Raises:
            MigrationFailedError: If the folder is missing, or if applying
                failed again after the schema was recreated
        """
        resolved = Path(folder).resolve()
        if not resolved.is_dir():
            raise MigrationFailedError(f"Migrations folder not found: {resolved}")

        _logger.info(f"Running migrations from {resolved}")
        self.catalog.ensure_no_transaction(conn)

        try:
            self._apply_once(conn, resolved)
            _logger.info("Migrations completed successfully")
            return
        except Exception as e:
            original = e
            _logger.warning(
                f"Migration failed ({e}), recreating schema and retrying once..."
            )

        try:
            self.catalog.recreate_schema(conn)
            self._apply_once(conn, resolved)
        except Exception as retry_error:
            _logger.error(f"Migration retry failed: {retry_error}")
            raise MigrationFailedError.after_retry(original, retry_error) from retry_error

        _logger.info("Migrations completed successfully after retry")

    def _apply_once(self, conn: connection, folder: Path) -> None:
        if self.migrate_fn is not None:
            self.migrate_fn(conn, folder)
        else:
            self.apply_scripts(conn, discover_migrations(folder))

    def apply_scripts(self, conn: connection, scripts: list[MigrationScript]) -> int:
        """
        Execute scripts in order, recording each one in the ledger.

        Scripts already recorded with the same hash are skipped, which makes a
        second call on an unchanged store a no-op.

        Returns:
            Number of scripts executed

        Raises:
            MigrationFailedError: On the first failing statement
        """
        if not scripts:
            _logger.info("No migrations found")
            return 0

        self._ensure_ledger(conn)
        applied = self.applied_migrations(conn)

        executed = 0
        for script in scripts:
            if applied.get(script.name) == script.hash:
                _logger.debug(f"Skipping already applied migration {script.name}")
                continue
            self._execute_script(conn, script)
            self._record(conn, script)
            executed += 1

        _logger.info(f"Applied {executed} of {len(scripts)} migration(s)")
        return executed

    def applied_migrations(self, conn: connection) -> dict[str, str]:
        """Ledger contents as {script name: content hash}."""
        with plain_cursor(conn) as cur:
            cur.execute(
                sql.SQL("SELECT name, hash FROM {} ORDER BY id").format(
                    self._ledger_identifier()
                )
            )
            return {row[0]: row[1] for row in cur.fetchall()}

    def _execute_script(self, conn: connection, script: MigrationScript) -> None:
        _logger.debug(f"Applying {script.name} ({len(script.statements)} statement(s))")
        with plain_cursor(conn) as cur:
            for statement in script.statements:
                try:
                    cur.execute(statement)
                except psycopg2.Error as e:
                    raise MigrationFailedError(
                        f"Failed to execute statement in {script.name}: {e}",
                        migration_file=script.name,
                    ) from e

    def _ensure_ledger(self, conn: connection) -> None:
        with plain_cursor(conn) as cur:
            cur.execute(
                sql.SQL("CREATE SCHEMA IF NOT EXISTS {}").format(
                    sql.Identifier(self.catalog.bookkeeping_schema)
                )
            )
            cur.execute(
                sql.SQL(
                    """
                    CREATE TABLE IF NOT EXISTS {} (
                        id SERIAL PRIMARY KEY,
                        name TEXT NOT NULL,
                        hash TEXT NOT NULL,
                        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                    )
                    """
                ).format(self._ledger_identifier())
            )

    def _record(self, conn: connection, script: MigrationScript) -> None:
        with plain_cursor(conn) as cur:
            cur.execute(
                sql.SQL("INSERT INTO {} (name, hash) VALUES (%s, %s)").format(
                    self._ledger_identifier()
                ),
                (script.name, script.hash),
            )

    def _ledger_identifier(self) -> sql.Identifier:
        return sql.Identifier(
            self.catalog.bookkeeping_schema, self.catalog.bookkeeping_table
        )
