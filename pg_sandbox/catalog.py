"""
Table catalog for the sandboxed schema.

Enumerates the user-owned tables of the active schema, empties them between
tests, and drops/recreates the whole schema when the store is rebuilt.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from psycopg2 import sql
from psycopg2.extensions import (
    TRANSACTION_STATUS_INERROR,
    TRANSACTION_STATUS_INTRANS,
    cursor,
)

if TYPE_CHECKING:
    from psycopg2.extensions import connection

_logger = logging.getLogger(__name__)

DEFAULT_SCHEMA = "public"
BOOKKEEPING_SCHEMA = "pg_sandbox"
BOOKKEEPING_TABLE = "__pg_sandbox_migrations"
INTERNAL_PREFIX = "pg_sandbox_"


def plain_cursor(conn: connection) -> cursor:
    """Open a tuple-row cursor regardless of the connection's cursor_factory."""
    return conn.cursor(cursor_factory=cursor)


class TableCatalog:
    """
    Physical objects of one schema.

    The catalog holds no connection of its own; every operation runs on the
    connection it is given, so the same catalog serves the admin connection
    during rebuilds and the per-test sessions during cleanup.

    Attributes:
        schema: Active schema holding the application tables
        bookkeeping_schema: Schema holding the migration ledger
        bookkeeping_table: Name of the migration ledger table
    """

    def __init__(
        self,
        schema: str = DEFAULT_SCHEMA,
        bookkeeping_schema: str = BOOKKEEPING_SCHEMA,
        bookkeeping_table: str = BOOKKEEPING_TABLE,
    ) -> None:
        self.schema = schema
        self.bookkeeping_schema = bookkeeping_schema
        self.bookkeeping_table = bookkeeping_table

    def is_user_object(self, name: str) -> bool:
        return name != self.bookkeeping_table and not name.startswith(INTERNAL_PREFIX)

    def list_user_tables(self, conn: connection) -> list[str]:
        """
        List user-owned tables of the active schema, ordered by name.

        Excludes the migration ledger and pg_sandbox_-prefixed objects.
        """
        with plain_cursor(conn) as cur:
            cur.execute(
                """
                SELECT tablename
                FROM pg_tables
                WHERE schemaname = %s
                ORDER BY tablename
                """,
                (self.schema,),
            )
            rows = cur.fetchall()

        return [row[0] for row in rows if self.is_user_object(row[0])]

    def list_sequences(self, conn: connection) -> list[str]:
        with plain_cursor(conn) as cur:
            cur.execute(
                """
                SELECT c.relname
                FROM pg_class c
                INNER JOIN pg_namespace n ON n.oid = c.relnamespace
                WHERE c.relkind = 'S'
                AND n.nspname = %s
                ORDER BY c.relname
                """,
                (self.schema,),
            )
            rows = cur.fetchall()

        return [row[0] for row in rows if self.is_user_object(row[0])]

    def truncate_and_reset(self, conn: connection, tables: list[str]) -> None:
        """
        Empty the given tables and restart every application sequence.

        Issues a single TRUNCATE ... RESTART IDENTITY CASCADE across all tables,
        then restarts each sequence of the schema at its start value.

        Raises:
            psycopg2.Error: Propagated unchanged; the caller decides whether
                to surface or log it
        """
        if not tables:
            return

        statement = sql.SQL("TRUNCATE TABLE {} RESTART IDENTITY CASCADE").format(
            sql.SQL(", ").join(
                sql.Identifier(self.schema, table) for table in tables
            )
        )
        with plain_cursor(conn) as cur:
            cur.execute(statement)

        sequences = self.list_sequences(conn)
        with plain_cursor(conn) as cur:
            for sequence in sequences:
                cur.execute(
                    sql.SQL("ALTER SEQUENCE {} RESTART").format(
                        sql.Identifier(self.schema, sequence)
                    )
                )

        _logger.debug(
            f"Truncated {len(tables)} table(s), restarted {len(sequences)} sequence(s)"
        )

    def set_search_path(self, conn: connection) -> None:
        """
        Resolve unqualified names in the active schema.

        Unqualified migration DDL and test queries must land in the schema the
        catalog lists, truncates and recreates. The setting lives on the
        connection, so it survives the connection's trips through the pool.
        """
        with plain_cursor(conn) as cur:
            cur.execute(
                sql.SQL("SET search_path TO {}").format(sql.Identifier(self.schema))
            )

    def ensure_no_transaction(self, conn: connection) -> None:
        """
        Make sure no transaction is open on the connection.

        Schema DDL and some migration statements (enum value additions) must
        commit immediately, outside any transaction block.
        """
        status = conn.get_transaction_status()
        if status in (TRANSACTION_STATUS_INTRANS, TRANSACTION_STATUS_INERROR):
            _logger.warning("Found an open transaction on the admin connection, rolling back")
            with plain_cursor(conn) as cur:
                cur.execute("ROLLBACK")

    def recreate_schema(self, conn: connection) -> None:
        """
        Drop and recreate the active schema.

        Drops the active schema and the bookkeeping schema (both tolerated
        when absent), recreates the active schema and grants default access.
        """
        self.ensure_no_transaction(conn)

        with plain_cursor(conn) as cur:
            cur.execute(
                sql.SQL("DROP SCHEMA IF EXISTS {} CASCADE").format(
                    sql.Identifier(self.schema)
                )
            )
            cur.execute(
                sql.SQL("DROP SCHEMA IF EXISTS {} CASCADE").format(
                    sql.Identifier(self.bookkeeping_schema)
                )
            )
            cur.execute(
                sql.SQL("CREATE SCHEMA {}").format(sql.Identifier(self.schema))
            )
            cur.execute(
                sql.SQL("GRANT ALL ON SCHEMA {} TO PUBLIC").format(
                    sql.Identifier(self.schema)
                )
            )
            cur.execute(
                sql.SQL("GRANT ALL ON SCHEMA {} TO CURRENT_USER").format(
                    sql.Identifier(self.schema)
                )
            )

        _logger.info(f'Recreated schema "{self.schema}"')
