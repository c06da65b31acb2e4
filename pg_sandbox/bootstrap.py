"""
Test database bootstrap.

Creates the target database through the ``postgres`` maintenance database
when it does not exist yet, so a fresh PostgreSQL container is usable without
an init script.
"""

from __future__ import annotations

import logging

import psycopg2
from psycopg2 import sql
from psycopg2.extensions import make_dsn, parse_dsn

from pg_sandbox.config import scrub_dsn
from pg_sandbox.exceptions import ConfigurationError, ConnectionError

_logger = logging.getLogger(__name__)

MAINTENANCE_DATABASE = "postgres"


def maintenance_dsn(dsn: str) -> tuple[str, str]:
    """
    Split a DSN into (maintenance DSN, target database name).

    Raises:
        ConfigurationError: If the DSN cannot be parsed or names no database
    """
    try:
        params = parse_dsn(dsn)
    except psycopg2.ProgrammingError as e:
        raise ConfigurationError(f"Invalid database URL {scrub_dsn(dsn)}: {e}") from e

    dbname = params.get("dbname")
    if not dbname:
        raise ConfigurationError(f"Database URL names no database: {scrub_dsn(dsn)}")

    params["dbname"] = MAINTENANCE_DATABASE
    return make_dsn(**params), dbname


def ensure_database_exists(dsn: str, connect_timeout: int = 5) -> bool:
    """
    Create the database named in ``dsn`` if it is missing.

    Returns:
        True if the database was created, False if it already existed

    Raises:
        ConfigurationError: If the DSN is invalid
        ConnectionError: If the maintenance database cannot be reached
    """
    admin_dsn, dbname = maintenance_dsn(dsn)

    try:
        conn = psycopg2.connect(admin_dsn, connect_timeout=connect_timeout)
    except psycopg2.Error as e:
        raise ConnectionError(
            f"Could not connect to maintenance database for {scrub_dsn(dsn)}: {e}"
        ) from e

    try:
        # CREATE DATABASE cannot run inside a transaction block
        conn.autocommit = True
        with conn.cursor() as cur:
            cur.execute("SELECT 1 FROM pg_database WHERE datname = %s", (dbname,))
            if cur.fetchone() is not None:
                _logger.debug(f"Database {dbname} already exists")
                return False

            _logger.info(f"Creating database: {dbname}")
            cur.execute(sql.SQL("CREATE DATABASE {}").format(sql.Identifier(dbname)))
            return True
    finally:
        conn.close()
