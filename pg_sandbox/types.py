"""
Type definitions and state records for pg_sandbox.

These dataclasses describe the declared schema, the isolation modes, the
outcome of cleanup steps, and the engine/test state records.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Union

if TYPE_CHECKING:
    from psycopg2.extensions import connection
    from psycopg2.pool import AbstractConnectionPool


class TestMode(str, Enum):
    """Isolation strategy applied to a single test."""

    __test__ = False  # not a pytest test class

    SAVEPOINT = "savepoint"
    TRUNCATE = "truncate"

    @classmethod
    def parse(cls, value: TestMode | str) -> TestMode:
        """Coerce a mode name into a TestMode, raising ValueError if unknown."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            valid = ", ".join(m.value for m in cls)
            raise ValueError(
                f"Invalid test mode: '{value}'. Must be one of: {valid}"
            ) from None


@dataclass(frozen=True)
class ColumnSpec:
    """
    Structural description of one column.

    Attributes:
        type: Type tag, e.g. "serial", "text", "integer", "user_status"
        nullable: Whether the column accepts NULL
        primary_key: Whether the column is (part of) the primary key
    """

    type: str
    nullable: bool = True
    primary_key: bool = False


# table name -> column name -> ColumnSpec (or an equivalent plain mapping)
SchemaDefinition = Mapping[str, Mapping[str, Union[ColumnSpec, Mapping[str, Any]]]]


class CleanupStatus(str, Enum):
    OK = "ok"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class CleanupResult:
    """
    Outcome of a per-test exit-action.

    Cleanup never raises into the calling test; a failure is reported as
    ``degraded`` with the error text in ``detail`` instead.
    """

    status: CleanupStatus
    detail: str | None = None

    @classmethod
    def ok(cls) -> CleanupResult:
        return cls(CleanupStatus.OK)

    @classmethod
    def degraded(cls, detail: str) -> CleanupResult:
        return cls(CleanupStatus.DEGRADED, detail)

    @property
    def is_ok(self) -> bool:
        return self.status is CleanupStatus.OK

    def merge(self, other: CleanupResult) -> CleanupResult:
        """Combine two results; any degraded part degrades the whole."""
        if self.is_ok:
            return other
        if other.is_ok:
            return self
        return CleanupResult.degraded(f"{self.detail}; {other.detail}")


@dataclass
class GlobalState:
    """
    Engine-scoped state shared by every test.

    Attributes:
        pool: Connection pool backing the store
        owns_pool: True if the pool was created from a DSN by this engine
        admin_conn: Autocommit connection used for rebuild-class operations
        fingerprint: Fingerprint of the schema the store was last built for
        table_names: Cached user-owned tables, used by truncate cleanup
        rebuild_count: Number of rebuilds performed (diagnostic)
    """

    pool: AbstractConnectionPool | None = None
    owns_pool: bool = False
    admin_conn: connection | None = None
    fingerprint: str | None = None
    table_names: list[str] = field(default_factory=list)
    rebuild_count: int = 0

    @property
    def is_initialized(self) -> bool:
        return self.pool is not None

    def reset(self) -> None:
        """Forget the fingerprint and catalog; keep the handle open."""
        self.fingerprint = None
        self.table_names = []

    def clear(self) -> None:
        self.pool = None
        self.owns_pool = False
        self.admin_conn = None
        self.reset()


class Phase(str, Enum):
    IDLE = "idle"
    SAVEPOINT = "savepoint"
    TRUNCATE = "truncate"


@dataclass
class TestState:
    """
    Per-test state. Never outlives one enter()/exit() pair.

    Attributes:
        mode: Current isolation mode of the active test
        session: Pool connection dedicated to the active test
    """

    __test__ = False  # not a pytest test class

    mode: TestMode = TestMode.SAVEPOINT
    session: connection | None = None

    @property
    def phase(self) -> Phase:
        if self.session is None:
            return Phase.IDLE
        return Phase(self.mode.value)

    def reset(self) -> None:
        self.mode = TestMode.SAVEPOINT
        self.session = None
