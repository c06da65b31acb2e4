"""
Per-test isolation modes.

States: idle, savepoint, truncate.

savepoint: the test runs inside an explicit transaction with a fixed-name
savepoint; exit rolls everything back.
truncate: statements run (and commit) directly; exit truncates every cached
user table and restarts sequences.

Exit-actions never raise into the calling test. Failures are logged and
reported as a degraded CleanupResult.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from pg_sandbox.catalog import TableCatalog, plain_cursor
from pg_sandbox.types import CleanupResult, Phase, TestMode, TestState

if TYPE_CHECKING:
    from psycopg2.extensions import connection

_logger = logging.getLogger(__name__)

SAVEPOINT_NAME = "pg_sandbox_test"


class ModeController:
    """
    Savepoint/truncate state machine for the active test.

    Attributes:
        state: Per-test state record (mode + session)
        catalog: Catalog used for truncate cleanup
    """

    def __init__(
        self,
        catalog: TableCatalog,
        table_names: Callable[[], list[str]],
        state: TestState | None = None,
    ) -> None:
        self.catalog = catalog
        self.state = state or TestState()
        self._table_names = table_names

    @property
    def phase(self) -> Phase:
        return self.state.phase

    @property
    def mode(self) -> TestMode:
        return self.state.mode

    @property
    def session(self) -> connection | None:
        return self.state.session

    def enter(self, session: connection, mode: TestMode | str = TestMode.SAVEPOINT) -> None:
        """Attach the session and move from idle into the requested mode."""
        self.state.mode = TestMode.parse(mode)
        self.state.session = session
        try:
            self._enter_mode()
        except Exception:
            self.state.reset()
            raise

    def switch_mode(self, new_mode: TestMode | str) -> CleanupResult:
        """
        Switch isolation mode in the middle of a test.

        Runs the exit-actions of the current mode, then the entry-actions of
        the new one. Leaving savepoint mode rolls back the enclosing
        transaction, so everything written so far is discarded.
        """
        new_mode = TestMode.parse(new_mode)
        if new_mode == self.state.mode:
            return CleanupResult.ok()

        _logger.debug(f"Switching test mode {self.state.mode.value} -> {new_mode.value}")
        result = self._exit_mode()
        self.state.mode = new_mode
        self._enter_mode()
        return result

    def exit(self) -> CleanupResult:
        """
        Undo the test's effects and return to idle.

        Always resets the state, whatever the exit-actions did.
        """
        try:
            return self._exit_mode()
        finally:
            self.state.reset()

    def _enter_mode(self) -> None:
        session = self.state.session
        if session is None:
            return

        if self.state.mode is TestMode.SAVEPOINT:
            _logger.debug("Setting up savepoint")
            with plain_cursor(session) as cur:
                cur.execute("BEGIN")
                cur.execute(f"SAVEPOINT {SAVEPOINT_NAME}")

    def _exit_mode(self) -> CleanupResult:
        session = self.state.session
        if session is None:
            return CleanupResult.ok()

        if self.state.mode is TestMode.SAVEPOINT:
            return self._rollback_savepoint(session)
        return self._truncate(session)

    def _rollback_savepoint(self, session: connection) -> CleanupResult:
        _logger.debug("Cleaning up savepoint")
        try:
            with plain_cursor(session) as cur:
                cur.execute(f"ROLLBACK TO SAVEPOINT {SAVEPOINT_NAME}")
                cur.execute("ROLLBACK")
            return CleanupResult.ok()
        except Exception as e:
            _logger.warning(f"Failed to rollback to savepoint: {e}")
            detail = f"savepoint rollback failed: {e}"

        try:
            with plain_cursor(session) as cur:
                cur.execute("ROLLBACK")
        except Exception as rollback_error:
            _logger.error(f"Failed to rollback transaction: {rollback_error}")
            detail = f"{detail}; transaction rollback failed: {rollback_error}"

        return CleanupResult.degraded(detail)

    def _truncate(self, session: connection) -> CleanupResult:
        _logger.debug("Cleaning up by truncating tables")
        try:
            self.catalog.truncate_and_reset(session, self._table_names())
            return CleanupResult.ok()
        except Exception as e:
            _logger.error(f"Failed to truncate tables: {e}")
            return CleanupResult.degraded(f"truncate failed: {e}")
