"""
Exception hierarchy for pg_sandbox.

All exceptions inherit from PgSandboxError and carry a stable machine-readable
``code`` so test authors can branch on (or assert against) failures directly:

    try:
        engine.enter()
    except PgSandboxError as e:
        if e.code == "DB_NOT_INITIALIZED":
            ...
"""

from __future__ import annotations


class PgSandboxError(Exception):
    """
    Base exception for all pg_sandbox errors.

    Attributes:
        message: Human-readable error message
        code: Stable error code (never localized, never reworded)
    """

    code = "PG_SANDBOX_ERROR"

    def __init__(self, message: str, code: str | None = None) -> None:
        self.message = message
        if code is not None:
            self.code = code
        super().__init__(self.message)


class NotInitializedError(PgSandboxError):
    """
    Raised when a test tries to enter the sandbox before setup() ran.

    Error Code: DB_NOT_INITIALIZED

    Also raised after teardown() until setup() is called again. Always fatal
    to the calling test.

    Example:
        raise NotInitializedError()
        # PgSandboxError: Test database not initialized. Call setup() first.
    """

    code = "DB_NOT_INITIALIZED"

    def __init__(self) -> None:
        super().__init__("Test database not initialized. Call setup() first.")


class MigrationFailedError(PgSandboxError):
    """
    Raised when migrations fail even after the single recreate-and-retry.

    Error Code: MIGRATION_FAILED

    Attributes:
        reason: Message without the "Migration failed: " prefix
        original_error: Text of the first failure
        retry_error: Text of the failure seen after the schema was recreated
        migration_file: Script that was executing when the failure happened
    """

    code = "MIGRATION_FAILED"

    def __init__(
        self,
        message: str,
        original_error: str | None = None,
        retry_error: str | None = None,
        migration_file: str | None = None,
    ) -> None:
        self.reason = message
        self.original_error = original_error
        self.retry_error = retry_error
        self.migration_file = migration_file
        super().__init__(f"Migration failed: {message}")

    @classmethod
    def after_retry(
        cls, original: BaseException, retry: BaseException
    ) -> MigrationFailedError:
        """Build the error raised once the recovery attempt is exhausted."""
        original_text = _reason(original)
        retry_text = _reason(retry)
        error = cls(
            "Migration failed even after schema recreation. "
            f"Original error: {original_text}. Retry error: {retry_text}",
            original_error=original_text,
            retry_error=retry_text,
        )
        error.migration_file = getattr(retry, "migration_file", None)
        return error


class InvalidSchemaError(PgSandboxError):
    """
    Raised when a schema description is malformed.

    Error Code: INVALID_SCHEMA

    This includes:
    - Column spec without a type tag
    - Column spec that is neither a ColumnSpec nor a mapping
    - Table entry that is not a mapping of columns
    """

    code = "INVALID_SCHEMA"


class ConfigurationError(PgSandboxError):
    """
    Raised when configuration is invalid or incomplete.

    Error Code: INVALID_CONFIG
    """

    code = "INVALID_CONFIG"


class ConnectionError(PgSandboxError):
    """
    Raised when the store cannot be reached.

    Error Code: CONNECTION_FAILED

    This includes:
    - Pool creation failures (unreachable host, bad credentials)
    - Pool exhaustion when a test asks for its session
    """

    code = "CONNECTION_FAILED"


class HandleReleasedError(PgSandboxError):
    """
    Raised when a test handle is used after its test was exited.

    Error Code: HANDLE_RELEASED

    The handle's connection went back to the pool on exit() and may already
    belong to another test.
    """

    code = "HANDLE_RELEASED"

    def __init__(self) -> None:
        super().__init__("Test database handle was released. Call enter() again.")


def _reason(error: BaseException) -> str:
    if isinstance(error, MigrationFailedError):
        return error.reason
    return str(error)
