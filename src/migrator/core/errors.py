"""
Error types raised by the migration orchestrator.

Every failure that reaches the caller of ``DbMigration.run()`` is a
``MigratorError`` subclass carrying the original exception as ``cause``.
Lock contention is the one condition that is never surfaced: it is
retried internally until the lock is obtained.

Usage:
    from migrator.core.errors import StepExecutionError

    try:
        await migration.run()
    except StepExecutionError as e:
        log.error("migration_failed", ordinal=e.ordinal, error=str(e.cause))
"""

import sqlite3
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class ErrorCategory(str, Enum):
    """Classification of errors for retry decisions."""

    CONTENTION = "contention"  # Another runner holds the lock - wait and retry
    FATAL = "fatal"  # Everything else - surface to the caller


class MigratorError(Exception):
    """Base exception for all migrator errors."""

    category: ErrorCategory = ErrorCategory.FATAL

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

    def __str__(self) -> str:
        if self.cause:
            return f"{self.message} (caused by: {self.cause})"
        return self.message


class LockContention(MigratorError):
    """The tracking table is locked by another migration run."""

    category = ErrorCategory.CONTENTION


class LockAcquisitionError(MigratorError):
    """The lock could not be taken for a reason other than contention."""


class BootstrapError(MigratorError):
    """The tracking table or its record could not be created or read."""


class StepResolutionError(MigratorError):
    """The step directory or registry could not be listed or loaded."""


class StepExecutionError(MigratorError):
    """A migration step failed while running."""

    def __init__(
        self,
        message: str,
        ordinal: int,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message, cause)
        self.ordinal = ordinal


# SQLite reports a held write lock with one of these messages
_CONTENTION_PATTERNS = (
    "database is locked",
    "database is busy",
    "database table is locked",
)


def is_contention_error(error: BaseException) -> bool:
    """Check whether an exception means the database lock is held elsewhere.

    Args:
        error: Exception raised by a database call.

    Returns:
        True for SQLite busy/locked conditions and LockContention.
    """
    if isinstance(error, MigratorError):
        return error.category == ErrorCategory.CONTENTION
    if isinstance(error, sqlite3.OperationalError):
        message = str(error).lower()
        return any(pattern in message for pattern in _CONTENTION_PATTERNS)
    return False


def is_already_exists_error(error: BaseException) -> bool:
    """Check whether an exception is SQLite's "already exists" failure."""
    return isinstance(error, sqlite3.OperationalError) and "already exists" in str(error).lower()
