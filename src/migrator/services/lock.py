"""Lock Manager - table lock plus running flag.

Exclusive ownership of a migration target is taken in one transaction
on the run's session:

    BEGIN IMMEDIATE                 -- SQLite's write lock on the database
    SELECT running FROM db_version  -- 1 means another runner owns it
    UPDATE db_version SET running = 1
    COMMIT

Seeing ``running = 1``, or a write lock that stays busy past the
session's busy timeout, is contention: the transaction is rolled back
and the attempt repeats after a fixed interval, with no limit on the
number of attempts. Every other failure is raised at once.

A process that dies while owning the lock leaves ``running = 1``
behind. ``force_unlock()`` clears it by hand.
"""

import asyncio
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone

import aiosqlite
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_never,
    wait_fixed,
)

from migrator.core.errors import (
    LockAcquisitionError,
    LockContention,
    MigratorError,
    is_contention_error,
)
from migrator.core.logging import get_logger
from migrator.services.version_store import VersionStore

log = get_logger("lock")

DEFAULT_RETRY_INTERVAL_SECONDS = 0.5


@dataclass
class LockToken:
    """Ownership of a migration target for one run."""

    table_name: str
    attempts: int = 1
    acquired_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    released: bool = False


class TableLock:
    """Cross-process lock on a tracking table.

    Usage:
        lock = TableLock(VersionStore("db_version"))
        token = await lock.acquire(conn)
        try:
            ...
        finally:
            await lock.release(conn, token)
    """

    def __init__(
        self,
        store: VersionStore,
        retry_interval: float = DEFAULT_RETRY_INTERVAL_SECONDS,
    ):
        """Initialize the lock.

        Args:
            store: Version store of the tracking table.
            retry_interval: Seconds to wait between attempts under contention.
        """
        self._store = store
        self._retry_interval = retry_interval
        self._log = log.bind(component="table_lock", table=store.table_name)

    @property
    def retry_interval(self) -> float:
        return self._retry_interval

    def _on_contention(self, state: RetryCallState) -> None:
        exception = state.outcome.exception() if state.outcome else None
        self._log.info(
            "lock_contended",
            attempt=state.attempt_number,
            reason=exception.message if isinstance(exception, MigratorError) else None,
            wait_seconds=self._retry_interval,
        )

    async def acquire(self, conn: aiosqlite.Connection) -> LockToken:
        """Take the lock, waiting as long as another runner holds it.

        Args:
            conn: Session that will own the lock for the whole run.

        Returns:
            Token to pass to ``release()``.

        Raises:
            LockAcquisitionError: On any failure other than contention.
        """
        attempts = 0
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(LockContention),
            wait=wait_fixed(self._retry_interval),
            stop=stop_never,
            before_sleep=self._on_contention,
            reraise=True,
        ):
            with attempt:
                attempts = attempt.retry_state.attempt_number
                await self._try_acquire(conn)

        self._log.info("lock_acquired", attempts=attempts)
        return LockToken(table_name=self._store.table_name, attempts=attempts)

    async def _try_acquire(self, conn: aiosqlite.Connection) -> None:
        try:
            await conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            if is_contention_error(e):
                raise LockContention("Database write lock is busy", cause=e) from e
            raise LockAcquisitionError(
                f"Could not lock {self._store.table_name}", cause=e
            ) from e

        try:
            running = await self._store.read_running(conn)
            if running is None:
                raise LockAcquisitionError(
                    "No locking record exists, it should be created by now"
                )
            if running:
                raise LockContention("Another process is running the migrations")
            await self._store.set_running(conn)
            await self._commit_claim(conn)
        except MigratorError:
            await conn.rollback()
            raise
        except sqlite3.Error as e:
            await conn.rollback()
            if is_contention_error(e):
                raise LockContention("Database write lock is busy", cause=e) from e
            raise LockAcquisitionError(
                f"Could not lock {self._store.table_name}", cause=e
            ) from e

    async def _commit_claim(self, conn: aiosqlite.Connection) -> None:
        try:
            await conn.commit()
        except asyncio.CancelledError:
            await self._abandon_claim(conn)
            raise

    async def _abandon_claim(self, conn: aiosqlite.Connection) -> None:
        # The connection's worker thread finishes a commit even when the
        # awaiting task is cancelled. Queue behind it to see whether it landed.
        await conn.execute("SELECT 1")
        if conn.in_transaction:
            await conn.rollback()
        else:
            await self._store.clear_running(conn)
        self._log.info("lock_claim_abandoned")

    async def release(self, conn: aiosqlite.Connection, token: LockToken) -> None:
        """Release the lock.

        Work left uncommitted on the session is rolled back first so that
        clearing the flag does not commit a failed step's statements.
        Releasing an already released token does nothing.
        """
        if token.released:
            return

        if conn.in_transaction:
            await conn.rollback()
        await self._store.clear_running(conn)
        token.released = True
        self._log.info("lock_released")

    async def force_unlock(self, conn: aiosqlite.Connection) -> None:
        """Clear the running flag regardless of who set it.

        Only for recovery after a runner died while holding the lock.
        """
        await self._store.clear_running(conn)
        self._log.warning("lock_forcibly_released")
