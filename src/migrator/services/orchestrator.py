"""Migration Orchestrator - applies pending steps exactly once.

A run:
1. Opens one session that lives for the whole run
2. Creates the tracking table and record if absent
3. Takes the table lock (waiting while another runner holds it)
4. Reads the current version v and runs steps v+1, v+2, ... in order,
   recording each ordinal right after its step succeeds
5. Stops at the first ordinal with no step, releases the lock

If anything fails after the lock is taken, the lock is released before
the error reaches the caller. The version stays at the last step that
succeeded, so the next run retries the failed step.

Bootstrap runs before the lock because the lock's flag lives in the
tracking table.
"""

import sqlite3
import time
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Union

import aiosqlite

from migrator.core.config import ConfigManager
from migrator.core.errors import LockAcquisitionError
from migrator.core.logging import get_logger
from migrator.services.database import Database
from migrator.services.lock import DEFAULT_RETRY_INTERVAL_SECONDS, LockToken, TableLock
from migrator.services.steps import (
    DEFAULT_STEP_DIRECTORY,
    DirectoryStepSource,
    StepSource,
    execute_step,
)
from migrator.services.version_store import DEFAULT_TABLE_NAME, VersionRecord, VersionStore

log = get_logger("orchestrator")


class MigrationState(str, Enum):
    """Where a run currently is."""

    IDLE = "idle"
    LOCK_PENDING = "lock_pending"
    INITIALIZING = "initializing"
    RUNNING = "running"
    ADVANCING = "advancing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class RunResult:
    """Outcome of a successful run."""

    start_version: int
    end_version: int
    applied: list[int] = field(default_factory=list)
    state: MigrationState = MigrationState.COMPLETED
    duration_seconds: float = 0.0

    @property
    def changed(self) -> bool:
        """True if at least one step was applied."""
        return bool(self.applied)


class DbMigration:
    """Runs migration steps against one database target.

    Usage:
        db = Database("app.db")
        await db.connect()

        migration = DbMigration(db, migration_script_path="./dbmigration")
        result = await migration.run()
        print(result.end_version)
    """

    def __init__(
        self,
        db: Database,
        table_name: str = DEFAULT_TABLE_NAME,
        migration_script_path: Optional[Union[str, Path]] = None,
        logger: Optional[Any] = None,
        step_source: Optional[StepSource] = None,
        retry_interval: float = DEFAULT_RETRY_INTERVAL_SECONDS,
    ):
        """Initialize the orchestrator.

        Args:
            db: Connected database handle of the target.
            table_name: Tracking table name.
            migration_script_path: Step directory, relative paths resolve
                against the working directory. Ignored if ``step_source``
                is given.
            logger: structlog logger; defaults to the module logger.
            step_source: Where steps come from; defaults to a
                DirectoryStepSource on ``migration_script_path``.
            retry_interval: Seconds between lock attempts under contention.
        """
        self._db = db
        self._store = VersionStore(table_name)
        self._lock = TableLock(self._store, retry_interval=retry_interval)

        if step_source is None:
            step_source = DirectoryStepSource(
                migration_script_path if migration_script_path is not None else DEFAULT_STEP_DIRECTORY
            )
        self._source = step_source

        self._log = (logger or log).bind(component="db_migration", table=table_name)
        self._state = MigrationState.IDLE
        self._current_ordinal: Optional[int] = None

    @classmethod
    def from_config(cls, db: Database, config: ConfigManager) -> "DbMigration":
        """Build an orchestrator from ``migrator.*`` configuration keys."""
        return cls(
            db,
            table_name=config.get_str("migrator.table_name", DEFAULT_TABLE_NAME),
            migration_script_path=config.get_str("migrator.script_path", DEFAULT_STEP_DIRECTORY),
            retry_interval=config.get_float(
                "migrator.retry_interval", DEFAULT_RETRY_INTERVAL_SECONDS
            ),
        )

    @property
    def table_name(self) -> str:
        return self._store.table_name

    @property
    def step_source(self) -> StepSource:
        return self._source

    @property
    def state(self) -> MigrationState:
        return self._state

    @property
    def current_ordinal(self) -> Optional[int]:
        """Ordinal being resolved or applied, None outside the step loop."""
        return self._current_ordinal

    def _set_state(self, state: MigrationState, ordinal: Optional[int] = None) -> None:
        self._state = state
        self._current_ordinal = ordinal

    async def run(self) -> RunResult:
        """Apply every pending step.

        Returns:
            RunResult with the versions before and after the run.

        Raises:
            LockAcquisitionError: No session could be opened or the lock
                failed for a reason other than contention.
            BootstrapError: The tracking table could not be prepared.
            StepResolutionError: The steps could not be listed or loaded.
            StepExecutionError: A step failed.
        """
        started = time.monotonic()
        self._set_state(MigrationState.LOCK_PENDING)

        async with AsyncExitStack() as stack:
            try:
                conn = await stack.enter_async_context(self._db.session())
            except (RuntimeError, OSError, sqlite3.Error) as e:
                self._set_state(MigrationState.FAILED)
                self._log.error("session_open_failed", error=str(e))
                raise LockAcquisitionError("Could not open a database session", cause=e) from e

            result = await self._run_in_session(conn)

        result.duration_seconds = time.monotonic() - started
        self._log.info(
            "migration_run_completed",
            start_version=result.start_version,
            end_version=result.end_version,
            applied=result.applied,
            duration_seconds=round(result.duration_seconds, 3),
        )
        return result

    async def _run_in_session(self, conn: aiosqlite.Connection) -> RunResult:
        try:
            await self._store.ensure_exists(conn)
            token = await self._lock.acquire(conn)
        except BaseException as e:
            self._set_state(MigrationState.FAILED)
            self._log.error("migration_setup_failed", error=str(e))
            raise

        try:
            self._set_state(MigrationState.INITIALIZING)
            start_version = await self._store.read_version(conn)
            self._log.info("current_database_version", version=start_version)

            applied = await self._run_steps(conn, start_version + 1)
        except BaseException as e:
            # Includes cancellation: an abandoned run must not leave the target locked
            self._set_state(MigrationState.FAILED, self._current_ordinal)
            self._log.error(
                "migration_run_failed",
                ordinal=self._current_ordinal,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._release_after_failure(conn, token)
            raise

        await self._lock.release(conn, token)
        self._set_state(MigrationState.COMPLETED)
        end_version = applied[-1] if applied else start_version
        return RunResult(start_version=start_version, end_version=end_version, applied=applied)

    async def _run_steps(self, conn: aiosqlite.Connection, first_ordinal: int) -> list[int]:
        applied: list[int] = []
        ordinal = first_ordinal

        while True:
            self._set_state(MigrationState.RUNNING, ordinal)
            step = self._source.resolve(ordinal)
            if step is None:
                self._log.debug("no_migration_step", ordinal=ordinal)
                break

            self._log.info(
                "migration_step_started", ordinal=ordinal, kind=step.kind, source=step.source
            )
            await execute_step(step, conn, self._log.bind(ordinal=ordinal))

            self._set_state(MigrationState.ADVANCING, ordinal)
            await self._store.advance_version(conn, ordinal)
            self._log.info("migration_step_applied", ordinal=ordinal)

            applied.append(ordinal)
            ordinal += 1

        return applied

    async def _release_after_failure(self, conn: aiosqlite.Connection, token: LockToken) -> None:
        try:
            await self._lock.release(conn, token)
        except Exception as e:
            # The run's own error is the one the caller sees
            self._log.error("lock_release_failed", error=str(e))

    async def status(self) -> VersionRecord:
        """Read the tracking record without taking the lock.

        Creates the tracking table first if it does not exist yet.
        """
        async with self._db.session() as conn:
            await self._store.ensure_exists(conn)
            return await self._store.read_record(conn)

    async def unlock(self) -> VersionRecord:
        """Clear a running flag left behind by a runner that died.

        Only safe when no other run is in progress on this target.
        """
        async with self._db.session() as conn:
            await self._store.ensure_exists(conn)
            await self._lock.force_unlock(conn)
            return await self._store.read_record(conn)
