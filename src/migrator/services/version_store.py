"""Version Store - the single-row tracking table of a migration target.

The table holds one record (id = 1) with the last applied step ordinal
and the ``running`` flag that the table lock uses to mark ownership:

    CREATE TABLE "db_version" (
        id INTEGER NOT NULL DEFAULT 1,
        version INTEGER NOT NULL DEFAULT 0,
        running INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (id)
    );

All methods work on a caller-supplied session so that reads and writes
happen on the connection holding the lock.
"""

import re
import sqlite3
from dataclasses import dataclass
from typing import Optional

import aiosqlite

from migrator.core.errors import BootstrapError, MigratorError, is_already_exists_error
from migrator.core.logging import get_logger

log = get_logger("version_store")

DEFAULT_TABLE_NAME = "db_version"
RECORD_ID = 1

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass
class VersionRecord:
    """The tracking record of a migration target."""

    id: int
    version: int
    running: bool


class VersionStore:
    """Reads and writes the tracking record of one table."""

    def __init__(self, table_name: str = DEFAULT_TABLE_NAME):
        """Initialize the version store.

        Args:
            table_name: Tracking table name. Must be a plain identifier.

        Raises:
            ValueError: If the table name is not a plain identifier.
        """
        if not _IDENTIFIER.match(table_name):
            raise ValueError(f"Invalid tracking table name: {table_name!r}")
        self._table_name = table_name
        self._quoted = f'"{table_name}"'
        self._log = log.bind(component="version_store", table=table_name)

    @property
    def table_name(self) -> str:
        return self._table_name

    async def ensure_exists(self, conn: aiosqlite.Connection) -> None:
        """Create the tracking table and its record if they are absent.

        Safe to call from several runners at once: a creator that loses
        the race sees "already exists", which is ignored.

        Raises:
            BootstrapError: If creation or the first insert fails otherwise.
        """
        try:
            await conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self._quoted} (
                    id INTEGER NOT NULL DEFAULT 1,
                    version INTEGER NOT NULL DEFAULT 0,
                    running INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (id)
                )
                """
            )
            await conn.commit()
        except sqlite3.Error as e:
            if not is_already_exists_error(e):
                raise BootstrapError(
                    f"Could not create tracking table {self._table_name}", cause=e
                ) from e
            self._log.debug("tracking_table_already_exists")

        try:
            if await self._fetch_record(conn) is None:
                await conn.execute(
                    f"INSERT OR IGNORE INTO {self._quoted} (id, version, running) VALUES (?, 0, 0)",
                    (RECORD_ID,),
                )
                await conn.commit()
                self._log.info("tracking_record_created")
        except sqlite3.Error as e:
            await conn.rollback()
            raise BootstrapError(
                f"Could not insert first record into {self._table_name}", cause=e
            ) from e

    async def _fetch_record(self, conn: aiosqlite.Connection) -> Optional[VersionRecord]:
        async with conn.execute(
            f"SELECT id, version, running FROM {self._quoted} WHERE id = ?",
            (RECORD_ID,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return VersionRecord(id=row[0], version=row[1], running=bool(row[2]))

    async def read_record(self, conn: aiosqlite.Connection) -> VersionRecord:
        """Read the tracking record.

        Raises:
            BootstrapError: If the record does not exist or cannot be read.
        """
        try:
            record = await self._fetch_record(conn)
        except sqlite3.Error as e:
            raise BootstrapError(f"Could not read {self._table_name}", cause=e) from e
        if record is None:
            raise BootstrapError(f"No tracking record exists in {self._table_name}")
        return record

    async def read_version(self, conn: aiosqlite.Connection) -> int:
        """Read the last applied step ordinal (0 when nothing is applied)."""
        record = await self.read_record(conn)
        return record.version

    async def read_running(self, conn: aiosqlite.Connection) -> Optional[bool]:
        """Read the running flag, or None if the record is missing.

        Does not wrap database errors; the lock classifies them.
        """
        record = await self._fetch_record(conn)
        return None if record is None else record.running

    async def set_running(self, conn: aiosqlite.Connection) -> None:
        """Set the running flag inside the caller's open transaction."""
        await conn.execute(
            f"UPDATE {self._quoted} SET running = 1 WHERE id = ?", (RECORD_ID,)
        )

    async def clear_running(self, conn: aiosqlite.Connection) -> None:
        """Clear the running flag and commit."""
        await conn.execute(
            f"UPDATE {self._quoted} SET running = 0 WHERE id = ?", (RECORD_ID,)
        )
        await conn.commit()

    async def advance_version(self, conn: aiosqlite.Connection, version: int) -> None:
        """Record ``version`` as applied and commit before returning.

        Any statements a procedural step left uncommitted on the session
        are committed together with the new version.
        """
        try:
            await conn.execute(
                f"UPDATE {self._quoted} SET version = ? WHERE id = ?",
                (version, RECORD_ID),
            )
            await conn.commit()
        except sqlite3.Error as e:
            raise MigratorError(
                f"Could not record version {version} in {self._table_name}", cause=e
            ) from e
        self._log.debug("version_advanced", version=version)
