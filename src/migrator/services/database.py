"""Database handle - async SQLite connection management.

This service:
- Owns the primary connection to a migration target
- Hands out dedicated sessions (one connection each) for migration runs
- Runs ad hoc queries on the primary connection
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Optional, Sequence

import aiosqlite

from migrator.core.logging import get_logger

log = get_logger("database")

DEFAULT_BUSY_TIMEOUT_SECONDS = 5.0


class Database:
    """Handle to an SQLite database used as a migration target.

    aiosqlite connections are not safe to share between concurrent
    transactions, so the primary connection is serialized with a lock and
    each migration run gets its own session from ``session()``. Sessions
    from different ``Database`` objects (or processes) pointing at the
    same file contend through SQLite's own file locking.
    """

    def __init__(
        self,
        path: str | Path,
        busy_timeout: float = DEFAULT_BUSY_TIMEOUT_SECONDS,
    ):
        """Initialize the database handle.

        Args:
            path: Path to SQLite database file.
            busy_timeout: Seconds a statement waits on a locked database
                before failing with "database is locked".
        """
        self._path = Path(path)
        self._busy_timeout = busy_timeout
        self._connection: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self._connected = False
        self._log = log.bind(component="database", path=str(self._path))

    @property
    def path(self) -> Path:
        """Database file path."""
        return self._path

    @property
    def is_connected(self) -> bool:
        """Check if the handle is connected."""
        return self._connected

    async def connect(self) -> None:
        """Connect to the database."""
        async with self._lock:
            if self._connected:
                return

            self._path.parent.mkdir(parents=True, exist_ok=True)

            self._connection = await self._open()

            # WAL lets readers proceed while a migration run holds the write lock
            await self._connection.execute("PRAGMA journal_mode=WAL")
            await self._connection.execute("PRAGMA synchronous=NORMAL")

            self._connected = True
            self._log.debug("database_connected")

    async def close(self) -> None:
        """Close the primary connection."""
        async with self._lock:
            if self._connection:
                await self._connection.close()
                self._connection = None
            self._connected = False
            self._log.debug("database_closed")

    async def _open(self) -> aiosqlite.Connection:
        conn = await aiosqlite.connect(str(self._path), timeout=self._busy_timeout)
        conn.row_factory = aiosqlite.Row
        await conn.execute(f"PRAGMA busy_timeout={int(self._busy_timeout * 1000)}")
        return conn

    @asynccontextmanager
    async def session(self) -> AsyncIterator[aiosqlite.Connection]:
        """Open a dedicated connection for the duration of the block.

        The connection is closed exactly once when the block exits,
        whether it exits normally or with an exception.

        Raises:
            RuntimeError: If the handle is not connected.
        """
        if not self._connected:
            raise RuntimeError("Database not connected")

        conn = await self._open()
        try:
            yield conn
        finally:
            await conn.close()

    async def query(
        self,
        sql: str,
        params: Sequence[Any] = (),
    ) -> list[aiosqlite.Row]:
        """Run one statement on the primary connection and commit.

        Args:
            sql: SQL statement.
            params: Positional parameters.

        Returns:
            All result rows (empty for statements without results).

        Raises:
            RuntimeError: If the handle is not connected.
        """
        if not self._connected or not self._connection:
            raise RuntimeError("Database not connected")

        async with self._lock:
            async with self._connection.execute(sql, params) as cursor:
                rows = list(await cursor.fetchall())
            await self._connection.commit()
        return rows

    async def get_tables(self) -> list[str]:
        """Get list of tables in the database."""
        rows = await self.query(
            "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
        )
        return [row["name"] for row in rows]
