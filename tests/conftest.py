"""
Shared pytest fixtures for migrator tests.
"""
import textwrap
from pathlib import Path

import pytest
import pytest_asyncio

from migrator.services.database import Database


@pytest_asyncio.fixture
async def db(tmp_path):
    """Connected database in a temporary directory."""
    database = Database(tmp_path / "test.db")
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def write_steps(tmp_path):
    """Write step files into a directory and return its path."""

    def _write(files: dict[str, str], name: str = "dbmigration") -> Path:
        directory = tmp_path / name
        directory.mkdir(exist_ok=True)
        for filename, content in files.items():
            (directory / filename).write_text(textwrap.dedent(content))
        return directory

    return _write


@pytest.fixture
def tracking_rows(db):
    """Read all rows of a tracking table as plain dicts."""

    async def _read(table: str = "db_version") -> list[dict]:
        rows = await db.query(f'SELECT id, version, running FROM "{table}"')
        return [dict(row) for row in rows]

    return _read
