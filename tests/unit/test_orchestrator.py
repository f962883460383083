"""
Unit tests for the DbMigration orchestrator.

Tests cover:
- Applying declarative and procedural steps in order
- Re-running with nothing new to apply
- Concurrent runs against one database
- Failure handling: version kept, lock released
- Procedural precedence over declarative steps
- Status, manual unlock and configuration
"""
import asyncio
from pathlib import Path

import pytest

from migrator.core.config import ConfigManager
from migrator.core.errors import (
    LockAcquisitionError,
    StepExecutionError,
    StepResolutionError,
)
from migrator.services.database import Database
from migrator.services.orchestrator import DbMigration, MigrationState, RunResult
from migrator.services.steps import DirectoryStepSource, RegistryStepSource


CREATE_BLOJ_SQL = "CREATE TABLE bloj (nisse serial);"

RENAME_AND_INSERT_PY = """
async def migrate(db, log):
    await db.execute("ALTER TABLE bloj RENAME nisse TO hasse")
    await db.execute("INSERT INTO bloj (hasse) VALUES (42)")
"""

FAILING_PY = """
async def migrate(db, log):
    raise Exception("some error")
"""


def make_migration(db: Database, path: Path, **kwargs) -> DbMigration:
    kwargs.setdefault("retry_interval", 0.05)
    return DbMigration(db, migration_script_path=path, **kwargs)


class TestScenarios:
    """End-to-end runs against a fresh database."""

    @pytest.mark.asyncio
    async def test_single_sql_step(self, db, write_steps, tracking_rows):
        """An empty target gets the table from 1.sql and version 1."""
        path = write_steps({"1.sql": CREATE_BLOJ_SQL})

        result = await make_migration(db, path).run()

        assert "bloj" in await db.get_tables()
        assert await tracking_rows() == [{"id": 1, "version": 1, "running": 0}]
        assert result.start_version == 0
        assert result.end_version == 1
        assert result.applied == [1]

    @pytest.mark.asyncio
    async def test_procedural_step_after_existing_version(self, db, write_steps, tracking_rows):
        """A second run applies only the new procedural step."""
        path = write_steps({"1.sql": CREATE_BLOJ_SQL})
        await make_migration(db, path).run()

        write_steps({"2.py": RENAME_AND_INSERT_PY})
        result = await make_migration(db, path).run()

        rows = await db.query("SELECT * FROM bloj")
        assert len(rows) == 1
        assert rows[0]["hasse"] == 42
        assert await tracking_rows() == [{"id": 1, "version": 2, "running": 0}]
        assert result.applied == [2]

    @pytest.mark.asyncio
    async def test_rerun_changes_nothing(self, db, write_steps, tracking_rows):
        """Running again with the same steps is a no-op."""
        path = write_steps({"1.sql": CREATE_BLOJ_SQL, "2.py": RENAME_AND_INSERT_PY})
        await make_migration(db, path).run()

        result = await make_migration(db, path).run()

        rows = await db.query("SELECT * FROM bloj")
        assert len(rows) == 1
        assert rows[0]["hasse"] == 42
        assert await tracking_rows() == [{"id": 1, "version": 2, "running": 0}]
        assert result.applied == []
        assert result.start_version == result.end_version == 2
        assert not result.changed

    @pytest.mark.asyncio
    async def test_failing_step_surfaces_error(self, db, write_steps, tracking_rows):
        """A step raising an error fails the run and leaves version 0."""
        path = write_steps({"1.py": FAILING_PY})

        with pytest.raises(StepExecutionError) as exc_info:
            await make_migration(db, path).run()

        assert isinstance(exc_info.value.cause, Exception)
        assert str(exc_info.value.cause) == "some error"
        assert "some error" in str(exc_info.value)
        assert exc_info.value.ordinal == 1
        assert await tracking_rows() == [{"id": 1, "version": 0, "running": 0}]


class TestOrdering:
    """Steps run in ordinal order and stop at the first gap."""

    @pytest.mark.asyncio
    async def test_all_steps_applied_once(self, db, write_steps, tracking_rows):
        path = write_steps(
            {
                "1.sql": "CREATE TABLE log (n INTEGER);",
                "2.sql": "INSERT INTO log (n) VALUES (2);",
                "3.py": """
                    async def migrate(db, log):
                        await db.execute("INSERT INTO log (n) VALUES (3)")
                """,
                "4.sql": "INSERT INTO log (n) VALUES (4);",
            }
        )

        result = await make_migration(db, path).run()

        rows = await db.query("SELECT n FROM log ORDER BY rowid")
        assert [row["n"] for row in rows] == [2, 3, 4]
        assert result.applied == [1, 2, 3, 4]
        assert (await tracking_rows())[0]["version"] == 4

    @pytest.mark.asyncio
    async def test_gap_ends_run(self, db, write_steps, tracking_rows):
        path = write_steps(
            {
                "1.sql": "CREATE TABLE one (n INTEGER);",
                "3.sql": "CREATE TABLE three (n INTEGER);",
            }
        )

        result = await make_migration(db, path).run()

        tables = await db.get_tables()
        assert "one" in tables
        assert "three" not in tables
        assert result.applied == [1]

    @pytest.mark.asyncio
    async def test_sync_procedural_step(self, db, tmp_path, tracking_rows):
        """Plain functions work as procedural steps."""
        calls = []
        steps = RegistryStepSource()
        steps.register(1, lambda db, log: calls.append(db))

        await DbMigration(db, step_source=steps).run()

        assert len(calls) == 1
        assert (await tracking_rows())[0]["version"] == 1

    @pytest.mark.asyncio
    async def test_no_steps_bootstraps_table(self, db, write_steps, tracking_rows):
        path = write_steps({})

        result = await make_migration(db, path).run()

        assert result.applied == []
        assert await tracking_rows() == [{"id": 1, "version": 0, "running": 0}]

    @pytest.mark.asyncio
    async def test_step_module_with_dataclass(self, db, write_steps, tracking_rows):
        """Step modules can use anything a normal module can, dataclasses included."""
        path = write_steps(
            {
                "1.py": """
                    from __future__ import annotations

                    from dataclasses import dataclass


                    @dataclass
                    class Row:
                        n: int


                    async def migrate(db, log):
                        await db.execute("CREATE TABLE rows (n INTEGER)")
                        await db.execute("INSERT INTO rows VALUES (?)", (Row(n=7).n,))
                """,
            }
        )

        result = await make_migration(db, path).run()

        assert result.applied == [1]
        assert [row["n"] for row in await db.query("SELECT n FROM rows")] == [7]
        assert (await tracking_rows())[0]["version"] == 1


class TestPrecedence:
    """Procedural steps shadow declarative ones with the same ordinal."""

    @pytest.mark.asyncio
    async def test_procedural_wins(self, db, write_steps):
        path = write_steps(
            {
                "1.py": """
                    async def migrate(db, log):
                        await db.execute("CREATE TABLE from_code (n INTEGER)")
                """,
                "1.sql": "CREATE TABLE from_sql (n INTEGER);",
            }
        )

        await make_migration(db, path).run()

        tables = await db.get_tables()
        assert "from_code" in tables
        assert "from_sql" not in tables


class TestConcurrency:
    """Several runners on one target apply each step exactly once."""

    @pytest.mark.asyncio
    async def test_three_concurrent_runs(self, db, write_steps, tracking_rows):
        path = write_steps({"1.sql": CREATE_BLOJ_SQL, "2.py": RENAME_AND_INSERT_PY})
        migrations = [make_migration(db, path) for _ in range(3)]

        results = await asyncio.gather(*(m.run() for m in migrations))

        rows = await db.query("SELECT * FROM bloj")
        assert len(rows) == 1
        assert rows[0]["hasse"] == 42
        assert sorted(len(r.applied) for r in results) == [0, 0, 2]
        assert await tracking_rows() == [{"id": 1, "version": 2, "running": 0}]

    @pytest.mark.asyncio
    async def test_concurrent_runs_with_separate_handles(self, tmp_path, write_steps):
        """Runners with their own Database objects still exclude each other."""
        path = write_steps(
            {
                "1.sql": "CREATE TABLE hits (n INTEGER);",
                "2.py": """
                    import asyncio

                    async def migrate(db, log):
                        await asyncio.sleep(0.1)
                        await db.execute("INSERT INTO hits (n) VALUES (2)")
                """,
            }
        )
        handles = [Database(tmp_path / "shared.db") for _ in range(3)]
        for handle in handles:
            await handle.connect()

        try:
            await asyncio.gather(*(make_migration(h, path).run() for h in handles))
            rows = await handles[0].query("SELECT n FROM hits")
            record = await DbMigration(handles[0], migration_script_path=path).status()
        finally:
            for handle in handles:
                await handle.close()

        assert [row["n"] for row in rows] == [2]
        assert record.version == 2
        assert record.running is False

    @pytest.mark.asyncio
    async def test_waits_for_running_flag(self, db, write_steps, tracking_rows):
        """A run blocks while another runner's flag is set."""
        path = write_steps({"1.sql": CREATE_BLOJ_SQL})
        migration = make_migration(db, path)
        await migration.status()
        await db.query("UPDATE db_version SET running = 1")

        task = asyncio.create_task(migration.run())
        await asyncio.sleep(0.2)

        assert not task.done()
        assert migration.state == MigrationState.LOCK_PENDING
        assert "bloj" not in await db.get_tables()

        await db.query("UPDATE db_version SET running = 0")
        result = await asyncio.wait_for(task, timeout=5)

        assert result.applied == [1]
        assert await tracking_rows() == [{"id": 1, "version": 1, "running": 0}]


class TestFailures:
    """Failed runs keep the last good version and release the lock."""

    @pytest.mark.asyncio
    async def test_failure_in_middle_step(self, db, write_steps, tracking_rows):
        path = write_steps(
            {
                "1.sql": "CREATE TABLE items (n INTEGER);",
                "2.py": """
                    async def migrate(db, log):
                        await db.execute("INSERT INTO items (n) VALUES (2)")
                        raise RuntimeError("step two broke")
                """,
                "3.sql": "CREATE TABLE never_created (n INTEGER);",
            }
        )
        migration = make_migration(db, path)

        with pytest.raises(StepExecutionError) as exc_info:
            await migration.run()

        assert exc_info.value.ordinal == 2
        assert await tracking_rows() == [{"id": 1, "version": 1, "running": 0}]
        assert await db.query("SELECT n FROM items") == []
        assert "never_created" not in await db.get_tables()
        assert migration.state == MigrationState.FAILED
        assert migration.current_ordinal == 2

    @pytest.mark.asyncio
    async def test_failed_step_retried_on_next_run(self, db, write_steps, tracking_rows):
        path = write_steps({"1.sql": "CREATE TABLE items (n INTEGER);", "2.py": FAILING_PY})
        with pytest.raises(StepExecutionError):
            await make_migration(db, path).run()

        write_steps({"2.py": 'async def migrate(db, log):\n    await db.execute("INSERT INTO items VALUES (7)")\n'})
        result = await make_migration(db, path).run()

        assert result.applied == [2]
        assert [row["n"] for row in await db.query("SELECT n FROM items")] == [7]
        assert (await tracking_rows())[0]["version"] == 2

    @pytest.mark.asyncio
    async def test_sql_error(self, db, write_steps, tracking_rows):
        path = write_steps({"1.sql": "CREATE TABLE ok (n INTEGER);", "2.sql": "THIS IS NOT SQL;"})

        with pytest.raises(StepExecutionError) as exc_info:
            await make_migration(db, path).run()

        assert exc_info.value.ordinal == 2
        assert await tracking_rows() == [{"id": 1, "version": 1, "running": 0}]

    @pytest.mark.asyncio
    async def test_missing_directory(self, db, tmp_path, tracking_rows):
        migration = make_migration(db, tmp_path / "does-not-exist")

        with pytest.raises(StepResolutionError):
            await migration.run()

        assert await tracking_rows() == [{"id": 1, "version": 0, "running": 0}]

    @pytest.mark.asyncio
    async def test_not_connected(self, tmp_path, write_steps):
        database = Database(tmp_path / "closed.db")
        migration = make_migration(database, write_steps({}))

        with pytest.raises(LockAcquisitionError):
            await migration.run()

        assert migration.state == MigrationState.FAILED

    @pytest.mark.asyncio
    async def test_abandoned_run_releases_lock(self, db, write_steps, tracking_rows):
        """Cancelling a run through a timeout clears the running flag."""
        path = write_steps(
            {
                "1.py": """
                    import asyncio

                    async def migrate(db, log):
                        await asyncio.sleep(10)
                """,
            }
        )

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(make_migration(db, path).run(), timeout=0.3)

        assert await tracking_rows() == [{"id": 1, "version": 0, "running": 0}]


class TestStateAndResult:
    """Run state tracking and result reporting."""

    @pytest.mark.asyncio
    async def test_states_during_run(self, db):
        seen = []
        steps = RegistryStepSource()
        migration = DbMigration(db, step_source=steps)

        @steps.procedural(1)
        async def record_state(db, log):
            seen.append((migration.state, migration.current_ordinal))

        assert migration.state == MigrationState.IDLE
        result = await migration.run()

        assert seen == [(MigrationState.RUNNING, 1)]
        assert migration.state == MigrationState.COMPLETED
        assert migration.current_ordinal is None
        assert isinstance(result, RunResult)
        assert result.state == MigrationState.COMPLETED
        assert result.duration_seconds >= 0

    @pytest.mark.asyncio
    async def test_step_receives_bound_logger(self, db):
        received = {}
        steps = RegistryStepSource()

        @steps.procedural(1)
        async def capture(db, log):
            received["log"] = log
            received["db"] = db

        await DbMigration(db, step_source=steps).run()

        assert hasattr(received["log"], "info")
        assert received["db"] is not None


class TestStatusAndUnlock:
    """Read-only status and manual recovery."""

    @pytest.mark.asyncio
    async def test_status_on_fresh_database(self, db, write_steps):
        record = await make_migration(db, write_steps({})).status()

        assert record.id == 1
        assert record.version == 0
        assert record.running is False

    @pytest.mark.asyncio
    async def test_unlock_clears_stale_flag(self, db, write_steps, tracking_rows):
        migration = make_migration(db, write_steps({}))
        await migration.status()
        await db.query("UPDATE db_version SET running = 1")

        record = await migration.unlock()

        assert record.running is False
        assert await tracking_rows() == [{"id": 1, "version": 0, "running": 0}]

    @pytest.mark.asyncio
    async def test_custom_table_name(self, db, write_steps, tracking_rows):
        path = write_steps({"1.sql": CREATE_BLOJ_SQL})

        await make_migration(db, path, table_name="schema_state").run()

        assert "schema_state" in await db.get_tables()
        assert "db_version" not in await db.get_tables()
        assert await tracking_rows("schema_state") == [{"id": 1, "version": 1, "running": 0}]


class TestConfiguration:
    """Construction defaults and config-driven construction."""

    def test_defaults(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        migration = DbMigration(Database(tmp_path / "x.db"))

        assert migration.table_name == "db_version"
        assert isinstance(migration.step_source, DirectoryStepSource)
        assert migration.step_source.path == Path.cwd() / "dbmigration"

    def test_invalid_table_name(self, tmp_path):
        with pytest.raises(ValueError):
            DbMigration(Database(tmp_path / "x.db"), table_name='bad"; DROP TABLE x')

    def test_from_config(self, tmp_path):
        config_path = tmp_path / "migrator.toml"
        config_path.write_text(
            f"""
[migrator]
table_name = "versions"
script_path = "{(tmp_path / 'steps').as_posix()}"
retry_interval = 0.25
"""
        )

        migration = DbMigration.from_config(Database(tmp_path / "x.db"), ConfigManager(config_path))

        assert migration.table_name == "versions"
        assert migration.step_source.path == tmp_path / "steps"
        assert migration._lock.retry_interval == 0.25
