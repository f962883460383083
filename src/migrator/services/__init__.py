"""Migration services - database handle, version store, lock, steps, orchestrator."""

from migrator.services.database import Database
from migrator.services.lock import LockToken, TableLock
from migrator.services.orchestrator import DbMigration, MigrationState, RunResult
from migrator.services.steps import (
    DeclarativeStep,
    DirectoryStepSource,
    ProceduralStep,
    RegistryStepSource,
    StepSource,
    execute_step,
    resolve_step_path,
)
from migrator.services.version_store import VersionRecord, VersionStore

__all__ = [
    "Database",
    "VersionStore",
    "VersionRecord",
    "TableLock",
    "LockToken",
    "StepSource",
    "DirectoryStepSource",
    "RegistryStepSource",
    "ProceduralStep",
    "DeclarativeStep",
    "execute_step",
    "resolve_step_path",
    "DbMigration",
    "MigrationState",
    "RunResult",
]
