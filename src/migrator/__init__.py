"""Migrator - applies numbered database migration steps exactly once.

Concurrent runners against the same database coordinate through a
lock on the tracking table; only one applies steps at a time.
"""

from migrator.core.errors import (
    BootstrapError,
    LockAcquisitionError,
    MigratorError,
    StepExecutionError,
    StepResolutionError,
)
from migrator.services.database import Database
from migrator.services.orchestrator import DbMigration, MigrationState, RunResult
from migrator.services.steps import (
    DeclarativeStep,
    DirectoryStepSource,
    ProceduralStep,
    RegistryStepSource,
)
from migrator.services.version_store import VersionRecord

__version__ = "0.3.0"

__all__ = [
    "__version__",
    "Database",
    "DbMigration",
    "MigrationState",
    "RunResult",
    "VersionRecord",
    "DirectoryStepSource",
    "RegistryStepSource",
    "ProceduralStep",
    "DeclarativeStep",
    "MigratorError",
    "LockAcquisitionError",
    "BootstrapError",
    "StepResolutionError",
    "StepExecutionError",
]
