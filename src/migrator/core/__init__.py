"""Core infrastructure - config, logging, errors."""

from migrator.core.config import ConfigManager
from migrator.core.errors import (
    BootstrapError,
    ErrorCategory,
    LockAcquisitionError,
    LockContention,
    MigratorError,
    StepExecutionError,
    StepResolutionError,
    is_already_exists_error,
    is_contention_error,
)
from migrator.core.logging import get_logger, setup_logging, setup_logging_from_config

__all__ = [
    "ConfigManager",
    "setup_logging",
    "setup_logging_from_config",
    "get_logger",
    "MigratorError",
    "ErrorCategory",
    "LockContention",
    "LockAcquisitionError",
    "BootstrapError",
    "StepResolutionError",
    "StepExecutionError",
    "is_contention_error",
    "is_already_exists_error",
]
