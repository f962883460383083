"""
Structured logging for migration runs.

Each module logs through ``get_logger("<component>")``, so every record
carries a ``migrator.<component>`` logger name next to its event and
key-value context. Records go to stderr, leaving stdout to the command
output, and to a log file when one is configured.

Config keys (see ConfigManager):
    logging.level   DEBUG, INFO, WARNING, ERROR or CRITICAL
    logging.json    JSON lines instead of console output
    logging.file    Extra log file, parent directories are created
"""
import logging
import sys
from pathlib import Path
from typing import Optional, Union

import structlog

from migrator.core.config import ConfigManager

ROOT_LOGGER = "migrator"

_PROCESSORS: list[structlog.types.Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.PositionalArgumentsFormatter(),
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.UnicodeDecoder(),
]


def _level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


def _handlers(log_file: Optional[Union[str, Path]]) -> list[logging.Handler]:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))
    return handlers


def _renderer(json_output: bool) -> list[structlog.types.Processor]:
    if json_output:
        return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    return [
        structlog.dev.ConsoleRenderer(
            colors=False,
            exception_formatter=structlog.dev.plain_traceback,
        )
    ]


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[Union[str, Path]] = None,
) -> structlog.stdlib.BoundLogger:
    """Route structlog through stdlib logging.

    Replaces any handlers configured before, so calling it again (for
    example once per CLI invocation) does not duplicate output.

    Args:
        level: Log level name, unknown names fall back to INFO
        json_output: Render JSON lines instead of console text
        log_file: Optional extra log file

    Returns:
        The root migrator logger
    """
    log_level = _level(level)
    handlers = _handlers(log_file)
    for handler in handlers:
        handler.setLevel(log_level)

    logging.basicConfig(format="%(message)s", level=log_level, handlers=handlers, force=True)

    structlog.configure(
        processors=_PROCESSORS + _renderer(json_output),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return get_logger()


def setup_logging_from_config(
    config: ConfigManager,
    level: Optional[str] = None,
    log_file: Optional[Union[str, Path]] = None,
) -> structlog.stdlib.BoundLogger:
    """Configure logging from ``logging.*`` keys; arguments win over config."""
    return setup_logging(
        level=level or config.get_str("logging.level", "INFO"),
        json_output=config.get_bool("logging.json", False),
        log_file=log_file or config.get_path("logging.file"),
    )


def get_logger(component: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    """Logger named ``migrator.<component>``, or ``migrator`` without one."""
    return structlog.get_logger(f"{ROOT_LOGGER}.{component}" if component else ROOT_LOGGER)
