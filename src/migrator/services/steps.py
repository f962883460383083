"""Migration steps - discovery and execution.

A step is identified by a positive ordinal (1, 2, 3, ...) and comes in
two kinds:

- procedural: a callable ``migrate(db, log)``, sync or async, that
  receives the run's session and a bound logger
- declarative: SQL text executed verbatim with ``executescript``

In a step directory, ordinal ``n`` is ``n.py`` (a module exposing
``migrate``) or ``n.sql``. When both exist, ``n.py`` wins.

Example step directory:
    dbmigration/
        1.sql   CREATE TABLE bloj (nisse serial);
        2.py    async def migrate(db, log):
                    await db.execute("ALTER TABLE bloj RENAME nisse TO hasse")
"""

import importlib.util
import inspect
import os
import sqlite3
import sys
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

import aiosqlite

from migrator.core.errors import StepExecutionError, StepResolutionError
from migrator.core.logging import get_logger

log = get_logger("steps")

DEFAULT_STEP_DIRECTORY = "./dbmigration"
PROCEDURAL_SUFFIX = ".py"
DECLARATIVE_SUFFIX = ".sql"
STEP_ENTRYPOINT = "migrate"

StepFunction = Callable[..., Union[Awaitable[None], None]]


@dataclass(frozen=True)
class ProceduralStep:
    """A step expressed as code."""

    ordinal: int
    func: StepFunction
    source: str = "<registry>"

    @property
    def kind(self) -> str:
        return "procedural"


@dataclass(frozen=True)
class DeclarativeStep:
    """A step expressed as SQL statements."""

    ordinal: int
    sql: str
    source: str = "<registry>"

    @property
    def kind(self) -> str:
        return "declarative"


Step = Union[ProceduralStep, DeclarativeStep]


class StepSource(Protocol):
    """Anything that can look up the step for an ordinal."""

    def resolve(self, ordinal: int) -> Optional[Step]:
        """Return the step for ``ordinal``, or None if there is none.

        Raises:
            StepResolutionError: If the candidates cannot be listed or loaded.
        """
        ...


def resolve_step_path(path: Optional[Union[str, Path]] = None) -> Path:
    """Resolve a step directory against the process working directory.

    Args:
        path: Directory path. Relative paths (including "./x") are taken
            relative to the current working directory. Defaults to
            "./dbmigration".

    Returns:
        Absolute path.
    """
    resolved = Path(path if path is not None else DEFAULT_STEP_DIRECTORY)
    if not resolved.is_absolute():
        resolved = Path.cwd() / resolved
    return resolved


def _check_ordinal(ordinal: int) -> None:
    if isinstance(ordinal, bool) or not isinstance(ordinal, int) or ordinal < 1:
        raise ValueError(f"Step ordinal must be a positive integer, got {ordinal!r}")


class DirectoryStepSource:
    """Steps stored as numbered files in a directory.

    The directory is listed on every lookup, so files added between runs
    are picked up without restarting.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self._path = resolve_step_path(path)
        self._log = log.bind(component="step_source", path=str(self._path))

    @property
    def path(self) -> Path:
        return self._path

    def _list(self) -> set[str]:
        try:
            return set(os.listdir(self._path))
        except OSError as e:
            self._log.info("step_directory_unreadable", error=str(e))
            raise StepResolutionError(
                f"Could not read migration script path {self._path}", cause=e
            ) from e

    def resolve(self, ordinal: int) -> Optional[Step]:
        _check_ordinal(ordinal)
        items = self._list()

        procedural = f"{ordinal}{PROCEDURAL_SUFFIX}"
        declarative = f"{ordinal}{DECLARATIVE_SUFFIX}"

        if procedural in items:
            return self._load_procedural(ordinal, self._path / procedural)
        if declarative in items:
            return self._load_declarative(ordinal, self._path / declarative)
        return None

    def _load_procedural(self, ordinal: int, file_path: Path) -> ProceduralStep:
        # Unique module name so two runners never share module state
        module_name = f"migrator_step_{ordinal}_{uuid.uuid4().hex}"
        write_bytecode = sys.dont_write_bytecode
        try:
            spec = importlib.util.spec_from_file_location(module_name, file_path)
            if spec is None or spec.loader is None:
                raise ImportError(f"Cannot load {file_path}")
            module = importlib.util.module_from_spec(spec)
            sys.modules[module_name] = module
            # No cached bytecode, a rewritten step must load from its source
            sys.dont_write_bytecode = True
            spec.loader.exec_module(module)
        except Exception as e:
            raise StepResolutionError(
                f"Could not load migration script {file_path.name}", cause=e
            ) from e
        finally:
            sys.dont_write_bytecode = write_bytecode
            sys.modules.pop(module_name, None)
