"""
Configuration management with TOML + environment variable support.

Configuration hierarchy (later overrides earlier):
1. Default values in code
2. TOML file
3. Environment variables (MIGRATOR_* prefix)

Recognized keys:
    database.path             SQLite database file
    migrator.table_name       Tracking table (default "db_version")
    migrator.script_path      Step directory (default "./dbmigration")
    migrator.retry_interval   Seconds between lock attempts (default 0.5)
    logging.level             Log level (default "INFO")
    logging.json              JSON log output (default false)
    logging.file              Extra log file (default none)
"""
import os
import tomllib
from pathlib import Path
from typing import Any, Optional


class ConfigManager:
    """Centralized configuration with TOML + env var support.

    Usage:
        config = ConfigManager(Path("migrator.toml"))
        table = config.get("migrator.table_name", "db_version")
        interval = config.get_float("migrator.retry_interval", 0.5)
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        env_prefix: str = "MIGRATOR_",
    ) -> None:
        """Initialize ConfigManager.

        Args:
            config_path: Path to TOML config file (optional)
            env_prefix: Prefix for environment variable overrides
        """
        self._data: dict[str, Any] = {}
        self._env_prefix = env_prefix

        if config_path and config_path.exists():
            self._load_toml(config_path)

    def _load_toml(self, path: Path) -> None:
        """Load configuration from TOML file."""
        with open(path, "rb") as f:
            self._data = tomllib.load(f)

    def _get_nested(self, data: dict[str, Any], key: str) -> tuple[bool, Any]:
        """Get a nested value using dot notation.

        Returns (found, value) tuple.
        """
        parts = key.split(".")
        current = data

        for part in parts:
            if not isinstance(current, dict) or part not in current:
                return False, None
            current = current[part]

        return True, current

    def _get_env_value(self, key: str) -> tuple[bool, Any]:
        """Get value from environment variable.

        Converts key like "migrator.table_name" to "MIGRATOR_MIGRATOR_TABLE_NAME".
        """
        env_key = self._env_prefix + key.upper().replace(".", "_")
        if env_key in os.environ:
            value = os.environ[env_key]
            return True, self._parse_env_value(value)
        return False, None

    def _parse_env_value(self, value: str) -> Any:
        """Parse environment variable string to appropriate type."""
        if value.lower() in ("true", "yes", "on"):
            return True
        if value.lower() in ("false", "no", "off"):
            return False

        try:
            if "." in value:
                return float(value)
            return int(value)
        except ValueError:
            pass

        return value

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value with dot notation.

        Environment variables take precedence over TOML values.

        Args:
            key: Dot-notation key like "migrator.table_name"
            default: Default value if key not found

        Returns:
            Configuration value
        """
        found, value = self._get_env_value(key)
        if found:
            return value

        found, value = self._get_nested(self._data, key)
        if found:
            return value

        return default

    def get_str(self, key: str, default: str = "") -> str:
        """Get configuration value as string."""
        value = self.get(key)
        if value is None:
            return default
        return str(value)

    def get_bool(self, key: str, default: bool = False) -> bool:
        """Get configuration value as boolean.

        Args:
            key: Dot-notation key
            default: Default boolean value

        Returns:
            Boolean value
        """
        value = self.get(key)
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.lower() in ("true", "1", "yes", "on")
        return bool(value)

    def get_int(self, key: str, default: int = 0) -> int:
        """Get configuration value as integer.

        Args:
            key: Dot-notation key
            default: Default integer value

        Returns:
            Integer value
        """
        value = self.get(key)
        if value is None:
            return default
        return int(value)

    def get_float(self, key: str, default: float = 0.0) -> float:
        """Get configuration value as float.

        Args:
            key: Dot-notation key
            default: Default float value

        Returns:
            Float value
        """
        value = self.get(key)
        if value is None:
            return default
        return float(value)

    def get_path(self, key: str, default: Optional[Path] = None) -> Optional[Path]:
        """Get configuration value as a Path (not resolved)."""
        value = self.get(key)
        if value is None:
            return default
        return Path(str(value))

    def set(self, key: str, value: Any) -> None:
        """Set a value in the loaded data using dot notation.

        Environment variables still take precedence on ``get``.
        """
        parts = key.split(".")
        current = self._data
        for part in parts[:-1]:
            current = current.setdefault(part, {})
        current[parts[-1]] = value
