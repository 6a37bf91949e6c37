"""
Configuration management with TOML + environment variable support.

Configuration hierarchy (later overrides earlier):
1. Defaults in code (DEFAULTS below)
2. TOML file
3. Explicit overrides (command-line flags)
4. Environment variables (TOTE_* prefix)
"""
import os
import tomllib
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

DEFAULTS: dict[str, Any] = {
    "database": {
        "path": "./data/tote.db",
    },
    "logging": {
        "level": "INFO",
        "json": False,
    },
    "settlement": {
        "fee_rate": "0.03",
        "default_currency": "USDC",
        "batch_size": 50,
        "poll_interval_seconds": 60,
        "backoff_minutes": [1, 5, 30, 120, 720],
        "stale_lock_seconds": 0,
    },
    "metrics": {
        "enabled": True,
    },
}

CONFIG_SEARCH_PATHS = (
    Path("config/default.toml"),
    Path("tote.toml"),
    Path("/etc/tote/tote.toml"),
)


class ConfigManager:
    """Centralized configuration with TOML + env var support.

    Usage:
        config = ConfigManager(Path("config/default.toml"))
        fee_rate = config.get_decimal("settlement.fee_rate")
        batch = config.get_int("settlement.batch_size", 50)
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        env_prefix: str = "TOTE_",
    ) -> None:
        """Initialize ConfigManager.

        Args:
            config_path: Path to TOML config file (optional)
            env_prefix: Prefix for environment variable overrides
        """
        self._data: dict[str, Any] = {}
        self._overrides: dict[str, Any] = {}
        self._env_prefix = env_prefix
        self._config_path = config_path

        if config_path and config_path.exists():
            self._load_toml(config_path)

    @classmethod
    def discover(cls, specified: Optional[Path] = None) -> "ConfigManager":
        """Build a ConfigManager from the first config file found."""
        if specified is not None:
            return cls(specified)
        for path in CONFIG_SEARCH_PATHS:
            if path.exists():
                return cls(path)
        return cls()

    def _load_toml(self, path: Path) -> None:
        with open(path, "rb") as f:
            self._data = tomllib.load(f)

    def _get_nested(self, data: dict[str, Any], key: str) -> tuple[bool, Any]:
        """Get a nested value using dot notation.

        Returns (found, value) tuple.
        """
        current: Any = data
        for part in key.split("."):
            if not isinstance(current, dict) or part not in current:
                return False, None
            current = current[part]
        return True, current

    def _get_env_value(self, key: str) -> tuple[bool, Any]:
        """Get value from environment variable.

        Converts key like "settlement.fee_rate" to "TOTE_SETTLEMENT_FEE_RATE".
        """
        env_key = self._env_prefix + key.upper().replace(".", "_")
        if env_key in os.environ:
            return True, self._parse_env_value(os.environ[env_key])
        return False, None

    def _parse_env_value(self, value: str) -> Any:
        """Parse environment variable string to appropriate type."""
        if value.lower() in ("true", "yes", "on"):
            return True
        if value.lower() in ("false", "no", "off"):
            return False

        # Keep decimals as strings so money-like values never pass through float
        try:
            if "." not in value:
                return int(value)
        except ValueError:
            pass

        if "," in value:
            return [v.strip() for v in value.split(",")]

        return value

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value with dot notation.

        Args:
            key: Dot-notation key like "settlement.fee_rate"
            default: Returned when the key is not set anywhere, including DEFAULTS

        Returns:
            Configuration value
        """
        found, value = self._get_env_value(key)
        if found:
            return value

        if key in self._overrides:
            return self._overrides[key]

        found, value = self._get_nested(self._data, key)
        if found:
            return value

        found, value = self._get_nested(DEFAULTS, key)
        if found:
            return value

        return default

    def set(self, key: str, value: Any) -> None:
        """Override a value for this process (e.g. from a command-line flag)."""
        self._overrides[key] = value

    def get_section(self, section: str) -> dict[str, Any]:
        """Get entire configuration section merged over its defaults."""
        merged: dict[str, Any] = {}
        found, value = self._get_nested(DEFAULTS, section)
        if found and isinstance(value, dict):
            merged.update(value)
        found, value = self._get_nested(self._data, section)
        if found and isinstance(value, dict):
            merged.update(value)
        return merged

    def get_decimal(self, key: str, default: Decimal = Decimal("0")) -> Decimal:
        value = self.get(key)
        if value is None:
            return default
        return Decimal(str(value))

    def get_bool(self, key: str, default: bool = False) -> bool:
        value = self.get(key)
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.lower() in ("true", "1", "yes", "on")
        return bool(value)

    def get_int(self, key: str, default: int = 0) -> int:
        value = self.get(key)
        if value is None:
            return default
        return int(value)

    def get_float(self, key: str, default: float = 0.0) -> float:
        value = self.get(key)
        if value is None:
            return default
        return float(value)

    def get_list(self, key: str, default: Optional[list[Any]] = None) -> list[Any]:
        if default is None:
            default = []
        value = self.get(key)
        if value is None:
            return default
        if isinstance(value, list):
            return value
        if isinstance(value, str):
            return [v.strip() for v in value.split(",")]
        return [value]

    def reload(self) -> None:
        """Reload configuration from the TOML file."""
        if self._config_path and self._config_path.exists():
            self._load_toml(self._config_path)

    @property
    def config_path(self) -> Optional[Path]:
        return self._config_path

    @property
    def raw_data(self) -> dict[str, Any]:
        """Get raw TOML data (for debugging)."""
        return self._data.copy()
