"""
Configuration module for envx.

Supports loading from YAML/JSON files with environment variable overrides.
Default values are loaded from defaults.yaml for maintainability.
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from dotenv import dotenv_values

logger = logging.getLogger(__name__)

# Path to the default configuration file
_DEFAULTS_CONFIG_PATH = Path(__file__).parent / "defaults.yaml"

# Cache for default values
_defaults_cache: dict[str, Any] | None = None


def _load_defaults() -> dict[str, Any]:
    """Load default configuration values from defaults.yaml."""
    global _defaults_cache

    if _defaults_cache is not None:
        return _defaults_cache

    if not _DEFAULTS_CONFIG_PATH.exists():
        logger.warning(f"Defaults config not found: {_DEFAULTS_CONFIG_PATH}")
        _defaults_cache = {}
        return _defaults_cache

    try:
        content = _DEFAULTS_CONFIG_PATH.read_text(encoding="utf-8")
        _defaults_cache = yaml.safe_load(content) or {}
    except yaml.YAMLError as e:
        logger.error(f"Failed to parse defaults config: {e}")
        _defaults_cache = {}

    return _defaults_cache


def _get_default(section: str, key: str, fallback: Any = None) -> Any:
    """Get a default value from the defaults config."""
    defaults = _load_defaults()
    section_defaults = defaults.get(section, {})
    return section_defaults.get(key, fallback)


@dataclass
class StorageConfig:
    """Configuration for the on-disk history store."""

    dir_name: str = field(default_factory=lambda: _get_default("storage", "dir_name", ".envx"))
    db_name: str = field(default_factory=lambda: _get_default("storage", "db_name", "envx.db"))
    engine: str = field(default_factory=lambda: _get_default("storage", "engine", "tagged"))
    journal_mode: str = field(
        default_factory=lambda: _get_default("storage", "journal_mode", "WAL")
    )
    busy_timeout_ms: int = field(
        default_factory=lambda: _get_default("storage", "busy_timeout_ms", 5000)
    )


@dataclass
class HistoryConfig:
    """Configuration for history retention."""

    retention_days: int = field(
        default_factory=lambda: _get_default("history", "retention_days", 30)
    )


@dataclass
class LoggingConfig:
    """Configuration for logging."""

    level: str = field(default_factory=lambda: _get_default("logging", "level", "INFO"))
    format: str = field(
        default_factory=lambda: _get_default(
            "logging", "format", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )
    )


@dataclass
class EnvxConfig:
    """Main configuration class for envx."""

    storage: StorageConfig = field(default_factory=StorageConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_file(cls, path: Path | str) -> "EnvxConfig":
        """
        Load configuration from a YAML or JSON file.

        Args:
            path: Path to the configuration file (.yaml, .yml, or .json)

        Returns:
            EnvxConfig instance with loaded values

        Raises:
            FileNotFoundError: If the config file doesn't exist
            ValueError: If the file format is unsupported
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        content = path.read_text(encoding="utf-8")

        if path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(content) or {}
        elif path.suffix == ".json":
            data = json.loads(content) if content.strip() else {}
        else:
            raise ValueError(f"Unsupported config file format: {path.suffix}")

        return cls._from_dict(data)

    @classmethod
    def _from_dict(cls, data: dict) -> "EnvxConfig":
        """Create EnvxConfig from a dictionary."""
        config = cls()

        if "storage" in data:
            config.storage = StorageConfig(**data["storage"])
        if "history" in data:
            config.history = HistoryConfig(**data["history"])
        if "logging" in data:
            config.logging = LoggingConfig(**data["logging"])

        return config

    def apply_env_overrides(
        self, environ: Optional[Mapping[str, Optional[str]]] = None
    ) -> "EnvxConfig":
        """
        Apply environment variable overrides to the configuration.

        Environment variables follow the pattern: ENVX_<SECTION>_<KEY>
        Examples:
            - ENVX_STORAGE_ENGINE
            - ENVX_HISTORY_RETENTION_DAYS
            - ENVX_LOGGING_LEVEL

        Args:
            environ: Variables to read; defaults to ``os.environ``.

        Returns:
            Self with environment overrides applied
        """
        if environ is None:
            environ = os.environ
        env_mappings = {
            # Storage config
            "ENVX_STORAGE_DIR_NAME": ("storage", "dir_name", str),
            "ENVX_STORAGE_DB_NAME": ("storage", "db_name", str),
            "ENVX_STORAGE_ENGINE": ("storage", "engine", str),
            "ENVX_STORAGE_JOURNAL_MODE": ("storage", "journal_mode", str),
            "ENVX_STORAGE_BUSY_TIMEOUT_MS": ("storage", "busy_timeout_ms", int),
            # History config
            "ENVX_HISTORY_RETENTION_DAYS": ("history", "retention_days", int),
            # Logging config
            "ENVX_LOGGING_LEVEL": ("logging", "level", str),
        }

        for env_var, (section, key, converter) in env_mappings.items():
            value = environ.get(env_var)
            if value is not None:
                section_obj = getattr(self, section)
                setattr(section_obj, key, converter(value))

        return self

    def to_dict(self) -> dict:
        """Convert configuration to a dictionary."""
        return asdict(self)

    def to_yaml(self) -> str:
        """Serialize configuration to YAML string."""
        return yaml.dump(self.to_dict(), default_flow_style=False, sort_keys=False)

    def to_json(self) -> str:
        """Serialize configuration to JSON string."""
        return json.dumps(self.to_dict(), indent=2)

    def save(self, path: Path | str) -> None:
        """
        Save configuration to a file.

        Args:
            path: Path to save the configuration (.yaml, .yml, or .json)

        Raises:
            ValueError: If the file format is unsupported
        """
        path = Path(path)

        if path.suffix in (".yaml", ".yml"):
            content = self.to_yaml()
        elif path.suffix == ".json":
            content = self.to_json()
        else:
            raise ValueError(f"Unsupported config file format: {path.suffix}")

        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")


def load_config(
    config_path: Optional[Path | str] = None,
    apply_env: bool = True,
    env_file: Optional[Path | str] = None,
) -> EnvxConfig:
    """
    Load configuration with optional environment variable overrides.

    Args:
        config_path: Optional path to config file. If None, uses defaults.
        apply_env: Whether to apply environment variable overrides.
        env_file: Optional .env file whose ENVX_* entries are applied
            beneath the process environment.

    Returns:
        EnvxConfig instance
    """
    if config_path:
        config = EnvxConfig.from_file(config_path)
    else:
        config = EnvxConfig()

    if apply_env:
        environ: dict[str, Optional[str]] = {}
        if env_file is not None:
            env_path = Path(env_file)
            if env_path.exists():
                environ.update(dotenv_values(env_path))
            else:
                logger.debug(f"No .env file at {env_path}")
        environ.update(os.environ)
        config.apply_env_overrides(environ)

    return config


def configure_logging(config: EnvxConfig) -> None:
    """Apply the logging section to the root logger."""
    level = logging.getLevelName(config.logging.level.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown logging level: {config.logging.level}")
    logging.basicConfig(level=level, format=config.logging.format)
