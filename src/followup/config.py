"""Loading config.yaml for the follow-up engine.

The YAML file is parsed with safe_load, a few environment overrides are
applied on top, and the result is validated against the Pydantic schema in
config_schema. Callers own a ConfigLoader and pass the resulting AppConfig
down explicitly; watch mode calls reload_if_changed() before every run.

Environment:
    FOLLOWUP_CONFIG_PATH  Config file location (default config/config.yaml)
    FOLLOWUP_USER_EMAIL   Overrides user_email
    FOLLOWUP_LOG_LEVEL    Overrides log_level

Usage:
    from followup.config import ConfigLoader

    loader = ConfigLoader()
    config = loader.load()
    ...
    if loader.reload_if_changed():
        config = loader.config
"""

import os
import threading
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from followup.config_schema import CURRENT_SCHEMA_VERSION, AppConfig
from followup.core.errors import ConfigLoadError, ConfigValidationError
from followup.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = Path("config/config.yaml")
CONFIG_PATH_ENV = "FOLLOWUP_CONFIG_PATH"

# Environment variable -> top-level config key
ENV_OVERRIDES: dict[str, str] = {
    "FOLLOWUP_USER_EMAIL": "user_email",
    "FOLLOWUP_LOG_LEVEL": "log_level",
}

# Pydantic error type -> readable requirement
_TYPE_REQUIREMENTS: dict[str, str] = {
    "string_type": "must be a string",
    "int_type": "must be an integer",
    "int_parsing": "must be an integer",
    "int_from_float": "must be a whole number",
    "float_type": "must be a number",
    "float_parsing": "must be a number",
    "bool_type": "must be true or false",
    "bool_parsing": "must be true or false",
    "list_type": "must be a list",
    "dict_type": "must be a mapping",
    "model_type": "must be a mapping",
}


def get_config_path() -> Path:
    """Config file location: FOLLOWUP_CONFIG_PATH, else config/config.yaml."""
    return Path(os.environ.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)


def _describe_error(err: Mapping[str, Any]) -> str:
    field_path = ".".join(str(part) for part in err["loc"]) or "<root>"
    if err["type"] == "missing":
        return f"Missing required field '{field_path}'"
    requirement = _TYPE_REQUIREMENTS.get(err["type"])
    if requirement:
        return f"Field '{field_path}' {requirement}"
    return f"Field '{field_path}': {err['msg']}"


def _format_validation_errors(error: ValidationError) -> str:
    """One indented line per field error, with the dotted field path."""
    return "\n".join(f"  - {_describe_error(err)}" for err in error.errors())


def _read_yaml(path: Path) -> dict[str, Any]:
    """Parse a YAML mapping from path; an empty file is an empty mapping.

    Raises:
        ConfigLoadError: If the file is missing, unreadable, or not a mapping
    """
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise ConfigLoadError(
            f"Configuration file not found: {path}\n"
            f"Copy config/config.yaml.example to {path}, or set {CONFIG_PATH_ENV}."
        ) from e
    except OSError as e:
        raise ConfigLoadError(f"Cannot read configuration file {path}: {e}") from e

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Failed to parse YAML in {path}:\n{e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigLoadError(
            f"Configuration file {path} must be a YAML mapping, got {type(data).__name__}"
        )
    return data


def apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of data with ENV_OVERRIDES applied."""
    merged = dict(data)
    for env_name, key in ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            merged[key] = value
    return merged


def parse_config(data: dict[str, Any], source: str = "<memory>") -> AppConfig:
    """Validate config data against the schema.

    Args:
        data: Parsed YAML data
        source: Where the data came from, for error messages

    Raises:
        ConfigValidationError: If a field is invalid or the schema version is too new
    """
    try:
        config = AppConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigValidationError(
            f"Configuration validation failed for {source}:\n{_format_validation_errors(e)}"
        ) from e

    if config.schema_version > CURRENT_SCHEMA_VERSION:
        raise ConfigValidationError(
            f"{source} uses config schema version {config.schema_version}, which is newer than "
            f"supported version {CURRENT_SCHEMA_VERSION}. Upgrade followup-engine or "
            "downgrade the config."
        )
    return config


def load_config(path: Path | None = None) -> AppConfig:
    """Read, override and validate a config file.

    Args:
        path: Config file (FOLLOWUP_CONFIG_PATH or the default if not provided)

    Raises:
        ConfigLoadError: If the file cannot be read or parsed
        ConfigValidationError: If validation fails
    """
    config_path = path or get_config_path()
    config = parse_config(apply_env_overrides(_read_yaml(config_path)), str(config_path))
    logger.info(
        "config_loaded",
        path=str(config_path),
        schema_version=config.schema_version,
        eviction_policy=config.cache.eviction_policy,
        selected_accounts=len(config.analysis.selected_accounts),
    )
    return config


class ConfigLoader:
    """Holds the current configuration for one process and reloads it on change.

    Thread-safe: the watch command reloads from the scheduler while the CLI
    thread may read the current config.
    """

    def __init__(self, path: Path | None = None):
        """Initialize the loader.

        Args:
            path: Path to config file. If not provided, uses
                  FOLLOWUP_CONFIG_PATH env var or default.
        """
        self._path = path or get_config_path()
        self._lock = threading.Lock()
        self._config: AppConfig | None = None
        self._mtime: float = 0.0

    @property
    def path(self) -> Path:
        return self._path

    @property
    def config(self) -> AppConfig:
        """Current configuration, loading it on first access."""
        with self._lock:
            if self._config is None:
                return self._load_locked()
            return self._config

    def load(self) -> AppConfig:
        """Load configuration from disk, replacing any cached copy.

        Raises:
            ConfigLoadError: If file cannot be loaded
            ConfigValidationError: If validation fails
        """
        with self._lock:
            return self._load_locked()

    def _load_locked(self) -> AppConfig:
        config = load_config(self._path)
        self._config = config
        self._mtime = self._path.stat().st_mtime
        return config

    def reload_if_changed(self) -> bool:
        """Check if config file has changed and reload if so.

        Returns:
            True if config was reloaded, False if unchanged

        Behavior:
            - If config was never loaded: returns False
            - If config file unchanged: returns False
            - If config file changed and valid: replaces config, returns True
            - If config file changed but invalid: keeps old config, logs WARNING, returns False
        """
        with self._lock:
            if self._config is None:
                return False

            try:
                current_mtime = self._path.stat().st_mtime
            except OSError as e:
                logger.warning("config_mtime_check_failed", path=str(self._path), error=str(e))
                return False

            if current_mtime <= self._mtime:
                return False

            logger.info("config_changed", path=str(self._path))

            try:
                self._config = load_config(self._path)
                self._mtime = current_mtime
                return True
            except (ConfigLoadError, ConfigValidationError) as e:
                logger.warning(
                    "config_reload_failed",
                    path=str(self._path),
                    error=str(e),
                )
                # Don't retry the same broken file on every check
                self._mtime = current_mtime
                return False


def validate_config_file(path: Path | None = None) -> tuple[bool, str]:
    """Validate a config file without keeping it.

    Useful for CLI validation commands and testing.

    Args:
        path: Path to config file. If not provided, uses default.

    Returns:
        Tuple of (is_valid, message)
    """
    config_path = path or get_config_path()

    try:
        config = load_config(config_path)
    except ConfigLoadError as e:
        return (False, f"Load error: {e}")
    except ConfigValidationError as e:
        return (False, f"Validation error: {e}")

    return (
        True,
        f"Configuration valid (schema version {config.schema_version})\n"
        f"  - cache: {config.cache.max_entries} entries, "
        f"{config.cache.eviction_policy} eviction\n"
        f"  - retry: {config.retry.max_attempts} attempts\n"
        f"  - batch: {config.batch.batch_size} items x "
        f"{config.batch.max_concurrent_batches} concurrent\n"
        f"  - {len(config.analysis.selected_accounts)} selected accounts",
    )
