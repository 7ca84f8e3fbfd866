"""config.yaml loading, validation and hot reload.

The service reads one YAML file (``config/config.yaml`` unless
``AUTOREPLY_CONFIG_PATH`` points elsewhere). It is parsed with PyYAML,
validated by the pydantic models in ``config_schema`` and cached in a
process-wide holder. Before a scheduled run, ``reload_config_if_changed()``
compares the file's mtime with the cached one and swaps in the new config
only when it validates; a broken edit never replaces a working config.

Usage:
    from autoreply.config import get_config, reload_config_if_changed

    config = get_config()
    if reload_config_if_changed():
        config = get_config()
"""

import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from autoreply.config_schema import CURRENT_SCHEMA_VERSION, AppConfig
from autoreply.core.errors import ConfigLoadError, ConfigValidationError
from autoreply.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = Path("config/config.yaml")
CONFIG_PATH_ENV = "AUTOREPLY_CONFIG_PATH"

_ERROR_TEMPLATES = {
    "missing": "missing required field",
    "string_type": "must be a string",
    "int_type": "must be an integer",
    "int_parsing": "must be an integer",
    "bool_type": "must be true or false",
    "bool_parsing": "must be true or false",
    "list_type": "must be a list",
}


@dataclass
class _CachedConfig:
    config: AppConfig
    path: Path
    mtime: float


# Shared by the scheduler thread, the event loop and the CLI
_lock = threading.Lock()
_cache: _CachedConfig | None = None


def config_path_from_env() -> Path:
    """Return the config file location (env override or the default)."""
    override = os.environ.get(CONFIG_PATH_ENV)
    return Path(override) if override else DEFAULT_CONFIG_PATH


def _describe_location(loc: tuple[Any, ...], data: dict[str, Any]) -> str:
    """Render an error location, naming the account when the path points into one."""
    path = ".".join(str(part) for part in loc)
    if len(loc) >= 2 and loc[0] == "accounts" and isinstance(loc[1], int):
        accounts = data.get("accounts")
        if isinstance(accounts, list) and loc[1] < len(accounts):
            entry = accounts[loc[1]]
            if isinstance(entry, dict) and entry.get("email"):
                return f"{path} (account {entry['email']})"
    return path


def format_validation_errors(error: ValidationError, data: dict[str, Any]) -> str:
    """One line per pydantic error, e.g. ``- accounts.0.imap: missing required field``."""
    lines = []
    for err in error.errors():
        location = _describe_location(tuple(err["loc"]), data)
        detail = _ERROR_TEMPLATES.get(err["type"], err["msg"])
        lines.append(f"  - {location}: {detail}" if location else f"  - {detail}")
    return "\n".join(lines)


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.is_file():
        raise ConfigLoadError(
            f"Configuration file not found: {path}\n"
            f"Copy config/config.yaml.example to {path} and fill in your accounts."
        )

    try:
        text = path.read_text(encoding="utf-8")
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


def load_config(path: Path | None = None) -> AppConfig:
    """Read and validate a config file, bypassing the cache.

    Raises:
        ConfigLoadError: The file is missing, unreadable or not YAML
        ConfigValidationError: The content does not match the schema
    """
    config_path = path or config_path_from_env()
    data = _read_yaml(config_path)

    try:
        config = AppConfig(**data)
    except ValidationError as e:
        raise ConfigValidationError(
            f"Configuration validation failed for {config_path}:\n"
            f"{format_validation_errors(e, data)}"
        ) from e

    if config.schema_version > CURRENT_SCHEMA_VERSION:
        raise ConfigValidationError(
            f"Config schema version {config.schema_version} is newer than "
            f"supported version {CURRENT_SCHEMA_VERSION}. "
            "Upgrade the service or lower schema_version."
        )

    logger.info(
        "config_loaded",
        path=str(config_path),
        schema_version=config.schema_version,
        accounts=len(config.accounts),
        active_accounts=len(config.active_accounts),
        reply_configured=config.reply is not None,
    )
    return config


def get_config() -> AppConfig:
    """Return the cached config, loading it on first use.

    Raises:
        ConfigLoadError, ConfigValidationError: On the first load only
    """
    global _cache

    with _lock:
        if _cache is None:
            path = config_path_from_env()
            config = load_config(path)
            _cache = _CachedConfig(config=config, path=path, mtime=path.stat().st_mtime)
        return _cache.config


def reload_config_if_changed() -> bool:
    """Reload the cached config if its file was modified since the last load.

    Returns True only when a new, valid config was swapped in. An invalid
    edit is logged and remembered by mtime so it is not retried until the
    file changes again.
    """
    global _cache

    with _lock:
        if _cache is None:
            return False

        try:
            mtime = _cache.path.stat().st_mtime
        except OSError as e:
            logger.warning("config_stat_failed", path=str(_cache.path), error=str(e))
            return False

        if mtime <= _cache.mtime:
            return False

        logger.info("config_changed", path=str(_cache.path))
        try:
            config = load_config(_cache.path)
        except (ConfigLoadError, ConfigValidationError) as e:
            logger.warning("config_reload_rejected", path=str(_cache.path), error=str(e))
            _cache.mtime = mtime
            return False

        _cache = _CachedConfig(config=config, path=_cache.path, mtime=mtime)
        return True


def validate_config_file(path: Path | None = None) -> tuple[bool, str]:
    """Validate a config file without touching the cache.

    Returns:
        ``(is_valid, message)`` where message is a summary or the error
    """
    try:
        config = load_config(path or config_path_from_env())
    except ConfigLoadError as e:
        return False, f"Load error: {e}"
    except ConfigValidationError as e:
        return False, f"Validation error: {e}"

    reply_state = "configured" if config.reply else "not configured (runs will be skipped)"
    return True, (
        f"Configuration valid (schema version {config.schema_version})\n"
        f"  - {len(config.accounts)} accounts ({len(config.active_accounts)} active)\n"
        f"  - folders: {', '.join(config.mailbox.folders)}\n"
        f"  - reply template: {reply_state}\n"
        f"  - poll interval: {config.schedule.interval_minutes} minutes"
    )


def reset_config() -> None:
    """Forget the cached config. Used by tests."""
    global _cache
    with _lock:
        _cache = None
