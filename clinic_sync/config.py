# clinic_sync/config.py
# Description: Configuration management for the clinic sync engine.
#
# Imports
import copy
import tomllib
from pathlib import Path
from typing import Dict, Any, Optional
#
# Third-Party Imports
from loguru import logger
#
# Local Imports
from clinic_sync.Constants import (
    MAX_QUEUE_AGE_DAYS, MAX_QUEUE_ATTEMPTS, PERIODIC_PULL_INTERVAL, HEALTH_CHECK_RETRY_DELAY, HEALTH_CHECK_TIMEOUT,
    RECONNECT_SETTLE_DELAY, REQUEST_TIMEOUT,
)
#
#######################################################################################################################
#
# Functions:

# --- Path to the user's configuration file ---
DEFAULT_CONFIG_PATH = Path.home() / ".config" / "clinic_sync" / "config.toml"
BASE_DATA_DIR = Path.home() / ".local" / "share" / "clinic_sync"

CONFIG_TOML_CONTENT = """
# Configuration for the clinic offline sync engine
# This file is created with defaults on first load; edit it to override.

[server]
base_url = "http://localhost:3000"
api_prefix = "/api"
health_path = "/health"
# Seconds allowed for a single push/pull request before it counts as a slow-network failure
request_timeout = 30.0
# Optional bearer token. Session handling lives outside the engine.
token = ""

[connectivity]
health_check_timeout = 5.0
health_check_retry_delay = 10.0

[sync]
db_path = "~/.local/share/clinic_sync/clinic_sync.db"
settle_delay = 1.0
periodic_pull_interval = 300.0
max_attempts = 10
max_queue_age_days = 3

[logging]
log_level = "INFO"
file_log_level = "INFO"
log_filename = "clinic_sync.log"
log_max_bytes = 10485760
log_backup_count = 5
"""

try:
    DEFAULT_CONFIG_FROM_TOML: Dict[str, Any] = tomllib.loads(CONFIG_TOML_CONTENT)
except tomllib.TOMLDecodeError as e:
    logger.critical(f"FATAL: Could not parse internal CONFIG_TOML_CONTENT: {e}. Sync engine cannot start correctly.")
    DEFAULT_CONFIG_FROM_TOML = {}


# --- Helper for deep merging dictionaries ---
def deep_merge_dicts(base: Dict, update: Dict) -> Dict:
    """Recursively merges update_dict into base_dict."""
    merged = copy.deepcopy(base)
    for key, value in update.items():
        if isinstance(value, dict) and key in merged and isinstance(merged[key], dict):
            merged[key] = deep_merge_dicts(merged[key], value)
        else:
            merged[key] = value
    return merged


def _get_typed_value(data_dict: Dict, key: str, default: Any, target_type: type = str) -> Any:
    """Helper to get value from dict and cast to type, with logging for type errors."""
    value = data_dict.get(key, default)
    if value is default and default is not None:
        return value
    if value is None:
        return None

    try:
        if target_type == bool:
            if isinstance(value, bool):
                return value
            return str(value).lower() in ['true', '1', 't', 'y', 'yes']
        if target_type == Path:
            return Path(value).expanduser() if value else default
        return target_type(value)
    except (ValueError, TypeError) as e:
        logger.warning(f"Config key '{key}' has value '{value}' which could not be converted to {target_type}. Using default: '{default}'. Error: {e}")
        return default


# --- Primary Configuration Loading Logic ---
_CONFIG_CACHE: Optional[Dict[str, Any]] = None


def load_settings(config_path: Optional[Path] = None, force_reload: bool = False) -> Dict[str, Any]:
    """
    Loads settings from ~/.config/clinic_sync/config.toml (or `config_path`).
    If the default file doesn't exist, it's created with default values.
    An explicit `config_path` that doesn't exist is not created.
    """
    global _CONFIG_CACHE
    if _CONFIG_CACHE is not None and not force_reload and config_path is None:
        return _CONFIG_CACHE

    loaded_config = copy.deepcopy(DEFAULT_CONFIG_FROM_TOML)
    target_path = Path(config_path) if config_path is not None else DEFAULT_CONFIG_PATH

    if not target_path.exists():
        if config_path is None:
            logger.info(f"Config file not found at {target_path}. Creating with default values.")
            try:
                target_path.parent.mkdir(parents=True, exist_ok=True)
                with open(target_path, "w", encoding="utf-8") as f:
                    f.write(CONFIG_TOML_CONTENT)
                logger.info(f"Created default config file at {target_path}")
            except OSError as e:
                logger.error(f"Could not create default config file {target_path}: {e}. Using internal defaults.")
        else:
            logger.warning(f"Config file {target_path} does not exist. Using internal defaults.")
    else:
        logger.info(f"Attempting to load config from: {target_path}")
        try:
            with open(target_path, "rb") as f:
                user_config_from_file = tomllib.load(f)
            loaded_config = deep_merge_dicts(loaded_config, user_config_from_file)
            logger.info(f"Successfully loaded and merged config from {target_path}")
        except tomllib.TOMLDecodeError as e:
            logger.error(f"Error decoding TOML config file {target_path}: {e}. Using internal defaults.", exc_info=True)
        except OSError as e:
            logger.error(f"Could not read config file {target_path}: {e}. Using internal defaults.", exc_info=True)

    _CONFIG_CACHE = loaded_config
    logger.debug(f"load_settings returning config with top-level keys: {list(loaded_config.keys())}")
    return _CONFIG_CACHE


def get_setting(section: str, key: str, default: Any = None) -> Any:
    """Helper to get a specific setting from the loaded configuration."""
    config = load_settings()
    section_data = config.get(section)
    if isinstance(section_data, dict):
        return section_data.get(key, default)
    return default


# --- Path Getters ---
def get_sync_db_path() -> Path:
    default_db_path_str = DEFAULT_CONFIG_FROM_TOML.get("sync", {}).get("db_path", str(BASE_DATA_DIR / "clinic_sync.db"))
    db_path_str = get_setting("sync", "db_path", default_db_path_str)
    return Path(db_path_str).expanduser().resolve()


def get_log_file_path() -> Path:
    default_log_filename = DEFAULT_CONFIG_FROM_TOML.get("logging", {}).get("log_filename", "clinic_sync.log")
    log_filename = get_setting("logging", "log_filename", default_log_filename)
    log_file_path = get_sync_db_path().parent / log_filename
    try:
        log_file_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"Could not create log directory {log_file_path.parent}: {e}", exc_info=True)
    return log_file_path


class SyncSettings:
    """Typed view over the [server], [connectivity] and [sync] sections."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        config = config if config is not None else load_settings()
        server = config.get("server", {})
        connectivity = config.get("connectivity", {})
        sync = config.get("sync", {})

        base_url = str(_get_typed_value(server, "base_url", "http://localhost:3000")).rstrip("/")
        prefix = _get_typed_value(server, "api_prefix", "") or ""
        if prefix and not prefix.startswith("/"):
            prefix = "/" + prefix
        self.base_url: str = base_url
        self.api_base_url: str = base_url + prefix.rstrip("/")
        self.health_path: str = _get_typed_value(server, "health_path", "/health")
        self.request_timeout: float = _get_typed_value(server, "request_timeout", REQUEST_TIMEOUT, float)
        self.token: Optional[str] = _get_typed_value(server, "token", "") or None

        self.health_check_timeout: float = _get_typed_value(connectivity, "health_check_timeout", HEALTH_CHECK_TIMEOUT, float)
        self.health_check_retry_delay: float = _get_typed_value(connectivity, "health_check_retry_delay", HEALTH_CHECK_RETRY_DELAY, float)

        self.db_path: Path = _get_typed_value(sync, "db_path", BASE_DATA_DIR / "clinic_sync.db", Path)
        self.settle_delay: float = _get_typed_value(sync, "settle_delay", RECONNECT_SETTLE_DELAY, float)
        self.periodic_pull_interval: float = _get_typed_value(sync, "periodic_pull_interval", PERIODIC_PULL_INTERVAL, float)
        self.max_attempts: int = _get_typed_value(sync, "max_attempts", MAX_QUEUE_ATTEMPTS, int)
        self.max_queue_age_days: float = _get_typed_value(sync, "max_queue_age_days", MAX_QUEUE_AGE_DAYS, float)

    def __repr__(self) -> str:
        return f"SyncSettings(api_base_url={self.api_base_url!r}, db_path={str(self.db_path)!r})"

#
# End of config.py
#######################################################################################################################
