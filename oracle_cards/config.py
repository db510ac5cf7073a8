# config.py
# Description: Configuration loading for the oracle_cards sync core
#
# Imports
import copy
import hashlib
import os
import re
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Any, Optional
#
# 3rd-Party Imports
import toml
from loguru import logger
#
# Local Imports
#
#######################################################################################################################
#
# Functions:

DEFAULT_CONFIG_PATH = Path.home() / ".config" / "oracle_cards" / "config.toml"
BASE_DATA_DIR = Path.home() / ".local" / "share" / "oracle_cards"

CONFIG_PATH_ENV_VAR = "ORACLE_CARDS_CONFIG"
REMOTE_URL_ENV_VAR = "ORACLE_REMOTE_URL"
REMOTE_KEY_ENV_VAR = "ORACLE_REMOTE_KEY"

CONFIG_TOML_CONTENT = """
# Configuration for the oracle card app's local store and sync engine.
# This file is created with defaults on first run; edit values below.

[general]
log_level = "INFO" # DEBUG, INFO, WARNING, ERROR, CRITICAL

[database]
# One SQLite file per signed-in user is kept under this directory.
data_dir = "~/.local/share/oracle_cards"

[logging]
# Log file is placed in data_dir.
log_filename = "oracle_cards.log"
file_log_level = "INFO"
log_max_bytes = 10485760 # 10 MB
log_backup_count = 5

[remote]
# Overridden by the ORACLE_REMOTE_URL / ORACLE_REMOTE_KEY environment variables.
base_url = ""
anon_key = ""
timeout = 30.0
# Use the batched sync-delta endpoint when available; per-table requests otherwise.
use_delta_endpoint = true

[sync]
interval_seconds = 300
# Quiet period after a local edit before a sync starts.
debounce_seconds = 2.0
push_batch_size = 50
# Rejected pushes back off exponentially and are given up after this many attempts.
max_rejections = 5
retry_backoff_base_seconds = 30
retry_backoff_max_seconds = 3600
# Transport failures are only shown to the user after this many failed cycles in a row.
surface_after_failures = 3
purge_deleted_after_push = true
# Pulls re-read this much history before the watermark to cover clock skew.
watermark_overlap_seconds = 5
state_filename = "sync_state.json"
"""

try:
    DEFAULT_CONFIG_FROM_TOML: Dict[str, Any] = tomllib.loads(CONFIG_TOML_CONTENT)
except tomllib.TOMLDecodeError as e:
    logger.critical(f"FATAL: Could not parse internal CONFIG_TOML_CONTENT: {e}. Application cannot start correctly.")
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
    if value is default and default is not None:  # if value is the default, it's already typed
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
        logger.warning(f"Config key '{key}' has value '{value}' which could not be converted to {target_type}. "
                       f"Using default: '{default}'. Error: {e}")
        return default


# --- Primary Configuration Loading Logic ---
_CONFIG_CACHE: Dict[Path, Dict[str, Any]] = {}


def get_config_path() -> Path:
    env_path = os.getenv(CONFIG_PATH_ENV_VAR)
    return Path(env_path).expanduser() if env_path else DEFAULT_CONFIG_PATH


def load_settings(config_path: Optional[Path] = None, force_reload: bool = False) -> Dict[str, Any]:
    """
    Loads settings from the TOML config file, merged over the built-in defaults.
    If the file doesn't exist, it's created with default values.
    """
    path = Path(config_path) if config_path else get_config_path()
    if path in _CONFIG_CACHE and not force_reload:
        return _CONFIG_CACHE[path]

    loaded_config = copy.deepcopy(DEFAULT_CONFIG_FROM_TOML)

    if not path.exists():
        logger.info(f"Config file not found at {path}. Creating with default values.")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                f.write(CONFIG_TOML_CONTENT)
            logger.info(f"Created default config file at {path}")
        except OSError as e:
            logger.error(f"Could not create default config file {path}: {e}. Using internal defaults.")
    else:
        logger.info(f"Attempting to load config from: {path}")
        try:
            with open(path, "rb") as f:
                user_config_from_file = tomllib.load(f)
            loaded_config = deep_merge_dicts(loaded_config, user_config_from_file)
            logger.info(f"Successfully loaded and merged config from {path}")
        except tomllib.TOMLDecodeError as e:
            logger.error(f"Error decoding TOML config file {path}: {e}. Using internal defaults.")
        except OSError as e:
            logger.error(f"Could not read config file {path}: {e}. Using internal defaults.")

    _CONFIG_CACHE[path] = loaded_config
    logger.debug(f"load_settings returning config with top-level keys: {list(loaded_config.keys())}")
    return loaded_config


def get_setting(section: str, key: str, default: Any = None, config: Optional[Dict[str, Any]] = None) -> Any:
    """Helper to get a specific setting from the loaded configuration."""
    config = config if config is not None else load_settings()
    section_data = config.get(section)
    if isinstance(section_data, dict):
        return section_data.get(key, default)
    return default


def save_setting(section: str, key: str, value: Any, config_path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Persists one value into the user's config file and returns the reloaded settings.
    Only the user's file is rewritten; defaults stay in CONFIG_TOML_CONTENT.
    """
    path = Path(config_path) if config_path else get_config_path()
    user_config: Dict[str, Any] = {}
    if path.exists():
        try:
            with open(path, "rb") as f:
                user_config = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            logger.error(f"Config file {path} is not valid TOML ({e}); it will be rewritten.")
    user_config.setdefault(section, {})[key] = value
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        toml.dump(user_config, f)
    logger.info(f"Saved setting [{section}] {key} to {path}")
    return load_settings(path, force_reload=True)


# --- Typed Settings ---
@dataclass(frozen=True)
class SyncSettings:
    interval_seconds: float = 300.0
    debounce_seconds: float = 2.0
    push_batch_size: int = 50
    max_rejections: int = 5
    retry_backoff_base_seconds: float = 30.0
    retry_backoff_max_seconds: float = 3600.0
    surface_after_failures: int = 3
    purge_deleted_after_push: bool = True
    watermark_overlap_seconds: float = 5.0
    state_filename: str = "sync_state.json"

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]] = None) -> "SyncSettings":
        config = config if config is not None else load_settings()
        section = config.get("sync", {})
        defaults = cls()
        return cls(
            interval_seconds=_get_typed_value(section, "interval_seconds", defaults.interval_seconds, float),
            debounce_seconds=_get_typed_value(section, "debounce_seconds", defaults.debounce_seconds, float),
            push_batch_size=max(1, _get_typed_value(section, "push_batch_size", defaults.push_batch_size, int)),
            max_rejections=max(1, _get_typed_value(section, "max_rejections", defaults.max_rejections, int)),
            retry_backoff_base_seconds=_get_typed_value(section, "retry_backoff_base_seconds",
                                                        defaults.retry_backoff_base_seconds, float),
            retry_backoff_max_seconds=_get_typed_value(section, "retry_backoff_max_seconds",
                                                       defaults.retry_backoff_max_seconds, float),
            surface_after_failures=max(1, _get_typed_value(section, "surface_after_failures",
                                                           defaults.surface_after_failures, int)),
            purge_deleted_after_push=_get_typed_value(section, "purge_deleted_after_push",
                                                      defaults.purge_deleted_after_push, bool),
            watermark_overlap_seconds=_get_typed_value(section, "watermark_overlap_seconds",
                                                       defaults.watermark_overlap_seconds, float),
            state_filename=_get_typed_value(section, "state_filename", defaults.state_filename, str),
        )

    def backoff_seconds(self, attempts: int) -> float:
        """Delay before retrying a rejected push: base * 2**(attempts-1), capped."""
        delay = self.retry_backoff_base_seconds * (2 ** max(0, attempts - 1))
        return min(delay, self.retry_backoff_max_seconds)


@dataclass(frozen=True)
class RemoteSettings:
    base_url: str = ""
    anon_key: str = ""
    timeout: float = 30.0
    use_delta_endpoint: bool = True

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]] = None) -> "RemoteSettings":
        config = config if config is not None else load_settings()
        section = config.get("remote", {})
        return cls(
            base_url=os.getenv(REMOTE_URL_ENV_VAR) or _get_typed_value(section, "base_url", "", str),
            anon_key=os.getenv(REMOTE_KEY_ENV_VAR) or _get_typed_value(section, "anon_key", "", str),
            timeout=_get_typed_value(section, "timeout", 30.0, float),
            use_delta_endpoint=_get_typed_value(section, "use_delta_endpoint", True, bool),
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url and self.anon_key)


# --- Database, State and Log File Path Getters ---
def get_data_dir(config: Optional[Dict[str, Any]] = None) -> Path:
    default_dir = str(BASE_DATA_DIR)
    data_dir = get_setting("database", "data_dir", default_dir, config=config) or default_dir
    return Path(data_dir).expanduser().resolve()


def _safe_user_dirname(user_id: str) -> str:
    """
    Directory name for a user id. Plain ids are used as-is; anything that had to
    be rewritten gets a digest of the raw id after a '~', which plain ids never
    contain, so two different ids never share a directory.
    """
    safe = re.sub(r'[^A-Za-z0-9_.-]', '_', user_id)
    # "." and ".." would resolve outside the users directory.
    if safe == user_id and safe.strip('.'):
        return safe
    digest = hashlib.sha256(user_id.encode("utf-8")).hexdigest()[:16]
    return f"{safe}~{digest}"


def get_user_data_dir(user_id: str, config: Optional[Dict[str, Any]] = None) -> Path:
    if not user_id:
        raise ValueError("User ID cannot be empty or None.")
    return get_data_dir(config) / "users" / _safe_user_dirname(user_id)


def get_user_db_path(user_id: str, config: Optional[Dict[str, Any]] = None) -> Path:
    return get_user_data_dir(user_id, config) / "oracle_cards.db"


def get_sync_state_path(user_id: str, config: Optional[Dict[str, Any]] = None) -> Path:
    return get_user_data_dir(user_id, config) / SyncSettings.from_config(config).state_filename


def get_log_file_path(config: Optional[Dict[str, Any]] = None) -> Path:
    log_filename = get_setting("logging", "log_filename", "oracle_cards.log", config=config)
    log_file_path = get_data_dir(config) / log_filename
    try:
        log_file_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"Could not create log directory {log_file_path.parent}: {e}")
    return log_file_path

#
# End of config.py
#######################################################################################################################
