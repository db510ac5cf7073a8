# test_config.py
#
# Imports
import logging
import logging.handlers
import sys
import tomllib
from pathlib import Path
#
# Third-Party Imports
import pytest
from loguru import logger
#
# Local Imports
from oracle_cards import config as config_module
from oracle_cards.config import (
    load_settings, get_setting, save_setting, deep_merge_dicts, SyncSettings, RemoteSettings,
    get_user_db_path, get_sync_state_path, get_user_data_dir, DEFAULT_CONFIG_FROM_TOML,
)
from oracle_cards.Logging_Config import configure_logging
#
#######################################################################################################################
#
# Functions:

@pytest.fixture
def config_path(tmp_path):
    return tmp_path / "config" / "config.toml"


@pytest.fixture
def data_config(tmp_path):
    """Defaults with the data directory pointed into the test's temp dir."""
    return deep_merge_dicts(DEFAULT_CONFIG_FROM_TOML, {"database": {"data_dir": str(tmp_path / "data")}})


class TestLoadSettings:
    def test_missing_file_is_created_with_defaults(self, config_path):
        settings = load_settings(config_path, force_reload=True)
        assert config_path.exists()
        assert settings["sync"]["interval_seconds"] == 300
        with open(config_path, "rb") as f:
            assert tomllib.load(f) == DEFAULT_CONFIG_FROM_TOML

    def test_user_values_are_merged_over_defaults(self, config_path):
        config_path.parent.mkdir(parents=True)
        config_path.write_text('[sync]\ninterval_seconds = 60\n', encoding="utf-8")
        settings = load_settings(config_path, force_reload=True)
        assert settings["sync"]["interval_seconds"] == 60
        assert settings["sync"]["push_batch_size"] == 50
        assert settings["remote"]["use_delta_endpoint"] is True

    def test_invalid_toml_falls_back_to_defaults(self, config_path):
        config_path.parent.mkdir(parents=True)
        config_path.write_text('[sync\ninterval_seconds = ', encoding="utf-8")
        assert load_settings(config_path, force_reload=True) == DEFAULT_CONFIG_FROM_TOML

    def test_results_are_cached_per_path(self, config_path):
        first = load_settings(config_path, force_reload=True)
        assert load_settings(config_path) is first

    def test_env_var_selects_config_file(self, config_path, monkeypatch):
        monkeypatch.setenv(config_module.CONFIG_PATH_ENV_VAR, str(config_path))
        assert config_module.get_config_path() == config_path

    def test_save_setting_round_trips(self, config_path):
        load_settings(config_path, force_reload=True)
        settings = save_setting("remote", "base_url", "https://project.example.co", config_path)
        assert settings["remote"]["base_url"] == "https://project.example.co"
        assert get_setting("remote", "base_url", config=load_settings(config_path)) == "https://project.example.co"

    def test_get_setting_defaults(self):
        assert get_setting("nope", "missing", "fallback", config={}) == "fallback"
        assert get_setting("sync", "missing", 7, config={"sync": {}}) == 7


class TestTypedSettings:
    def test_sync_settings_coerce_and_clamp(self):
        settings = SyncSettings.from_config({"sync": {
            "interval_seconds": "120", "push_batch_size": 0, "purge_deleted_after_push": "no",
            "max_rejections": "not-a-number",
        }})
        assert settings.interval_seconds == 120.0
        assert settings.push_batch_size == 1
        assert settings.purge_deleted_after_push is False
        assert settings.max_rejections == SyncSettings().max_rejections

    def test_backoff_grows_exponentially_and_is_capped(self):
        settings = SyncSettings(retry_backoff_base_seconds=30, retry_backoff_max_seconds=100)
        assert [settings.backoff_seconds(n) for n in (1, 2, 3, 4)] == [30, 60, 100, 100]

    def test_remote_settings_env_overrides(self, monkeypatch):
        monkeypatch.setenv(config_module.REMOTE_URL_ENV_VAR, "https://env.example.co")
        monkeypatch.setenv(config_module.REMOTE_KEY_ENV_VAR, "env-key")
        remote = RemoteSettings.from_config({"remote": {"base_url": "https://file.example.co"}})
        assert remote.base_url == "https://env.example.co"
        assert remote.anon_key == "env-key"
        assert remote.is_configured

    def test_remote_settings_unconfigured(self, monkeypatch):
        monkeypatch.delenv(config_module.REMOTE_URL_ENV_VAR, raising=False)
        monkeypatch.delenv(config_module.REMOTE_KEY_ENV_VAR, raising=False)
        assert not RemoteSettings.from_config(DEFAULT_CONFIG_FROM_TOML).is_configured


class TestPaths:
    def test_each_user_gets_own_database(self, data_config, tmp_path):
        alice = get_user_db_path("user-alice", data_config)
        bob = get_user_db_path("user-bob", data_config)
        assert alice != bob
        assert alice == (tmp_path / "data" / "users" / "user-alice" / "oracle_cards.db").resolve()
        assert get_sync_state_path("user-alice", data_config).parent == alice.parent

    def test_user_id_is_made_filesystem_safe(self, data_config):
        path = get_user_data_dir("../../etc/passwd", data_config)
        assert path.parent.name == "users"
        assert "/" not in path.name
        assert get_user_data_dir("..", data_config).parent.name == "users"

    def test_rewritten_user_ids_never_share_a_directory(self, data_config):
        dirs = {get_user_data_dir(user_id, data_config) for user_id in ("a/b", "a_b", "a b", "a_b~x")}
        assert len(dirs) == 4
        assert get_user_data_dir("a_b", data_config).name == "a_b"
        assert get_user_data_dir("a/b", data_config) == get_user_data_dir("a/b", data_config)

    def test_empty_user_id_is_rejected(self, data_config):
        with pytest.raises(ValueError):
            get_user_db_path("", data_config)


class TestLoggingConfig:
    @pytest.fixture
    def restore_logging(self):
        """Removes the handlers configure_logging installs and gives loguru back its stderr sink."""
        root = logging.getLogger()
        saved_level = root.level
        yield
        for handler in root.handlers[:]:
            if type(handler) in (logging.StreamHandler, logging.handlers.RotatingFileHandler):
                root.removeHandler(handler)
                handler.close()
        root.setLevel(saved_level)
        logger.remove()
        logger.add(sys.stderr)

    def test_loguru_records_reach_log_file(self, data_config, restore_logging):
        data_config["logging"]["file_log_level"] = "DEBUG"
        file_handler = configure_logging(data_config)
        assert file_handler is not None

        logger.debug("sync engine says hello")
        file_handler.flush()
        log_file = Path(file_handler.baseFilename)
        assert log_file.parent == Path(data_config["database"]["data_dir"]).resolve()
        assert "sync engine says hello" in log_file.read_text(encoding="utf-8")
        assert logging.getLogger().level == logging.DEBUG

    def test_file_logging_can_be_disabled(self, data_config, restore_logging):
        assert configure_logging(data_config, log_to_file=False) is None

#
# End of test_config.py
#######################################################################################################################
