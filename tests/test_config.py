"""Tests for the INI configuration layer."""

import configparser

import pytest

from bundlesync.core.package import (
    EditorSimulateModeParameters,
    HostPlayModeParameters,
    OfflinePlayModeParameters,
    WebPlayModeParameters,
    create_parameters,
)
from bundlesync.exceptions import ConfigurationError
from bundlesync.models.config import PackageConfig, PlayMode, VerifyLevel
from bundlesync.storage.config_manager import ConfigManager, default_config_path


@pytest.fixture
def config_file(tmp_path):
    return tmp_path / "conf" / "config.ini"


class TestConfigManager:
    def test_save_and_load(self, config_file):
        manager = ConfigManager(config_file)
        manager.save_new_config(
            {"package_name": "Demo", "host_server": "http://cdn.example.com/demo/"}
        )
        config = ConfigManager(config_file).load_config()
        assert config.package_name == "Demo"
        assert config.play_mode == PlayMode.HOST
        assert config.host_server == "http://cdn.example.com/demo"
        assert config.effective_fallback_server == "http://cdn.example.com/demo"
        assert config.config_path == str(config_file.parent)

    def test_values_are_written_as_ini(self, config_file):
        ConfigManager(config_file).save_new_config(
            {"package_name": "Demo", "play_mode": PlayMode.OFFLINE, "append_time_ticks": False}
        )
        parser = configparser.ConfigParser(interpolation=None)
        parser.read(config_file, encoding="utf-8")
        assert parser["DEFAULT"]["play_mode"] == "offline"
        assert parser["DEFAULT"]["append_time_ticks"] == "false"
        assert "config_path" not in parser["DEFAULT"]

    def test_cli_overrides_skip_none(self, config_file):
        ConfigManager(config_file).save_new_config(
            {"package_name": "Demo", "host_server": "http://h"}
        )
        config = ConfigManager(config_file).load_config(
            {"max_concurrency": 4, "max_retry": None}
        )
        assert config.max_concurrency == 4
        assert config.max_retry == 3

    def test_missing_file(self, config_file):
        with pytest.raises(ConfigurationError, match="not found"):
            ConfigManager(config_file).load_config()

    def test_migration_adds_missing_keys(self, config_file):
        config_file.parent.mkdir(parents=True)
        config_file.write_text(
            "[DEFAULT]\npackage_name = Demo\nplay_mode = offline\n", encoding="utf-8"
        )
        config = ConfigManager(config_file).load_config()
        assert config.verify_level == VerifyLevel.MIDDLE
        text = config_file.read_text(encoding="utf-8")
        assert "max_concurrency = 10" in text
        assert "verify_level = middle" in text

    def test_invalid_integer(self, config_file):
        config_file.parent.mkdir(parents=True)
        config_file.write_text(
            "[DEFAULT]\npackage_name = Demo\nplay_mode = offline\nmax_retry = many\n",
            encoding="utf-8",
        )
        with pytest.raises(ConfigurationError, match="Invalid value"):
            ConfigManager(config_file).load_config()

    def test_validation_error(self, config_file):
        with pytest.raises(ConfigurationError, match="validation failed"):
            ConfigManager(config_file).save_new_config({"package_name": "Demo"})
        assert not config_file.exists()

    def test_default_path_follows_xdg(self, tmp_path, monkeypatch):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
        assert default_config_path() == tmp_path / "bundlesync" / "config.ini"


class TestPackageConfig:
    @pytest.mark.parametrize("mode", [PlayMode.HOST, PlayMode.WEB])
    def test_networked_modes_need_host(self, mode):
        with pytest.raises(ValueError, match="host_server"):
            PackageConfig(package_name="Demo", play_mode=mode)

    def test_simulate_needs_manifest(self):
        with pytest.raises(ValueError, match="simulate_manifest_path"):
            PackageConfig(package_name="Demo", play_mode=PlayMode.SIMULATE)

    @pytest.mark.parametrize(
        "field, value",
        [("max_concurrency", 0), ("max_concurrency", 65), ("max_retry", -1), ("timeout", 0)],
    )
    def test_bounds(self, field, value):
        with pytest.raises(ValueError):
            PackageConfig(package_name="Demo", play_mode=PlayMode.OFFLINE, **{field: value})


class TestCreateParameters:
    def test_host(self):
        config = PackageConfig(
            package_name="Demo", host_server="http://main", fallback_host_server="http://backup"
        )
        params = create_parameters(config)
        assert isinstance(params, HostPlayModeParameters)
        assert params.remote_services.get_remote_fallback_url("f") == "http://backup/f"

    def test_web(self):
        config = PackageConfig(package_name="Demo", play_mode=PlayMode.WEB, host_server="http://h")
        assert isinstance(create_parameters(config), WebPlayModeParameters)

    def test_offline(self):
        config = PackageConfig(
            package_name="Demo", play_mode=PlayMode.OFFLINE, verify_level=VerifyLevel.HIGH
        )
        params = create_parameters(config)
        assert isinstance(params, OfflinePlayModeParameters)
        assert params.verify_level == VerifyLevel.HIGH

    def test_simulate_expands_user_paths(self, monkeypatch, tmp_path):
        monkeypatch.setenv("HOME", str(tmp_path))
        config = PackageConfig(
            package_name="Demo",
            play_mode=PlayMode.SIMULATE,
            simulate_manifest_path="~/sim/PackageManifest_Demo_1.0.0.json",
        )
        params = create_parameters(config)
        assert isinstance(params, EditorSimulateModeParameters)
        assert params.simulate_manifest_path == tmp_path / "sim" / "PackageManifest_Demo_1.0.0.json"
