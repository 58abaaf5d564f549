"""Tests for sdesync.config."""

import json

import pytest

from sdesync.config import ProjectConfig, SdeConfig, SyncSettings, load_config
from sdesync.errors import ConfigError


@pytest.fixture
def clean_env(monkeypatch):
    for name in ("SDESYNC_CONFIG", "SDESYNC_MAPPING_URL", "SDESYNC_TIMEOUT", "SDESYNC_ALWAYS_REFRESH"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "settings": {"mapping_service_url": "http://mapping:8080", "request_timeout": 60},
        "projects": {
            "ar24": {"data_folder": str(tmp_path / "ar24"), "languages": ["nl", "en"]},
        },
    }))
    return path


class TestLoadConfig:
    def test_from_file(self, clean_env, config_file):
        config = load_config(str(config_file))
        assert config.settings.mapping_service_url == "http://mapping:8080"
        assert config.settings.request_timeout == 60.0
        assert config.get_project("ar24").default_language == "nl"

    def test_env_path(self, clean_env, config_file):
        clean_env.setenv("SDESYNC_CONFIG", str(config_file))
        assert "ar24" in load_config().projects

    def test_missing_file_defaults(self, clean_env, tmp_path):
        config = load_config(str(tmp_path / "nope.json"))
        assert config.projects == {}
        assert config.settings.request_timeout == 1800.0

    def test_env_overrides(self, clean_env, config_file):
        clean_env.setenv("SDESYNC_MAPPING_URL", "http://other")
        clean_env.setenv("SDESYNC_TIMEOUT", "5")
        clean_env.setenv("SDESYNC_ALWAYS_REFRESH", "true")
        settings = load_config(str(config_file)).settings
        assert settings.mapping_service_url == "http://other"
        assert settings.request_timeout == 5.0
        assert settings.always_refresh

    def test_bad_timeout(self, clean_env, config_file):
        clean_env.setenv("SDESYNC_TIMEOUT", "soon")
        with pytest.raises(ConfigError):
            load_config(str(config_file))

    def test_broken_file(self, clean_env, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json")
        with pytest.raises(ConfigError):
            load_config(str(path))


class TestModels:
    def test_unknown_project(self):
        with pytest.raises(ConfigError):
            SdeConfig().get_project("missing")

    def test_project_needs_languages(self):
        with pytest.raises(ConfigError):
            ProjectConfig(project_id="p", data_folder="/tmp", languages=[])

    def test_project_needs_data_folder(self):
        with pytest.raises(ConfigError):
            ProjectConfig.from_dict("p", {"languages": ["en"]})

    def test_round_trip(self, tmp_path):
        config = SdeConfig(settings=SyncSettings(error_marker="#"))
        config.add_project(ProjectConfig("p", str(tmp_path), ["en", "de"]))
        restored = SdeConfig.from_dict(json.loads(json.dumps(config.to_dict())))
        assert restored.settings.error_marker == "#"
        assert restored.get_project("p").languages == ["en", "de"]
