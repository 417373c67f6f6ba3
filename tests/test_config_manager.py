"""
Tests for configuration loading, validation and model endpoints.
"""

import json

import pytest

from config_manager import (
    ApiConfig, AppConfig, ConfigManager, GeminiEndpoint, OpenAICompatibleEndpoint,
    ProjectDefaults, RetryConfig, build_endpoint,
)


@pytest.fixture
def manager():
    manager = ConfigManager()
    manager.clear_cache()
    yield manager
    manager.clear_cache()


class TestConfigValidation:

    def test_defaults_are_valid(self):
        config = AppConfig()
        assert config.retry.rate_limit_wait_seconds == 60
        assert config.retry.max_api_retries == 3
        assert config.project.batch_size == 6
        assert config.breakdown_model in config.models

    def test_invalid_temperature(self):
        with pytest.raises(ValueError, match="Temperature must be between"):
            ApiConfig(temperature=3.0)

    def test_invalid_project_defaults(self):
        with pytest.raises(ValueError, match="batch_size"):
            ProjectDefaults(batch_size=50)
        with pytest.raises(ValueError, match="max_retries"):
            ProjectDefaults(max_retries=0)

    def test_negative_backoff(self):
        with pytest.raises(ValueError):
            RetryConfig(server_backoff_seconds=-1)

    def test_stage_model_must_exist(self):
        with pytest.raises(ValueError, match="not defined"):
            AppConfig(breakdown_model="nope")

    def test_validate_config_collects_errors(self, manager):
        errors = manager.validate_config({
            "api": {"temperature": 5},
            "models": {"bad": {"provider": "claude-direct", "model_name": "x"}},
            "script_model": "ghost",
        })
        assert any(e.startswith("API config error") for e in errors)
        assert any("Model 'bad'" in e for e in errors)
        assert any("script_model 'ghost'" in e for e in errors)


class TestModelEndpoints:

    def test_build_gemini_endpoint_reads_env_key(self, monkeypatch):
        monkeypatch.setenv("GEMINI_API_KEY", "env-key")
        endpoint = build_endpoint({"provider": "gemini", "model_name": "gemini-2.5-flash"})
        assert isinstance(endpoint, GeminiEndpoint)
        assert endpoint.api_key == "env-key"

    def test_build_openai_compatible_endpoint(self, monkeypatch):
        monkeypatch.setenv("DEEPSEEK_KEY", "ds-key")
        endpoint = build_endpoint({
            "provider": "openai-compatible",
            "model_name": "deepseek-chat",
            "api_key_env": "DEEPSEEK_KEY",
            "base_url": "https://api.deepseek.com/v1",
        })
        assert isinstance(endpoint, OpenAICompatibleEndpoint)
        assert endpoint.api_key == "ds-key"
        assert endpoint.base_url == "https://api.deepseek.com/v1"

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown model provider"):
            build_endpoint({"provider": "carrier-pigeon", "model_name": "x"})

    def test_tag_mismatch_is_rejected(self):
        with pytest.raises(ValueError):
            GeminiEndpoint(model_name="x", provider="openai-compatible")

    def test_get_endpoint_per_stage(self):
        config = AppConfig(
            models={
                "fast": {"provider": "gemini", "model_name": "gemini-flash", "api_key": "k"},
                "local": {"provider": "openai-compatible", "model_name": "qwen", "api_key": "k",
                          "base_url": "http://localhost:8000/v1"},
            },
            breakdown_model="fast",
            script_model="local",
        )
        assert config.get_endpoint(stage="breakdown").model_name == "gemini-flash"
        assert config.get_endpoint(stage="script").model_name == "qwen"
        assert config.get_endpoint("fast", stage="script").model_name == "gemini-flash"
        with pytest.raises(KeyError):
            config.get_endpoint("missing")


class TestConfigManager:

    def test_missing_file_uses_defaults(self, manager, tmp_path):
        config = manager.load_config(tmp_path / "config.json")
        assert config.api.temperature == 0.7

    def test_user_overrides_are_merged(self, manager, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({
            "api": {"temperature": 0.3},
            "project": {"batch_size": 8},
            "models": {"ds": {"provider": "openai-compatible", "model_name": "deepseek-chat"}},
            "breakdown_model": "ds",
            "script_model": "ds",
        }), encoding="utf-8")

        config = manager.load_config(path)

        assert config.api.temperature == 0.3
        assert config.api.timeout == 300
        assert config.project.batch_size == 8
        assert list(config.models) == ["ds"]

    def test_invalid_values_fall_back_to_defaults(self, manager, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"project": {"batch_size": 99}}), encoding="utf-8")
        assert manager.load_config(path).project.batch_size == 6

    def test_cache_returns_same_instance(self, manager, tmp_path):
        path = tmp_path / "absent.json"
        assert manager.load_config(path) is manager.load_config(path)

    def test_save_strips_api_keys_and_keeps_backup(self, manager, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{}", encoding="utf-8")
        config = AppConfig(
            models={"g": {"provider": "gemini", "model_name": "gemini-pro", "api_key": "secret"}},
            breakdown_model="g",
            script_model="g",
        )

        assert manager.save_config(config, path)

        saved = json.loads(path.read_text(encoding="utf-8"))
        assert "api_key" not in saved["models"]["g"]
        assert config.models["g"]["api_key"] == "secret"
        assert (tmp_path / "config.json.backup").read_text(encoding="utf-8") == "{}"
