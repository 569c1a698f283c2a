import pytest
from pydantic import ValidationError

from weavr.config import AIConfig, AIProviderName, FileConfigProvider, Settings, get_settings, reset_settings_cache


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_settings_read_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("WEAVR_HOME", str(tmp_path))
    monkeypatch.setenv("WEAVR_PORT", "9001")
    monkeypatch.setenv("WEAVR_RUN_HISTORY_SIZE", "7")
    reset_settings_cache()

    settings = get_settings()

    assert settings.port == 9001
    assert settings.run_history_size == 7
    assert settings.resolved_workflows_dir == tmp_path / "workflows"
    assert settings.resolved_config_file == tmp_path / "config.yaml"
    assert get_settings() is settings
    reset_settings_cache()


def test_settings_reject_non_positive_history():
    with pytest.raises(ValidationError):
        Settings(run_history_size=0)


def test_file_provider_reads_yaml_sections(tmp_path):
    config = tmp_path / "config.yaml"
    config.write_text(
        "ai:\n  provider: anthropic\n  apiKey: sk-file\n  model: claude-test\n"
        "webSearch:\n  provider: brave\n  apiKey: brave-key\n",
        encoding="utf-8",
    )

    provider = FileConfigProvider(config, environ={})

    assert provider.ai() == AIConfig(provider=AIProviderName.ANTHROPIC, api_key="sk-file", model="claude-test")
    assert provider.web_search().api_key == "brave-key"


def test_environment_fallback_when_file_has_no_credentials(tmp_path):
    provider = FileConfigProvider(tmp_path / "missing.yaml", environ={"OPENAI_API_KEY": "sk-env"})

    ai = provider.ai()

    assert ai.provider == AIProviderName.OPENAI
    assert ai.api_key == "sk-env"


def test_ollama_needs_no_key(tmp_path):
    config = tmp_path / "config.yaml"
    config.write_text("ai:\n  provider: ollama\n  model: llama3.2\n", encoding="utf-8")

    ai = FileConfigProvider(config, environ={"ANTHROPIC_API_KEY": "ignored"}).ai()

    assert ai.provider == AIProviderName.OLLAMA
    assert ai.api_key is None


def test_cache_expires_after_ttl_and_on_refresh(tmp_path):
    config = tmp_path / "config.yaml"
    config.write_text("ai:\n  provider: openai\n  apiKey: first\n", encoding="utf-8")
    clock = FakeClock()
    provider = FileConfigProvider(config, ttl_seconds=5, environ={}, clock=clock)

    assert provider.ai().api_key == "first"
    config.write_text("ai:\n  provider: openai\n  apiKey: second\n", encoding="utf-8")
    clock.now = 4.0
    assert provider.ai().api_key == "first"
    clock.now = 5.0
    assert provider.ai().api_key == "second"

    config.write_text("ai:\n  provider: openai\n  apiKey: third\n", encoding="utf-8")
    provider.refresh()
    assert provider.ai().api_key == "third"


def test_invalid_yaml_falls_back_to_defaults(tmp_path):
    config = tmp_path / "config.yaml"
    config.write_text("ai: [unterminated", encoding="utf-8")

    assert FileConfigProvider(config, environ={}).ai() == AIConfig()
