"""Tests for config/config_loader.py."""

from pathlib import Path

import pytest
import yaml

from config.config_loader import AppConfig, DefaultsConfig, ModelConfig, PromptsConfig, load_config

_PROMPT_KEYS = (
    "questions",
    "research",
    "challenge",
    "challenge_response",
    "debate",
    "synthesis",
    "review",
    "voting",
    "spec",
    "tech_stack",
)


def _settings(**overrides) -> dict:
    settings = {
        "defaults": {"max_rounds": 4, "approval_threshold": 0.75, "output_dir": "./out"},
        "failover": {"max_failures": 5, "cooldown_sec": 30},
        "models": {
            "claude": {
                "provider": "anthropic",
                "sdk": "anthropic",
                "model": "claude-sonnet-4-5",
                "api_key_env": "TEST_CLAUDE_KEY",
                "timeout_sec": 120,
                "max_tokens": 8192,
                "cost_per_1m_input": 3.0,
                "cost_per_1m_output": 15.0,
            },
            "llama": {
                "provider": "groq",
                "sdk": "openai-compatible",
                "model": "llama-3.3-70b",
                "api_key_env": "TEST_GROQ_KEY",
                "base_url": "https://api.groq.test/v1",
                "timeout_sec": 60,
                "max_tokens": 4096,
            },
        },
        "routing": {
            "default": {"primary": "claude", "fallbacks": ["llama"]},
            "review": {"primary": "claude"},
        },
        "prompts": {key: f"{key.upper()} {{idea}}" for key in _PROMPT_KEYS},
        "personas": {
            "engineer": {"name": "Engineer", "temperature": 0.4, "prompt": "You are an engineer.\n"},
            "dreamer": {"prompt": "You dream.", "enabled": False},
        },
    }
    settings.update(overrides)
    return settings


@pytest.fixture
def settings_path(tmp_path: Path):
    def write(**overrides) -> Path:
        path = tmp_path / "settings.yaml"
        path.write_text(yaml.dump(_settings(**overrides)), encoding="utf-8")
        return path

    return write


def test_load_config_returns_app_config(settings_path):
    config = load_config(settings_path())

    assert isinstance(config, AppConfig)
    assert isinstance(config.prompts, PromptsConfig)
    assert isinstance(config.models["claude"], ModelConfig)


def test_load_config_defaults_fill_missing_keys(settings_path):
    defaults = load_config(settings_path()).defaults

    assert defaults.max_rounds == 4
    assert defaults.approval_threshold == 0.75
    assert defaults.question_count == DefaultsConfig().question_count
    assert isinstance(defaults.output_dir, Path)


def test_load_config_failover_and_tools(settings_path):
    config = load_config(settings_path())

    assert config.failover.max_failures == 5
    assert config.failover.cooldown_sec == 30.0
    assert config.failover.failure_window_sec == 300.0
    assert config.tools.timeout_sec == 15.0


def test_load_config_models(settings_path):
    config = load_config(settings_path())

    assert config.models["claude"].base_url is None
    assert config.models["llama"].base_url == "https://api.groq.test/v1"
    assert config.models["llama"].provider == "groq"
    assert config.models["claude"].cost_for(1_000_000, 100_000) == pytest.approx(4.5)


def test_load_config_routing_chain(settings_path):
    config = load_config(settings_path())

    assert config.routing["default"].chain() == ["claude", "llama"]
    assert config.routing["review"].chain() == ["claude"]


def test_load_config_personas(settings_path):
    personas = load_config(settings_path()).personas

    assert personas["engineer"].prompt_template == "You are an engineer."
    assert personas["engineer"].temperature == 0.4
    assert personas["dreamer"].enabled is False
    assert personas["dreamer"].name == "dreamer"


def test_route_to_unknown_model_is_rejected(settings_path):
    path = settings_path(routing={"default": {"primary": "claude", "fallbacks": ["ghost"]}})

    with pytest.raises(ValueError, match="ghost"):
        load_config(path)


def test_default_route_is_required(settings_path):
    path = settings_path(routing={"review": {"primary": "claude"}})

    with pytest.raises(ValueError, match="default"):
        load_config(path)


def test_available_models_follow_api_keys(settings_path, monkeypatch):
    monkeypatch.setenv("TEST_CLAUDE_KEY", "sk-test")
    monkeypatch.delenv("TEST_GROQ_KEY", raising=False)

    config = load_config(settings_path())

    assert config.available_models == {"claude"}


def test_load_config_missing_file():
    with pytest.raises(FileNotFoundError):
        load_config(Path("/nonexistent/settings.yaml"))


def test_bundled_settings_load_and_prompts_format():
    config = load_config()

    assert "default" in config.routing
    assert config.defaults.approval_threshold == 0.6
    assert config.defaults.max_rounds == 3
    enabled = [p for p in config.personas.values() if p.enabled]
    assert enabled

    fields = {
        "idea": "x", "comment_block": "", "count": 7, "persona": "p", "questions": "q", "evidence": "e",
        "findings": "f", "per_finding": 2, "target": "t", "position": "p", "type": "risk", "question": "q",
        "persona_id": "p", "arguments": "a", "resolution": "r", "syntheses": "s", "score": 80,
        "issues": "i", "requirements": "r", "document": "d",
        "experts": "x", "decisions": "d", "review": "r",
    }
    for key in _PROMPT_KEYS:
        getattr(config.prompts, key).format(**fields)
