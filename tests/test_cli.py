"""Tests for the CLI helpers in src/cli.py."""

from dataclasses import replace
from unittest.mock import AsyncMock

import click
import pytest
from click.testing import CliRunner

from src.cli import _build_all_providers, _read_idea, _run_session, _select_personas, _split_ids, main
from src.models import PersonaConfig
from src.providers.base import ProviderOutageError
from src.providers.openai_compatible import OpenAICompatibleProvider
from tests.conftest import CouncilScript, MockProvider

IDEA = "Build a fitness app"


@pytest.fixture
def persona_config(sample_app_config):
    return replace(
        sample_app_config,
        personas={
            "visionary": PersonaConfig(id="visionary", prompt_template="Dream big.", name="Visionary"),
            "engineer": PersonaConfig(id="engineer", prompt_template="Build it.", temperature=0.3),
            "skeptic": PersonaConfig(id="skeptic", prompt_template="Doubt it.", enabled=False),
        },
    )


def test_split_ids_accepts_strings_and_lists():
    assert _split_ids("a, b,,c ") == ["a", "b", "c"]
    assert _split_ids(["x", " y "]) == ["x", "y"]
    assert _split_ids(None) == []


def test_select_personas_defaults_to_config(persona_config):
    personas = _select_personas(persona_config, [])

    assert [(p.id, p.enabled) for p in personas] == [
        ("visionary", True),
        ("engineer", True),
        ("skeptic", False),
    ]


def test_select_personas_enables_exactly_the_named_ones(persona_config):
    personas = _select_personas(persona_config, ["engineer", "skeptic"])

    assert [(p.id, p.enabled) for p in personas] == [
        ("visionary", False),
        ("engineer", True),
        ("skeptic", True),
    ]
    assert personas[1].temperature == 0.3


def test_select_personas_rejects_unknown_ids(persona_config):
    with pytest.raises(click.BadParameter, match="ghost"):
        _select_personas(persona_config, ["ghost"])


def test_read_idea_from_frontmatter_file(tmp_path):
    idea_file = tmp_path / "idea.md"
    idea_file.write_text(
        "---\npersonas: [engineer]\ncomment: Keep it offline-first\n---\nBuild a fitness app\n",
        encoding="utf-8",
    )

    text, meta = _read_idea(None, str(idea_file))

    assert text == "Build a fitness app"
    assert meta["personas"] == ["engineer"]
    assert meta["comment"] == "Keep it offline-first"


def test_read_idea_from_argument():
    assert _read_idea("  Build a fitness app ", None) == ("Build a fitness app", {})


def test_build_all_providers_skips_unknown_sdk(sample_app_config):
    assert _build_all_providers(sample_app_config) == {}


def test_build_all_providers_builds_openai_compatible(sample_app_config, sample_model_config, monkeypatch):
    monkeypatch.setenv("TEST_API_KEY", "sk-test")
    model = replace(sample_model_config, name="deepseek", sdk="openai-compatible", base_url="https://api.deepseek.test")
    config = replace(sample_app_config, models={"deepseek": model}, available_models={"deepseek"})

    providers = _build_all_providers(config)

    assert isinstance(providers["deepseek"], OpenAICompatibleProvider)
    assert providers["deepseek"].provider() == "test"


def test_build_all_providers_skips_models_that_fail_to_build(sample_app_config, sample_model_config, monkeypatch):
    monkeypatch.setenv("TEST_API_KEY", "sk-test")
    model = replace(sample_model_config, name="groq", sdk="openai-compatible", base_url=None)
    config = replace(sample_app_config, models={"groq": model}, available_models={"groq"})

    assert _build_all_providers(config) == {}


def test_main_without_idea_exits_with_error():
    result = CliRunner().invoke(main, ["--skip-health-check"])

    assert result.exit_code == 1
    assert "Provide an IDEA argument" in result.output


def test_main_rejects_unknown_persona():
    result = CliRunner().invoke(main, ["Build a fitness app", "--personas", "ghost", "--skip-health-check"])

    assert result.exit_code == 1
    assert "Unknown persona(s): ghost" in result.output


@pytest.mark.parametrize("failing_marker", ["REVIEW", "SPEC"])
async def test_resume_after_stage_failure_uses_recorded_idea(
    sample_app_config, three_personas, tmp_path, monkeypatch, failing_marker
):
    monkeypatch.delenv("EXA_API_KEY", raising=False)
    script = CouncilScript([p.id for p in three_personas], votes=[True, True, True])
    provider = MockProvider("mock-a")

    def failing_stage(request):
        if request.prompt.startswith(failing_marker):
            raise ProviderOutageError("mock-a", "503 Service Unavailable")
        return script.reply(request)

    provider.generate = AsyncMock(side_effect=failing_stage)
    session_file = tmp_path / ".session.json"
    common = dict(
        config=sample_app_config,
        providers={"mock-a": provider},
        personas=three_personas,
        session_file=session_file,
        output_dir=tmp_path / "out",
        interactive=False,
        initial_comment=None,
        show_stats=False,
    )

    with pytest.raises(SystemExit) as exc_info:
        await _run_session(idea=IDEA, resume=False, **common)
    assert exc_info.value.code == 1
    assert session_file.exists()

    provider.generate.side_effect = script.reply
    saved = await _run_session(idea="", resume=True, **common)

    assert saved is not None
    content = saved.read_text(encoding="utf-8")
    assert "# Fitness App Specification" in content
    assert IDEA in content
