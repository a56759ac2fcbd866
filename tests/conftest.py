"""Shared pytest fixtures."""

import json
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest

from config.config_loader import AppConfig, DefaultsConfig, FailoverConfig, ModelConfig, PromptsConfig, RouteConfig
from src.models import GenerationRequest, GenerationResponse, PersonaConfig, ToolMetadata, ToolParameter, ToolResult
from src.providers.base import AIProvider
from src.tools.base import BaseTool
from src.tools.registry import ToolRegistry


@pytest.fixture
def sample_model_config() -> ModelConfig:
    return ModelConfig(
        name="test_model",
        provider="test",
        sdk="test",
        model="test-model-1",
        api_key_env="TEST_API_KEY",
        timeout_sec=30,
        max_tokens=1024,
        base_url=None,
        cost_per_1m_input=1.0,
        cost_per_1m_output=2.0,
    )


@pytest.fixture
def sample_prompts_config() -> PromptsConfig:
    # Each template starts with a marker so test providers can tell stages apart.
    return PromptsConfig(
        questions="QUESTIONS {idea}{comment_block} count={count}",
        research="RESEARCH {persona}\n{idea}{comment_block}\n{questions}\n{evidence}",
        challenge="CHALLENGE {idea}\n{findings}\nper={per_finding}",
        challenge_response="ARGUE {persona} {idea} {target} {position} {type} {question}",
        debate="DEBATE {persona_id}\n{position}\n{arguments}",
        synthesis="SYNTHESIZE {persona}\n{idea}{comment_block}\n{findings}\n{resolution}",
        review="REVIEW {idea}\n{syntheses}",
        voting="VOTE {persona}\n{idea}\n{syntheses}\n{score}\n{issues}",
        spec="SPEC {idea}{comment_block}\n{syntheses}\n{requirements}\n{decisions}\n{review}",
        tech_stack="TECH_STACK {document}",
    )


@pytest.fixture
def sample_defaults_config(tmp_path: Path) -> DefaultsConfig:
    return DefaultsConfig(
        max_rounds=3,
        approval_threshold=0.6,
        question_count=7,
        research_fanout=5,
        research_tool="web_search",
        challenges_per_finding=2,
        review_pass_score=70,
        output_dir=tmp_path / "output",
        session_file=tmp_path / "output" / ".session.json",
    )


@pytest.fixture
def sample_app_config(
    sample_defaults_config: DefaultsConfig,
    sample_prompts_config: PromptsConfig,
    sample_model_config: ModelConfig,
) -> AppConfig:
    return AppConfig(
        defaults=sample_defaults_config,
        models={"mock-a": sample_model_config},
        routing={"default": RouteConfig(primary="mock-a", fallbacks=["mock-b"])},
        prompts=sample_prompts_config,
        failover=FailoverConfig(max_failures=3, cooldown_sec=60, failure_window_sec=300),
        available_models={"mock-a"},
    )


@pytest.fixture
def three_personas() -> list[PersonaConfig]:
    return [
        PersonaConfig(id="visionary", prompt_template="You are a product visionary.", temperature=0.8),
        PersonaConfig(id="engineer", prompt_template="You are a pragmatic engineer.", temperature=0.4),
        PersonaConfig(id="marketer", prompt_template="You are a growth marketer.", temperature=0.9),
    ]


def make_response(text: str, model: str = "mock-model", provider: str = "mock", cost: float = 0.001) -> GenerationResponse:
    return GenerationResponse(text=text, model_used=model, provider=provider, latency_ms=5.0, cost=cost, token_count=10)


class MockProvider(AIProvider):
    """Test double AIProvider."""

    def __init__(self, model_name: str = "mock", provider_name: str | None = None, response_text: str = "Mock response") -> None:
        self._name = model_name
        self._provider = provider_name or model_name
        self._response_text = response_text
        # Shadow the class method with an AsyncMock at the instance level.
        # ABC check passes because generate is defined in the class body below.
        self.generate = AsyncMock(  # type: ignore[assignment]
            return_value=make_response(response_text, model=model_name, provider=self._provider)
        )

    def name(self) -> str:
        return self._name

    def provider(self) -> str:
        return self._provider

    def model_string(self) -> str:
        return "mock-model"

    async def generate(self, request: GenerationRequest) -> GenerationResponse:  # type: ignore[override]
        """Default implementation; replaced by AsyncMock in __init__."""
        return make_response(self._response_text, model=self._name, provider=self._provider)


class CouncilScript:
    """Canned replies for a whole pipeline run, keyed off the prompt marker.

    ``votes`` is consumed in order, one bool per VOTE request. Every request
    seen is kept in ``calls`` as (marker, role, prompt).
    """

    def __init__(self, persona_ids: list[str], votes: list[bool], model: str = "mock-a") -> None:
        self.persona_ids = persona_ids
        self.votes = list(votes)
        self.model = model
        self.calls: list[tuple[str, str, str]] = []

    def reply(self, request: GenerationRequest) -> GenerationResponse:
        marker = request.prompt.split(maxsplit=1)[0]
        self.calls.append((marker, request.role, request.prompt))
        return make_response(self._text(marker), model=self.model)

    def _text(self, marker: str) -> str:
        if marker == "QUESTIONS":
            return json.dumps({"questions": [
                {"id": "q1", "question": "Which platforms matter?", "domain": "technical", "priority": 9},
                {"id": "q2", "question": "Who pays?", "domain": "market", "priority": 7},
                {"id": "q3", "question": "What data is sensitive?", "domain": "legal", "priority": 6},
            ]})
        if marker == "RESEARCH":
            return "Findings: ship mobile first."
        if marker == "CHALLENGE":
            return json.dumps({"challenges": [
                {"target": pid, "type": "risk", "question": f"Is {pid} too optimistic?", "priority": 6}
                for pid in self.persona_ids
            ]})
        if marker == "ARGUE":
            return json.dumps({
                "challenge": "Too optimistic.",
                "evidence_against": ["Churn is high"],
                "alternative_approach": "Start with web",
                "risk_score": 6,
            })
        if marker == "DEBATE":
            return json.dumps({"resolution": "Keep mobile, add web later.", "confidence_change": 10, "adopted_alternatives": ["web"]})
        if marker == "SYNTHESIZE":
            return "Final recommendation: mobile app with web companion."
        if marker == "REVIEW":
            return json.dumps({"overall_score": 85, "issues": [], "recommendations": ["Add metrics"]})
        if marker == "VOTE":
            approved = self.votes.pop(0) if self.votes else True
            return json.dumps({
                "approved": approved,
                "confidence": 80,
                "reasoning": "Looks ready." if approved else "Needs more research.",
                "key_requirements": ["Offline mode"],
            })
        if marker == "SPEC":
            return "# Fitness App Specification\n\nBuild it."
        if marker == "TECH_STACK":
            return json.dumps({"tech_stack": [
                {"category": "mobile", "name": "React Native", "rationale": "One codebase", "alternatives": ["Flutter"]},
            ]})
        return "ok"

    def markers(self) -> list[str]:
        return [m for m, _, _ in self.calls]


class FakeSearchTool(BaseTool):
    name = "web_search"
    description = "Fake search"
    source = "fake"
    parameters = (ToolParameter("query", "string", "Query", required=True),)

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.queries: list[str] = []

    async def execute(self, params: dict[str, Any]) -> ToolResult:
        self.queries.append(params["query"])
        if self.fail:
            raise RuntimeError("search backend down")
        return ToolResult(
            success=True,
            data={"results": [{"title": "Result", "snippet": params["query"]}]},
            metadata=ToolMetadata(cost=0.01, source=self.source),
        )


@pytest.fixture
def mock_provider() -> MockProvider:
    return MockProvider()


@pytest.fixture
def fake_registry() -> ToolRegistry:
    registry = ToolRegistry(default_timeout=1.0)
    registry.register(FakeSearchTool())
    return registry
