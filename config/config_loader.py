"""Load settings.yaml into typed dataclasses. Validates API keys at startup."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from src.models import PersonaConfig

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"


@dataclass
class ModelConfig:
    name: str
    provider: str
    sdk: str
    model: str
    api_key_env: str
    timeout_sec: int
    max_tokens: int
    base_url: str | None = None
    cost_per_1m_input: float = 0.0
    cost_per_1m_output: float = 0.0

    def cost_for(self, input_tokens: int, output_tokens: int) -> float:
        """Dollar cost of one request given its token usage."""
        return (
            input_tokens / 1_000_000 * self.cost_per_1m_input
            + output_tokens / 1_000_000 * self.cost_per_1m_output
        )


@dataclass
class RouteConfig:
    primary: str
    fallbacks: list[str] = field(default_factory=list)

    def chain(self) -> list[str]:
        return [self.primary, *self.fallbacks]


@dataclass
class FailoverConfig:
    max_failures: int = 3
    cooldown_sec: float = 60.0
    failure_window_sec: float = 300.0
    degraded_failure_ratio: float = 0.5


@dataclass
class ToolsConfig:
    timeout_sec: float = 15.0
    max_concurrency: int = 5
    exa_api_key_env: str = "EXA_API_KEY"
    github_token_env: str = "GITHUB_TOKEN"


@dataclass
class PromptsConfig:
    questions: str
    research: str
    challenge: str
    challenge_response: str
    debate: str
    synthesis: str
    review: str
    voting: str
    spec: str
    tech_stack: str


@dataclass
class DefaultsConfig:
    max_rounds: int = 3
    approval_threshold: float = 0.6
    question_count: int = 7
    research_fanout: int = 5
    research_tool: str = "web_search"
    challenges_per_finding: int = 2
    review_pass_score: int = 70
    output_dir: Path = Path("./output")
    session_file: Path = Path("./output/.session.json")
    session_max_age_hours: float = 24.0


@dataclass
class AppConfig:
    defaults: DefaultsConfig
    models: dict[str, ModelConfig]
    routing: dict[str, RouteConfig]
    prompts: PromptsConfig
    personas: dict[str, PersonaConfig] = field(default_factory=dict)
    failover: FailoverConfig = field(default_factory=FailoverConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    available_models: set[str] = field(default_factory=set)


def _load_defaults(raw: dict) -> DefaultsConfig:
    base = DefaultsConfig()
    return DefaultsConfig(
        max_rounds=int(raw.get("max_rounds", base.max_rounds)),
        approval_threshold=float(raw.get("approval_threshold", base.approval_threshold)),
        question_count=int(raw.get("question_count", base.question_count)),
        research_fanout=int(raw.get("research_fanout", base.research_fanout)),
        research_tool=str(raw.get("research_tool", base.research_tool)),
        challenges_per_finding=int(raw.get("challenges_per_finding", base.challenges_per_finding)),
        review_pass_score=int(raw.get("review_pass_score", base.review_pass_score)),
        output_dir=Path(raw.get("output_dir", base.output_dir)),
        session_file=Path(raw.get("session_file", base.session_file)),
        session_max_age_hours=float(raw.get("session_max_age_hours", base.session_max_age_hours)),
    )


def _load_routing(raw: dict, models: dict[str, ModelConfig]) -> dict[str, RouteConfig]:
    routing: dict[str, RouteConfig] = {}
    for role, route_raw in raw.items():
        route = RouteConfig(
            primary=str(route_raw["primary"]),
            fallbacks=[str(m) for m in route_raw.get("fallbacks", [])],
        )
        unknown = [m for m in route.chain() if m not in models]
        if unknown:
            raise ValueError(f"Route '{role}' references unknown model(s): {', '.join(unknown)}")
        routing[role] = route
    if "default" not in routing:
        raise ValueError("Routing table must define a 'default' route")
    return routing


def _load_personas(raw: dict) -> dict[str, PersonaConfig]:
    return {
        persona_id: PersonaConfig(
            id=persona_id,
            prompt_template=str(p["prompt"]).strip(),
            temperature=float(p.get("temperature", 0.7)),
            enabled=bool(p.get("enabled", True)),
            name=str(p.get("name", persona_id)),
        )
        for persona_id, p in raw.items()
    }


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises FileNotFoundError if settings file missing, ValueError if the
    routing table names a model that is not configured.
    Logs missing API keys but does not raise; callers check
    available_models.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    defaults = _load_defaults(raw.get("defaults", {}))
    prompts = PromptsConfig(**{k: str(v) for k, v in raw["prompts"].items()})

    failover_raw = raw.get("failover", {})
    failover = FailoverConfig(
        max_failures=int(failover_raw.get("max_failures", 3)),
        cooldown_sec=float(failover_raw.get("cooldown_sec", 60)),
        failure_window_sec=float(failover_raw.get("failure_window_sec", 300)),
        degraded_failure_ratio=float(failover_raw.get("degraded_failure_ratio", 0.5)),
    )

    tools_raw = raw.get("tools", {})
    tools = ToolsConfig(
        timeout_sec=float(tools_raw.get("timeout_sec", 15)),
        max_concurrency=int(tools_raw.get("max_concurrency", 5)),
        exa_api_key_env=str(tools_raw.get("exa_api_key_env", "EXA_API_KEY")),
        github_token_env=str(tools_raw.get("github_token_env", "GITHUB_TOKEN")),
    )

    models: dict[str, ModelConfig] = {}
    available_models: set[str] = set()

    for model_name, model_raw in raw["models"].items():
        model_cfg = ModelConfig(
            name=model_name,
            provider=str(model_raw.get("provider", model_raw["sdk"])),
            sdk=model_raw["sdk"],
            model=model_raw["model"],
            api_key_env=model_raw["api_key_env"],
            timeout_sec=int(model_raw["timeout_sec"]),
            max_tokens=int(model_raw["max_tokens"]),
            base_url=model_raw.get("base_url"),
            cost_per_1m_input=float(model_raw.get("cost_per_1m_input", 0.0)),
            cost_per_1m_output=float(model_raw.get("cost_per_1m_output", 0.0)),
        )
        models[model_name] = model_cfg

        api_key = os.environ.get(model_raw["api_key_env"], "").strip()
        if api_key:
            available_models.add(model_name)
            logger.info("Model available: %s (%s)", model_name, model_cfg.provider)
        else:
            logger.info(
                "Model skipped (no API key): %s, set %s in .env",
                model_name,
                model_raw["api_key_env"],
            )

    routing = _load_routing(raw["routing"], models)

    return AppConfig(
        defaults=defaults,
        models=models,
        routing=routing,
        prompts=prompts,
        personas=_load_personas(raw.get("personas", {})),
        failover=failover,
        tools=tools,
        available_models=available_models,
    )
