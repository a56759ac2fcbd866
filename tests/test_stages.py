"""Tests for src/stages.py: reply parsing, fallbacks, and stage fan-out."""

from unittest.mock import AsyncMock

import pytest

from src.models import (
    DebateResolution,
    PersonaConfig,
    ResearchQuestion,
    ResearchResult,
    ReviewIssue,
    ReviewResult,
    Round,
    RoundStatus,
    Synthesis,
    ToolUsage,
    Vote,
)
from src.providers.base import ProviderOutageError
from src.router import FallbackExhaustedError, ProviderRouter
from src.stages import (
    StageContext,
    assign_questions,
    extract_json,
    fallback_questions,
    generate_questions,
    generate_spec,
    parse_challenges,
    parse_questions,
    parse_review,
    parse_tech_stack,
    parse_vote,
    run_challenge,
    run_research,
    run_review,
)
from tests.conftest import CouncilScript, MockProvider, make_response

IDEA = "Build a fitness app"


def _ctx(app_config, personas, provider, registry, user_comment=None) -> StageContext:
    router = ProviderRouter({"mock-a": provider}, app_config.routing, app_config.failover)
    return StageContext(
        idea=IDEA,
        round_number=1,
        personas=personas,
        router=router,
        tools=registry,
        config=app_config,
        user_comment=user_comment,
    )


def _scripted(personas) -> MockProvider:
    script = CouncilScript([p.id for p in personas], votes=[])
    provider = MockProvider("mock-a")
    provider.generate = AsyncMock(side_effect=script.reply)
    provider.script = script
    return provider


def _results(*persona_ids: str) -> list[ResearchResult]:
    return [ResearchResult(persona_id=pid, findings=f"{pid} says ship it") for pid in persona_ids]


# --- extract_json -------------------------------------------------------------


def test_extract_json_plain_and_fenced():
    assert extract_json('{"a": 1}') == {"a": 1}
    assert extract_json('Sure!\n```json\n{"a": 2}\n```\nHope that helps') == {"a": 2}
    assert extract_json('Here: [1, 2] done') == [1, 2]


def test_extract_json_returns_none_for_prose():
    assert extract_json("No JSON here at all") is None


# --- questions ----------------------------------------------------------------


def test_fallback_questions_cover_seven_domains():
    questions = fallback_questions(IDEA)

    assert len(questions) == 7
    assert [q.id for q in questions] == [f"q{i}" for i in range(1, 8)]
    assert all(IDEA in q.question for q in questions)
    assert {q.domain for q in questions} == {"technical", "design", "market", "legal", "growth"}


def test_parse_questions_clamps_priority_and_limits_count():
    text = '{"questions": [{"question": "A?", "priority": 42}, {"question": ""}, {"question": "B?"}, {"question": "C?"}]}'

    questions = parse_questions(text, limit=2)

    assert [q.question for q in questions] == ["A?", "B?"]
    assert questions[0].priority == 10
    assert questions[1].domain == "general"


async def test_generate_questions_falls_back_on_junk(sample_app_config, three_personas, fake_registry):
    provider = MockProvider("mock-a", response_text="I cannot produce JSON today.")
    ctx = _ctx(sample_app_config, three_personas, provider, fake_registry)

    questions = await generate_questions(ctx)

    assert questions == fallback_questions(IDEA)


async def test_generate_questions_includes_user_comment(sample_app_config, three_personas, fake_registry):
    provider = _scripted(three_personas)
    ctx = _ctx(sample_app_config, three_personas, provider, fake_registry, user_comment="Target seniors")

    questions = await generate_questions(ctx)

    assert [q.id for q in questions] == ["q1", "q2", "q3"]
    sent = provider.generate.call_args.args[0]
    assert sent.role == "questions"
    assert "Target seniors" in sent.prompt


async def test_generate_questions_propagates_provider_exhaustion(sample_app_config, three_personas, fake_registry):
    provider = MockProvider("mock-a")
    provider.generate = AsyncMock(side_effect=ProviderOutageError("mock-a", "503"))
    ctx = _ctx(sample_app_config, three_personas, provider, fake_registry)

    with pytest.raises(FallbackExhaustedError):
        await generate_questions(ctx)


# --- research -----------------------------------------------------------------


def test_assign_questions_round_robin(three_personas):
    questions = [ResearchQuestion(id=f"q{i}", question="?", domain="x") for i in range(1, 5)]

    assigned = assign_questions(questions, three_personas)

    assert [q.id for q in assigned["visionary"]] == ["q1", "q4"]
    assert [q.id for q in assigned["engineer"]] == ["q2"]
    assert [q.id for q in assigned["marketer"]] == ["q3"]


def test_assign_questions_prefers_required_expertise(three_personas):
    questions = [
        ResearchQuestion(id="q1", question="?", domain="market", required_expertise=("marketer",)),
        ResearchQuestion(id="q2", question="?", domain="technical", priority=9, required_expertise=("Engineer", "visionary")),
        ResearchQuestion(id="q3", question="?", domain="x"),
        ResearchQuestion(id="q4", question="?", domain="legal", required_expertise=("lawyer",)),
    ]

    assigned = assign_questions(questions, three_personas)

    assert [q.id for q in assigned["visionary"]] == ["q2", "q3"]
    assert [q.id for q in assigned["engineer"]] == ["q2", "q4"]
    assert [q.id for q in assigned["marketer"]] == ["q1"]


def test_assign_questions_matches_display_name_and_limits_low_priority():
    personas = [
        PersonaConfig(id="gm", prompt_template="x", name="Growth Marketer"),
        PersonaConfig(id="pm", prompt_template="y", name="Product Manager"),
    ]
    questions = [
        ResearchQuestion(id="q1", question="?", domain="growth", priority=5, required_expertise=("growth marketer", "pm")),
    ]

    assigned = assign_questions(questions, personas)

    assert [q.id for q in assigned["gm"]] == ["q1"]
    assert assigned["pm"] == []


async def test_run_research_returns_one_result_per_persona(sample_app_config, three_personas, fake_registry):
    provider = _scripted(three_personas)
    ctx = _ctx(sample_app_config, three_personas, provider, fake_registry)
    questions = fallback_questions(IDEA)

    evidence, results = await run_research(ctx, questions)

    assert len(evidence) == sample_app_config.defaults.research_fanout
    assert [r.persona_id for r in results] == ["visionary", "engineer", "marketer"]
    assert all(r.findings == "Findings: ship mobile first." for r in results)
    assert results[0].cost == pytest.approx(0.001 + 0.01 * 2)
    assert [u.success for u in results[0].tools_used] == [True, True]


# --- challenge ----------------------------------------------------------------


def test_parse_challenges_caps_per_target_and_assigns_other_challenger(three_personas):
    text = (
        '{"challenges": ['
        '{"target": "visionary", "type": "vision", "question": "Too big?"},'
        '{"target": "visionary", "type": "bogus", "question": "Too slow?"},'
        '{"target": "visionary", "question": "Third?"},'
        '{"target": "ghost", "question": "Who?"}'
        ']}'
    )

    challenges = parse_challenges(text, _results("visionary", "engineer"), three_personas, per_finding=2)

    assert [c.question for c in challenges] == ["Too big?", "Too slow?"]
    assert [c.type for c in challenges] == ["vision", "risk"]
    assert all(c.challenger != "visionary" for c in challenges)


async def test_run_challenge_falls_back_to_generic_challenges(sample_app_config, three_personas, fake_registry):
    provider = MockProvider("mock-a")

    def reply(request):
        if request.prompt.startswith("CHALLENGE"):
            return make_response("no idea", model="mock-a")
        if request.prompt.startswith("DEBATE"):
            return make_response('{"resolution": "Holds up.", "confidence_change": 5}', model="mock-a")
        return make_response('{"challenge": "Risky", "risk_score": 99}', model="mock-a")

    provider.generate = AsyncMock(side_effect=reply)
    ctx = _ctx(sample_app_config, three_personas, provider, fake_registry)

    challenges, responses, resolutions = await run_challenge(ctx, _results("visionary", "engineer"))

    assert len(challenges) == 2
    assert {c.target_persona for c in challenges} == {"visionary", "engineer"}
    assert all(r.risk_score == 10 for r in responses)
    assert [r.resolution for r in resolutions] == ["Holds up.", "Holds up."]
    assert resolutions[0].confidence_change == 5


# --- review -------------------------------------------------------------------


def test_parse_review_critical_issue_fails_regardless_of_score():
    text = '{"overall_score": 95, "issues": [{"severity": "critical", "category": "accuracy", "description": "Wrong"}]}'

    review = parse_review(text, pass_score=70, model="m")

    assert review.overall_score == 95
    assert review.passed is False


def test_parse_review_normalises_unknown_labels():
    text = '{"overall_score": 70, "issues": [{"severity": "huge", "category": "vibes", "description": "Hmm"}]}'

    review = parse_review(text, pass_score=70, model="m")

    assert review.passed is True
    assert review.issues[0].severity == "minor"
    assert review.issues[0].category == "consistency"


def test_parse_review_fallback_is_conservative():
    review = parse_review("The syntheses look great!", pass_score=70, model="m")

    assert review.overall_score == 60
    assert review.passed is False
    assert [i.severity for i in review.issues] == ["major"]


async def test_run_review_propagates_provider_exhaustion(sample_app_config, three_personas, fake_registry):
    provider = MockProvider("mock-a")
    provider.generate = AsyncMock(side_effect=ProviderOutageError("mock-a", "503"))
    ctx = _ctx(sample_app_config, three_personas, provider, fake_registry)
    synthesis = Synthesis(persona_id="visionary", text="x", model="m", cost=0.0, timestamp=0.0)

    with pytest.raises(FallbackExhaustedError):
        await run_review(ctx, [synthesis])


# --- voting -------------------------------------------------------------------


def test_parse_vote_json():
    vote = parse_vote("engineer", '{"approved": "yes", "confidence": 150, "keyRequirements": ["Auth"]}')

    assert vote.approved is True
    assert vote.confidence == 100
    assert vote.key_requirements == ("Auth",)


@pytest.mark.parametrize(
    "text,approved,confidence",
    [
        ("Yes, I approve this plan.", True, 70),
        ("I do not approve yet.", False, 30),
        ("I disapprove.", False, 30),
        ("Hard to say.", False, 30),
    ],
)
def test_parse_vote_keyword_fallback(text, approved, confidence):
    vote = parse_vote("engineer", text)

    assert vote.approved is approved
    assert vote.confidence == confidence


# --- spec ---------------------------------------------------------------------


def test_parse_tech_stack_accepts_camel_case_key():
    items = parse_tech_stack('{"techStack": [{"name": "Postgres", "version": 16}, {"name": ""}]}')

    assert len(items) == 1
    assert items[0].category == "other"
    assert items[0].version == "16"


async def test_generate_spec_survives_tech_stack_failure(sample_app_config, three_personas, fake_registry):
    provider = MockProvider("mock-a")

    def reply(request):
        if request.role == "tech_stack":
            raise ProviderOutageError("mock-a", "503")
        return make_response("# Spec\n\nDone.", model="mock-a", cost=0.02)

    provider.generate = AsyncMock(side_effect=reply)
    ctx = _ctx(sample_app_config, three_personas, provider, fake_registry)
    votes = (
        Vote(persona_id="a", approved=True, reasoning="", key_requirements=("Offline mode", "Auth")),
        Vote(persona_id="b", approved=True, reasoning="", key_requirements=("Auth",)),
    )

    outcome = await generate_spec(ctx, Round(number=1, votes=votes, status=RoundStatus.COMPLETE))

    assert outcome.document == "# Spec\n\nDone."
    assert outcome.tech_stack == []
    assert outcome.cost == pytest.approx(0.02)
    spec_prompt = provider.generate.call_args_list[0].args[0].prompt
    assert "- Offline mode\n- Auth" in spec_prompt


async def test_generate_spec_prompt_uses_whole_round(sample_app_config, three_personas, fake_registry):
    provider = MockProvider("mock-a")
    ctx = _ctx(sample_app_config, three_personas, provider, fake_registry)
    searched = (ToolUsage("web_search", True, 0.1), ToolUsage("web_search", True, 0.2))
    sealed = Round(
        number=1,
        research_results=(
            ResearchResult(persona_id="visionary", findings="Mobile first", tools_used=searched),
            ResearchResult(persona_id="engineer", findings="Use Postgres"),
        ),
        debate_resolutions=(
            DebateResolution(
                persona_id="visionary",
                original_position="Mobile first",
                challenges=("c1",),
                resolution="Launch on web first",
                adopted_alternatives=("PWA",),
            ),
            DebateResolution(persona_id="engineer", original_position="Use Postgres", challenges=(), resolution="Use Postgres"),
        ),
        syntheses=(
            Synthesis(persona_id="visionary", text="Ship a PWA", model="m", cost=0.0, timestamp=0.0),
            Synthesis(persona_id="engineer", text="Postgres plus REST", model="m", cost=0.0, timestamp=0.0),
        ),
        review_result=ReviewResult(
            overall_score=72,
            passed=True,
            issues=(ReviewIssue(severity="major", category="citation", description="Cite market sizes"),),
            recommendations=("Add metrics",),
        ),
        votes=(Vote(persona_id="visionary", approved=True, reasoning="", key_requirements=("Offline mode",)),),
        status=RoundStatus.COMPLETE,
    )

    await generate_spec(ctx, sealed)

    prompt = provider.generate.call_args_list[0].args[0].prompt
    assert prompt.startswith("SPEC")
    assert "- visionary: Launch on web first (adopted: PWA)" in prompt
    assert "- engineer: Use Postgres" not in prompt
    assert "- [major/citation] Cite market sizes" in prompt
    assert "- Recommendation: Add metrics" in prompt
    assert "## visionary (research depth: 100%)\nShip a PWA" in prompt
    assert "## engineer (research depth: 0%)\nPostgres plus REST" in prompt
    assert "- Offline mode" in prompt


def test_disabled_personas_are_filtered_before_context():
    personas = [PersonaConfig(id="a", prompt_template="x"), PersonaConfig(id="b", prompt_template="y", enabled=False)]
    ctx = StageContext(
        idea=IDEA,
        round_number=1,
        personas=[p for p in personas if p.enabled],
        router=None,
        tools=None,
        config=None,
    )

    assert ctx.persona("b") is None
    assert ctx.comment_block() == ""
