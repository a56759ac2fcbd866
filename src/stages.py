"""Stage handlers: build prompts, fan out requests, and parse model replies.

Each handler takes a StageContext and returns plain records. Provider
failures propagate as ProviderError; the orchestrator decides what that means
for the round. Malformed JSON never fails a stage, every parser has a
fallback.
"""

import asyncio
import json
import logging
import re
import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from config.config_loader import AppConfig
from src.models import (
    Challenge,
    ChallengeResponse,
    DebateResolution,
    GenerationRequest,
    PersonaConfig,
    ResearchEvidence,
    ResearchQuestion,
    ResearchResult,
    ReviewIssue,
    ReviewResult,
    Round,
    Synthesis,
    TechStackItem,
    ToolUsage,
    Vote,
)
from src.providers.base import ProviderError
from src.router import ProviderRouter
from src.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

CHALLENGE_TYPES = ("feasibility", "risk", "alternative", "assumption", "vision", "cost")
ISSUE_SEVERITIES = ("critical", "major", "minor")
ISSUE_CATEGORIES = ("accuracy", "completeness", "citation", "feasibility", "consistency")

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)
_EVIDENCE_CHARS = 1500
_POSITION_CHARS = 2000
_SHARED_QUESTION_PRIORITY = 8


@dataclass
class StageContext:
    idea: str
    round_number: int
    personas: list[PersonaConfig]     # enabled personas only
    router: ProviderRouter
    tools: ToolRegistry
    config: AppConfig
    user_comment: str | None = None

    def comment_block(self) -> str:
        if not self.user_comment:
            return ""
        return f"\nUser guidance for this round: {self.user_comment}\n"

    def persona(self, persona_id: str) -> PersonaConfig | None:
        return next((p for p in self.personas if p.id == persona_id), None)


@dataclass
class SpecOutcome:
    document: str
    tech_stack: list[TechStackItem]
    model: str
    cost: float


def extract_json(text: str) -> Any | None:
    """Parse JSON from a model reply, tolerating code fences and chatter.

    Returns None when no JSON object or array can be recovered.
    """
    candidates = [text.strip()]
    candidates += [m.strip() for m in _FENCE_RE.findall(text)]
    for opener, closer in (("{", "}"), ("[", "]")):
        start, end = text.find(opener), text.rfind(closer)
        if 0 <= start < end:
            candidates.append(text[start : end + 1])
    for candidate in candidates:
        try:
            return json.loads(candidate)
        except ValueError:
            continue
    return None


def _items(parsed: Any, key: str) -> list[dict[str, Any]]:
    if isinstance(parsed, dict):
        parsed = parsed.get(key, [])
    if not isinstance(parsed, list):
        return []
    return [item for item in parsed if isinstance(item, dict)]


def _clamp(value: Any, low: float, high: float, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return max(low, min(high, number))


def _strings(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        return (value,) if value.strip() else ()
    if isinstance(value, list):
        return tuple(str(v) for v in value if str(v).strip())
    return ()


# questions


def fallback_questions(idea: str) -> tuple[ResearchQuestion, ...]:
    """Generic research agenda used when question generation returns junk."""
    templates = (
        ("technical", 10, "What are the core technical requirements and architecture for: {idea}?"),
        ("design", 9, "What are the key UX/design considerations and user workflows for: {idea}?"),
        ("market", 8, "Who are the main competitors and what is the competitive landscape for: {idea}?"),
        ("legal", 7, "What legal, compliance, and data privacy issues should be considered for: {idea}?"),
        ("technical", 8, "What are the scalability challenges and infrastructure requirements for: {idea}?"),
        ("growth", 7, "What is the go-to-market strategy and growth roadmap for: {idea}?"),
        ("market", 6, "What are the estimated costs, timeline, and resource requirements for building: {idea}?"),
    )
    return tuple(
        ResearchQuestion(id=f"q{i}", question=text.format(idea=idea), domain=domain, priority=priority)
        for i, (domain, priority, text) in enumerate(templates, start=1)
    )


def parse_questions(text: str, limit: int) -> tuple[ResearchQuestion, ...]:
    questions = []
    for i, item in enumerate(_items(extract_json(text), "questions"), start=1):
        question = str(item.get("question", "")).strip()
        if not question:
            continue
        questions.append(
            ResearchQuestion(
                id=str(item.get("id") or f"q{i}"),
                question=question,
                domain=str(item.get("domain") or "general"),
                priority=int(_clamp(item.get("priority"), 1, 10, 5)),
                required_expertise=_strings(item.get("requiredExpertise") or item.get("required_expertise")),
            )
        )
    return tuple(questions[:limit])


async def generate_questions(ctx: StageContext) -> tuple[ResearchQuestion, ...]:
    count = ctx.config.defaults.question_count
    experts = "\n".join(f"- {p.id}" + (f" ({p.name})" if p.name else "") for p in ctx.personas)
    prompt = ctx.config.prompts.questions.format(
        idea=ctx.idea,
        comment_block=ctx.comment_block(),
        count=count,
        experts=experts,
    )
    response = await ctx.router.route(
        "questions",
        GenerationRequest(role="questions", prompt=prompt, temperature=0.7, json_mode=True),
    )
    questions = parse_questions(response.text, count)
    if not questions:
        logger.warning("Question generation returned no usable questions, using fallback agenda")
        return fallback_questions(ctx.idea)
    return questions


# research


def assign_questions(
    questions: Sequence[ResearchQuestion],
    personas: Sequence[PersonaConfig],
) -> dict[str, list[ResearchQuestion]]:
    """Route each question to the personas its ``required_expertise`` names.

    Expertise entries match a persona id or display name, case-insensitively.
    High-priority questions go to up to two matching personas, others to one.
    Questions that match nobody are dealt round-robin. Every persona gets a
    list, maybe empty.
    """
    assigned: dict[str, list[ResearchQuestion]] = {p.id: [] for p in personas}
    unmatched = 0
    for question in questions:
        wanted = {e.strip().lower() for e in question.required_expertise}
        experts = [p for p in personas if p.id.lower() in wanted or (p.name and p.name.lower() in wanted)]
        if experts:
            limit = 2 if question.priority >= _SHARED_QUESTION_PRIORITY else 1
            for persona in experts[:limit]:
                assigned[persona.id].append(question)
            continue
        assigned[personas[unmatched % len(personas)].id].append(question)
        unmatched += 1
    return assigned


def _format_evidence(evidence: Sequence[ResearchEvidence]) -> str:
    blocks = []
    for item in evidence:
        if not item.result.success:
            continue
        body = json.dumps(item.result.data, default=str)[:_EVIDENCE_CHARS]
        blocks.append(f"[{item.question_id}] {item.query}\n{body}")
    return "\n\n".join(blocks) or "No tool evidence was available. Rely on your own knowledge and say so."


async def collect_evidence(ctx: StageContext, questions: Sequence[ResearchQuestion]) -> tuple[ResearchEvidence, ...]:
    """Dispatch one research tool call per question. Tool failures are kept, never raised."""
    targets = list(questions[: ctx.config.defaults.research_fanout])
    tool_name = ctx.config.defaults.research_tool
    results = await ctx.tools.dispatch_many(
        [(tool_name, {"query": q.question}) for q in targets],
        max_concurrency=ctx.config.tools.max_concurrency,
    )
    failed = sum(1 for r in results if not r.success)
    if failed:
        logger.warning("Research: %d/%d %s calls failed", failed, len(results), tool_name)
    return tuple(ResearchEvidence(q.id, q.question, r) for q, r in zip(targets, results))


async def _persona_findings(
    ctx: StageContext,
    persona: PersonaConfig,
    questions: list[ResearchQuestion],
    evidence: Sequence[ResearchEvidence],
) -> ResearchResult:
    question_ids = {q.id for q in questions}
    own_evidence = [e for e in evidence if e.question_id in question_ids]
    usable = [e for e in own_evidence if e.result.success] or [e for e in evidence if e.result.success]

    prompt = ctx.config.prompts.research.format(
        persona=persona.prompt_template,
        idea=ctx.idea,
        comment_block=ctx.comment_block(),
        questions="\n".join(f"- [{q.id}] {q.question}" for q in questions) or "- Use your own judgement.",
        evidence=_format_evidence(usable),
    )
    start = time.monotonic()
    response = await ctx.router.route(
        persona.id,
        GenerationRequest(role=persona.id, prompt=prompt, temperature=persona.temperature),
    )
    tool_name = ctx.config.defaults.research_tool
    return ResearchResult(
        persona_id=persona.id,
        findings=response.text,
        questions=tuple(questions),
        tools_used=tuple(
            ToolUsage(tool=tool_name, success=e.result.success, duration=e.result.metadata.duration)
            for e in own_evidence
        ),
        model=response.model_used,
        cost=response.cost + sum(e.result.metadata.cost for e in own_evidence),
        duration=time.monotonic() - start,
    )


async def run_research(
    ctx: StageContext,
    questions: Sequence[ResearchQuestion],
) -> tuple[tuple[ResearchEvidence, ...], tuple[ResearchResult, ...]]:
    evidence = await collect_evidence(ctx, questions)
    assigned = assign_questions(questions, ctx.personas)
    results = await asyncio.gather(
        *(_persona_findings(ctx, p, assigned[p.id], evidence) for p in ctx.personas)
    )
    return evidence, tuple(results)


# challenge


def _pick_challenger(personas: Sequence[PersonaConfig], target: str, index: int) -> str:
    others = [p.id for p in personas if p.id != target] or [p.id for p in personas]
    return others[index % len(others)]


def parse_challenges(
    text: str,
    results: Sequence[ResearchResult],
    personas: Sequence[PersonaConfig],
    per_finding: int,
) -> tuple[Challenge, ...]:
    targets = {r.persona_id for r in results}
    per_target: dict[str, int] = {t: 0 for t in targets}
    challenges: list[Challenge] = []
    for item in _items(extract_json(text), "challenges"):
        target = str(item.get("target") or item.get("target_persona") or "")
        question = str(item.get("question", "")).strip()
        if target not in targets or not question or per_target[target] >= per_finding:
            continue
        kind = str(item.get("type", "risk")).lower()
        challenges.append(
            Challenge(
                id=f"c{len(challenges) + 1}",
                type=kind if kind in CHALLENGE_TYPES else "risk",
                question=question,
                target_persona=target,
                challenger=_pick_challenger(personas, target, len(challenges)),
                priority=int(_clamp(item.get("priority"), 1, 10, 5)),
            )
        )
        per_target[target] += 1
    return tuple(challenges[: per_finding * len(results)])


def fallback_challenges(results: Sequence[ResearchResult], personas: Sequence[PersonaConfig]) -> tuple[Challenge, ...]:
    return tuple(
        Challenge(
            id=f"c{i}",
            type="risk",
            question="What is the single biggest risk in this position, and what would you do instead?",
            target_persona=r.persona_id,
            challenger=_pick_challenger(personas, r.persona_id, i),
        )
        for i, r in enumerate(results, start=1)
    )


async def _argue(ctx: StageContext, challenge: Challenge, position: str) -> ChallengeResponse:
    challenger = ctx.persona(challenge.challenger)
    prompt = ctx.config.prompts.challenge_response.format(
        persona=challenger.prompt_template if challenger else "",
        idea=ctx.idea,
        target=challenge.target_persona,
        position=position[:_POSITION_CHARS],
        type=challenge.type,
        question=challenge.question,
    )
    response = await ctx.router.route(
        challenge.challenger,
        GenerationRequest(
            role=challenge.challenger,
            prompt=prompt,
            temperature=challenger.temperature if challenger else 0.8,
            json_mode=True,
        ),
    )
    parsed = extract_json(response.text)
    if not isinstance(parsed, dict):
        parsed = {"challenge": response.text}
    return ChallengeResponse(
        challenge_id=challenge.id,
        challenger=challenge.challenger,
        argument=str(parsed.get("challenge") or response.text),
        evidence_against=_strings(parsed.get("evidence_against") or parsed.get("evidenceAgainst")),
        alternative_approach=parsed.get("alternative_approach") or parsed.get("alternativeApproach") or None,
        risk_score=_clamp(parsed.get("risk_score", parsed.get("riskScore")), 0, 10, 5.0),
        model=response.model_used,
        cost=response.cost,
    )


async def _resolve(
    ctx: StageContext,
    result: ResearchResult,
    challenges: list[Challenge],
    responses: list[ChallengeResponse],
) -> DebateResolution:
    if not responses:
        return DebateResolution(
            persona_id=result.persona_id,
            original_position=result.findings,
            challenges=(),
            resolution=result.findings,
        )

    arguments = "\n\n".join(
        f"{r.challenger} (risk {r.risk_score:g}/10): {r.argument}"
        + (f"\nAlternative: {r.alternative_approach}" if r.alternative_approach else "")
        for r in responses
    )
    prompt = ctx.config.prompts.debate.format(
        persona_id=result.persona_id,
        position=result.findings[:_POSITION_CHARS],
        arguments=arguments,
    )
    response = await ctx.router.route(
        "debate",
        GenerationRequest(role="debate", prompt=prompt, temperature=0.5, json_mode=True),
    )
    parsed = extract_json(response.text)
    if not isinstance(parsed, dict):
        parsed = {"resolution": response.text}
    return DebateResolution(
        persona_id=result.persona_id,
        original_position=result.findings,
        challenges=tuple(c.id for c in challenges),
        resolution=str(parsed.get("resolution") or response.text),
        confidence_change=int(_clamp(parsed.get("confidence_change", parsed.get("confidenceChange")), -100, 100, 0)),
        adopted_alternatives=_strings(parsed.get("adopted_alternatives") or parsed.get("adoptedAlternatives")),
    )


async def run_challenge(
    ctx: StageContext,
    results: Sequence[ResearchResult],
) -> tuple[tuple[Challenge, ...], tuple[ChallengeResponse, ...], tuple[DebateResolution, ...]]:
    """Generate contrarian challenges, argue them, and resolve each debate."""
    per_finding = ctx.config.defaults.challenges_per_finding
    findings = "\n\n".join(f"[{r.persona_id}]\n{r.findings[:_POSITION_CHARS]}" for r in results)
    prompt = ctx.config.prompts.challenge.format(idea=ctx.idea, findings=findings, per_finding=per_finding)
    response = await ctx.router.route(
        "challenge",
        GenerationRequest(role="challenge", prompt=prompt, temperature=0.9, json_mode=True),
    )
    challenges = parse_challenges(response.text, results, ctx.personas, per_finding)
    if not challenges:
        logger.warning("Challenge generation unparseable, using one generic challenge per finding")
        challenges = fallback_challenges(results, ctx.personas)

    positions = {r.persona_id: r.findings for r in results}
    responses = await asyncio.gather(*(_argue(ctx, c, positions[c.target_persona]) for c in challenges))

    by_id = {c.id: c for c in challenges}
    resolutions = await asyncio.gather(
        *(
            _resolve(
                ctx,
                r,
                [c for c in challenges if c.target_persona == r.persona_id],
                [resp for resp in responses if by_id[resp.challenge_id].target_persona == r.persona_id],
            )
            for r in results
        )
    )
    return challenges, tuple(responses), tuple(resolutions)


# synthesis


async def _synthesize_one(
    ctx: StageContext,
    persona: PersonaConfig,
    result: ResearchResult,
    resolution: DebateResolution | None,
) -> Synthesis:
    if resolution is None or not resolution.challenges:
        resolution_text = "Your position was not challenged this round."
    else:
        resolution_text = resolution.resolution
        if resolution.adopted_alternatives:
            resolution_text += "\nAdopted alternatives: " + "; ".join(resolution.adopted_alternatives)

    prompt = ctx.config.prompts.synthesis.format(
        persona=persona.prompt_template,
        idea=ctx.idea,
        comment_block=ctx.comment_block(),
        findings=result.findings,
        resolution=resolution_text,
    )
    response = await ctx.router.route(
        persona.id,
        GenerationRequest(role=persona.id, prompt=prompt, temperature=persona.temperature),
    )
    return Synthesis(
        persona_id=persona.id,
        text=response.text,
        model=response.model_used,
        cost=response.cost,
        timestamp=time.time(),
        battle_tested=bool(resolution and resolution.challenges),
        confidence_boost=resolution.confidence_change if resolution else 0,
    )


async def run_synthesis(
    ctx: StageContext,
    results: Sequence[ResearchResult],
    resolutions: Sequence[DebateResolution],
) -> tuple[Synthesis, ...]:
    by_persona = {r.persona_id: r for r in resolutions}
    tasks = []
    for result in results:
        persona = ctx.persona(result.persona_id)
        if persona is None:
            continue
        tasks.append(_synthesize_one(ctx, persona, result, by_persona.get(result.persona_id)))
    return tuple(await asyncio.gather(*tasks))


def _format_syntheses(syntheses: Sequence[Synthesis]) -> str:
    return "\n\n".join(f"## {s.persona_id}\n{s.text}" for s in syntheses)


# review


def parse_review(text: str, pass_score: int, model: str) -> ReviewResult:
    """Build a ReviewResult. Pass/fail is computed here, not trusted from the model."""
    parsed = extract_json(text)
    if not isinstance(parsed, dict) or ("overall_score" not in parsed and "overallScore" not in parsed):
        logger.warning("Review reply unparseable, using conservative fallback review")
        return ReviewResult(
            overall_score=60,
            passed=False,
            issues=(
                ReviewIssue(
                    severity="major",
                    category="completeness",
                    description="Review parsing failed, manual review recommended",
                    remediation="Re-run the review stage",
                ),
            ),
            model=model,
            timestamp=time.time(),
        )

    score = int(_clamp(parsed.get("overall_score", parsed.get("overallScore")), 0, 100, 0))
    issues = []
    for item in _items(parsed.get("issues", []), "issues"):
        severity = str(item.get("severity", "minor")).lower()
        category = str(item.get("category", "consistency")).lower()
        issues.append(
            ReviewIssue(
                severity=severity if severity in ISSUE_SEVERITIES else "minor",
                category=category if category in ISSUE_CATEGORIES else "consistency",
                description=str(item.get("description", "")),
                remediation=str(item.get("remediation", "")),
                affected_persona=item.get("affected_persona") or item.get("affectedExpert") or None,
            )
        )
    has_critical = any(i.severity == "critical" for i in issues)
    return ReviewResult(
        overall_score=score,
        passed=score >= pass_score and not has_critical,
        issues=tuple(issues),
        recommendations=_strings(parsed.get("recommendations")),
        model=model,
        timestamp=time.time(),
    )


async def run_review(ctx: StageContext, syntheses: Sequence[Synthesis]) -> ReviewResult:
    prompt = ctx.config.prompts.review.format(idea=ctx.idea, syntheses=_format_syntheses(syntheses))
    response = await ctx.router.route(
        "review",
        GenerationRequest(role="review", prompt=prompt, temperature=0.2, json_mode=True),
    )
    return parse_review(response.text, ctx.config.defaults.review_pass_score, response.model_used)


# voting


def parse_vote(persona_id: str, text: str) -> Vote:
    parsed = extract_json(text)
    if isinstance(parsed, dict):
        approved = parsed.get("approved", True)
        return Vote(
            persona_id=persona_id,
            approved=approved if isinstance(approved, bool) else str(approved).lower() in ("true", "yes"),
            reasoning=str(parsed.get("reasoning", "")),
            confidence=int(_clamp(parsed.get("confidence"), 0, 100, 75)),
            timestamp=time.time(),
            key_requirements=_strings(parsed.get("key_requirements") or parsed.get("keyRequirements")),
        )

    lowered = text.lower()
    rejected = "disapprove" in lowered or "not approve" in lowered
    approved = not rejected and ("approve" in lowered or "yes" in lowered)
    return Vote(
        persona_id=persona_id,
        approved=approved,
        reasoning=text[:500],
        confidence=70 if approved else 30,
        timestamp=time.time(),
    )


async def _cast_vote(ctx: StageContext, persona: PersonaConfig, syntheses: str, review: ReviewResult) -> Vote:
    issues = "\n".join(f"- [{i.severity}] {i.description}" for i in review.issues) or "No issues flagged."
    prompt = ctx.config.prompts.voting.format(
        persona=persona.prompt_template,
        idea=ctx.idea,
        syntheses=syntheses,
        score=review.overall_score,
        issues=issues,
    )
    response = await ctx.router.route(
        persona.id,
        GenerationRequest(role=persona.id, prompt=prompt, temperature=persona.temperature, json_mode=True),
    )
    return parse_vote(persona.id, response.text)


async def run_voting(ctx: StageContext, syntheses: Sequence[Synthesis], review: ReviewResult) -> tuple[Vote, ...]:
    """One vote per enabled persona."""
    text = _format_syntheses(syntheses)
    return tuple(await asyncio.gather(*(_cast_vote(ctx, p, text, review) for p in ctx.personas)))


# spec


def parse_tech_stack(text: str) -> list[TechStackItem]:
    parsed = extract_json(text)
    items = []
    for item in _items(parsed, "tech_stack") or _items(parsed, "techStack"):
        name = str(item.get("name", "")).strip()
        if not name:
            continue
        items.append(
            TechStackItem(
                category=str(item.get("category") or "other"),
                name=name,
                rationale=str(item.get("rationale", "")),
                version=str(item["version"]) if item.get("version") else None,
                alternatives=_strings(item.get("alternatives")),
            )
        )
    return items


def _weighted_syntheses(syntheses: Sequence[Synthesis], results: Sequence[ResearchResult]) -> str:
    """Syntheses headed by research depth: tool calls relative to the council average, capped at 100%."""
    tools_by_persona = {r.persona_id: len(r.tools_used) for r in results}
    average = sum(tools_by_persona.values()) / max(len(tools_by_persona), 1)
    blocks = []
    for s in syntheses:
        depth = tools_by_persona.get(s.persona_id, 0) / average if average > 0 else 1.0
        blocks.append(f"## {s.persona_id} (research depth: {min(depth * 100, 100):.0f}%)\n{s.text}")
    return "\n\n".join(blocks)


def _format_decisions(resolutions: Sequence[DebateResolution]) -> str:
    lines = []
    for r in resolutions:
        if not r.challenges:
            continue
        line = f"- {r.persona_id}: {r.resolution}"
        if r.adopted_alternatives:
            line += f" (adopted: {', '.join(r.adopted_alternatives)})"
        lines.append(line)
    return "\n".join(lines) or "- No positions were changed in debate"


def _format_review(review: ReviewResult | None) -> str:
    if review is None:
        return "- No review recorded"
    lines = [f"- [{i.severity}/{i.category}] {i.description}" for i in review.issues]
    lines += [f"- Recommendation: {rec}" for rec in review.recommendations]
    return "\n".join(lines) or f"- None (review score {review.overall_score}/100)"


async def generate_spec(ctx: StageContext, sealed: Round) -> SpecOutcome:
    """Write the specification from everything the sealed round produced."""
    requirements: list[str] = []
    for vote in sealed.votes:
        for req in vote.key_requirements:
            if req not in requirements:
                requirements.append(req)

    prompt = ctx.config.prompts.spec.format(
        idea=ctx.idea,
        comment_block=ctx.comment_block(),
        syntheses=_weighted_syntheses(sealed.syntheses, sealed.research_results),
        requirements="\n".join(f"- {r}" for r in requirements) or "- None recorded",
        decisions=_format_decisions(sealed.debate_resolutions),
        review=_format_review(sealed.review_result),
    )
    response = await ctx.router.route(
        "spec",
        GenerationRequest(role="spec", prompt=prompt, temperature=0.4),
    )
    document = response.text

    tech_stack: list[TechStackItem] = []
    cost = response.cost
    try:
        stack_response = await ctx.router.route(
            "tech_stack",
            GenerationRequest(
                role="tech_stack",
                prompt=ctx.config.prompts.tech_stack.format(document=document),
                temperature=0.2,
                json_mode=True,
            ),
        )
    except ProviderError as exc:
        logger.warning("Tech stack extraction failed, document kept without it: %s", exc)
    else:
        cost += stack_response.cost
        tech_stack = parse_tech_stack(stack_response.text)
        if not tech_stack:
            logger.warning("Tech stack reply unparseable, leaving tech stack empty")

    return SpecOutcome(document=document, tech_stack=tech_stack, model=response.model_used, cost=cost)
