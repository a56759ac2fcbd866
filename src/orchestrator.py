"""Stage orchestrator: drives rounds through the fixed stage sequence.

questions -> research -> challenge -> synthesis -> review -> voting, then
either the spec stage (consensus or round cap) or another round. Rounds run
in a loop, never by recursion. Pause is cooperative: it is only checked once
a round's votes are in.
"""

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from typing import Any

from config.config_loader import AppConfig
from src.consensus import approval_rate, should_finalize
from src.errors import StageFailure, ValidationError, describe_error
from src.models import (
    DialogueKind,
    HistoryType,
    PersonaConfig,
    ResumeContext,
    Round,
    RoundStatus,
    Stage,
)
from src.router import ProviderRouter
from src.session import SessionStore
from src.stages import (
    StageContext,
    generate_questions,
    generate_spec,
    run_challenge,
    run_research,
    run_review,
    run_synthesis,
    run_voting,
)
from src.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

_MAX_PERSONA_ID_LEN = 50
_PREVIEW_CHARS = 300

RoundCallback = Callable[[Round, float], None]
StageCallback = Callable[[int, Stage], None]


@dataclass(frozen=True)
class RunOutcome:
    status: str                 # "complete" | "paused"
    last_round: Round | None
    approval_rate: float
    rounds_run: int


def validate_personas(personas: Iterable[PersonaConfig]) -> dict[str, PersonaConfig]:
    """Check a persona roster and index it by id.

    Raises:
        ValidationError: Empty or overlong id, empty template, temperature
            outside [0, 2], duplicate ids, or no enabled persona.
    """
    roster: dict[str, PersonaConfig] = {}
    for persona in personas:
        if not persona.id or not persona.id.strip():
            raise ValidationError("Persona id must not be empty")
        if len(persona.id) > _MAX_PERSONA_ID_LEN:
            raise ValidationError(f"Persona id too long (max {_MAX_PERSONA_ID_LEN}): {persona.id[:20]}...")
        if not persona.prompt_template.strip():
            raise ValidationError(f"Persona {persona.id} has an empty prompt template")
        if not 0.0 <= persona.temperature <= 2.0:
            raise ValidationError(f"Persona {persona.id} temperature must be between 0 and 2, got {persona.temperature}")
        if persona.id in roster:
            raise ValidationError(f"Duplicate persona id: {persona.id}")
        roster[persona.id] = persona
    if not any(p.enabled for p in roster.values()):
        raise ValidationError("At least one persona must be enabled")
    return roster


def _preview(text: str) -> str:
    text = " ".join(text.split())
    return text if len(text) <= _PREVIEW_CHARS else text[:_PREVIEW_CHARS] + "..."


class StageOrchestrator:
    """Runs a spec-council session against a SessionStore.

    Args:
        router: Shared provider router.
        tools: Research tool registry.
        store: Session state for this run.
        config: Loaded settings.
        on_round_complete: Called with each sealed round and its approval rate.
        on_stage: Called with (round number, stage) as each stage begins.
    """

    def __init__(
        self,
        router: ProviderRouter,
        tools: ToolRegistry,
        store: SessionStore,
        config: AppConfig,
        on_round_complete: RoundCallback | None = None,
        on_stage: StageCallback | None = None,
    ) -> None:
        self.router = router
        self.tools = tools
        self.store = store
        self.config = config
        self._on_round_complete = on_round_complete
        self._on_stage = on_stage
        self._personas: dict[str, PersonaConfig] = {}
        self._current_stage = Stage.QUESTIONS

    @property
    def personas(self) -> dict[str, PersonaConfig]:
        return dict(self._personas)

    def register_personas(self, personas: Iterable[PersonaConfig]) -> None:
        self._personas = validate_personas(personas)

    def _enabled_personas(self) -> list[PersonaConfig]:
        enabled = [p for p in self._personas.values() if p.enabled]
        if not enabled:
            raise ValidationError("No personas registered; call start() or register_personas() first")
        return enabled

    async def start(
        self,
        idea: str,
        personas: Iterable[PersonaConfig],
        user_comment: str | None = None,
    ) -> RunOutcome:
        """Begin a fresh session at round 1."""
        self.register_personas(personas)
        self.store.start_session()
        return await self.run(idea, round_number=1, user_comment=user_comment)

    def pause(self) -> None:
        """Request a pause. In-flight work finishes; the next round will not start."""
        self.store.set_paused(True)
        logger.info("Pause requested")

    async def resume(self, comment: str | None = None) -> RunOutcome | None:
        """Continue a paused session.

        Without a pending resume this only undoes pause() and starts no work.
        """
        state = self.store.state
        pending = state.pending_resume
        if pending is None:
            if state.is_paused:
                self.store.set_paused(False)
            return None

        self.store.set_paused(False)
        if comment:
            self.store.add_history(HistoryType.USER_COMMENT, {"round": pending.next_round, "comment": comment})
            self.store.add_dialogue("user", comment, DialogueKind.USER)
        self.store.set_pending_resume(None)
        logger.info("Resuming at round %d", pending.next_round)
        return await self.run(
            pending.idea,
            round_number=pending.next_round,
            user_comment=comment if comment is not None else pending.user_comment,
        )

    async def run(
        self,
        idea: str,
        personas: Iterable[PersonaConfig] | None = None,
        round_number: int = 1,
        user_comment: str | None = None,
    ) -> RunOutcome:
        """Run rounds from ``round_number`` until the session completes or pauses.

        Calling again with the number of an in-progress round replaces that
        round and retries it. Calling with the number of a sealed round whose
        specification was never written retries only the spec stage.

        Raises:
            ValidationError: Empty idea, bad personas, or a round number below
                1 or not following the last round.
            StageFailure: A stage failed. The round stays in-progress, or
                sealed without a document when the spec stage failed.
        """
        if personas is not None:
            self.register_personas(personas)
        enabled = self._enabled_personas()
        if not idea.strip():
            raise ValidationError("Idea must not be empty")
        if round_number < 1:
            raise ValidationError(f"Round number must be at least 1, got {round_number}")

        defaults = self.config.defaults
        number = round_number
        comment = user_comment
        rounds_run = 0

        sealed = self.store.current_round
        if sealed is not None and sealed.number == number and self._awaiting_spec(sealed):
            if comment is None:
                comment = sealed.user_comment
            ctx = self._context(idea, number, enabled, comment)
            logger.info("Round %d already decided, retrying the spec stage", number)
            await self._guarded(ctx, self._finalize(ctx, sealed))
            return RunOutcome("complete", self.store.current_round, approval_rate(sealed.votes), rounds_run)

        while True:
            self._open_round(idea, number, comment)
            ctx = self._context(idea, number, enabled, comment)
            sealed = await self._guarded(ctx, self._run_round(ctx))
            rounds_run += 1
            rate = approval_rate(sealed.votes)
            logger.info("Round %d approval: %.0f%% (%d votes)", number, rate * 100, len(sealed.votes))
            if self._on_round_complete is not None:
                self._on_round_complete(sealed, rate)

            if should_finalize(rate, number, defaults.approval_threshold, defaults.max_rounds):
                await self._guarded(ctx, self._finalize(ctx, sealed))
                return RunOutcome("complete", self.store.current_round, rate, rounds_run)

            if self.store.state.is_paused:
                self.store.set_pending_resume(ResumeContext(idea=idea, next_round=number + 1, user_comment=comment))
                logger.info("Session paused before round %d", number + 1)
                return RunOutcome("paused", sealed, rate, rounds_run)

            number += 1

    def unfinished_round(self) -> int | None:
        """Number of the last round if work is left on it without new votes.

        That is a round a stage failure left in-progress, or a sealed round
        that reached consensus or the round cap but has no specification yet.
        """
        last = self.store.current_round
        if last is None:
            return None
        if last.status == RoundStatus.IN_PROGRESS or self._awaiting_spec(last):
            return last.number
        return None

    def _awaiting_spec(self, rnd: Round) -> bool:
        if rnd.status != RoundStatus.COMPLETE or self.store.state.generated_document is not None:
            return False
        defaults = self.config.defaults
        return should_finalize(approval_rate(rnd.votes), rnd.number, defaults.approval_threshold, defaults.max_rounds)

    def _context(self, idea: str, number: int, enabled: list[PersonaConfig], comment: str | None) -> StageContext:
        return StageContext(
            idea=idea,
            round_number=number,
            personas=enabled,
            router=self.router,
            tools=self.tools,
            config=self.config,
            user_comment=comment,
        )

    def _open_round(self, idea: str, number: int, comment: str | None) -> None:
        fresh = Round(number=number, user_comment=comment)
        last = self.store.current_round
        if last is not None and last.number == number:
            if last.status != RoundStatus.IN_PROGRESS:
                raise ValidationError(f"Round {number} is already {last.status.value}")
            logger.info("Restarting in-progress round %d", number)
            self.store.update_current_round(fresh)
        else:
            try:
                self.store.add_round(fresh)
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
        self.store.add_history(HistoryType.ROUND_START, {"round": number, "comment": comment, "idea": idea})

    async def _guarded(self, ctx: StageContext, work: Any) -> Any:
        try:
            return await work
        except Exception as exc:
            stage = self._current_stage.value
            title, message = describe_error(exc)
            logger.error("Round %d failed in %s stage: %s", ctx.round_number, stage, exc)
            self.store.add_history(
                HistoryType.ERROR,
                {"round": ctx.round_number, "stage": stage, "title": title, "message": message},
            )
            raise StageFailure(title, message, stage, ctx.round_number) from exc

    def _enter(self, ctx: StageContext, stage: Stage) -> Round:
        self._current_stage = stage
        current = replace(self.store.current_round, stage=stage)
        self.store.update_current_round(current)
        if self._on_stage is not None:
            self._on_stage(ctx.round_number, stage)
        return current

    def _output(self, stage: Stage, round_number: int, started: float, **metrics: Any) -> None:
        self.store.add_history(
            HistoryType.OUTPUT,
            {"stage": stage.value, "round": round_number, "duration": time.monotonic() - started, **metrics},
        )

    async def _run_round(self, ctx: StageContext) -> Round:
        n = ctx.round_number

        current = self._enter(ctx, Stage.QUESTIONS)
        started = time.monotonic()
        questions = await generate_questions(ctx)
        self.store.update_current_round(replace(current, questions=questions))
        self._output(Stage.QUESTIONS, n, started, count=len(questions))
        self.store.add_dialogue(
            "council",
            "Research agenda:\n" + "\n".join(f"- {q.question}" for q in questions),
            DialogueKind.QUESTION,
        )

        current = self._enter(ctx, Stage.RESEARCH)
        started = time.monotonic()
        evidence, results = await run_research(ctx, questions)
        self.store.update_current_round(replace(current, evidence=evidence, research_results=results))
        self._output(
            Stage.RESEARCH,
            n,
            started,
            findings=len(results),
            tool_calls=len(evidence),
            tool_failures=sum(1 for e in evidence if not e.result.success),
            cost=sum(r.cost for r in results),
        )
        for result in results:
            self.store.add_dialogue(result.persona_id, _preview(result.findings), DialogueKind.ANSWER)

        current = self._enter(ctx, Stage.CHALLENGE)
        started = time.monotonic()
        challenges, responses, resolutions = await run_challenge(ctx, results)
        self.store.update_current_round(
            replace(current, challenges=challenges, challenge_responses=responses, debate_resolutions=resolutions)
        )
        self._output(
            Stage.CHALLENGE,
            n,
            started,
            challenges=len(challenges),
            responses=len(responses),
            cost=sum(r.cost for r in responses),
        )
        targets = {c.id: c.target_persona for c in challenges}
        for response in responses:
            self.store.add_dialogue(
                response.challenger,
                f"Challenging {targets.get(response.challenge_id, '?')}: {_preview(response.argument)}",
                DialogueKind.DISCUSSION,
            )

        current = self._enter(ctx, Stage.SYNTHESIS)
        started = time.monotonic()
        syntheses = await run_synthesis(ctx, results, resolutions)
        self.store.update_current_round(replace(current, syntheses=syntheses))
        self._output(
            Stage.SYNTHESIS,
            n,
            started,
            syntheses=len(syntheses),
            battle_tested=sum(1 for s in syntheses if s.battle_tested),
            cost=sum(s.cost for s in syntheses),
        )

        current = self._enter(ctx, Stage.REVIEW)
        started = time.monotonic()
        review = await run_review(ctx, syntheses)
        self.store.update_current_round(replace(current, review_result=review))
        self._output(
            Stage.REVIEW,
            n,
            started,
            score=review.overall_score,
            passed=review.passed,
            issues=len(review.issues),
        )
        verdict = "passed" if review.passed else "needs work"
        self.store.add_dialogue(
            "reviewer",
            f"Review score {review.overall_score}/100 ({verdict}), {len(review.issues)} issue(s)",
            DialogueKind.DISCUSSION,
        )

        current = self._enter(ctx, Stage.VOTING)
        started = time.monotonic()
        votes = await run_voting(ctx, syntheses, review)
        sealed = replace(current, votes=votes, status=RoundStatus.COMPLETE)
        self.store.update_current_round(sealed)
        approved = sum(1 for v in votes if v.approved)
        self.store.add_history(
            HistoryType.VOTE,
            {
                "stage": Stage.VOTING.value,
                "round": n,
                "approved": approved,
                "total": len(votes),
                "approval_rate": approval_rate(votes),
                "duration": time.monotonic() - started,
            },
        )
        for vote in votes:
            label = "Approve" if vote.approved else "Needs another round"
            self.store.add_dialogue(vote.persona_id, f"{label}: {_preview(vote.reasoning)}", DialogueKind.VOTE)
        return sealed

    async def _finalize(self, ctx: StageContext, sealed: Round) -> None:
        self._enter(ctx, Stage.SPEC)
        started = time.monotonic()
        outcome = await generate_spec(ctx, sealed)
        self.store.set_generated_document(outcome.document, outcome.tech_stack)
        self.store.add_history(
            HistoryType.SPEC,
            {
                "stage": Stage.SPEC.value,
                "round": ctx.round_number,
                "model": outcome.model,
                "tech_stack": len(outcome.tech_stack),
                "cost": outcome.cost,
                "duration": time.monotonic() - started,
            },
        )
        self.store.add_dialogue(
            "council",
            f"Specification written after {ctx.round_number} round(s) with {len(outcome.tech_stack)} stack choices",
            DialogueKind.DISCUSSION,
        )
