"""Click CLI: loads config, builds providers and tools, drives the council session."""

import asyncio
import logging
import sys
from pathlib import Path

import click
import frontmatter
import httpx
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from config.config_loader import AppConfig, load_config
from src.consensus import should_finalize
from src.errors import StageFailure, ValidationError
from src.healthcheck import run_health_checks
from src.models import PersonaConfig, Round, RoundStatus, Stage
from src.orchestrator import RunOutcome, StageOrchestrator
from src.output import print_document, print_round_summary, print_stats, save_document
from src.persistence import restore_session, save_snapshot
from src.providers.anthropic import AnthropicProvider
from src.providers.base import AIProvider
from src.providers.gemini import GeminiProvider
from src.providers.openai_compatible import OpenAICompatibleProvider
from src.providers.openai_provider import OpenAIProvider
from src.router import ProviderRouter
from src.session import SessionStore
from src.tools.registry import build_default_registry

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

PROVIDER_CLASSES: dict[str, type[AIProvider]] = {
    "anthropic": AnthropicProvider,
    "openai": OpenAIProvider,
    "google-genai": GeminiProvider,
    "openai-compatible": OpenAICompatibleProvider,
}


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )
    # SDK request logs drown out stage progress at INFO.
    for noisy in ("httpx", "httpcore", "openai", "anthropic", "google_genai"):
        logging.getLogger(noisy).setLevel(logging.DEBUG if verbose else logging.WARNING)


def _build_all_providers(config: AppConfig) -> dict[str, AIProvider]:
    """Build a provider for every model with an API key. Returns dict keyed by model name."""
    providers: dict[str, AIProvider] = {}
    for name in sorted(config.available_models):
        model_cfg = config.models[name]
        provider_cls = PROVIDER_CLASSES.get(model_cfg.sdk)
        if provider_cls is None:
            logger.warning("Model '%s' uses unknown sdk '%s', skipping", name, model_cfg.sdk)
            continue
        try:
            providers[name] = provider_cls(model_cfg)
        except Exception as exc:
            logger.warning("Failed to instantiate model '%s': %s", name, exc)
    return providers


def _split_ids(value: str | list | None) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = value.split(",")
    return [str(v).strip() for v in value if str(v).strip()]


def _select_personas(config: AppConfig, persona_ids: list[str]) -> list[PersonaConfig]:
    """Roster for this run. Explicit ids enable exactly those personas.

    Raises:
        click.BadParameter: An id is not defined in settings.yaml.
    """
    if not persona_ids:
        return list(config.personas.values())
    unknown = [p for p in persona_ids if p not in config.personas]
    if unknown:
        available = ", ".join(sorted(config.personas))
        raise click.BadParameter(f"Unknown persona(s): {', '.join(unknown)}. Available: {available}")
    return [
        PersonaConfig(
            id=p.id,
            prompt_template=p.prompt_template,
            temperature=p.temperature,
            enabled=p.id in persona_ids,
            name=p.name,
        )
        for p in config.personas.values()
    ]


def _read_idea(idea: str | None, idea_file: str | None) -> tuple[str, dict]:
    """Return (idea_text, metadata). A file may carry YAML frontmatter."""
    if idea_file:
        post = frontmatter.load(idea_file)
        return post.content.strip(), dict(post.metadata)
    return (idea or "").strip(), {}


def _check_and_filter_providers(all_providers: dict[str, AIProvider]) -> dict[str, AIProvider]:
    """Run health checks, print results, and ask what to do on failures.

    Returns the filtered dict of working providers. Exits if the user
    declines to continue or no providers pass.
    """
    console.print("\n[bold]Checking models...[/bold]")
    results: dict[str, tuple[bool, str]] = asyncio.run(run_health_checks(all_providers))

    failed_names: list[str] = []
    for name in sorted(results):
        ok, err = results[name]
        if ok:
            console.print(f"  [green]OK  [/green] {name}")
        else:
            short_err = err.splitlines()[0][:120] if err else "unknown error"
            console.print(f"  [red]FAIL[/red] {name}: {short_err}")
            failed_names.append(name)

    if not failed_names:
        console.print()
        return all_providers

    working = {n: p for n, p in all_providers.items() if n not in failed_names}
    if not working:
        console.print("\n[bold red]Error:[/bold red] No models passed the health check.")
        sys.exit(1)

    console.print(f"\n[yellow]{len(failed_names)} model(s) failed:[/yellow] {', '.join(failed_names)}")
    console.print("Fallback chains will skip them.")
    if not click.confirm("Continue with working models only?", default=True):
        sys.exit(0)

    console.print()
    return working


class _StageProgress:
    """Feeds orchestrator stage events into whichever spinner is active."""

    def __init__(self) -> None:
        self.progress: Progress | None = None
        self.task_id = None

    def __call__(self, round_number: int, stage: Stage) -> None:
        if self.progress is not None:
            self.progress.update(self.task_id, description=f"Round {round_number}: {stage.value}...")


async def _with_progress(tracker: _StageProgress, work) -> RunOutcome | None:
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    ) as progress:
        tracker.progress = progress
        tracker.task_id = progress.add_task("Starting council...", total=None)
        try:
            return await work
        finally:
            tracker.progress = None


async def _resume_saved(orchestrator: StageOrchestrator, idea: str, comment: str | None) -> RunOutcome | None:
    """Continue whatever the restored snapshot left off."""
    store = orchestrator.store
    if store.state.pending_resume is not None:
        return await orchestrator.resume(comment)
    number = orchestrator.unfinished_round()
    if number is None or not idea:
        return None
    last: Round = store.current_round
    if last.status == RoundStatus.IN_PROGRESS:
        console.print(f"Retrying round {number} from the start")
    else:
        console.print(f"Round {number} is decided, retrying the specification")
    return await orchestrator.run(
        idea,
        round_number=number,
        user_comment=comment if comment is not None else last.user_comment,
    )


async def _run_session(
    idea: str,
    config: AppConfig,
    providers: dict[str, AIProvider],
    personas: list[PersonaConfig],
    session_file: Path,
    output_dir: Path,
    interactive: bool,
    resume: bool,
    initial_comment: str | None,
    show_stats: bool,
) -> Path | None:
    """Run (or resume) one council session and save its document."""
    defaults = config.defaults
    router = ProviderRouter(providers, config.routing, config.failover)
    store = SessionStore(approval_threshold=defaults.approval_threshold, max_rounds=defaults.max_rounds)
    tracker = _StageProgress()

    async with httpx.AsyncClient(
        timeout=config.tools.timeout_sec,
        headers={"User-Agent": "spec-council"},
    ) as client:
        tools = build_default_registry(config.tools, client)
        orchestrator: StageOrchestrator

        def on_round_complete(rnd: Round, rate: float) -> None:
            save_snapshot(store, session_file)
            if tracker.progress is not None:
                tracker.progress.print(
                    f"[green]OK[/green] Round {rnd.number} complete, {rate:.0%} approval ({len(rnd.votes)} votes)"
                )
            if interactive and not should_finalize(rate, rnd.number, defaults.approval_threshold, defaults.max_rounds):
                orchestrator.pause()

        orchestrator = StageOrchestrator(
            router, tools, store, config, on_round_complete=on_round_complete, on_stage=tracker
        )

        try:
            if resume:
                if not restore_session(store, session_file, defaults.session_max_age_hours * 3600):
                    console.print(f"[bold red]Error:[/bold red] No resumable session in {session_file}")
                    return None
                if not idea:
                    pending = store.state.pending_resume
                    idea = pending.idea if pending is not None else store.recorded_idea() or ""
                orchestrator.register_personas(personas)
                outcome = await _with_progress(tracker, _resume_saved(orchestrator, idea, initial_comment))
                if outcome is None:
                    console.print("[bold red]Error:[/bold red] Saved session has nothing left to resume.")
                    return None
            else:
                outcome = await _with_progress(tracker, orchestrator.start(idea, personas, initial_comment))

            while outcome is not None and outcome.status == "paused":
                save_snapshot(store, session_file)
                if outcome.last_round is not None:
                    print_round_summary(outcome.last_round)
                if not interactive:
                    console.print(f"Session paused. Continue later with --resume (saved to {session_file}).")
                    return None
                comment = click.prompt(
                    "Guidance for the next round (blank to continue)", default="", show_default=False
                )
                outcome = await _with_progress(tracker, orchestrator.resume(comment.strip() or None))
        except StageFailure as exc:
            save_snapshot(store, session_file)
            console.print(f"\n[bold red]{exc.title}:[/bold red] {exc.message}")
            console.print(f"[dim]Round {exc.round_number} stopped in {exc.stage}. Retry with --resume.[/dim]")
            if show_stats:
                print_stats(router.get_stats())
            sys.exit(1)

    save_snapshot(store, session_file)
    state = store.state
    for rnd in state.rounds:
        print_round_summary(rnd)
    if state.generated_document:
        print_document(state.generated_document, state.tech_stack)
    if show_stats:
        print_stats(router.get_stats())

    saved_path = save_document(idea or "specification", state, output_dir)
    console.print(f"\n[dim]Saved to: {saved_path}[/dim]")
    return saved_path


@click.command()
@click.argument("idea", required=False)
@click.option("--file", "idea_file", type=click.Path(exists=True), help="Read the idea from a .md file (frontmatter: personas, comment)")
@click.option("--personas", "personas_arg", default=None, help="Comma-separated persona ids to enable")
@click.option("--comment", default=None, help="Guidance for the first round (or the resumed round)")
@click.option("--output", "output_path", default=None, help="Output directory (default: from config)")
@click.option("--session-file", default=None, help="Session snapshot path (default: from config)")
@click.option("--interactive", is_flag=True, help="Pause after each undecided round and ask for guidance")
@click.option("--resume", is_flag=True, help="Continue the saved session")
@click.option("--stats", "show_stats", is_flag=True, help="Print provider health and circuit state at the end")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
@click.option("--skip-health-check", is_flag=True, default=False, help="Skip the API connectivity check at startup")
def main(
    idea: str | None,
    idea_file: str | None,
    personas_arg: str | None,
    comment: str | None,
    output_path: str | None,
    session_file: str | None,
    interactive: bool,
    resume: bool,
    show_stats: bool,
    verbose: bool,
    skip_health_check: bool,
) -> None:
    """Spec Council -- turn a product idea into a reviewed specification.

    \b
    Examples:
      python -m src.cli "Build a fitness app"
      python -m src.cli "Build a fitness app" --personas product-visionary,growth-strategist
      python -m src.cli --file idea.md --interactive
      python -m src.cli --resume --comment "focus on onboarding"
    """
    # Model replies often contain Unicode the Windows console cannot render.
    if sys.platform == "win32":
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        if hasattr(sys.stderr, "reconfigure"):
            sys.stderr.reconfigure(encoding="utf-8", errors="replace")

    load_dotenv()
    _setup_logging(verbose)

    try:
        config = load_config()
    except (FileNotFoundError, ValueError) as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)

    idea_text, meta = _read_idea(idea, idea_file)
    if not idea_text and not resume:
        console.print("[bold red]Error:[/bold red] Provide an IDEA argument, --file, or --resume.")
        sys.exit(1)

    try:
        personas = _select_personas(config, _split_ids(personas_arg) or _split_ids(meta.get("personas")))
    except click.BadParameter as exc:
        console.print(f"[bold red]Error:[/bold red] {exc.message}")
        sys.exit(1)

    all_providers = _build_all_providers(config)
    if not all_providers:
        console.print("[bold red]Error:[/bold red] No models available. Check API keys in .env.")
        sys.exit(1)

    if not skip_health_check:
        all_providers = _check_and_filter_providers(all_providers)

    enabled = [p.id for p in personas if p.enabled]
    console.print(f"\n[bold cyan]Spec Council[/bold cyan] {len(enabled)} personas, up to {config.defaults.max_rounds} rounds")
    console.print(f"Personas: {', '.join(enabled)}")
    if idea_text:
        console.print(f"Idea: [italic]{idea_text[:80]}{'...' if len(idea_text) > 80 else ''}[/italic]\n")

    try:
        asyncio.run(
            _run_session(
                idea=idea_text,
                config=config,
                providers=all_providers,
                personas=personas,
                session_file=Path(session_file) if session_file else config.defaults.session_file,
                output_dir=Path(output_path) if output_path else config.defaults.output_dir,
                interactive=interactive,
                resume=resume,
                initial_comment=comment or meta.get("comment"),
                show_stats=show_stats,
            )
        )
    except ValidationError as exc:
        console.print(f"[bold red]Validation error:[/bold red] {exc}")
        sys.exit(1)


if __name__ == "__main__":
    main()
