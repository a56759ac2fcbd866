"""Rich console output and markdown file save for council sessions."""

import logging
import re
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from src.consensus import approval_rate
from src.models import Round, SessionState, TechStackItem
from src.router import ProviderHealth, ProviderStats

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

_HEALTH_STYLES = {
    ProviderHealth.HEALTHY: "green",
    ProviderHealth.DEGRADED: "yellow",
    ProviderHealth.DOWN: "red",
}


def _slug(text: str, max_len: int = 40) -> str:
    """Convert text to a filename-safe slug."""
    slug = re.sub(r"[^\w\s-]", "", text.lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:max_len]


def _preview(text: str, words: int = 50) -> str:
    """Return the first N words of a text."""
    all_words = text.split()
    preview = " ".join(all_words[:words])
    if len(all_words) > words:
        preview += "..."
    return preview


def print_round_summary(rnd: Round) -> None:
    """Print syntheses and the vote tally of one round."""
    rate = approval_rate(rnd.votes)
    console.print(Rule(f"[bold cyan]Round {rnd.number} Summary[/bold cyan]"))
    for synthesis in rnd.syntheses:
        tested = "battle-tested" if synthesis.battle_tested else "unchallenged"
        console.print(
            Panel(
                _preview(synthesis.text),
                title=f"[bold]{synthesis.persona_id}[/bold] ({synthesis.model})",
                subtitle=f"{tested}, confidence {synthesis.confidence_boost:+d}",
                border_style="dim",
            )
        )
    if rnd.review_result is not None:
        review = rnd.review_result
        style = "green" if review.passed else "yellow"
        console.print(Text(f"Review: {review.overall_score}/100, {len(review.issues)} issue(s)", style=style))
    approved = sum(1 for v in rnd.votes if v.approved)
    console.print(
        Text(f"Votes: {approved}/{len(rnd.votes)} approve ({rate:.0%})", style="bold"),
    )


def print_stats(stats: dict[str, ProviderStats]) -> None:
    """Print per-provider circuit and health state."""
    table = Table(title="Provider Health")
    table.add_column("Provider")
    table.add_column("Health")
    table.add_column("Circuit")
    table.add_column("Success rate", justify="right")
    table.add_column("Consecutive failures", justify="right")
    for name in sorted(stats):
        s = stats[name]
        style = _HEALTH_STYLES[s.health]
        table.add_row(
            name,
            f"[{style}]{s.health.value}[/{style}]",
            s.circuit_state.value,
            f"{s.success_rate:.0%}",
            str(s.consecutive_failures),
        )
    console.print(table)


def print_document(document: str, tech_stack: tuple[TechStackItem, ...]) -> None:
    """Print the generated specification using Rich markdown."""
    console.print(Rule("[bold green]Generated Specification[/bold green]"))
    console.print(Markdown(document))
    if tech_stack:
        table = Table(title="Tech Stack")
        table.add_column("Category")
        table.add_column("Choice")
        table.add_column("Rationale")
        for item in tech_stack:
            name = f"{item.name} {item.version}" if item.version else item.name
            table.add_row(item.category, name, item.rationale)
        console.print(table)


def render_document(idea: str, state: SessionState) -> str:
    """Markdown file body: the document, its tech stack, and a round log."""
    lines: list[str] = [
        f"# Specification: {idea[:80]}",
        "",
        f"**Date:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        f"**Rounds:** {len(state.rounds)}",
        "",
        "---",
        "",
        state.generated_document or "*No document was generated.*",
        "",
    ]

    if state.tech_stack:
        lines += ["## Tech Stack", "", "| Category | Choice | Rationale |", "|---|---|---|"]
        for item in state.tech_stack:
            name = f"{item.name} {item.version}" if item.version else item.name
            lines.append(f"| {item.category} | {name} | {item.rationale} |")
        lines.append("")

    lines += ["## Council Log", ""]
    for rnd in state.rounds:
        approved = sum(1 for v in rnd.votes if v.approved)
        score = rnd.review_result.overall_score if rnd.review_result else "n/a"
        lines.append(
            f"- Round {rnd.number}: {approved}/{len(rnd.votes)} approved, review score {score}"
            + (f", guidance: {rnd.user_comment}" if rnd.user_comment else "")
        )
    lines.append("")
    return "\n".join(lines)


def save_document(idea: str, state: SessionState, output_dir: Path, slug_override: str | None = None) -> Path:
    """Save the generated specification as a markdown file.

    Args:
        idea: The original product idea.
        state: Final session state holding the document.
        output_dir: Directory to save the file in.
        slug_override: Filename stem to use instead of one derived from the idea.

    Returns:
        Path to the saved file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    slug = slug_override if slug_override is not None else _slug(idea)
    filepath = output_dir / f"{timestamp}_{slug}.md"
    filepath.write_text(render_document(idea, state), encoding="utf-8")
    logger.info("Specification saved to: %s", filepath)
    return filepath
