"""Rich console output and markdown export for debate results."""

import logging
import re
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from twofer.convergence import describe_reason
from twofer.models import ConsensusSection, ConvergenceState, DebateResult, RoundResult

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

_VERDICT_STYLES = {"approve": "green", "reject": "red", "suggest_changes": "yellow"}


def _slug(text: str, max_len: int = 40) -> str:
    """Convert text to a filename-safe slug."""
    slug = re.sub(r"[^\w\s-]", "", text.lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:max_len]


def export_filename(result: DebateResult) -> str:
    title = _slug(result.project_title) if result.project_title else ""
    return f"twofer-{title or 'spec'}.md"


def print_round_summary(rnd: RoundResult, convergence: ConvergenceState) -> None:
    """Print verdicts and agreed/disputed counts for one round."""
    console.print(Rule(f"[bold cyan]Round {rnd.round}[/bold cyan] [dim](max {convergence.max_rounds})[/dim]"))

    table = Table(show_header=True, header_style="bold", box=None)
    table.add_column("Agent")
    table.add_column("Verdict")
    table.add_column("Sections", justify="right")
    table.add_column("Summary", overflow="fold")
    for name, response in rnd.responses.items():
        style = _VERDICT_STYLES.get(response.overall_verdict, "white")
        table.add_row(
            name,
            f"[{style}]{response.overall_verdict}[/{style}]",
            str(len(response.sections)),
            response.summary[:120],
        )
    console.print(table)

    agreed = sum(1 for s in rnd.consensus if s.agreed)
    disputed = len(rnd.consensus) - agreed
    console.print(
        Text(f"Agreed: {agreed}", style="green")
        + Text(f"  Disputed: {disputed}", style="red")
        + Text(f"  Streak: {convergence.consecutive_approvals}", style="dim")
    )
    if convergence.converged:
        console.print(f"[bold green]Converged:[/bold green] {describe_reason(convergence)}")


def print_result(result: DebateResult) -> None:
    """Print the final consensus to the console."""
    if result.outcome == "aborted":
        console.print(
            Panel(result.abort_reason or "Debate aborted", title="[bold red]Aborted[/bold red]", border_style="red")
        )
    console.print(Rule("[bold green]Final Consensus[/bold green]"))
    console.print(
        Text(
            f"Rounds: {len(result.rounds)} | "
            f"Outcome: {result.outcome} | "
            f"{describe_reason(result.convergence_state)}",
            style="dim",
        )
    )
    for section in result.consensus:
        marker = "[green]agreed[/green]" if section.agreed else "[red]disputed[/red]"
        console.print(f"  {marker}  {section.title}")


def consensus_to_spec(consensus: list[ConsensusSection]) -> str:
    """Markdown body of the consensus: agreed content, or every agent's version."""
    lines: list[str] = []
    for section in consensus:
        lines.append(f"## {section.title}")
        lines.append("")
        if section.agreed:
            lines.append(section.final_content)
            lines.append("")
            continue
        lines.append("> **Disputed**: agents did not agree on this section.")
        lines.append("")
        for agent, content in section.agent_contents.items():
            lines.append(f"### {agent}")
            lines.append("")
            lines.append(content or "*(no proposal for this section)*")
            lines.append("")
    return "\n".join(lines)


def export_to_markdown(result: DebateResult) -> str:
    """Render the whole debate (consensus plus per-round verdicts) as markdown."""
    state = result.convergence_state
    agents = list(result.rounds[0].responses) if result.rounds else []
    title = result.project_title or "Technical Specification"

    lines: list[str] = [
        f"# {title}",
        "",
        f"**Date:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        f"**Agents:** {', '.join(agents) or 'none'}",
        f"**Rounds:** {len(result.rounds)} (max {state.max_rounds})",
        f"**Outcome:** {result.outcome} ({describe_reason(state)})",
    ]
    if result.abort_reason:
        lines.append(f"**Aborted:** {result.abort_reason}")
    lines += ["", "---", "", consensus_to_spec(result.consensus), "---", "", "## Debate History", ""]

    for rnd in result.rounds:
        lines.append(f"### Round {rnd.round}")
        lines.append("")
        lines.append("| Agent | Verdict | Change requests |")
        lines.append("|---|---|---|")
        for name, response in rnd.responses.items():
            requests = "; ".join(response.change_requests) or "-"
            lines.append(f"| {name} | {response.overall_verdict} | {requests.replace('|', '/')} |")
        lines.append("")

    return "\n".join(lines)


def save_to_file(result: DebateResult, output_dir: Path, filename: str | None = None) -> Path:
    """Write the markdown export and return its path.

    Args:
        result: The finished DebateResult.
        output_dir: Directory to save the file in.
        filename: Explicit file name; derived from the project title if omitted.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    filepath = output_dir / (filename or export_filename(result))
    filepath.write_text(export_to_markdown(result), encoding="utf-8")
    logger.info("Spec exported to: %s", filepath)
    return filepath
