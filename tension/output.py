"""Rich console output and markdown file save for council results."""

import logging
import re
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from tension.council import CouncilDefinition, CouncilResult, Stage1Response
from tension.plan import WavePlan
from tension.ranking import response_label

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

_STATUS_STYLE = {"queued": "dim", "running": "yellow", "done": "green", "error": "red"}


def _slug(text: str, max_len: int = 40) -> str:
    """Convert text to a filename-safe slug."""
    slug = re.sub(r"[^\w\s-]", "", text.lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:max_len]


def _response_preview(response: Stage1Response, words: int = 50) -> Text:
    """Return first N words of a response as plain Text (never parsed as markup)."""
    if response.error:
        return Text(response.error, style="red")
    all_words = response.content.split()
    preview = " ".join(all_words[:words])
    if len(all_words) > words:
        preview += "..."
    return Text(preview)


def print_stage1(result: CouncilResult) -> None:
    console.print(Rule("[bold cyan]Stage 1: Divergence[/bold cyan]"))
    for i, resp in enumerate(result.stage1.responses):
        console.print(
            Panel(
                _response_preview(resp),
                title=f"[bold]Response {response_label(i)}[/bold] ({escape(resp.model_id)})",
                subtitle=f"{resp.latency_ms / 1000:.1f}s",
                border_style="dim",
            )
        )


def print_rankings(result: CouncilResult) -> None:
    """Aggregated stage-2 ranking as a table."""
    stage1, stage2 = result.stage1, result.stage2
    console.print(Rule("[bold cyan]Stage 2: Convergence[/bold cyan]"))
    table = Table(show_header=True, header_style="bold")
    table.add_column("Rank", justify="right")
    table.add_column("Response")
    table.add_column("Model")
    table.add_column("Score", justify="right")
    for rank, index in enumerate(stage2.aggregated_ranking, start=1):
        table.add_row(
            str(rank), response_label(index), Text(stage1.responses[index].model_id), str(stage2.scores[index])
        )
    console.print(table)
    console.print(Text(f"Agreement: {stage2.agreement_score}% across {len(stage2.evaluations)} evaluators", style="dim"))


def print_synthesis(result: CouncilResult) -> None:
    """Print the chairman's answer using Rich markdown."""
    console.print(Rule("[bold green]Council Synthesis[/bold green]"))
    stage3 = result.stage3
    console.print(
        Text(
            f"Confidence: {stage3.confidence}% | "
            f"Duration: {result.total_latency_ms / 1000:.1f}s | "
            f"Cost: ${result.total_cost:.4f}",
            style="dim",
        )
    )
    if stage3.error:
        console.print(f"[bold red]Chairman failed:[/bold red] {escape(stage3.error)}")
        return
    console.print(Markdown(stage3.final_response))


def print_plan(plan: WavePlan) -> None:
    """Branch and merge statuses, one row per plan entry."""
    table = Table(title=f"Waves: {plan.wave_count}/{plan.max_depth}", show_header=True, header_style="bold")
    table.add_column("Wave", justify="right")
    table.add_column("Kind")
    table.add_column("Model")
    table.add_column("Status")
    table.add_column("Error")
    for wave in range(plan.wave_count):
        for b in plan.wave_branches(wave):
            style = _STATUS_STYLE[b.status]
            table.add_row(str(wave + 1), "branch", Text(f"{b.provider_id}/{b.model_id}"),
                          f"[{style}]{b.status}[/{style}]", Text(b.error or ""))
        for m in (m for m in plan.merges if m.wave == wave):
            style = _STATUS_STYLE[m.status]
            table.add_row(str(wave + 1), "merge", m.provider_id, f"[{style}]{m.status}[/{style}]", Text(m.error or ""))
    console.print(table)


def save_to_file(
    result: CouncilResult,
    council: CouncilDefinition,
    output_dir: Path,
    slug_override: str | None = None,
) -> Path:
    """Save the full council transcript as a markdown file.

    Returns:
        Path to the saved file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    timestamp = result.started_at.strftime("%Y%m%d_%H%M%S")
    slug = slug_override if slug_override is not None else _slug(result.original_prompt)
    filepath = output_dir / f"{timestamp}_{slug}.md"

    stage1, stage2, stage3 = result.stage1, result.stage2, result.stage3
    lines: list[str] = [
        f"# {council.name}: {result.original_prompt[:80]}",
        "",
        f"**Date:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        f"**Members:** {', '.join(m.model_id for m in council.members)}",
        f"**Chairman:** {council.chairman.model_id}",
        f"**Strategy:** {council.evaluation_strategy} / {council.synthesis_strategy}",
        f"**Duration:** {result.total_latency_ms / 1000:.1f}s",
        f"**Cost:** ${result.total_cost:.4f}",
        "",
        "---",
        "",
        "## Stage 1: Responses",
        "",
    ]

    for i, resp in enumerate(stage1.responses):
        lines.append(f"### Response {response_label(i)} ({resp.model_id})")
        lines.append("")
        lines.append(f"> Error: {resp.error}" if resp.error else resp.content)
        lines.append("")
        lines.append(f"*Latency: {resp.latency_ms / 1000:.2f}s | Cost: ${resp.cost:.4f}*")
        lines.append("")

    lines += [
        "## Stage 2: Ranking",
        "",
        "| Rank | Response | Model | Score |",
        "|---:|---|---|---:|",
    ]
    for rank, index in enumerate(stage2.aggregated_ranking, start=1):
        lines.append(
            f"| {rank} | {response_label(index)} | {stage1.responses[index].model_id} | {stage2.scores[index]} |"
        )
    lines += [
        "",
        f"Agreement: {stage2.agreement_score}%",
        "",
        f"## Stage 3: Synthesis (by {council.chairman.model_id})",
        "",
        f"*Confidence: {stage3.confidence}%. {stage3.reasoning}*",
        "",
        stage3.final_response if not stage3.error else f"> Error: {stage3.error}",
        "",
    ]

    filepath.write_text("\n".join(lines), encoding="utf-8")
    logger.info("Council result saved to: %s", filepath)
    return filepath
