"""Click CLI: config loading, gateway setup, council runs and output."""

import asyncio
import logging
import signal
import sys
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.markdown import Markdown
from rich.markup import escape
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from config.config_loader import AppConfig, load_config
from tension.autonomous import AutonomousCouncil
from tension.council import CouncilDefinition, CouncilProgress, CouncilResult, CouncilThinkingStep
from tension.engine import CouncilEngine
from tension.gateway import PROVIDER_CLASSES, LLMGateway
from tension.graph import Graph, GraphStore, Node, new_id
from tension.healthcheck import run_health_checks
from tension.models import PROVIDER_IDS
from tension.output import print_plan, print_rankings, print_stage1, print_synthesis, save_to_file
from tension.plan import CouncilAbortedError
from tension.registry import PROVIDER_INFO, get_all_models

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

_TOAST_STYLE = {"success": "green", "error": "bold red", "warning": "yellow", "info": "cyan"}


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def _load() -> AppConfig:
    try:
        return load_config()
    except FileNotFoundError as exc:
        console.print(f"[bold red]Config error:[/bold red] {escape(str(exc))}")
        sys.exit(1)


def _build_gateway(config: AppConfig) -> LLMGateway:
    """Gateway with adapters for enabled providers only."""
    enabled = [p for p in config.providers.values() if p.is_enabled and p.id in PROVIDER_CLASSES]
    gateway = LLMGateway({p.id: PROVIDER_CLASSES[p.id]() for p in enabled})
    gateway.configure_providers(enabled)
    return gateway


def _toast(message: str, severity: str = "info") -> None:
    style = _TOAST_STYLE.get(severity, "")
    text = escape(message)
    console.print(f"[{style}]{text}[/{style}]" if style else text)


async def _run_ask(
    engine: CouncilEngine,
    council: CouncilDefinition,
    question: str,
) -> CouncilResult:
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("Starting council...", total=None)

        def on_progress(event: CouncilProgress) -> None:
            progress.update(task, description=f"Stage {event.stage} ({event.progress}%): {escape(event.message)}")

        return await engine.execute(council, question, on_progress=on_progress)


async def _run_auto(council: AutonomousCouncil, root_id: str, question: str, depth: int) -> None:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, council.abort_autonomous_council, "user_stop")
    except (NotImplementedError, RuntimeError):
        logger.debug("Signal handlers unavailable; Ctrl-C will interrupt immediately")

    def on_step(step: CouncilThinkingStep) -> None:
        marker = "merge" if step.stage == "synthesis" else "branch"
        model = escape(f"{step.provider_id}/{step.model_id}")
        console.print(f"[green]OK[/green] {marker} {model} ({step.duration_ms / 1000:.1f}s)")

    try:
        await council.start_autonomous_council(root_id, question=question, max_depth=depth, on_thinking_step=on_step)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass


@click.group()
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
def main(verbose: bool) -> None:
    """Tension -- multi-model LLM council.

    \b
    Examples:
      tension ask "Should we use REST or GraphQL?"
      tension ask "Review this design" --council code-review
      tension auto "What are the trade-offs of event sourcing?" --depth 3
      tension check
    """
    # Model output may carry characters the legacy Windows console cannot encode.
    if sys.platform == "win32":
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        if hasattr(sys.stderr, "reconfigure"):
            sys.stderr.reconfigure(encoding="utf-8", errors="replace")

    load_dotenv()
    _setup_logging(verbose)


@main.command()
@click.argument("question")
@click.option("--council", "council_id", default=None, help="Council preset id (default: from config)")
@click.option("--output", "output_path", default=None, help="Output directory (default: from config)")
@click.option("--no-save", is_flag=True, default=False, help="Do not write a markdown report")
def ask(question: str, council_id: str | None, output_path: str | None, no_save: bool) -> None:
    """Run the three-stage council on QUESTION."""
    config = _load()
    council_id = council_id or config.defaults.council
    council = config.councils.get(council_id)
    if council is None:
        console.print(
            f"[bold red]Error:[/bold red] Unknown council '{escape(council_id)}'. "
            f"Available: {', '.join(sorted(config.councils))}"
        )
        sys.exit(1)

    gateway = _build_gateway(config)
    used = {m.provider for m in council.members} | {council.chairman.provider}
    missing = sorted(p for p in used if not gateway.get_provider_status(p).is_configured)
    if missing:
        console.print(f"[yellow]Not configured:[/yellow] {', '.join(missing)}; those members will fail.")
    if len(missing) == len(used):
        console.print("[bold red]Error:[/bold red] No providers available. Check API keys in .env.")
        sys.exit(1)

    console.print(f"\n[bold cyan]{escape(council.name)}[/bold cyan] -- {len(council.members)} members")
    console.print(f"Question: [italic]{escape(question[:80])}{'...' if len(question) > 80 else ''}[/italic]\n")

    result = asyncio.run(_run_ask(CouncilEngine(gateway, config.prompts), council, question))

    # Report is written before any model text is rendered
    saved = None
    if not no_save:
        output_dir = Path(output_path) if output_path else config.defaults.output_dir
        saved = save_to_file(result, council, output_dir)

    print_stage1(result)
    print_rankings(result)
    print_synthesis(result)

    if saved is not None:
        console.print(f"\n[dim]Saved to: {escape(str(saved))}[/dim]")


@main.command()
@click.argument("question")
@click.option("--depth", default=None, type=int, help="Maximum waves, 1-6 (default: from config)")
@click.option("--allow", "allowed", multiple=True, type=click.Choice(PROVIDER_IDS),
              help="Restrict branches to this provider (repeatable)")
def auto(question: str, depth: int | None, allowed: tuple[str, ...]) -> None:
    """Let a planner model expand QUESTION into waves of branches and merges."""
    config = _load()
    gateway = _build_gateway(config)

    root = Node(id=new_id(), prompt=question, is_root=True)
    store = GraphStore(present=Graph(nodes=(root,)))
    council = AutonomousCouncil(
        gateway=gateway,
        graph_store=store,
        providers=list(config.providers.values()),
        prompts=config.prompts,
        notify=_toast,
        planner_model=config.defaults.planner_model,
        allowed_providers=list(allowed) or None,
    )

    try:
        asyncio.run(_run_auto(council, root.id, question, depth or config.defaults.depth))
    except CouncilAbortedError as exc:
        console.print(f"[yellow]Stopped ({exc.reason}).[/yellow]")

    plan = council.council_plan
    if plan is None:
        return
    print_plan(plan)

    final = next(
        (store.graph.find_node(m.output_node_id) for m in reversed(plan.merges) if m.status == "done"),
        None,
    )
    if final is not None and final.model_response:
        console.print(Markdown(final.model_response))


@main.command()
def check() -> None:
    """Ping every provider that has an API key."""
    config = _load()
    gateway = _build_gateway(config)
    provider_ids = sorted(config.available_providers)
    if not provider_ids:
        console.print("[bold red]Error:[/bold red] No providers available. Check API keys in .env.")
        sys.exit(1)

    console.print("\n[bold]Checking providers...[/bold]")
    results = asyncio.run(run_health_checks(gateway, provider_ids))

    failed = 0
    for pid in provider_ids:
        ok, err = results[pid]
        if ok:
            console.print(f"  [green]OK  [/green] {PROVIDER_INFO[pid]['name']}")
        else:
            failed += 1
            short_err = err.splitlines()[0][:120] if err else "unknown error"
            console.print(f"  [red]FAIL[/red] {PROVIDER_INFO[pid]['name']}: {escape(short_err)}")

    if failed == len(provider_ids):
        sys.exit(1)


@main.command()
def models() -> None:
    """List known models and whether their provider is configured."""
    config = _load()
    gateway = _build_gateway(config)

    table = Table(show_header=True, header_style="bold")
    table.add_column("Model")
    table.add_column("Provider")
    table.add_column("Context", justify="right")
    table.add_column("$/1k in", justify="right")
    table.add_column("$/1k out", justify="right")
    table.add_column("Ready")
    for m in get_all_models():
        ready = gateway.get_provider_status(m.provider).is_configured
        table.add_row(
            m.id + (" *" if m.is_default else ""),
            PROVIDER_INFO[m.provider]["name"],
            f"{m.context_window:,}",
            f"{m.cost_per_1k_input:g}",
            f"{m.cost_per_1k_output:g}",
            "[green]yes[/green]" if ready else "[dim]no[/dim]",
        )
    console.print(table)


if __name__ == "__main__":
    main()
