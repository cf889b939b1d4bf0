"""Main CLI entry point using Typer."""

import asyncio
import json
import shlex
import signal
from pathlib import Path

import anyio
import typer
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from maestro import __version__
from maestro.cli.commands import learning_app
from maestro.core.config import Settings, get_settings
from maestro.core.errors import PlanError
from maestro.core.logging import configure_logging
from maestro.execution.agents import AgentRegistry, SubprocessAgent
from maestro.planning.models import Plan, merge_plans

app = typer.Typer(
    name="maestro",
    help="Maestro - wave-based task orchestration for autonomous agents",
    add_completion=True,
    rich_markup_mode="rich",
)
app.add_typer(learning_app, name="learning")

console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold blue]Maestro[/bold blue] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """
    Maestro - run task plans in dependency waves.

    Tasks run in parallel where their dependencies allow, are reviewed by a
    QC agent, and learn from earlier failures.
    """
    pass


# =============================================================================
# HELPERS
# =============================================================================


def load_plan(path: Path) -> Plan:
    """Load a JSON-serialized plan. Its identity defaults to the file path."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise typer.BadParameter(f"Cannot read plan {path}: {e}") from e

    if isinstance(data, list):
        data = {"tasks": data}
    if not isinstance(data, dict):
        raise typer.BadParameter(f"Invalid plan {path}: expected an object or a list of tasks")
    data.setdefault("identity", str(path))
    try:
        return Plan.model_validate(data)
    except ValidationError as e:
        raise typer.BadParameter(f"Invalid plan {path}: {e}") from e


def load_plans(paths: list[Path]) -> Plan:
    """Load one or more plan files and merge them."""
    plans = [load_plan(p) for p in paths]
    return merge_plans(*plans)


def build_registry(settings: Settings, plan: Plan) -> AgentRegistry:
    """Register a subprocess agent for every agent the plan can reach."""
    command = shlex.split(settings.agent_command)
    registry = AgentRegistry(default=plan.default_agent or settings.fallback_agent)

    names = {plan.agent_for(t) for t in plan.tasks}
    names.update({settings.fallback_agent, settings.qc_agent})
    for name in sorted(n for n in names if n):
        registry.register(name, SubprocessAgent(command, timeout=settings.task_timeout))

    return registry


def print_waves(plan: Plan) -> None:
    table = Table(title=f"Execution Waves: {plan.identity}")
    table.add_column("Wave", style="cyan", justify="right")
    table.add_column("Task", style="bold")
    table.add_column("Name")
    table.add_column("Agent")
    table.add_column("Depends On")

    tasks = plan.task_map()
    for wave in plan.waves:
        for key in wave.task_keys:
            task = tasks[key]
            deps = ", ".join(str(d) for d in task.depends_on) or "-"
            table.add_row(
                str(wave.number + 1),
                key,
                task.name,
                plan.agent_for(task) or "-",
                deps[:40] + "..." if len(deps) > 40 else deps,
            )

    console.print(table)


# =============================================================================
# COMMANDS
# =============================================================================


@app.command()
def run(
    plans: list[Path] = typer.Argument(..., help="Plan JSON file(s); several are merged"),
    max_concurrency: int | None = typer.Option(
        None,
        "--max-concurrency",
        "-c",
        help="Maximum parallel tasks",
    ),
    max_retries: int | None = typer.Option(
        None,
        "--retries",
        "-r",
        help="Retries per task after the first attempt",
    ),
    no_qc: bool = typer.Option(False, "--no-qc", help="Skip QC review"),
    no_learning: bool = typer.Option(False, "--no-learning", help="Do not read or record history"),
    fresh: bool = typer.Option(False, "--fresh", help="Ignore tasks completed in earlier runs"),
    dry_run: bool = typer.Option(False, "--dry-run", "-n", help="Show the waves without running"),
) -> None:
    """
    Execute one or more plans.

    Example:
        maestro run plans/backend.json plans/frontend.json -c 4
    """
    overrides: dict[str, object] = {}
    if max_concurrency is not None:
        overrides["max_concurrency"] = max_concurrency
    if max_retries is not None:
        overrides["max_retries"] = max_retries
    if no_qc:
        overrides["qc_enabled"] = False
    if no_learning:
        overrides["learning_enabled"] = False
    if fresh:
        overrides["skip_completed"] = False

    settings = get_settings().model_copy(update=overrides)
    configure_logging(settings)

    try:
        plan = load_plans(plans)
    except PlanError as e:
        console.print(f"[bold red]Invalid plan:[/bold red] {e}")
        raise typer.Exit(code=1) from e

    async def execute() -> int:
        from maestro.core.orchestrator import Orchestrator
        from maestro.execution.patterns import AgentSemanticClassifier
        from maestro.execution.quality import AgentReviewer
        from maestro.monitoring.loggers import (
            CompositeRunLogger,
            LoguruRunLogger,
            RichSummaryLogger,
        )

        registry = build_registry(settings, plan)
        orchestrator = Orchestrator(
            registry,
            settings=settings,
            reviewer=AgentReviewer(registry, agent=settings.qc_agent),
            semantic_classifier=AgentSemanticClassifier(registry, agent=settings.fallback_agent),
            run_logger=CompositeRunLogger(LoguruRunLogger(), RichSummaryLogger(console)),
        )

        try:
            if dry_run:
                preview = await orchestrator.dry_run(plan)
                print_waves(plan)
                for conflict in preview["file_conflicts"]:
                    console.print(f"[yellow]Overlap:[/yellow] {conflict['file_path']} in wave {conflict['wave_number'] + 1}")
                if preview["missing_agents"]:
                    console.print(f"[red]Unregistered agents:[/red] {', '.join(preview['missing_agents'])}")
                return 0

            cancel_event = asyncio.Event()
            try:
                asyncio.get_running_loop().add_signal_handler(signal.SIGINT, cancel_event.set)
            except NotImplementedError:
                pass

            result = await orchestrator.execute_plan(plan, cancel_event=cancel_event)
            return 0 if result.success else 1
        finally:
            await orchestrator.close()

    console.print(
        Panel(
            f"[bold]Plan:[/bold] {plan.identity}\n"
            f"[bold]Tasks:[/bold] {len(plan.tasks)}",
            title="[bold blue]Maestro[/bold blue]",
            border_style="blue",
        )
    )

    try:
        code = anyio.run(execute)
    except PlanError as e:
        console.print(f"[bold red]Invalid plan:[/bold red] {e}")
        raise typer.Exit(code=1) from e

    raise typer.Exit(code=code)


@app.command()
def validate(
    plans: list[Path] = typer.Argument(..., help="Plan JSON file(s) to check"),
) -> None:
    """
    Resolve plans into waves without running anything.

    Example:
        maestro validate plans/feature.json
    """
    from maestro.planning.dependency_resolver import DependencyResolver

    try:
        plan = load_plans(plans)
        resolver = DependencyResolver()
        resolver.resolve_plan(plan)
    except PlanError as e:
        console.print(f"[bold red]Invalid plan:[/bold red] {e}")
        raise typer.Exit(code=1) from e

    print_waves(plan)

    for conflict in resolver.get_conflicts():
        console.print(f"[yellow]Warning:[/yellow] {conflict.description}")

    critical = resolver.calculate_critical_path()
    if critical:
        console.print(f"[dim]Critical path: {' -> '.join(critical)}[/dim]")

    console.print(f"[green]Plan is valid: {len(plan.tasks)} tasks in {plan.total_waves} waves[/green]")


if __name__ == "__main__":
    app()
