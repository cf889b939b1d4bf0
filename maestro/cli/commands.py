"""Learning history commands."""

import json
from pathlib import Path

import anyio
import typer
from rich.console import Console
from rich.table import Table

from maestro.core.config import get_settings
from maestro.core.errors import LearningStoreError
from maestro.knowledge.store import LearningStore

learning_app = typer.Typer(help="Inspect recorded execution history")

console = Console()


def _run(fn) -> None:
    """Run an async command body, turning store failures into a clean exit."""
    try:
        anyio.run(fn)
    except LearningStoreError as e:
        console.print(f"[bold red]Learning store error:[/bold red] {e}")
        raise typer.Exit(code=1) from e


@learning_app.command()
def stats(
    plan: str | None = typer.Option(None, "--plan", "-p", help="Only this plan identity"),
) -> None:
    """
    Show failure-pattern and agent statistics.
    """

    async def show_stats() -> None:
        store = LearningStore.from_settings(get_settings())
        try:
            summary = await store.summary(plan)
        finally:
            await store.close()

        console.print("[bold]Learning Statistics[/bold]\n")
        console.print(f"Executions: {summary.total_executions}")
        console.print(f"Failures:   {summary.failed_executions}")
        console.print(f"Detection rate: {summary.detection_rate:.2f} patterns per execution\n")

        patterns = Table(title="Failure Patterns")
        patterns.add_column("Category", style="cyan")
        patterns.add_column("Detections", justify="right")
        patterns.add_column("Last Detected")
        patterns.add_column("Keywords")
        for stat in sorted(summary.patterns.values(), key=lambda s: -s.detection_count):
            patterns.add_row(
                stat.category,
                str(stat.detection_count),
                stat.last_detected.strftime("%Y-%m-%d %H:%M") if stat.last_detected else "-",
                ", ".join(stat.keywords[:5]),
            )
        console.print(patterns)

        agents = Table(title="Agents")
        agents.add_column("Agent", style="cyan")
        agents.add_column("Runs", justify="right")
        agents.add_column("Success Rate", justify="right")
        for agent in sorted(summary.agents.values(), key=lambda a: -a.total):
            agents.add_row(agent.agent, str(agent.total), f"{agent.success_rate:.0%}")
        console.print(agents)

    _run(show_stats)


@learning_app.command()
def show(
    task: str = typer.Argument(..., help="Task key"),
    plan: str | None = typer.Option(None, "--plan", "-p", help="Only this plan identity"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of records to show"),
) -> None:
    """
    Show recorded attempts and failure analysis for one task.
    """

    async def show_task() -> None:
        store = LearningStore.from_settings(get_settings())
        try:
            history = await store.query(task, plan_identity=plan, limit=limit)
            analysis = await store.analyze_failures(task, plan_identity=plan)
        finally:
            await store.close()

        if not history:
            console.print(f"[yellow]No history for task {task}[/yellow]")
            return

        table = Table(title=f"History: {task}")
        table.add_column("Time")
        table.add_column("Attempt", justify="right")
        table.add_column("Agent")
        table.add_column("Outcome")
        table.add_column("QC")
        table.add_column("Patterns")
        for record in history:
            color = "green" if record.success else "red"
            table.add_row(
                record.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
                str(record.attempt),
                record.agent or "-",
                f"[{color}]{record.outcome}[/{color}]",
                record.qc_verdict or "-",
                ", ".join(record.patterns) or "-",
            )
        console.print(table)

        if analysis.should_try_different_agent:
            console.print(f"\n[bold]Suggested agent:[/bold] {analysis.suggested_agent}")
            console.print(f"[dim]{analysis.suggested_approach}[/dim]")

    _run(show_task)


@learning_app.command()
def export(
    session_id: str | None = typer.Argument(None, help="Session to export (latest when omitted)"),
    plan: str | None = typer.Option(None, "--plan", "-p", help="Latest session of this plan"),
    output: Path | None = typer.Option(
        None,
        "--output",
        "-o",
        help="Write the document to a file",
    ),
) -> None:
    """
    Export a learning session as JSON.
    """

    async def do_export() -> None:
        store = LearningStore.from_settings(get_settings())
        try:
            target = session_id
            if target is None:
                sessions = await store.list_sessions(plan, limit=1)
                if not sessions:
                    console.print("[yellow]No learning sessions recorded[/yellow]")
                    return
                target = sessions[0].session_id
            document = await store.export_session(target)
        finally:
            await store.close()

        text = json.dumps(document, indent=2)
        if output:
            output.write_text(text, encoding="utf-8")
            console.print(f"[green]Exported session {target} to {output}[/green]")
        else:
            console.print_json(text)

    _run(do_export)


@learning_app.command()
def sessions(
    plan: str | None = typer.Option(None, "--plan", "-p", help="Only this plan identity"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of sessions to list"),
) -> None:
    """
    List recent learning sessions.
    """

    async def list_sessions() -> None:
        store = LearningStore.from_settings(get_settings())
        try:
            rows = await store.list_sessions(plan, limit=limit)
        finally:
            await store.close()

        table = Table(title="Learning Sessions")
        table.add_column("Session", style="cyan")
        table.add_column("Plan")
        table.add_column("Run", justify="right")
        table.add_column("Created")
        for session in rows:
            table.add_row(
                session.session_id,
                session.plan_identity,
                str(session.run_number),
                session.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            )
        console.print(table)

    _run(list_sessions)
