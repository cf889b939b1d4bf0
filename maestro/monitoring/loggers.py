"""
Run loggers.

A run logger receives wave and task events from the orchestrator. Loggers
compose: CompositeRunLogger fans every event out and isolates a failing
logger so it can never affect the run.
"""

from typing import Protocol

from loguru import logger
from rich.console import Console
from rich.table import Table

from maestro.execution.results import RunResult, TaskOutcome, TaskResult
from maestro.planning.models import Wave


class RunLogger(Protocol):
    """Contract for run event sinks."""

    def log_wave_start(self, wave: Wave) -> None: ...

    def log_wave_complete(self, wave: Wave, duration: float) -> None: ...

    def log_task_result(self, result: TaskResult) -> None: ...

    def log_summary(self, run_result: RunResult) -> None: ...


class LoguruRunLogger:
    """Write run events to loguru."""

    def log_wave_start(self, wave: Wave) -> None:
        logger.info(f"Starting {wave.name} ({len(wave)} tasks)")

    def log_wave_complete(self, wave: Wave, duration: float) -> None:
        logger.info(f"{wave.name} finished in {duration:.1f}s")

    def log_task_result(self, result: TaskResult) -> None:
        label = f"Task {result.task_key}"
        if result.outcome == TaskOutcome.SUCCESS:
            suffix = " (resumed)" if result.resumed else ""
            logger.success(f"{label} succeeded{suffix} in {result.duration_seconds:.1f}s")
        elif result.outcome == TaskOutcome.FAILED:
            patterns = f" [{', '.join(result.patterns)}]" if result.patterns else ""
            logger.error(f"{label} failed after {result.attempts} attempts{patterns}: {result.error or result.qc_feedback}")
        elif result.outcome == TaskOutcome.SKIPPED:
            logger.warning(f"{label} skipped: {result.error}")
        else:
            logger.warning(f"{label} cancelled")

    def log_summary(self, run_result: RunResult) -> None:
        summary = run_result.summary()
        logger.info(
            f"Run complete for {run_result.plan_identity}: "
            f"{summary['succeeded']} succeeded, {summary['failed']} failed, "
            f"{summary['skipped']} skipped, {summary['cancelled']} cancelled "
            f"in {summary['duration_seconds']:.1f}s"
        )


_OUTCOME_STYLE = {
    TaskOutcome.SUCCESS: "green",
    TaskOutcome.FAILED: "red",
    TaskOutcome.SKIPPED: "yellow",
    TaskOutcome.CANCELLED: "magenta",
}


class RichSummaryLogger:
    """Print a table of task outcomes when the run ends."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def log_wave_start(self, wave: Wave) -> None:
        self.console.print(f"[bold blue]{wave.name}[/bold blue] [dim]({len(wave)} tasks)[/dim]")

    def log_wave_complete(self, wave: Wave, duration: float) -> None:
        pass

    def log_task_result(self, result: TaskResult) -> None:
        pass

    def log_summary(self, run_result: RunResult) -> None:
        table = Table(title=f"Run {run_result.run_number or '-'}: {run_result.plan_identity}")
        table.add_column("Wave", justify="right")
        table.add_column("Task", style="cyan")
        table.add_column("Outcome")
        table.add_column("Agent")
        table.add_column("Attempts", justify="right")
        table.add_column("QC")
        table.add_column("Duration", justify="right")

        for result in run_result.results:
            style = _OUTCOME_STYLE[result.outcome]
            outcome = result.outcome.value + (" (resumed)" if result.resumed else "")
            table.add_row(
                str((result.wave_number or 0) + 1),
                result.task_key,
                f"[{style}]{outcome}[/{style}]",
                result.agent or "-",
                str(result.attempts),
                result.qc_verdict.value if result.qc_verdict else "-",
                f"{result.duration_seconds:.1f}s",
            )

        self.console.print(table)

        summary = run_result.summary()
        self.console.print(
            f"[green]{summary['succeeded']} succeeded[/green], "
            f"[red]{summary['failed']} failed[/red], "
            f"[yellow]{summary['skipped']} skipped[/yellow], "
            f"[magenta]{summary['cancelled']} cancelled[/magenta]"
        )


class CompositeRunLogger:
    """Fan events out to several loggers, isolating failures."""

    def __init__(self, *loggers: RunLogger) -> None:
        self.loggers: list[RunLogger] = list(loggers)

    def add(self, run_logger: RunLogger) -> None:
        self.loggers.append(run_logger)

    def _dispatch(self, method: str, *args: object) -> None:
        for run_logger in self.loggers:
            try:
                getattr(run_logger, method)(*args)
            except Exception as e:
                logger.warning(f"Run logger {type(run_logger).__name__}.{method} failed: {e}")

    def log_wave_start(self, wave: Wave) -> None:
        self._dispatch("log_wave_start", wave)

    def log_wave_complete(self, wave: Wave, duration: float) -> None:
        self._dispatch("log_wave_complete", wave, duration)

    def log_task_result(self, result: TaskResult) -> None:
        self._dispatch("log_task_result", result)

    def log_summary(self, run_result: RunResult) -> None:
        self._dispatch("log_summary", run_result)
