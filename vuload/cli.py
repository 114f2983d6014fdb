"""
vuload CLI - Command-line interface for the load generator.

Commands:
- vuload run <config>       - Run a load test and gate on thresholds
- vuload validate <config>  - Check a configuration without running it
- vuload scenarios          - List built-in scenarios

Exit codes:
- 0  all thresholds passed
- 1  the run itself failed
- 2  invalid configuration
- 99 at least one threshold failed
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from vuload.config import LoadTestOptions, ScenarioSpec, get_settings, load_options
from vuload.errors import ConfigurationError, ThresholdViolation
from vuload.runner import LoadTestResult, LoadTestRunner
from vuload.scenarios import list_scenarios

EXIT_OK = 0
EXIT_RUN_ERROR = 1
EXIT_CONFIG_ERROR = 2
EXIT_THRESHOLDS_FAILED = 99

# Initialize
app = typer.Typer(
    name="vuload",
    help="vuload - virtual user load generator with threshold gating",
    add_completion=False,
)
console = Console()

logger = logging.getLogger("vuload.cli")


def configure_logging(verbose: bool = False) -> None:
    """Configure root logging once for CLI use."""
    level = logging.DEBUG if verbose else getattr(logging, get_settings().log_level, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    logging.getLogger().setLevel(level)


# ============================================================================
# Helper Functions
# ============================================================================


def _load_or_exit(config: Path, scenario: str | None) -> LoadTestOptions:
    try:
        options = load_options(config)
    except ConfigurationError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(EXIT_CONFIG_ERROR)

    if scenario:
        spec = ScenarioSpec(name=scenario, options=dict(options.scenario.options))
        options = options.model_copy(update={"scenario": spec})
    return options


def _stages_table(options: LoadTestOptions) -> Table:
    table = Table(title="Stages")
    table.add_column("#", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("Target VUs", justify="right")

    for index, stage in enumerate(options.stages, start=1):
        table.add_row(str(index), f"{stage.duration:g}s", str(stage.target))
    return table


def _thresholds_table(result: LoadTestResult) -> Table:
    table = Table(title="Thresholds")
    table.add_column("Metric", style="cyan")
    table.add_column("Expression")
    table.add_column("Observed", justify="right")
    table.add_column("Samples", justify="right")
    table.add_column("Result")

    for r in result.report.results:
        observed = "-" if r.observed is None else f"{r.observed:.4g}"
        outcome = "[green]PASS[/green]" if r.passed else "[red]FAIL[/red]"
        table.add_row(r.threshold.metric, r.threshold.expression, observed, str(r.sample_count), outcome)
    return table


def _metrics_table(result: LoadTestResult) -> Table:
    table = Table(title="Metrics")
    table.add_column("Metric", style="cyan")
    for column in ("count", "rate", "avg", "med", "p95", "max"):
        table.add_column(column, justify="right")

    for name, stats in result.metrics.items():
        table.add_row(name, *(str(stats[c]) for c in ("count", "rate", "avg", "med", "p95", "max")))
    return table


# ============================================================================
# Commands
# ============================================================================


@app.command()
def run(
    config: Path = typer.Argument(..., help="Load test configuration (YAML or JSON)"),
    scenario: str = typer.Option(None, "--scenario", "-s", help="Override scenario: name or module:attribute"),
    output: str = typer.Option(None, "--output", "-o", help="Output file for results"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Run a load test and exit non-zero if any threshold fails."""
    configure_logging(verbose)
    options = _load_or_exit(config, scenario)

    try:
        runner = LoadTestRunner(options, handle_signals=True)
    except ConfigurationError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(EXIT_CONFIG_ERROR)

    console.print(Panel(
        f"[bold]Scenario:[/bold] {runner.scenario_name}\n"
        f"[bold]Stages:[/bold] {len(options.stages)}\n"
        f"[bold]Duration:[/bold] {options.total_duration:g}s\n"
        f"[bold]Max VUs:[/bold] {options.max_target}\n"
        f"[bold]Thresholds:[/bold] {len(runner.thresholds)}",
        title="Load Test Configuration",
    ))

    result = asyncio.run(runner.run())

    console.print(_metrics_table(result))
    console.print(_thresholds_table(result))
    console.print("\n" + result.summary())

    if output:
        result.save(output)
        console.print(f"\n[green]Results saved to {output}[/green]")

    if result.error:
        console.print(f"[red]Run failed: {result.error}[/red]")
        raise typer.Exit(EXIT_RUN_ERROR)

    try:
        result.raise_for_thresholds()
    except ThresholdViolation as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(EXIT_THRESHOLDS_FAILED)

    console.print("[green]All thresholds passed[/green]")


@app.command()
def validate(
    config: Path = typer.Argument(..., help="Load test configuration (YAML or JSON)"),
) -> None:
    """Parse a configuration and show what would run."""
    options = _load_or_exit(config, None)

    try:
        thresholds = options.compile_thresholds()
    except ConfigurationError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(EXIT_CONFIG_ERROR)

    console.print(_stages_table(options))

    table = Table(title="Thresholds")
    table.add_column("Metric", style="cyan")
    table.add_column("Expression")
    table.add_column("Abort on fail")
    for t in thresholds:
        table.add_row(t.metric, t.expression, "yes" if t.abort_on_fail else "no")
    console.print(table)

    console.print(
        f"[green]Configuration OK[/green]: scenario {options.scenario.name}, "
        f"{options.total_duration:g}s, up to {options.max_target} VUs"
    )


@app.command()
def scenarios() -> None:
    """List built-in scenarios."""
    table = Table(title="Available Scenarios")
    table.add_column("Name", style="cyan")
    table.add_column("Description")

    for s in list_scenarios():
        table.add_row(s["name"], s["description"])

    console.print(table)


# ============================================================================
# Entry Point
# ============================================================================


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
