"""
Command-line interface for the distributed benchmark launcher.

Deploys a benchmark topology, runs the timed measurement window, collects the
artifacts and tears everything down again.
"""

from __future__ import annotations

import logging
import signal
from pathlib import Path
from typing import Optional

import typer

from dl_common.errors import ConfigurationError
from dl_common.logs import configure_logging
from dl_controller.api import ConfigService, Orchestrator
from dl_ui.presenters.report import (
    build_artifacts_table,
    build_plan_table,
    build_roles_table,
    summary_line,
)
from dl_ui.ui.console import ConsoleUI

logger = logging.getLogger(__name__)

EXIT_FAILED = 1
EXIT_CONFIG_ERROR = 2

app = typer.Typer(
    help="Deploy a multi-service benchmark, run it for a fixed window and collect its results.",
    add_completion=False,
)


@app.command()
def launch(
    benchmark: Path = typer.Option(
        ...,
        "--benchmark",
        "-b",
        help="Benchmark descriptor (TOML, YAML or JSON) declaring hosts and services.",
    ),
    configfile: Optional[Path] = typer.Option(
        None,
        "--configfile",
        "-c",
        help="Runtime configuration descriptor; built-in defaults apply when omitted.",
    ),
    output_dir: Optional[Path] = typer.Option(
        None,
        "--output-dir",
        "-o",
        help="Directory receiving artifacts and the run report (overrides the config).",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        "-t",
        help="Measurement window in seconds (overrides the config).",
    ),
    warmup: Optional[float] = typer.Option(
        None,
        "--warmup",
        help="Delay between readiness and measurement in seconds (overrides the config).",
    ),
    validate_only: bool = typer.Option(
        False,
        "--validate-only",
        help="Validate both descriptors, print the deployment plan and exit.",
    ),
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level",
        help="Log level (DEBUG, INFO, WARNING, ...); defaults to DL_LOG_LEVEL or INFO.",
    ),
    debug: bool = typer.Option(
        False,
        "--debug",
        help="Enable verbose debug logging.",
    ),
    json_logs: Optional[bool] = typer.Option(
        None,
        "--json-logs/--no-json-logs",
        help="Render console logs as JSON; defaults to DL_LOG_JSON.",
    ),
) -> None:
    """Run one benchmark end to end."""
    configure_logging(level=log_level, debug=debug, json=json_logs, force=True)
    ui = ConsoleUI()

    try:
        topology, config = ConfigService().load(
            benchmark,
            configfile,
            output_dir=output_dir,
            timeout=timeout,
            warmup=warmup,
        )
    except ConfigurationError as exc:
        ui.show_error(f"Configuration error: {exc}")
        raise typer.Exit(EXIT_CONFIG_ERROR)

    ui.show_table(build_plan_table(topology))
    if validate_only:
        ui.show_success("Descriptors are valid.")
        return

    orchestrator = Orchestrator(topology, config)
    previous = _install_sigterm(orchestrator)
    try:
        report = orchestrator.run()
    finally:
        _restore_sigterm(previous)

    ui.show_table(build_roles_table(report))
    if report.artifacts:
        ui.show_table(build_artifacts_table(report))
    ui.show_info(f"Run report saved to {config.output_dir / 'run_report.json'}")
    if not report.success:
        ui.show_error(summary_line(report))
        raise typer.Exit(EXIT_FAILED)
    ui.show_success(summary_line(report))


def _install_sigterm(orchestrator: Orchestrator):
    """Turn SIGTERM into an early end of the run; teardown still happens."""

    def _handle(signum, frame) -> None:
        logger.warning("SIGTERM received; ending the run")
        orchestrator.controller.interrupt()

    try:
        return signal.signal(signal.SIGTERM, _handle)
    except ValueError:
        # Not in the main thread.
        return None


def _restore_sigterm(previous) -> None:
    if previous is not None:
        signal.signal(signal.SIGTERM, previous)


def main() -> None:
    """Entry point for the `launcher` console script."""
    app()


if __name__ == "__main__":
    main()
