"""Main CLI entry point for buildcontrol.

This module provides the Typer application that deploys the configured
targets and lists them.

Usage:
    buildcontrol deploy
    buildcontrol --config deploy.toml deploy production staging
    buildcontrol deploy preview --no-push
    buildcontrol targets
"""

from __future__ import annotations

import signal
from pathlib import Path
from typing import Annotated, Any, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from buildcontrol.config import (
    BuildControlConfig,
    TargetOptions,
    load_config,
    resolve_targets,
)
from buildcontrol.logging import setup_logging
from buildcontrol.pipeline.errors import InvalidConfigurationError
from buildcontrol.pipeline.models import DeployReport, DeployTarget
from buildcontrol.pipeline.orchestrator import DeployOrchestrator
from buildcontrol.redaction import redact

# Exit status for configuration errors
EXIT_CONFIG_ERROR = 2
# Exit status after SIGINT/SIGTERM
EXIT_INTERRUPTED = 130

app = typer.Typer(
    name="buildcontrol",
    help="buildcontrol: publish build output to git branches",
    no_args_is_help=True,
)

console = Console()


class AppContext:
    """Application context shared across CLI commands.

    Attributes:
        config: Loaded buildcontrol configuration
    """

    def __init__(self, config: BuildControlConfig):
        """Initialize application context.

        Args:
            config: buildcontrol configuration
        """
        self.config = config


# Global context holder
_app_context: AppContext | None = None


def get_app_context() -> AppContext:
    """Get the shared application context.

    Returns:
        AppContext instance with the loaded configuration

    Raises:
        RuntimeError: If context has not been initialized
    """
    if _app_context is None:
        raise RuntimeError("Application context not initialized. Call initialize_context first.")
    return _app_context


def initialize_context(config: BuildControlConfig) -> AppContext:
    """Initialize the global application context.

    Args:
        config: buildcontrol configuration

    Returns:
        Initialized AppContext instance
    """
    global _app_context
    _app_context = AppContext(config)
    return _app_context


def _raise_keyboard_interrupt(signum: int, frame: Any) -> None:
    raise KeyboardInterrupt


def _flag(value: bool) -> str:
    return "[green]yes[/green]" if value else "[dim]no[/dim]"


def _outcome_table(report: DeployReport) -> Table:
    table = Table(title="Deploy Results")
    table.add_column("Target", style="cyan")
    table.add_column("Remote")
    table.add_column("Branch")
    table.add_column("Status")
    table.add_column("Commit")
    table.add_column("Details")

    for outcome in report.outcomes:
        if not outcome.success:
            status = "[red]failed[/red]"
        elif outcome.pushed:
            status = "[green]pushed[/green]"
        else:
            status = "[yellow]local[/yellow]"
        details = outcome.message
        if outcome.error is not None:
            details = f"{outcome.error.value}: {details}"
        table.add_row(
            escape(outcome.target),
            escape(outcome.remote_url),
            escape(outcome.branch),
            status,
            outcome.commit_sha[:7] if outcome.commit_sha else "-",
            escape(details),
        )
    return table


def _targets_table(targets: list[DeployTarget]) -> Table:
    table = Table(title="Deploy Targets")
    table.add_column("Target", style="cyan")
    table.add_column("Dir")
    table.add_column("Remote")
    table.add_column("Branch")
    table.add_column("Work dir")
    table.add_column("Commit")
    table.add_column("Push")
    table.add_column("Auth")

    for target in targets:
        branch = target.branch
        if target.push_branch != target.branch:
            branch = f"{target.branch} -> {target.push_branch}"
        table.add_row(
            escape(target.name),
            escape(str(target.source_dir)),
            escape(redact(target.remote_url, target.secrets())),
            escape(branch),
            escape(str(target.work_dir)),
            _flag(target.commit),
            _flag(target.push),
            _flag(target.credentials is not None),
        )
    return table


@app.command()
def deploy(
    names: Annotated[
        Optional[list[str]],
        typer.Argument(help="Targets to deploy (default: all configured targets)"),
    ] = None,
    no_push: Annotated[
        bool,
        typer.Option("--no-push", help="Commit locally without pushing"),
    ] = False,
    no_commit: Annotated[
        bool,
        typer.Option("--no-commit", help="Stage the build output without committing"),
    ] = False,
) -> None:
    """Deploy build output to the configured targets.

    Args:
        names: Optional subset of target names, deployed in configuration order
        no_push: Disable pushing for every selected target
        no_commit: Disable committing for every selected target
    """
    ctx = get_app_context()
    config = ctx.config

    override_fields: dict[str, Any] = {}
    if no_push:
        override_fields["push"] = False
    if no_commit:
        override_fields["commit"] = False
    overrides = TargetOptions(**override_fields) if override_fields else None

    orchestrator = DeployOrchestrator()
    previous_handler = signal.signal(signal.SIGTERM, _raise_keyboard_interrupt)
    try:
        resolved = resolve_targets(
            config,
            names=names or None,
            remote_aliases=orchestrator.source_remotes(config.source_repo),
            overrides=overrides,
        )
        report = orchestrator.deploy(resolved, source_repo=config.source_repo)
    except InvalidConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {escape(e.message)}")
        raise typer.Exit(code=EXIT_CONFIG_ERROR)
    except KeyboardInterrupt:
        console.print("[yellow]Deploy interrupted[/yellow]")
        raise typer.Exit(code=EXIT_INTERRUPTED)
    finally:
        signal.signal(signal.SIGTERM, previous_handler)

    console.print(_outcome_table(report))

    if not report.success:
        console.print(f"[red]{len(report.failed)} of {len(report.outcomes)} target(s) failed[/red]")
        raise typer.Exit(code=report.exit_code)


@app.command()
def targets(
    names: Annotated[
        Optional[list[str]],
        typer.Argument(help="Targets to show (default: all configured targets)"),
    ] = None,
) -> None:
    """List the resolved deploy targets without running anything.

    Args:
        names: Optional subset of target names
    """
    ctx = get_app_context()
    config = ctx.config

    try:
        resolved = resolve_targets(
            config,
            names=names or None,
            remote_aliases=DeployOrchestrator().source_remotes(config.source_repo),
        )
    except InvalidConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {escape(e.message)}")
        raise typer.Exit(code=EXIT_CONFIG_ERROR)

    console.print(_targets_table(resolved))


@app.callback()
def main_callback(
    config_path: Annotated[
        Optional[Path],
        typer.Option(
            "--config",
            "-c",
            help="Path to configuration file (TOML format)",
            exists=True,
            dir_okay=False,
            readable=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Load configuration and configure logging.

    Args:
        config_path: Optional path to TOML configuration file
        verbose: Enable debug-level logging
    """
    try:
        config = load_config(config_path)
    except (OSError, ValueError) as e:
        console.print(f"[red]Error loading configuration:[/red] {escape(redact(e))}")
        raise typer.Exit(code=EXIT_CONFIG_ERROR)

    logging_config = config.logging
    if verbose:
        logging_config = logging_config.model_copy(update={"level": "DEBUG"})
    setup_logging(logging_config)

    initialize_context(config)

    if verbose:
        console.print("[dim]Debug logging enabled[/dim]")


if __name__ == "__main__":
    app()
