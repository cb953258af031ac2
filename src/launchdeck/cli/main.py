"""Command-line dispatcher for LaunchDeck.

Implements ``launchdeck <provider> <action> <config-file>``: resolves the
configuration, constructs the provider deployer and runs one lifecycle action.
"""

from __future__ import annotations

import json
import signal
import sys
from collections.abc import Callable, Generator
from contextlib import contextmanager
from pathlib import Path
from typing import NoReturn

import click

from launchdeck.deploy.deployers import init_deployer
from launchdeck.deploy.logs import CancellationToken
from launchdeck.lib.errors import ConfigError, LaunchDeckError
from launchdeck.lib.logging_config import get_logger, setup_logging
from launchdeck.models.deployment import (
    Action,
    DeployResult,
    DestroyReport,
    Provider,
    StepOutcome,
)

logger = get_logger(__name__)

EXIT_USAGE = 1
EXIT_CONFIG = 2
EXIT_FAILURE = 3
EXIT_DESTROY_INCOMPLETE = 4
EXIT_INTERRUPTED = 130

PROVIDER_NAMES = [p.value for p in Provider]
ACTION_NAMES = [a.value for a in Action]

OUTCOME_COLORS = {
    StepOutcome.DELETED: "green",
    StepOutcome.NOT_FOUND: "yellow",
    StepOutcome.FAILED: "red",
}


@contextmanager
def handle_deployment_errors() -> Generator[None, None, None]:
    """Map LaunchDeck exceptions to user feedback and exit codes.

    Exit codes:
        2: Configuration error
        3: Authentication, provisioning, build or deployment error
        130: Interrupted by the operator
    """
    try:
        yield
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        click.secho("Error: Configuration error", fg="red", err=True)
        click.echo(f"  {e.message}", err=True)
        sys.exit(EXIT_CONFIG)
    except LaunchDeckError as e:
        logger.error(f"{type(e).__name__}: {e}")
        click.secho("Error: operation failed", fg="red", err=True)
        click.echo(f"  {getattr(e, 'message', str(e))}", err=True)
        sys.exit(EXIT_FAILURE)
    except KeyboardInterrupt:
        click.secho("\nInterrupted.", fg="yellow", err=True)
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(EXIT_FAILURE)


def _usage_error(ctx: click.Context, message: str) -> NoReturn:
    click.echo(ctx.get_usage(), err=True)
    click.echo(f"Providers: {', '.join(PROVIDER_NAMES)}", err=True)
    click.echo(f"Actions:   {', '.join(ACTION_NAMES)}", err=True)
    click.secho(f"Error: {message}", fg="red", err=True)
    sys.exit(EXIT_USAGE)


@click.command(name="launchdeck")
@click.argument("provider", required=False)
@click.argument("action", required=False)
@click.argument("config_file", required=False)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose debug logging",
)
@click.option(
    "--quiet",
    "-q",
    is_flag=True,
    help="Suppress progress output",
)
@click.version_option(package_name="launchdeck")
@click.pass_context
def main(
    ctx: click.Context,
    provider: str | None,
    action: str | None,
    config_file: str | None,
    verbose: bool,
    quiet: bool,
) -> None:
    """Provision, deploy, destroy and tail logs of a containerized service.

    PROVIDER is one of aws-serverless, aws-cluster, azure-containerapp or
    gcp-run. ACTION is one of setup, deploy, destroy or logs.

    Runs against the same service are not locked; do not deploy or destroy
    one service from two terminals at once.

    Example:

        launchdeck aws-cluster deploy deploy/aws-cluster.yaml
    """
    if not provider or not action or not config_file:
        _usage_error(ctx, "PROVIDER, ACTION and CONFIG_FILE are required")
    if provider not in PROVIDER_NAMES:
        _usage_error(ctx, f"Unknown provider: {provider}")
    if action not in ACTION_NAMES:
        _usage_error(ctx, f"Unknown action: {action}")
    if not Path(config_file).is_file():
        _usage_error(ctx, f"Config file not found: {config_file}")

    setup_logging(verbose=verbose, quiet=quiet)

    with handle_deployment_errors():
        deployer = init_deployer(provider, config_file)
        selected = Action(action)

        if selected == Action.SETUP:
            deployer.setup()
            if not quiet:
                click.secho("Setup complete", fg="green", bold=True)
        elif selected == Action.DEPLOY:
            _display_deploy_summary(deployer.deploy(), quiet)
        elif selected == Action.DESTROY:
            report = deployer.destroy()
            _display_destroy_report(report, quiet)
            if not report.succeeded:
                sys.exit(EXIT_DESTROY_INCOMPLETE)
        else:
            _tail_logs(deployer.show_logs)


def _tail_logs(
    show_logs: Callable[[CancellationToken, Callable[[str], None]], None],
) -> None:
    """Run a log tailer until SIGINT cancels it."""
    token = CancellationToken()
    previous = signal.signal(signal.SIGINT, lambda *_: token.cancel())
    try:
        show_logs(token, click.echo)
    finally:
        signal.signal(signal.SIGINT, previous)


def mcp_client_config(result: DeployResult) -> dict[str, dict[str, str]]:
    """Build the MCP client configuration block for a deployed service."""
    return {result.service_name: {"type": "http", "url": result.tool_url or ""}}


def _display_deploy_summary(result: DeployResult, quiet: bool) -> None:
    """Display deploy summary.

    Args:
        result: Deploy result with the service URL
        quiet: If True, only print the URL
    """
    if quiet:
        click.echo(result.url or "")
        return

    click.echo()
    click.secho("=" * 60, fg="green")
    click.secho("  Deployment Successful!", fg="green", bold=True)
    click.secho("=" * 60, fg="green")
    click.echo()
    click.echo(f"  Service:   {result.compute_name}")
    click.echo(f"  Image:     {result.image_uri}")
    if result.url:
        click.echo(f"  URL:       {result.url}")
        click.echo(f"  Health:    {result.health_url}")
        click.echo()
        click.secho("  MCP client configuration:", bold=True)
        for line in json.dumps(mcp_client_config(result), indent=2).splitlines():
            click.echo(f"    {line}")
    else:
        click.echo("  URL:       (not available yet)")
    if not result.stable:
        click.echo()
        click.secho(
            "  Warning: the service had not stabilized when the wait ended; "
            "it may take a few more minutes to become reachable.",
            fg="yellow",
        )
    click.echo()


def _display_destroy_report(report: DestroyReport, quiet: bool) -> None:
    """Display each destroy step with its outcome, then any manual follow-up."""
    failed = report.failed_steps
    if quiet:
        click.echo("failed" if failed else "deleted")
        return

    click.echo()
    click.secho(f"Destroy report for '{report.service_name}'", bold=True)
    for step in report.steps:
        outcome = click.style(
            f"{step.outcome.value:<10}", fg=OUTCOME_COLORS[step.outcome]
        )
        click.echo(f"  {outcome} {step.step}")
    click.echo()

    if not failed:
        click.secho("Deployment Destroyed", fg="green", bold=True)
        return

    click.secho(
        f"{len(failed)} step(s) failed; delete these resources manually:",
        fg="red",
        bold=True,
    )
    for step in failed:
        click.echo(f"  - {step.step}: {step.error}")
    click.echo()


if __name__ == "__main__":  # pragma: no cover
    main()
