"""
Command Line Interface for lakestack.
"""
import asyncio
import logging
import signal

import click

from ..errors import ConfigurationError
from ..MANAGERS.orchestration_controller import OrchestrationController
from ..MODELS.service_state import RunOutcome
from ..PARSERS.registry_parser import load_registry
from .report import render_run_report, render_status_report, status_ok

EXIT_CONFIG_ERROR = 2

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


@click.group()
@click.option('--file', '-f', default='lakestack.yml', show_default=True, help='Stack registry file')
@click.option('--env-file', default=None, help='Optional .env file used for interpolation')
@click.option('--log-level', default='INFO', show_default=True,
              type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False))
@click.pass_context
def cli(ctx, file, env_file, log_level):
    """
    lakestack - bring up a data stack in dependency order.

    Starts services only once their dependencies are ready, waits for real
    readiness and provisions shared buckets, schemas and users exactly once.
    """
    ctx.ensure_object(dict)
    ctx.obj['file'] = file
    ctx.obj['env_file'] = env_file
    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT, force=True)


def _controller(ctx) -> OrchestrationController:
    try:
        config = load_registry(ctx.obj['file'], env_file=ctx.obj['env_file'])
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(EXIT_CONFIG_ERROR)
    return OrchestrationController(config)


async def _bring_up(controller: OrchestrationController):
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, controller.request_stop)
        except (NotImplementedError, RuntimeError):
            # not supported on this platform / outside the main thread
            pass
    report = await controller.run()
    if controller.stop_requested:
        click.echo("Stopping services that were started...")
        await controller.down()
    return report


@cli.command()
@click.pass_context
def run(ctx):
    """Start services in dependency order and provision their resources."""
    controller = _controller(ctx)
    try:
        report = asyncio.run(_bring_up(controller))
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(EXIT_CONFIG_ERROR)
    click.echo(render_run_report(report))
    ctx.exit(0 if report.outcome == RunOutcome.ALL_READY else 1)


@cli.command()
@click.pass_context
def status(ctx):
    """Show live service health and provisioning state without changing anything."""
    controller = _controller(ctx)
    statuses = asyncio.run(controller.status())
    click.echo(render_status_report(statuses))
    ctx.exit(0 if status_ok(statuses) else 1)


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={}, auto_envvar_prefix='LAKESTACK')


if __name__ == '__main__':
    main()
