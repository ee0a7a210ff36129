#!/usr/bin/env python3
"""
Main CLI Entry Point for txfeed

Command-line access to the transaction feed: list a filtered feed, add and
delete transactions, inspect configuration.
"""

import logging
import os

import click

from ..core.config import reload_config


@click.group()
@click.option(
    "--config-env",
    type=click.Choice(["development", "test", "production"]),
    help="Override environment configuration",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, config_env: str | None, verbose: bool, debug: bool) -> None:
    """
    txfeed - Optimistic Transaction Feed

    Browse and edit the unified expense/income feed of a transactions API.
    """
    ctx.ensure_object(dict)

    if config_env:
        os.environ["TXFEED_ENV"] = config_env

    if debug:
        os.environ["LOG_LEVEL"] = "DEBUG"

    ctx.obj["verbose"] = verbose
    ctx.obj["debug"] = debug
    try:
        ctx.obj["config"] = reload_config()
    except ValueError as e:
        raise click.ClickException(str(e)) from e

    if debug:
        logging.getLogger().setLevel(logging.DEBUG)
        logging.getLogger("txfeed").setLevel(logging.DEBUG)
        click.echo("Debug logging enabled")

    if verbose:
        click.echo(f"Environment: {ctx.obj['config'].environment.value}")
        click.echo(f"API: {ctx.obj['config'].api.base_url}")


@main.command()
@click.pass_context
def version(ctx: click.Context) -> None:
    """Show version information."""
    from txfeed import __author__, __version__

    click.echo(f"txfeed v{__version__}")
    click.echo(f"Author: {__author__}")


@main.command()
@click.option("--show-secrets", is_flag=True, help="Print tokens instead of redacting them")
@click.pass_context
def config(ctx: click.Context, show_secrets: bool) -> None:
    """Show current configuration."""
    config_obj = ctx.obj["config"]
    values = config_obj.to_dict(include_sensitive=show_secrets)

    click.echo("Current Configuration:")
    click.echo(f"  Environment: {values['environment']}")
    click.echo(f"  API URL: {values['api']['base_url']}")
    click.echo(f"  API Timeout: {values['api']['timeout']}s")
    click.echo(f"  Access Token: {values['api']['access_token'] or '(not set)'}")
    click.echo(f"  Refresh Token: {values['api']['refresh_token'] or '(not set)'}")
    click.echo(f"  Page Limit: {values['feed']['page_limit']}")
    click.echo(f"  Settle Window: {values['feed']['settle_window_seconds']}s")
    click.echo(f"  Stale Time: {values['feed']['stale_time_seconds']}s")
    click.echo(f"  Debug Mode: {values['debug']}")
    click.echo(f"  Log Level: {values['log_level']}")


# Import feed commands
from .feed import add, delete, list_transactions  # noqa: E402

main.add_command(list_transactions)
main.add_command(add)
main.add_command(delete)


if __name__ == "__main__":
    main()
