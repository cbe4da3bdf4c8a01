"""CLI entry point for prrally.

Commands:
  rally    — let a reviewer agent and a reviewee agent iterate on a PR or local diff
  history  — display past rallies from the configured store
"""

from __future__ import annotations

import importlib.metadata
import logging

import click
from rich.console import Console
from rich.logging import RichHandler

from prrally_cli.commands.history import history_cmd
from prrally_cli.commands.rally import rally_cmd

console = Console()


def _build_store(config: dict):
    """Instantiate the configured store from .prrally.yml settings.

      store: sqlite → SQLiteStore (store_path, default .prrally.db)
      (default)     → NoOpStore  (no persistence)

    Lives in the CLI so neither prrally_core nor prrally_store know the
    config file format.
    """
    from prrally_store.noop import NoOpStore

    store_type = config.get("store", "noop")

    if store_type == "sqlite":
        from prrally_store.sqlite import SQLiteStore

        return SQLiteStore(db_path=config.get("store_path") or ".prrally.db")

    if store_type != "noop":
        console.print(f"[yellow]Unknown store {store_type!r}. Falling back to no store.[/yellow]")
    return NoOpStore()


def _configure_logging(verbose: bool) -> None:
    # stderr keeps stdout clean for --headless JSON output.
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


@click.group()
@click.version_option(
    version=importlib.metadata.version("prrally"),
    prog_name="prrally",
)
@click.option(
    "--config",
    "config_path",
    default=".prrally.yml",
    show_default=True,
    help="Path to the configuration file.",
    envvar="PRRALLY_CONFIG",
)
@click.option("--verbose", "-v", is_flag=True, help="Show debug logs, including streamed agent output.")
@click.pass_context
def main(ctx: click.Context, config_path: str, verbose: bool):
    """Let AI agents review and fix pull requests until they agree."""
    from prrally_cli.auth import resolve_github_token
    from prrally_core.config import load_config
    from prrally_core.errors import ConfigError

    _configure_logging(verbose)
    ctx.ensure_object(dict)

    try:
        config = load_config(config_path)
    except ConfigError as e:
        raise click.UsageError(str(e))

    # Resolve the token once so all subcommands share it.
    token = resolve_github_token()
    if token:
        config["github_token"] = token

    store = _build_store(config)
    ctx.obj["store"] = store
    ctx.obj["config"] = config
    ctx.obj["config_path"] = config_path
    ctx.call_on_close(store.close)


main.add_command(rally_cmd)
main.add_command(history_cmd)
