"""CLI entrypoint for policycast."""

import logging
import sys
from pathlib import Path

import click

from . import __version__
from .config import load_config
from .errors import ConfigError

DEFAULT_CONFIG_NAME = "policycast.toml"


def _auto_detect_config(start: Path) -> Path | None:
    """Find a policycast.toml by walking up from `start`."""
    cur = start.resolve()
    for p in (cur, *cur.parents):
        candidate = p / DEFAULT_CONFIG_NAME
        if candidate.is_file():
            return candidate
    return None


def _setup_logging(level: str) -> None:
    from rich.console import Console
    from rich.logging import RichHandler

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)],
        force=True,
    )


@click.group()
@click.version_option(__version__, prog_name="policycast")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, dir_okay=False, path_type=Path),
    default=None,
    help="Path to pipeline configuration TOML (defaults to auto-detected ./policycast.toml)",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Override the configured log level",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, log_level: str | None) -> None:
    """policycast - Policy-change notification pipeline.

    Ingest policy change events, fan them out to notification channels and
    keep an append-only delivery ledger.
    """
    ctx.ensure_object(dict)
    if config_path is None:
        config_path = _auto_detect_config(Path.cwd())

    try:
        config = load_config(config_path)
    except ConfigError as e:
        raise click.ClickException(f"Invalid configuration: {e}") from e

    _setup_logging(log_level or config.log_level)
    ctx.obj["config"] = config


@cli.command()
@click.argument("source", type=str)
@click.option("--json", "output_json", is_flag=True, help="Output results as JSON")
@click.pass_context
def submit(ctx: click.Context, source: str, output_json: bool) -> None:
    """Submit events from SOURCE and wait for delivery.

    SOURCE is a JSON object, JSON array, JSON Lines or YAML file; use - for
    stdin. Exits 1 if any event was rejected.
    """
    from .commands.submit_cmd import run_submit

    exit_code = run_submit(ctx.obj["config"], source, output_json=output_json)
    sys.exit(exit_code)


# -----------------------------------------------------------------------------
# Ledger commands
# -----------------------------------------------------------------------------


@cli.group()
def ledger() -> None:
    """Inspect the append-only delivery ledger."""
    pass


@ledger.command("show")
@click.argument("event_id", type=str)
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_context
def ledger_show(ctx: click.Context, event_id: str, output_json: bool) -> None:
    """Show every delivery record for EVENT_ID."""
    from .commands.ledger_cmd import run_ledger_show

    sys.exit(run_ledger_show(ctx.obj["config"], event_id, output_json=output_json))


@ledger.command("summary")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_context
def ledger_summary(ctx: click.Context, output_json: bool) -> None:
    """Summarize deliveries per channel and tier."""
    from .commands.ledger_cmd import run_ledger_summary

    sys.exit(run_ledger_summary(ctx.obj["config"], output_json=output_json))


# -----------------------------------------------------------------------------
# Digest commands
# -----------------------------------------------------------------------------


@cli.group()
def digest() -> None:
    """Digest of low and medium impact changes."""
    pass


@digest.command("tick")
@click.pass_context
def digest_tick(ctx: click.Context) -> None:
    """Seal the current digest window and send its summary now."""
    from .commands.digest_cmd import run_digest_tick

    sys.exit(run_digest_tick(ctx.obj["config"]))


@digest.command("windows")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_context
def digest_windows(ctx: click.Context, output_json: bool) -> None:
    """List sealed digest windows."""
    from .commands.digest_cmd import run_digest_windows

    sys.exit(run_digest_windows(ctx.obj["config"], output_json=output_json))


# -----------------------------------------------------------------------------
# Operator commands
# -----------------------------------------------------------------------------


@cli.command()
@click.option("--last", "last_n", type=int, default=None, help="Show only the last N alerts")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_context
def alerts(ctx: click.Context, last_n: int | None, output_json: bool) -> None:
    """Show operator alerts (abandoned deliveries, ledger faults)."""
    from .commands.alerts_cmd import run_alerts

    sys.exit(run_alerts(ctx.obj["config"], last_n=last_n, output_json=output_json))


@cli.command()
@click.argument(
    "inbox",
    type=click.Path(file_okay=False, dir_okay=True, path_type=Path),
)
@click.pass_context
def watch(ctx: click.Context, inbox: Path) -> None:
    """Watch INBOX and submit every event file written to it.

    Runs until interrupted (Ctrl+C). The digest scheduler runs in the
    background. Handled files are moved to INBOX/processed or INBOX/rejected.

    The watcher owns the state directory while it runs: submit and digest
    tick against the same state directory refuse to start.

    Examples:

        policycast watch ./inbox

        policycast -c /etc/policycast.toml watch /var/spool/policycast
    """
    from .commands.watch_cmd import run_watch

    sys.exit(run_watch(ctx.obj["config"], inbox))


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
