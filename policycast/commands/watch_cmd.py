"""Watch command - submit event files dropped into an inbox."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.markup import escape

from ..config import PipelineConfig
from ..errors import ConfigError, PipelineHalted, StateLocked
from ..pipeline import Accepted, build_pipeline
from ..watcher import InboxResult, run_watch_loop


def run_watch(config: PipelineConfig, inbox: Path) -> int:
    """
    Watch an inbox directory and submit every event file written to it.

    This is a blocking command that runs until interrupted (Ctrl+C).
    Handled files are moved to processed/ or rejected/ inside the inbox.
    """
    console = Console(stderr=True)

    try:
        pipeline = build_pipeline(config)
    except (ConfigError, StateLocked) as e:
        console.print(f"Cannot start pipeline: {e}", style="bold red")
        return 2

    console.print(f"[bold]Watching[/bold] {inbox}")
    console.print(f"  State: {config.state_dir}")
    console.print(f"  Digest period: {config.digest.period_seconds:g}s")
    console.print()
    console.print("[dim]Press Ctrl+C to stop watching[/dim]")
    console.print()

    file_count = 0
    event_count = 0

    def on_result(result: InboxResult) -> None:
        nonlocal file_count, event_count
        file_count += 1
        timestamp = datetime.now().strftime("%H:%M:%S")
        if result.error:
            console.print(f"[dim]{timestamp}[/dim] [red]x[/red] {escape(result.error)}", highlight=False)
            return
        for r in result.results:
            if isinstance(r, Accepted):
                event_count += 1
                console.print(
                    f"[dim]{timestamp}[/dim] [green]+[/green] {r.event_id} "
                    f"({r.classified.tier.value}) -> {', '.join(r.plan.channels)}",
                    highlight=False,
                )
            else:
                console.print(f"[dim]{timestamp}[/dim] [red]x[/red] rejected: {escape(str(r.error))}", highlight=False)

    exit_code = 0
    try:
        run_watch_loop(inbox, pipeline, on_result=on_result)
    except KeyboardInterrupt:
        console.print()
    except PipelineHalted as e:
        console.print(f"Pipeline halted: {e}", style="bold red")
        exit_code = 2
    finally:
        pipeline.drain()
        pipeline.close()

    console.print(f"[bold]Stopped.[/bold] {file_count} file(s), {event_count} event(s) accepted.")
    return exit_code
