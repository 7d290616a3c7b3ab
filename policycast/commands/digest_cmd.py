"""Digest CLI commands."""

from __future__ import annotations

import json
from typing import Iterable

from rich.console import Console
from rich.table import Table

from ..channels import ChannelAdapter
from ..config import PipelineConfig
from ..digest import DigestWindowStore
from ..errors import ConfigError, LedgerWriteFault, PipelineHalted, StateLocked
from ..pipeline import build_pipeline


def run_digest_tick(
    config: PipelineConfig,
    *,
    adapters: Iterable[ChannelAdapter] | None = None,
) -> int:
    """Re-send unfinished windows, then seal and send the current window."""
    console = Console(stderr=True)
    try:
        pipeline = build_pipeline(config, adapters)
    except (ConfigError, StateLocked) as e:
        console.print(f"Cannot start pipeline: {e}", style="bold red")
        return 2

    try:
        resent = pipeline.digest.resume()
        window = pipeline.tick_digest()
    except (LedgerWriteFault, PipelineHalted) as e:
        console.print(f"Digest failed: {e}", style="bold red")
        return 2
    finally:
        pipeline.close(cancel_pending=False)

    for window_id in resent:
        console.print(f"Re-sent digest for window {window_id}", style="yellow")
    if window is None:
        console.print("[dim]Nothing to seal: current window is empty.[/dim]")
        return 0

    count = len(window.event_ids)
    console.print(
        f"Sealed window [cyan]{window.window_id}[/cyan] "
        f"({window.start.isoformat()} to {window.end.isoformat()}): {count} event(s)",
        highlight=False,
    )
    return 0


def run_digest_windows(config: PipelineConfig, *, output_json: bool = False) -> int:
    windows = DigestWindowStore(config.state_dir).windows()

    if output_json:
        print(json.dumps([w.to_dict() for w in windows], indent=2))
        return 0

    if not windows:
        Console().print("[dim]No digest windows sealed yet.[/dim]")
        return 0

    table = Table(title="Digest windows")
    table.add_column("window_id", style="cyan", no_wrap=True)
    table.add_column("start")
    table.add_column("end")
    table.add_column("events", justify="right")
    table.add_column("sealed_at", style="dim")
    for w in windows:
        table.add_row(
            w.window_id,
            w.start.isoformat(),
            w.end.isoformat(),
            str(len(w.event_ids)),
            w.sealed_at.isoformat(),
        )
    Console().print(table)
    return 0
