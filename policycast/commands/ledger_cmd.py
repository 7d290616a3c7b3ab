"""Ledger CLI commands."""

from __future__ import annotations

import json

from rich.console import Console
from rich.table import Table

from ..config import PipelineConfig
from ..ledger import DeliveryLedger
from ..tasks import TaskStatus


def run_ledger_show(config: PipelineConfig, event_id: str, *, output_json: bool = False) -> int:
    err = Console(stderr=True)
    ledger = DeliveryLedger(config.state_dir)
    records = ledger.query(event_id)
    if not records:
        err.print(f"No delivery records for event: {event_id}", style="bold red")
        return 1

    if output_json:
        print(json.dumps([r.to_dict() for r in records], indent=2))
        return 0

    table = Table(title=f"Deliveries for {event_id}")
    table.add_column("seq", justify="right")
    table.add_column("channel", style="cyan")
    table.add_column("status")
    table.add_column("tier", style="magenta")
    table.add_column("attempts", justify="right")
    table.add_column("recorded_at", style="dim")
    table.add_column("reason")

    for r in records:
        status = f"[green]{r.status.value}[/green]" if r.status == TaskStatus.DELIVERED else f"[red]{r.status.value}[/red]"
        table.add_row(
            str(r.sequence),
            r.channel,
            status,
            r.tier.value if r.tier else "",
            str(r.attempts),
            r.recorded_at.isoformat() if r.recorded_at else "",
            r.reason or "",
        )

    Console().print(table)
    return 0


def run_ledger_summary(config: PipelineConfig, *, output_json: bool = False) -> int:
    ledger = DeliveryLedger(config.state_dir)
    if output_json:
        print(json.dumps(ledger.summary(), indent=2))
    else:
        print(ledger.format_summary())
    return 0
