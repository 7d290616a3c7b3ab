"""Operator alerts command."""

from __future__ import annotations

import json

from rich.console import Console

from ..alerts import format_alert, read_alerts
from ..config import PipelineConfig


def run_alerts(config: PipelineConfig, *, last_n: int | None = None, output_json: bool = False) -> int:
    """Display operator alerts, oldest first."""
    alerts = read_alerts(config.state_dir, last_n=last_n)

    if output_json:
        print(json.dumps([a.to_dict() for a in alerts], indent=2))
        return 0

    console = Console()
    if not alerts:
        console.print("[dim]No operator alerts.[/dim]")
        return 0

    for alert in alerts:
        console.print(format_alert(alert), highlight=False)
        console.print()
    return 0
