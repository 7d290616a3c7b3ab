"""Submit command - push event files through the pipeline."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Iterable

import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from ..channels import ChannelAdapter
from ..config import PipelineConfig
from ..errors import ConfigError, LedgerWriteFault, PipelineHalted, StateLocked
from ..pipeline import Accepted, SubmitResult, build_pipeline
from ..watcher import load_event_payloads


def read_payloads(source: str) -> list[Any]:
    """Read events from a file path, or from stdin when ``source`` is ``-``."""
    if source == "-":
        return load_event_payloads(sys.stdin.read(), suffix=".json")
    path = Path(source)
    return load_event_payloads(path.read_text(encoding="utf-8"), suffix=path.suffix)


def _result_dict(result: SubmitResult, statuses: dict[str, str]) -> dict[str, Any]:
    if isinstance(result, Accepted):
        return {
            "event_id": result.event_id,
            "accepted": True,
            "tier": result.classified.tier.value,
            "digest": result.plan.deferred,
            "tasks": statuses,
        }
    return {
        "accepted": False,
        "field": result.error.field,
        "reason": result.error.reason,
        "message": result.error.message,
    }


def run_submit(
    config: PipelineConfig,
    source: str,
    *,
    output_json: bool = False,
    adapters: Iterable[ChannelAdapter] | None = None,
) -> int:
    """
    Submit every event in ``source`` and wait for delivery.

    Returns 0 if all events were accepted, 1 if any was rejected, 2 on an
    unreadable source, a configuration error, a busy state directory or a
    halted pipeline.
    """
    console = Console()
    err = Console(stderr=True)

    try:
        payloads = read_payloads(source)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError, yaml.YAMLError) as e:
        err.print(f"Cannot read events from {source}: {e}", style="bold red")
        return 2

    try:
        pipeline = build_pipeline(config, adapters)
    except (ConfigError, StateLocked) as e:
        err.print(f"Cannot start pipeline: {e}", style="bold red")
        return 2

    rows: list[dict[str, Any]] = []
    exit_code = 0
    try:
        for raw in payloads:
            if not isinstance(raw, dict):
                rows.append({"accepted": False, "field": "payload", "reason": "invalid",
                             "message": "event payload must be an object"})
                exit_code = 1
                continue
            result = pipeline.submit_event(raw)
            statuses: dict[str, str] = {}
            if isinstance(result, Accepted):
                statuses = {tid: s.value for tid, s in result.wait().items()}
            else:
                exit_code = 1
            rows.append(_result_dict(result, statuses))
    except (PipelineHalted, LedgerWriteFault) as e:
        err.print(f"Pipeline halted: {e}", style="bold red")
        exit_code = 2
    finally:
        pipeline.close(cancel_pending=False)

    if output_json:
        print(json.dumps(rows, indent=2))
        return exit_code

    table = Table(title="Submitted events")
    table.add_column("event_id", style="cyan", no_wrap=True)
    table.add_column("tier", style="magenta")
    table.add_column("result")

    for row in rows:
        if row["accepted"]:
            tasks = ", ".join(
                f"{tid.rsplit(':', 1)[-1]}={status}" for tid, status in row["tasks"].items()
            )
            if row["digest"]:
                tasks += " (+ digest)"
            table.add_row(row["event_id"], row["tier"], tasks)
        else:
            table.add_row("-", "-", f"[red]rejected[/red] {escape(row['field'])}: {escape(row['message'])}")

    console.print(table)
    return exit_code
