"""
Tests for the policycast CLI commands.

The run_* functions are called directly with fake adapters; the click group
is exercised through CliRunner for option parsing and config errors.
"""

from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path

import pytest
from click.testing import CliRunner

from conftest import NOW, FakeAdapter, event_payload, no_sleep
from policycast.cli import cli
from policycast.commands.alerts_cmd import run_alerts
from policycast.commands.digest_cmd import run_digest_tick, run_digest_windows
from policycast.commands.ledger_cmd import run_ledger_show, run_ledger_summary
from policycast.commands.submit_cmd import run_submit
from policycast.config import EMAIL, SMS, WEBHOOK
from policycast.pipeline import build_pipeline


def _fakes() -> list[FakeAdapter]:
    return [FakeAdapter(c) for c in (WEBHOOK, SMS, EMAIL)]


def _write_events(path: Path, *payloads: dict) -> Path:
    path.write_text(json.dumps(list(payloads)), encoding="utf-8")
    return path


@pytest.fixture
def populated(config, clock):
    """State dir with one delivered HIGH event and one LOW event."""
    with build_pipeline(config, _fakes(), sleep=no_sleep, clock=clock) as p:
        p.submit_event(event_payload("evt-high", hint="high")).wait(timeout=10)
        p.submit_event(event_payload("evt-low", policy="naming", change="deleted")).wait(timeout=10)
    return config


class TestSubmit:
    def test_json_output(self, config, tmp_path: Path, capsys):
        source = _write_events(tmp_path / "events.json", event_payload("a", hint="high"))

        code = run_submit(config, str(source), output_json=True, adapters=_fakes())

        assert code == 0
        rows = json.loads(capsys.readouterr().out)
        assert rows[0]["event_id"] == "a"
        assert rows[0]["tier"] == "high"
        assert rows[0]["tasks"]["a:webhook"] == "delivered"

    def test_rejected_event_exits_1(self, config, tmp_path: Path, capsys):
        source = _write_events(
            tmp_path / "events.json",
            event_payload("ok"),
            event_payload("bad", change="renamed"),
            "not an object",
        )

        code = run_submit(config, str(source), output_json=True, adapters=_fakes())

        assert code == 1
        rows = json.loads(capsys.readouterr().out)
        assert [r["accepted"] for r in rows] == [True, False, False]
        assert rows[1]["field"] == "change"
        assert rows[2]["field"] == "payload"

    def test_table_output(self, config, tmp_path: Path, capsys):
        source = _write_events(tmp_path / "events.json", event_payload("low", policy="naming", change="deleted"))
        assert run_submit(config, str(source), adapters=_fakes()) == 0
        out = capsys.readouterr().out
        assert "Submitted events" in out
        assert "ledger=delivered (+ digest)" in out

    def test_unreadable_source(self, config, tmp_path: Path):
        assert run_submit(config, str(tmp_path / "missing.json"), adapters=_fakes()) == 2

    def test_undecodable_source(self, config, tmp_path: Path):
        source = tmp_path / "events.json"
        source.write_bytes(b"\xff\xfe{\"id\": \"a\"}")
        assert run_submit(config, str(source), adapters=_fakes()) == 2

    def test_busy_state_dir(self, pipeline, config, tmp_path: Path, adapters):
        source = _write_events(tmp_path / "events.json", event_payload("a"))
        assert run_submit(config, str(source), adapters=_fakes()) == 2
        assert pipeline.ledger.count() == 0
        assert all(a.sent == [] for a in adapters.values())

    def test_missing_adapter_is_config_error(self, config, tmp_path: Path):
        source = _write_events(tmp_path / "events.json", event_payload("a"))
        assert run_submit(config, str(source), adapters=[FakeAdapter(WEBHOOK)]) == 2


class TestLedgerCommands:
    def test_show_json(self, populated, capsys):
        assert run_ledger_show(populated, "evt-high", output_json=True) == 0
        records = json.loads(capsys.readouterr().out)
        assert sorted(r["channel"] for r in records) == ["email", "ledger", "sms", "webhook"]

    def test_show_table(self, populated, capsys):
        assert run_ledger_show(populated, "evt-low") == 0
        assert "Deliveries for evt-low" in capsys.readouterr().out

    def test_show_unknown_event(self, populated):
        assert run_ledger_show(populated, "nope") == 1

    def test_summary_json(self, populated, capsys):
        assert run_ledger_summary(populated, output_json=True) == 0
        summary = json.loads(capsys.readouterr().out)
        assert summary["total_records"] == 5
        assert summary["events"] == 2
        assert summary["abandoned"] == []

    def test_summary_empty(self, config, capsys):
        assert run_ledger_summary(config) == 0
        assert "No delivery records." in capsys.readouterr().out


class TestDigestCommands:
    def test_tick_then_windows(self, populated, capsys):
        assert run_digest_tick(populated, adapters=_fakes()) == 0
        capsys.readouterr()

        assert run_digest_windows(populated, output_json=True) == 0
        windows = json.loads(capsys.readouterr().out)
        assert len(windows) == 1
        assert windows[0]["event_ids"] == ["evt-low"]

    def test_windows_empty(self, config, capsys):
        assert run_digest_windows(config) == 0
        assert "No digest windows" in capsys.readouterr().out

    def test_second_tick_starts_where_first_ended(self, populated, clock, capsys):
        with build_pipeline(populated, _fakes(), sleep=no_sleep, clock=clock) as p:
            first = p.tick_digest(NOW + timedelta(hours=1))
        assert run_digest_tick(populated, adapters=_fakes()) == 0

        run_digest_windows(populated, output_json=True)
        windows = json.loads(capsys.readouterr().out)
        assert windows[0]["window_id"] == first.window_id
        assert windows[1]["start"] == windows[0]["end"]


class TestAlertsCommand:
    def test_abandoned_delivery_is_listed(self, config, tmp_path: Path, capsys):
        source = _write_events(tmp_path / "events.json", event_payload("a", hint="high"))
        adapters = _fakes()
        adapters[0].failures = -1
        run_submit(config, str(source), output_json=True, adapters=adapters)
        capsys.readouterr()

        assert run_alerts(config, output_json=True) == 0
        alerts = json.loads(capsys.readouterr().out)
        assert [(a["kind"], a["subject"]) for a in alerts] == [("task_abandoned", "a:webhook")]

    def test_no_alerts(self, config, capsys):
        assert run_alerts(config) == 0
        assert "No operator alerts." in capsys.readouterr().out


class TestClickGroup:
    def _config_file(self, tmp_path: Path) -> Path:
        path = tmp_path / "policycast.toml"
        state = (tmp_path / "state").as_posix()
        path.write_text(f'state_dir = "{state}"\nlog_level = "WARNING"\n', encoding="utf-8")
        return path

    def test_help(self):
        result = CliRunner().invoke(cli, ["--help"], obj={})
        assert result.exit_code == 0
        assert "submit" in result.output
        assert "watch" in result.output

    def test_alerts_json(self, tmp_path: Path):
        result = CliRunner().invoke(cli, ["-c", str(self._config_file(tmp_path)), "alerts", "--json"], obj={})
        assert result.exit_code == 0
        assert json.loads(result.output) == []

    def test_invalid_config(self, tmp_path: Path):
        bad = tmp_path / "bad.toml"
        bad.write_text("max_workers = 0\n", encoding="utf-8")
        result = CliRunner().invoke(cli, ["-c", str(bad), "alerts"], obj={})
        assert result.exit_code == 1
        assert "Invalid configuration" in result.output

    def test_ledger_show_unknown(self, tmp_path: Path):
        result = CliRunner().invoke(cli, ["-c", str(self._config_file(tmp_path)), "ledger", "show", "x"], obj={})
        assert result.exit_code == 1
