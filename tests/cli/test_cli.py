"""Tests for the threadline CLI commands."""

import json
import logging

import pytest
from click.testing import CliRunner

from threadline.cli import cli

pytestmark = pytest.mark.unit

MESSAGE = {
    "id": "m-1",
    "channel": "sms",
    "senderIdentifier": "+15551234567",
    "recipientIdentifier": "+15550000000",
    "text": "Is the unit on Elm St still available?",
    "timestamp": "2026-03-02T12:00:00Z",
}


@pytest.fixture(autouse=True)
def _reset_logging(monkeypatch):
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)
    yield
    root = logging.getLogger()
    for handler in root.handlers:
        handler.close()
    root.handlers.clear()
    root.setLevel(logging.WARNING)


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "threadline.toml"
    path.write_text(
        '[threadline]\ndefault_organization_id = "org-1"\n\n[threadline.logging]\nlevel = "error"\n'
    )
    return path


@pytest.fixture
def message_file(tmp_path):
    path = tmp_path / "message.json"
    path.write_text(json.dumps(MESSAGE))
    return path


def test_version(runner):
    result = runner.invoke(cli, ["--version"])

    assert result.exit_code == 0
    assert "0.1.0" in result.output


def test_route_dry_run_reports_no_match(runner, config_path, message_file):
    result = runner.invoke(
        cli, ["--config", str(config_path), "route", str(message_file), "--memory", "--dry-run"]
    )

    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout) == {
        "matched": False,
        "thread_id": None,
        "method": None,
        "confidence": None,
        "reason": None,
    }


def test_route_creates_thread_for_new_sender(runner, config_path, message_file):
    result = runner.invoke(
        cli, ["--config", str(config_path), "route", str(message_file), "--memory"]
    )

    assert result.exit_code == 0, result.output
    ack = json.loads(result.stdout)
    assert ack["messageId"] == "m-1"
    assert ack["status"] == "created"
    assert ack["threadId"]


def test_route_explicit_organization_overrides_default(runner, config_path, message_file):
    result = runner.invoke(
        cli,
        [
            "--config",
            str(config_path),
            "route",
            str(message_file),
            "--memory",
            "--organization",
            "org-7",
        ],
    )

    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout)["status"] == "created"


def test_route_without_organization_exits_2(runner, tmp_path, message_file):
    path = tmp_path / "bare.toml"
    path.write_text('[threadline.logging]\nlevel = "error"\n')

    result = runner.invoke(cli, ["--config", str(path), "route", str(message_file), "--memory"])

    assert result.exit_code == 2
    assert "No organization given" in result.output


def test_sweep_memory_prints_summary(runner, config_path):
    result = runner.invoke(cli, ["--config", str(config_path), "sweep", "--memory"])

    assert result.exit_code == 0, result.output
    summary = json.loads(result.stdout)
    assert summary["evaluated"] == 0
    assert summary["skipped_overlap"] is False


def test_invalid_config_exits_2(runner, tmp_path):
    path = tmp_path / "threadline.toml"
    path.write_text("[threadline.retry]\nmax_retries = 0\n")

    result = runner.invoke(cli, ["--config", str(path), "sweep", "--memory"])

    assert result.exit_code == 2
    assert "Configuration error" in result.output
