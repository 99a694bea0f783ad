"""Smoke tests for the operator CLI against a file database."""

import json

import pytest
from typer.testing import CliRunner

from infralens.cli import app
from infralens.config import reset_config

runner = CliRunner()


@pytest.fixture
def cli_db(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}")
    reset_config()
    result = runner.invoke(app, ["init"])
    assert result.exit_code == 0, result.output


def test_stats_json_on_empty_database(cli_db):
    result = runner.invoke(app, ["stats", "--json", "--org", "acme"])

    assert result.exit_code == 0, result.output
    data = json.loads(result.output)
    assert data["org_id"] == "acme"
    assert data["total"] == 0


def test_sweep_reports_count(cli_db):
    result = runner.invoke(app, ["sweep", "--days", "30"])

    assert result.exit_code == 0, result.output
    assert "Soft-deleted 0 objects" in result.output


def test_missing_object_exits_with_error(cli_db):
    result = runner.invoke(
        app, ["objects", "show", "00000000-0000-0000-0000-000000000000"]
    )

    assert result.exit_code == 1
    assert "not found" in result.output


def test_empty_run_list(cli_db):
    result = runner.invoke(app, ["jobs", "runs"])

    assert result.exit_code == 0, result.output
    assert "No runs recorded" in result.output
