"""
CLI tests
"""
from pathlib import Path

import pytest
from click.testing import CliRunner

from nurture_engine.cli import cli


EXAMPLE = str(Path(__file__).resolve().parent.parent / "examples" / "welcome_series.yaml")


@pytest.fixture
def runner(monkeypatch, tmp_path):
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}")
    monkeypatch.delenv("SMTP_HOST", raising=False)
    return CliRunner()


def test_validate_only(runner):
    result = runner.invoke(cli, ["load-workflow", EXAMPLE, "--validate-only"])

    assert result.exit_code == 0, result.output
    assert "Workflow 'Welcome Series' is valid (6 steps)" in result.output


def test_invalid_file(runner, tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text("name: Broken\nsteps:\n  - order: 1\n    type: sms\n")

    result = runner.invoke(cli, ["load-workflow", str(path), "--validate-only"])

    assert result.exit_code != 0
    assert "Unknown step type: sms" in result.output


def test_load_trigger_and_poll(runner):
    assert runner.invoke(cli, ["init-db"]).exit_code == 0

    result = runner.invoke(cli, ["load-workflow", EXAMPLE])
    assert result.exit_code == 0, result.output
    assert "Stored workflow:" in result.output

    result = runner.invoke(cli, [
        "trigger",
        "--workflow-name", "Welcome Series",
        "--email", "cli@example.com",
        "--metadata", '{"campaign": "spring"}'
    ])
    assert result.exit_code == 0, result.output
    assert "next step at" in result.output

    result = runner.invoke(cli, ["poll"])
    assert result.exit_code == 0, result.output
    assert "Processed 1 executions, 0 errors, 0 skipped" in result.output


def test_trigger_unknown_workflow(runner):
    runner.invoke(cli, ["init-db"])

    result = runner.invoke(cli, ["trigger", "--workflow-name", "Nope", "--email", "a@example.com"])

    assert result.exit_code != 0
    assert "not_found" in result.output


def test_trigger_bad_metadata(runner):
    result = runner.invoke(cli, ["trigger", "--workflow-name", "x", "--email", "a@example.com", "--metadata", "{"])
    assert result.exit_code != 0
