from datetime import date

import pytest
from click.testing import CliRunner

from flowcore import cli as cli_module
from flowcore.services import automation_triggers


@pytest.fixture
def runner(monkeypatch, engine, session_factory):
    monkeypatch.setattr(cli_module, "SessionLocal", session_factory)
    monkeypatch.setattr(cli_module, "engine", engine)
    return CliRunner()


def test_init_db(runner):
    result = runner.invoke(cli_module.cli, ["init-db"])

    assert result.exit_code == 0
    assert "Database schema created" in result.output


def test_sweep_and_list_executions(runner, db, notifier, make_task, make_rule):
    task = make_task("Ship", due_date=date(2026, 1, 6), assigned_to=5)
    rule = make_rule(
        trigger_type="due_date_approaching",
        action_type="send_notification",
        action_params={"template_kind": "task_due_soon"},
    )

    result = runner.invoke(cli_module.cli, ["sweep-due-dates", "--days", "3"])
    assert result.exit_code == 0
    assert "Published 1 due_date_approaching events" in result.output
    assert notifier.kinds() == ["task_due_soon"]

    result = runner.invoke(cli_module.cli, ["list-executions", "--rule-id", str(rule.id)])
    assert result.exit_code == 0
    assert f"rule={rule.id} task:{task.id} due_date_approaching success" in result.output


def test_list_executions_empty(runner):
    result = runner.invoke(cli_module.cli, ["list-executions", "--outcome", "failed"])

    assert result.exit_code == 0
    assert "No executions found" in result.output


def test_sweep_failure_exits_nonzero(runner, monkeypatch):
    def _explode(db, horizon_days):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(automation_triggers, "trigger_due_date_sweep", _explode)

    result = runner.invoke(cli_module.cli, ["sweep-due-dates"])

    assert result.exit_code == 1
    assert "Error: database unavailable" in result.output
