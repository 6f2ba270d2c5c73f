"""Tests for the command-line job entry point."""

import json

from automations_backend import run_automations_job
from automations_backend.config import ConfigurationError
from automations_backend.schemas.automation import RunSummary


def test_job_prints_summary(seed, capsys):
    seed.rule("t1", "birthday_prospects_notify", enabled=False)

    exit_code = run_automations_job.main([])

    assert exit_code == 0
    assert json.loads(capsys.readouterr().out) == {"ok": True, "users": 0, "processed": 0}


def test_job_passes_tenant_filter(monkeypatch, capsys):
    seen = {}

    def fake_run(tenant_ids=None):
        seen["tenants"] = tenant_ids
        return RunSummary(ok=True, users=1, processed=4)

    monkeypatch.setattr(run_automations_job, "run_automations", fake_run)

    exit_code = run_automations_job.main(["--tenant", "t1", "--tenant", "t2"])

    assert exit_code == 0
    assert seen["tenants"] == ["t1", "t2"]
    assert json.loads(capsys.readouterr().out)["processed"] == 4


def test_job_reports_configuration_error(monkeypatch, capsys):
    def fake_run(tenant_ids=None):
        raise ConfigurationError("Missing DATABASE_URL")

    monkeypatch.setattr(run_automations_job, "run_automations", fake_run)

    assert run_automations_job.main([]) == 1
    assert json.loads(capsys.readouterr().out) == {"ok": False, "error": "Missing DATABASE_URL"}


def test_uvicorn_launcher_serves_app(monkeypatch):
    from automations_backend import run_uvicorn

    captured = {}

    def fake_run(app, **kwargs):
        captured.update(app=app, **kwargs)

    monkeypatch.setattr(run_uvicorn.uvicorn, "run", fake_run)
    monkeypatch.setenv("PORT", "8123")

    run_uvicorn.main()

    assert captured["app"] == "automations_backend.main:app"
    assert captured["port"] == 8123
    assert captured["log_config"] is None
