import asyncio
import json
import logging
from datetime import datetime, timezone

import pytest
from click.testing import CliRunner

from portmail.cli import main
from portmail.persistence import Persistence


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    for name in ("PM_SMTP_USER", "PM_SMTP_PASSWORD", "PM_DB_PATH", "PM_ENVIRONMENT", "PM_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("PM_CONFIG", str(tmp_path / "missing.ini"))
    monkeypatch.setenv("PM_STORAGE_BASE_DIR", str(tmp_path))
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    yield
    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "cli.db")


def invoke(db_path, *args):
    return CliRunner().invoke(main, ["--db", db_path, "--log-level", "error", *args])


def test_init_db(db_path):
    result = invoke(db_path, "init-db")

    assert result.exit_code == 0, result.output
    assert "Database ready" in result.output


def test_ships_add_and_list(db_path):
    added = invoke(db_path, "ships", "add", "MV AURORA", "--email", "master@aurora.example", "--imo", "9876543")
    assert added.exit_code == 0, added.output
    assert "Ship 'MV AURORA' added" in added.output

    listed = invoke(db_path, "ships", "list", "--json")
    ships = json.loads(listed.stdout)
    assert [(s["name"], s["imo_number"]) for s in ships] == [("MV AURORA", "9876543")]


def test_ships_add_rejects_bad_email(db_path):
    result = invoke(db_path, "ships", "add", "MV AURORA", "--email", "not-an-email")

    assert result.exit_code == 1


def test_jobs_list_and_cancel(db_path):
    invoke(db_path, "init-db")
    job = asyncio.run(
        Persistence(db_path).insert_job(
            {
                "user_id": "u1",
                "ship_name": "MV AURORA",
                "target_email": "master@aurora.example",
                "subject": "MV AURORA // PRE ARRIVAL",
                "scheduled_time": datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc),
            }
        )
    )

    listed = invoke(db_path, "jobs", "list", "--status", "pending", "--json")
    assert listed.exit_code == 0, listed.output
    assert [j["id"] for j in json.loads(listed.stdout)] == [job.id]

    cancelled = invoke(db_path, "jobs", "cancel", job.id)
    assert cancelled.exit_code == 0, cancelled.output

    retried = invoke(db_path, "jobs", "retry", job.id)
    assert retried.exit_code == 1
    assert "Cannot retry" in retried.output

    cancelled_jobs = invoke(db_path, "jobs", "list", "--status", "cancelled", "--json")
    assert [j["status"] for j in json.loads(cancelled_jobs.stdout)] == ["cancelled"]


def test_jobs_cancel_unknown(db_path):
    invoke(db_path, "init-db")

    result = invoke(db_path, "jobs", "cancel", "missing")

    assert result.exit_code == 1
    assert "not found" in result.output


def test_sweep_with_nothing_due(db_path, monkeypatch):
    monkeypatch.setenv("PM_SMTP_USER", "agency@portmail.example")
    monkeypatch.setenv("PM_SMTP_PASSWORD", "app-password")

    result = invoke(db_path, "sweep", "--json")

    assert result.exit_code == 0, result.output
    report = json.loads(result.stdout)
    assert report["message"] == "No pending jobs to process"
    assert report["processed"] == 0
    assert report["skipped"] == 0


def test_sweep_without_credentials_fails(db_path):
    result = invoke(db_path, "sweep")

    assert result.exit_code == 1
    assert "smtp.password" in result.output


def test_bad_configuration_exits(db_path, monkeypatch):
    monkeypatch.setenv("PM_BATCH_SIZE", "lots")

    result = invoke(db_path, "init-db")

    assert result.exit_code == 1
    assert "batch_size" in result.output
