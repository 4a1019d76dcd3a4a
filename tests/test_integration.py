# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Integration Tests for docbackup.

These tests verify the integration between components:
- FastAPI endpoints
- Lifespan management
- Command line interface
"""

import os
from pathlib import Path
from typing import List

import pytest

AUTH = {"Authorization": "Bearer test-api-key-12345"}


def _backend(test_config, store):
    from fastapi import FastAPI

    from docbackup.core import initialize_backup_state
    from docbackup.integrations.fastapi import register_backup_routes
    from docbackup.scheduler import BackupScheduler

    app = FastAPI()
    state = initialize_backup_state(test_config, store)
    scheduler = BackupScheduler(test_config, state)
    register_backup_routes(app, test_config, state, scheduler)
    return app, state


def _client(app):
    from httpx import AsyncClient, ASGITransport

    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


# ============================================================================
# FastAPI Integration Tests
# ============================================================================

@pytest.mark.asyncio
async def test_fastapi_requires_api_key(test_config, store):
    """Missing credentials are 401, wrong credentials 403."""
    app, _ = _backend(test_config, store)

    async with _client(app) as client:
        missing = await client.get("/health")
        wrong = await client.get("/health", headers={"Authorization": "Bearer nope"})

    assert missing.status_code == 401
    assert wrong.status_code == 403


@pytest.mark.asyncio
async def test_fastapi_manual_and_tier_backups(test_config, store):
    """POST /backup runs a manual backup, or a tier with a format override."""
    app, state = _backend(test_config, store)

    async with _client(app) as client:
        manual = await client.post("/backup", json={}, headers=AUTH)
        daily = await client.post(
            "/backup", json={"tier": "daily", "format": "document"}, headers=AUTH
        )

    assert manual.status_code == 200
    assert manual.json()["tier"] == "manual"
    assert manual.json()["status"] == "success"
    assert len(manual.json()["manifests"]) == 6

    data = daily.json()
    assert daily.status_code == 200
    assert data["tier"] == "daily"
    assert data["collections"] == ["orders", "users"]
    assert {m["codec"] for m in data["manifests"]} == {"document"}
    assert data["total_bytes"] > 0
    assert state["total_runs"] == 2


@pytest.mark.asyncio
async def test_fastapi_backup_errors(test_config, store):
    """Bad input is 400, a busy tier 409 and a failed run 500."""
    app, state = _backend(test_config, store)

    async with _client(app) as client:
        bad_format = await client.post("/backup", json={"format": "pdf"}, headers=AUTH)
        bad_tier = await client.post("/backup", json={"tier": "hourly"}, headers=AUTH)
        failed = await client.post("/backup", json={"collections": ["ghosts"]}, headers=AUTH)

        state["running"]["daily"] = "backup_in_flight"
        busy = await client.post("/backup", json={"tier": "daily"}, headers=AUTH)

    assert bad_format.status_code == 400
    assert bad_tier.status_code == 400
    assert failed.status_code == 500
    assert failed.json()["detail"]["status"] == "failed"
    assert busy.status_code == 409


@pytest.mark.asyncio
async def test_fastapi_history_details_and_delete(test_config, store):
    app, _ = _backend(test_config, store)

    async with _client(app) as client:
        first = (await client.post("/backup", json={"tier": "daily"}, headers=AUTH)).json()
        second = (await client.post("/backup", json={}, headers=AUTH)).json()

        history = await client.get("/backups/history", headers=AUTH)
        limited = await client.get("/backups/history", params={"limit": 1}, headers=AUTH)
        details = await client.get(f"/backups/{first['id']}", headers=AUTH)
        missing = await client.get("/backups/backup_2001-01-01T00-00-00-000Z", headers=AUTH)
        deleted = await client.delete(f"/backups/{first['id']}", headers=AUTH)
        deleted_again = await client.delete(f"/backups/{first['id']}", headers=AUTH)

    assert history.status_code == 200
    assert [r["id"] for r in history.json()] == [second["id"], first["id"]]
    assert [r["id"] for r in limited.json()] == [second["id"]]

    assert details.status_code == 200
    assert details.json()["tier"] == "daily"
    assert missing.status_code == 404

    assert deleted.status_code == 200
    assert deleted.json()["success"]
    assert deleted.json()["files_deleted"] == 6
    assert deleted_again.status_code == 404


@pytest.mark.asyncio
async def test_fastapi_restore(test_config, store):
    """One collection restores into a new target; a whole run reports duplicates."""
    app, _ = _backend(test_config, store)

    async with _client(app) as client:
        run = (await client.post("/backup", json={"tier": "weekly"}, headers=AUTH)).json()

        single = await client.post(
            f"/backups/{run['id']}/restore",
            json={"target_collection": "users_copy", "source_collection": "users"},
            headers=AUTH,
        )
        whole = await client.post(f"/backups/{run['id']}/restore", json={}, headers=AUTH)
        unknown = await client.post(
            "/backups/backup_2001-01-01T00-00-00-000Z/restore",
            json={"target_collection": "users"},
            headers=AUTH,
        )

    assert single.status_code == 200
    assert single.json()["written"] == 3
    assert single.json()["results"][0]["codec"] == "document"
    assert len(store.records("users_copy")) == 3

    assert whole.status_code == 200
    assert whole.json()["written"] == 0
    assert whole.json()["failed"] == 8
    assert unknown.status_code == 404


@pytest.mark.asyncio
async def test_fastapi_corrupt_artifact_is_422(test_config, store):
    app, _ = _backend(test_config, store)

    async with _client(app) as client:
        run = (await client.post("/backup", json={"format": "document"}, headers=AUTH)).json()
        for manifest in run["manifests"]:
            Path(manifest["path"]).write_bytes(b"\x00" * 8)

        response = await client.post(
            f"/backups/{run['id']}/restore", json={"target_collection": "users"}, headers=AUTH
        )

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_fastapi_schedule_and_health(test_config, store):
    app, _ = _backend(test_config, store)

    async with _client(app) as client:
        await client.post("/backup", json={"tier": "daily"}, headers=AUTH)
        schedule = await client.get("/backup/schedule", headers=AUTH)
        health = await client.get("/health", headers=AUTH)

    tiers = schedule.json()["tiers"]
    assert schedule.json()["timezone"] == "UTC"
    assert set(tiers) == {"daily", "weekly", "monthly", "manual"}
    assert tiers["daily"]["last_status"] == "success"
    assert tiers["daily"]["next_run_at"] is not None

    data = health.json()
    assert health.status_code == 200
    assert data["status"] == "healthy"
    assert data["total_runs"] == 1
    assert data["storage"]["tiers"]["daily"]["runs"] == 1


@pytest.mark.asyncio
async def test_health_degrades_when_store_unreachable(test_config):
    class BrokenStore:
        async def list_collections(self):
            raise ConnectionError("store offline")

    test_config.root_dir.mkdir(parents=True)
    app, _ = _backend(test_config, BrokenStore())

    async with _client(app) as client:
        response = await client.get("/health", headers=AUTH)

    assert response.json()["status"] == "degraded"
    assert response.json()["store_error"] == "store offline"


@pytest.mark.asyncio
async def test_lifespan_initializes_state(test_config, store):
    """The lifespan registers the routes and exposes the state on the app."""
    from docbackup.integrations.fastapi import create_app, get_backup_state

    app = create_app(test_config, store, start_scheduler=False)

    with pytest.raises(RuntimeError):
        get_backup_state(app)

    async with app.router.lifespan_context(app):
        state = get_backup_state(app)
        assert state["store"] is store
        assert test_config.root_dir.is_dir()

        async with _client(app) as client:
            response = await client.post("/backup", json={"tier": "daily"}, headers=AUTH)

        assert response.status_code == 200
        assert state["last_runs"]["daily"].run_id == response.json()["id"]


@pytest.mark.asyncio
async def test_lifespan_refuses_unusable_root(test_config, store):
    """A backup root that is a regular file stops startup with a configuration error."""
    from docbackup.exceptions import ConfigurationError
    from docbackup.integrations.fastapi import create_app

    test_config.root_dir.write_text("not a directory")
    app = create_app(test_config, store, start_scheduler=False)

    with pytest.raises(ConfigurationError) as exc_info:
        async with app.router.lifespan_context(app):
            pass

    assert "is not usable" in exc_info.value.message
    assert "BACKUP_DIR" in exc_info.value.message


# ============================================================================
# CLI Integration Tests
# ============================================================================

@pytest.fixture
def cli_env(monkeypatch, temp_dir: Path):
    """Isolated environment for CLI runs; logging setup is skipped."""
    from rich.console import Console

    for name in list(os.environ):
        if name.startswith("BACKUP_") or name in ("TZ", "DOCBACKUP_STORE", "MAX_BACKUP_FILE_SIZE"):
            monkeypatch.delenv(name)
    monkeypatch.setattr("docbackup.cli.setup_logging_from_config", lambda config: None)
    # Wide enough that no table cell wraps
    monkeypatch.setattr("docbackup.cli.console", Console(width=200))
    return temp_dir / "backup"


def _invoke(args: List[str], root: Path, **kwargs):
    from typer.testing import CliRunner

    from docbackup.cli import app

    return CliRunner().invoke(app, ["--root", str(root), "--demo", *args], **kwargs)


def _run_ids(root: Path) -> List[str]:
    return sorted(path.stem for path in (root / "logs").glob("backup_*.json"))


def test_cli_backup(cli_env: Path):
    result = _invoke(["backup", "--tier", "daily", "--format", "document"], cli_env)

    assert result.exit_code == 0, result.output
    assert "success" in result.output
    assert len(list((cli_env / "daily").glob("test_collection_*.bson.zst"))) == 1
    assert len(_run_ids(cli_env)) == 1


def test_cli_backup_dry_run_writes_nothing(cli_env: Path):
    result = _invoke(["backup", "--dry-run"], cli_env)

    assert result.exit_code == 0, result.output
    assert "(planned)" in result.output
    assert "dry run" in result.output
    assert not cli_env.exists()


def test_cli_backup_unknown_collection_fails(cli_env: Path):
    result = _invoke(["backup", "--collections", "ghosts"], cli_env)

    assert result.exit_code == 1
    assert "ghosts" in result.output


def test_cli_configuration_errors_exit_2(cli_env: Path):
    result = _invoke(["--profile", "forever", "history"], cli_env)

    assert result.exit_code == 2
    assert "Configuration error" in result.output


def test_cli_unusable_root_exits_2(cli_env: Path):
    cli_env.write_text("not a directory")

    result = _invoke(["history"], cli_env)

    assert result.exit_code == 2
    assert "is not usable: not a directory" in result.output


def test_cli_needs_a_store(cli_env: Path):
    from typer.testing import CliRunner

    from docbackup.cli import app

    result = CliRunner().invoke(app, ["--root", str(cli_env), "backup"])

    assert result.exit_code == 1
    assert "No record store configured" in result.output


def test_cli_history_show_and_delete(cli_env: Path):
    assert "No backups found" in _invoke(["history"], cli_env).output

    _invoke(["backup", "--format", "document"], cli_env)
    run_id = _run_ids(cli_env)[0]

    history = _invoke(["history"], cli_env)
    show = _invoke(["show", run_id], cli_env)
    missing = _invoke(["show", "backup_2001-01-01T00-00-00-000Z"], cli_env)
    declined = _invoke(["delete", run_id], cli_env, input="n\n")
    deleted = _invoke(["delete", run_id, "--yes"], cli_env)

    assert history.exit_code == 0
    assert "Backup History" in history.output
    assert show.exit_code == 0
    assert "test_collection" in show.output
    assert missing.exit_code == 1
    assert declined.exit_code == 1
    assert deleted.exit_code == 0
    assert "Deleted 1 file(s)" in deleted.output
    assert _run_ids(cli_env) == []


def test_cli_restore(cli_env: Path):
    _invoke(["backup", "--tier", "weekly"], cli_env)
    run_id = _run_ids(cli_env)[0]

    single = _invoke(
        ["restore", run_id, "--collection", "restored", "--source", "test_collection"], cli_env
    )
    whole = _invoke(["restore", run_id], cli_env)

    assert single.exit_code == 0, single.output
    assert "document" in single.output
    assert whole.exit_code == 0, whole.output
    assert "already existed" in whole.output


def test_cli_prune(cli_env: Path, monkeypatch):
    for _ in range(3):
        assert _invoke(["backup", "--tier", "daily", "--format", "document"], cli_env).exit_code == 0

    monkeypatch.setenv("BACKUP_RETENTION_DAILY", "1")
    preview = _invoke(["prune", "--tier", "daily", "--dry-run"], cli_env)
    result = _invoke(["prune"], cli_env)

    assert "Would remove" in preview.output
    assert result.exit_code == 0, result.output
    assert "Cleaned up 2 old backup group(s)" in result.output
    assert len(list((cli_env / "daily").glob("*.bson.zst"))) == 1


def test_cli_status(cli_env: Path):
    _invoke(["backup", "--tier", "daily", "--format", "document"], cli_env)

    result = _invoke(["status"], cli_env)

    assert result.exit_code == 0, result.output
    assert "Backup Schedule" in result.output
    assert "daily: 1 run(s), 1 file(s)" in result.output


def test_cli_crontab(cli_env: Path, monkeypatch):
    monkeypatch.setenv("BACKUP_CRON_WEEKLY_ENABLED", "false")

    result = _invoke(["crontab", "--command", "/opt/venv/bin/docbackup"], cli_env)

    assert result.exit_code == 0, result.output
    assert "0 2 * * * cd " in result.output
    assert "/opt/venv/bin/docbackup backup --tier daily" in result.output
    assert "backup --tier monthly" in result.output
    assert "--tier weekly" not in result.output
    assert "CRON_TZ" not in result.output
