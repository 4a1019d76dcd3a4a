# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
docbackup FastAPI Integration - Admin endpoints for FastAPI applications.

This module provides:
- Lifespan management (state, scheduler start/stop)
- Protected endpoints to trigger, list, inspect, delete and restore backups
- Schedule and health reporting
"""

import os
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime, UTC
from typing import Any, List

import structlog
from fastapi import Depends, FastAPI, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from docbackup.backup.restore import RestoreRequest, restore_backup, restore_run
from docbackup.backup.retention import get_storage_stats
from docbackup.catalog import delete_backup, get_run_log, list_history
from docbackup.config import BackupConfig, parse_formats
from docbackup.core import BackupState, RunLog, RunStatus, initialize_backup_state
from docbackup.exceptions import (
    ArtifactNotFoundError,
    BackupPipelineError,
    ConfigurationError,
    CorruptArchiveError,
    RestoreError,
    RunInProgressError,
)
from docbackup.scheduler import BackupScheduler

logger = structlog.get_logger()

API_KEY_ENV = "DOCBACKUP_ADMIN_API_KEY"

# Security
security = HTTPBearer(auto_error=False)


class BackupTriggerRequest(BaseModel):
    """Body of POST /backup."""

    tier: str | None = None  # None runs a manual backup
    collections: List[str] | None = None
    format: str = "all"
    dry_run: bool = False


class RestoreTriggerRequest(BaseModel):
    """Body of POST /backups/{id}/restore. No target restores the whole run."""

    target_collection: str | None = None
    source_collection: str | None = None
    format: str = "auto"
    overwrite: bool = False
    dry_run: bool = False


async def verify_api_key(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> bool:
    """
    Verify API key from Authorization header.

    The API key is read from the DOCBACKUP_ADMIN_API_KEY environment variable.
    Requests must include: Authorization: Bearer <api_key>

    Raises:
        HTTPException: If API key is missing or invalid
    """
    api_key = os.getenv(API_KEY_ENV)

    if not api_key:
        raise HTTPException(
            status_code=500,
            detail=f"{API_KEY_ENV} environment variable not set",
        )

    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Authorization header required",
        )

    if credentials.credentials != api_key:
        raise HTTPException(
            status_code=403,
            detail="Invalid API key",
        )

    return True


def _http_error(error: BackupPipelineError) -> HTTPException:
    if isinstance(error, ArtifactNotFoundError):
        return HTTPException(status_code=404, detail=error.message)
    if isinstance(error, RunInProgressError):
        return HTTPException(status_code=409, detail=error.message)
    if isinstance(error, CorruptArchiveError):
        return HTTPException(status_code=422, detail=error.message)
    if isinstance(error, (RestoreError, ConfigurationError)):
        return HTTPException(status_code=400, detail=error.message)
    return HTTPException(status_code=500, detail=error.message)


def register_backup_routes(
    app: FastAPI,
    config: BackupConfig,
    state: BackupState,
    scheduler: BackupScheduler,
    prefix: str = "",
) -> None:
    """
    Register backup admin endpoints on a FastAPI app.

    All endpoints require Bearer token authentication.

    Args:
        app: FastAPI application
        config: Backup configuration
        state: Runtime state
        scheduler: Scheduler used for manual triggers and status
        prefix: URL prefix for endpoints (default: none)
    """

    @app.post(f"{prefix}/backup", dependencies=[Depends(verify_api_key)])
    async def trigger_backup(request: BackupTriggerRequest) -> dict:
        """
        Trigger a backup now.

        Without a tier the run goes to the manual tier and is never pruned.
        """
        try:
            formats = parse_formats(request.format)
            if request.tier:
                run_log = await scheduler.trigger_tier(
                    request.tier, request.collections, formats, request.dry_run
                )
            else:
                run_log = await scheduler.trigger_manual(
                    request.collections, formats, request.dry_run
                )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except BackupPipelineError as e:
            raise _http_error(e)

        if run_log.status == RunStatus.FAILED:
            raise HTTPException(status_code=500, detail=_run_payload(run_log))
        return _run_payload(run_log)

    @app.post(f"{prefix}/backups/{{backup_id}}/restore", dependencies=[Depends(verify_api_key)])
    async def trigger_restore(backup_id: str, request: RestoreTriggerRequest) -> dict:
        """
        Restore a backup.

        Args:
            backup_id: Run id (backup_<stamp>) or artifact file name
        """
        try:
            if request.target_collection:
                result = await restore_backup(
                    config,
                    state,
                    RestoreRequest(
                        backup_id=backup_id,
                        target_collection=request.target_collection,
                        format=request.format,
                        overwrite=request.overwrite,
                        source_collection=request.source_collection,
                        dry_run=request.dry_run,
                    ),
                )
                results = [result]
            else:
                results = await restore_run(
                    config,
                    state,
                    backup_id,
                    format=request.format,
                    overwrite=request.overwrite,
                    dry_run=request.dry_run,
                )
        except BackupPipelineError as e:
            raise _http_error(e)

        return {
            "backup_id": backup_id,
            "written": sum(r.written for r in results),
            "skipped": sum(r.skipped for r in results),
            "failed": sum(r.failed for r in results),
            "results": [asdict(r) for r in results],
        }

    @app.get(f"{prefix}/backups/history", dependencies=[Depends(verify_api_key)])
    async def backup_history(limit: int | None = None) -> list:
        """
        List recent backups, newest first.

        Args:
            limit: Maximum number of runs (default: config.history_limit)
        """
        return [_run_payload(r) for r in await list_history(config, state, limit)]

    @app.get(f"{prefix}/backups/{{backup_id}}", dependencies=[Depends(verify_api_key)])
    async def backup_details(backup_id: str) -> dict:
        """Get the RunLog of one backup."""
        try:
            return _run_payload(await get_run_log(config, state, backup_id))
        except BackupPipelineError as e:
            raise _http_error(e)

    @app.delete(f"{prefix}/backups/{{backup_id}}", dependencies=[Depends(verify_api_key)])
    async def remove_backup(backup_id: str) -> dict:
        """Delete every file of a backup and its log."""
        try:
            result = await delete_backup(config, state, backup_id)
        except BackupPipelineError as e:
            raise _http_error(e)
        return {
            "success": not result.failed_files,
            "message": f"Backup {result.run_id} deleted",
            "files_deleted": len(result.deleted_files),
            **asdict(result),
        }

    @app.get(f"{prefix}/backup/schedule", dependencies=[Depends(verify_api_key)])
    async def backup_schedule() -> dict:
        """Per-tier schedule, retention, last run and next run."""
        return {
            "timezone": config.timezone,
            "tiers": scheduler.status(),
        }

    @app.get(f"{prefix}/health", dependencies=[Depends(verify_api_key)])
    async def health_check() -> dict:
        """
        Health check endpoint.

        Verifies the backup directory and the record store are reachable.
        """
        root_ok = config.root_dir.is_dir() and os.access(config.root_dir, os.W_OK)

        store_ok = False
        store_error = None
        try:
            await state["store"].list_collections()
            store_ok = True
        except Exception as e:
            store_error = str(e)

        status = "healthy"
        if not root_ok or not store_ok:
            status = "degraded"
        if not root_ok and not store_ok:
            status = "unhealthy"

        return {
            "status": status,
            "backup_dir_writable": root_ok,
            "store_reachable": store_ok,
            "store_error": store_error,
            "running": dict(state["running"]),
            "last_run_at": state["last_run_at"].isoformat() if state["last_run_at"] else None,
            "last_error": state["last_error"],
            "total_runs": state["total_runs"],
            "total_restored": state["total_restored"],
            "storage": get_storage_stats(config.root_dir),
            "timestamp": datetime.now(UTC).isoformat(),
        }


def _run_payload(run_log: RunLog) -> dict:
    payload = run_log.to_dict()
    payload["id"] = run_log.run_id
    payload["collections"] = run_log.collections
    payload["total_bytes"] = sum(m.byte_size for m in run_log.manifests)
    return payload


@asynccontextmanager
async def backup_lifespan(
    app: FastAPI,
    config: BackupConfig,
    store: Any,
    start_scheduler: bool = True,
):
    """
    Lifespan context manager for FastAPI.

        app = FastAPI(lifespan=lambda app: backup_lifespan(app, config, store))

    Args:
        app: FastAPI application
        config: Backup configuration
        store: RecordStore to back up
        start_scheduler: Start the cron loop (off for API-only deployments)

    Raises:
        ConfigurationError: If the backup root cannot be created or used
    """
    logger.info("docbackup_lifespan_starting", root_dir=str(config.root_dir))

    config.check_root_dir()
    state = initialize_backup_state(config, store)
    scheduler = BackupScheduler(config, state)

    app.state.docbackup_config = config
    app.state.docbackup_state = state
    app.state.docbackup_scheduler = scheduler

    register_backup_routes(app, config, state, scheduler)

    if start_scheduler:
        scheduler.start()

    logger.info("docbackup_lifespan_started", scheduled_tiers=[t.value for t in scheduler.tiers])

    try:
        yield
    finally:
        logger.info("docbackup_lifespan_stopping")
        await scheduler.stop()
        logger.info("docbackup_lifespan_stopped")


def create_app(config: BackupConfig, store: Any, start_scheduler: bool = True) -> FastAPI:
    """Standalone FastAPI app serving the backup admin endpoints."""
    return FastAPI(
        title="docbackup",
        lifespan=lambda app: backup_lifespan(app, config, store, start_scheduler),
    )


def get_backup_state(app: FastAPI) -> BackupState:
    """
    Get docbackup state from a FastAPI app.

    Raises:
        RuntimeError: If docbackup is not initialized
    """
    state = getattr(app.state, "docbackup_state", None)
    if not state:
        raise RuntimeError("docbackup not initialized. Use backup_lifespan first.")
    return state
