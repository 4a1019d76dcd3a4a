# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
docbackup Core - Run orchestration.

A run resolves the collections to back up, exports them through a bounded
worker pool, writes its RunLog and prunes its tier. Errors in one collection
never stop the others; they are recorded in the RunLog instead.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, UTC
from enum import Enum
from typing import Any, Dict, Iterable, List, Sequence, TypedDict

import structlog

from docbackup.config import BackupConfig, ExportFormat, Tier
from docbackup.exceptions import BackupError, BackupPipelineError, StoreError
from docbackup.records import ensure_utc

logger = structlog.get_logger()


class RunStatus(str, Enum):
    """Lifecycle status of a run."""

    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    FAILED = "failed"


class RunPhase(str, Enum):
    """Orchestrator phase of one tier, exposed on state["phases"][tier]."""

    IDLE = "idle"
    RESOLVING = "resolving"
    EXPORTING = "exporting"
    FINALIZING = "finalizing"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class BackupManifest:
    """One codec file written for one collection."""

    collection: str
    codec: str
    path: str
    record_count: int
    byte_size: int
    checksum: str | None = None


@dataclass(frozen=True)
class CollectionError:
    """An error recorded in a RunLog. collection is None for run-level errors."""

    collection: str | None
    message: str
    codec: str | None = None


@dataclass
class RunLog:
    """Summary of one run, persisted as {root}/logs/{run_id}.json."""

    run_id: str
    tier: str
    started_at: datetime
    duration_seconds: float = 0.0
    collections_attempted: int = 0
    total_records: int = 0
    manifests: List[BackupManifest] = field(default_factory=list)
    errors: List[CollectionError] = field(default_factory=list)
    status: RunStatus = RunStatus.IN_PROGRESS
    dry_run: bool = False
    cancelled: bool = False
    planned: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def collections(self) -> List[str]:
        """Collections that have at least one file in this run."""
        return sorted({m.collection for m in self.manifests})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "tier": self.tier,
            "started_at": self.started_at.isoformat(),
            "duration_seconds": self.duration_seconds,
            "collections_attempted": self.collections_attempted,
            "total_records": self.total_records,
            "manifests": [
                {
                    "collection": m.collection,
                    "codec": m.codec,
                    "path": m.path,
                    "record_count": m.record_count,
                    "byte_size": m.byte_size,
                    "checksum": m.checksum,
                }
                for m in self.manifests
            ],
            "errors": [
                {"collection": e.collection, "message": e.message, "codec": e.codec}
                for e in self.errors
            ],
            "status": self.status.value,
            "dry_run": self.dry_run,
            "cancelled": self.cancelled,
            "planned": self.planned,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunLog":
        return cls(
            run_id=data["run_id"],
            tier=data["tier"],
            started_at=datetime.fromisoformat(data["started_at"]),
            duration_seconds=data.get("duration_seconds", 0.0),
            collections_attempted=data.get("collections_attempted", 0),
            total_records=data.get("total_records", 0),
            manifests=[BackupManifest(**m) for m in data.get("manifests", [])],
            errors=[CollectionError(**e) for e in data.get("errors", [])],
            status=RunStatus(data.get("status", RunStatus.IN_PROGRESS.value)),
            dry_run=data.get("dry_run", False),
            cancelled=data.get("cancelled", False),
            planned=data.get("planned", {}),
        )


class BackupState(TypedDict):
    """Runtime state shared by the orchestrator, scheduler and adapters."""

    store: Any  # RecordStore
    run_logs: Any  # RunLogStore
    phases: Dict[str, RunPhase]  # tier -> phase of its latest run
    running: Dict[str, str]  # tier -> run_id of the run in flight
    last_runs: Dict[str, RunLog]  # tier -> most recent finished run
    last_run_at: datetime | None
    total_runs: int
    total_restored: int
    last_error: str | None


def initialize_backup_state(config: BackupConfig, store: Any) -> BackupState:
    """
    Initialize runtime state for backup operations.

    Nothing is created on disk until a run writes.

    Args:
        config: Backup configuration
        store: RecordStore the pipeline reads from and restores into

    Returns:
        Initialized BackupState dictionary
    """
    from docbackup.catalog import RunLogStore

    return BackupState(
        store=store,
        run_logs=RunLogStore(config.logs_dir),
        phases={},
        running={},
        last_runs={},
        last_run_at=None,
        total_runs=0,
        total_restored=0,
        last_error=None,
    )


def determine_status(
    succeeded: int,
    errors: Sequence[CollectionError],
    cancelled: bool,
    fatal: bool = False,
) -> RunStatus:
    """Terminal status of a run."""
    if fatal:
        return RunStatus.FAILED
    if not errors and not cancelled:
        return RunStatus.SUCCESS
    if succeeded > 0:
        return RunStatus.PARTIAL_SUCCESS
    return RunStatus.FAILED


async def run_backup(
    config: BackupConfig,
    state: BackupState,
    tier: Tier | str | None = None,
    collections: Iterable[str] | None = None,
    formats: Iterable[ExportFormat | str] | None = None,
    dry_run: bool = False,
    cancel_event: asyncio.Event | None = None,
    now: datetime | None = None,
) -> RunLog:
    """
    Run one backup.

    This is the main entry point for backups. It:
    1. Resolves the collections (explicit list, else discovered minus excludes)
    2. Exports them concurrently, at most worker_pool_size at a time
    3. Writes the RunLog and prunes the tier

    Args:
        config: Backup configuration
        state: Runtime state
        tier: Retention tier (None means a manual run, never pruned)
        collections: Overrides config.include_collections
        formats: Overrides config.formats
        dry_run: Resolve the collections and report the planned file names
            without paging, encoding or writing anything
        cancel_event: Set to stop at the next page boundary
        now: Run start time (defaults to the current time)

    Returns:
        The finalized RunLog. Failures are reported in it, not raised.
    """
    from docbackup.backup.exporter import export_collection
    from docbackup.backup.manager import artifact_name, format_stamp, run_id_for
    from docbackup.backup.retention import prune_tier, tier_directory
    from docbackup.codecs import get_codec
    from docbackup.config import parse_format

    tier = Tier(tier) if tier else Tier.MANUAL
    started_at = await state["run_logs"].reserve(ensure_utc(now or datetime.now(UTC)))
    stamp = format_stamp(started_at)
    run_log = RunLog(
        run_id=run_id_for(stamp),
        tier=tier.value,
        started_at=started_at,
        dry_run=dry_run,
    )
    clock = time.monotonic()

    logger.info("backup_run_started", run_id=run_log.run_id, tier=tier.value, dry_run=dry_run)
    state["running"][tier.value] = run_log.run_id
    state["phases"][tier.value] = RunPhase.RESOLVING

    try:
        # Phase 1: resolve collections, codecs and destination
        try:
            selected = tuple(formats) if formats is not None else config.formats
            codecs = [get_codec(fmt) for fmt in dict.fromkeys(parse_format(f) for f in selected)]
            if not codecs:
                raise BackupError("No export format enabled")

            names = await _resolve_collections(config, state["store"], collections)

            destination = tier_directory(config.root_dir, tier)
            if not dry_run:
                try:
                    destination.mkdir(parents=True, exist_ok=True)
                except OSError as e:
                    raise BackupError(
                        f"Cannot create backup directory: {e}",
                        details={"path": str(destination)},
                    ) from e
        except BackupPipelineError as e:
            logger.error("backup_run_precondition_failed", run_id=run_log.run_id, error=str(e))
            run_log.errors.append(CollectionError(collection=None, message=e.message))
            return await _finalize(config, state, run_log, clock, succeeded=0, fatal=True)

        run_log.collections_attempted = len(names)
        # A dry run stops at the plan
        if dry_run:
            for name in names:
                run_log.planned[name] = [
                    artifact_name(name, stamp, codec.file_extension(config.compression)) for codec in codecs
                ]
            return await _finalize(config, state, run_log, clock, succeeded=len(names))

        # Phase 2: export, bounded by the worker pool
        state["phases"][tier.value] = RunPhase.EXPORTING
        semaphore = asyncio.Semaphore(config.worker_pool_size)

        async def export_one(name: str):
            async with semaphore:
                return await export_collection(
                    state["store"],
                    name,
                    codecs,
                    destination,
                    stamp,
                    page_size=config.page_size,
                    page_timeout=config.page_timeout_seconds,
                    retry_attempts=config.retry_attempts,
                    retry_max_wait=config.retry_max_wait_seconds,
                    cancel_event=cancel_event,
                    compression=config.compression,
                    compression_level=config.compression_level,
                    exported_at=started_at,
                )

        succeeded = 0
        for finished in asyncio.as_completed([export_one(name) for name in names]):
            export = await finished
            run_log.total_records += export.record_count
            run_log.manifests.extend(export.manifests)
            run_log.errors.extend(export.errors)
            if export.cancelled:
                run_log.cancelled = True
            if export.succeeded:
                succeeded += 1

        run_log.manifests.sort(key=lambda m: (m.collection, m.codec))

        # Phase 3: finalize, persist and prune
        run_log = await _finalize(config, state, run_log, clock, succeeded=succeeded)

        retention = config.retention_for(tier)
        if retention and run_log.status != RunStatus.FAILED:
            prune_tier(config.root_dir, tier, retention)

        return run_log

    finally:
        state["running"].pop(tier.value, None)
        state["phases"][tier.value] = RunPhase.TERMINAL


async def _resolve_collections(
    config: BackupConfig,
    store: Any,
    requested: Iterable[str] | None,
) -> List[str]:
    """Explicit include list used exactly; otherwise discovered minus excludes."""
    from docbackup.errors import explain_unknown_collections

    include = list(dict.fromkeys(requested if requested is not None else config.include_collections))

    try:
        available = await store.list_collections()
    except StoreError:
        raise
    except Exception as e:
        raise StoreError(f"Cannot list collections: {e}") from e

    if include:
        unknown = [name for name in include if name not in available]
        if unknown:
            raise BackupError(
                explain_unknown_collections(unknown),
                details={"unknown": unknown},
            )
        return include

    excluded = set(config.exclude_collections)
    return [name for name in available if name not in excluded]


async def _finalize(
    config: BackupConfig,
    state: BackupState,
    run_log: RunLog,
    clock: float,
    succeeded: int,
    fatal: bool = False,
) -> RunLog:
    """Set the terminal status, persist the RunLog and update state."""
    state["phases"][run_log.tier] = RunPhase.FINALIZING
    run_log.status = determine_status(succeeded, run_log.errors, run_log.cancelled, fatal)
    run_log.duration_seconds = round(time.monotonic() - clock, 3)

    if not run_log.dry_run:
        try:
            await state["run_logs"].write(run_log)
        except BackupError as e:
            logger.error("run_log_write_failed", run_id=run_log.run_id, error=str(e))

    state["last_runs"][run_log.tier] = run_log
    state["last_run_at"] = run_log.started_at
    state["total_runs"] += 1
    if run_log.errors:
        state["last_error"] = run_log.errors[0].message

    logger.info(
        "backup_run_completed",
        run_id=run_log.run_id,
        tier=run_log.tier,
        status=run_log.status.value,
        collections=run_log.collections_attempted,
        records=run_log.total_records,
        files=len(run_log.manifests),
        errors=len(run_log.errors),
        cancelled=run_log.cancelled,
        duration=run_log.duration_seconds,
    )
    return run_log
