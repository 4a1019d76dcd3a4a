# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
docbackup Restore Engine - Load a snapshot back into the record store.

A restore first resolves, reads, decompresses and decodes the artifact.
Any failure in that phase is raised before a single record is written.
Records are then written one by one; per-record failures (duplicates in
insert-only mode, store errors) are collected in the result.
"""

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Sequence, Tuple

import structlog

from docbackup.backup.compressor import decompress_async
from docbackup.backup.manager import (
    ArtifactFile,
    parse_artifact_name,
    read_artifact,
    run_id_for,
    sanitize_collection_name,
    stamp_from_run_id,
)
from docbackup.backup.retention import tier_directory
from docbackup.codecs import AUTO_RESTORE_ORDER, get_codec
from docbackup.config import BackupConfig, ExportFormat, Tier, parse_format
from docbackup.core import BackupState, RunLog
from docbackup.errors import explain_tabular_not_auto
from docbackup.exceptions import (
    ArtifactNotFoundError,
    BackupError,
    CorruptArchiveError,
    DuplicateRecordError,
    FormatError,
    RestoreError,
)
from docbackup.records import Record

logger = structlog.get_logger()

AUTO = "auto"


@dataclass(frozen=True)
class RestoreRequest:
    """What to restore and where to."""

    backup_id: str  # run id, artifact file name, or path to an artifact
    target_collection: str
    format: str = AUTO
    overwrite: bool = False
    source_collection: str | None = None  # defaults to target_collection
    dry_run: bool = False

    @property
    def source(self) -> str:
        return self.source_collection or self.target_collection


@dataclass(frozen=True)
class RecordFailure:
    """A record that could not be written."""

    record_id: str
    error_type: str
    message: str


@dataclass
class RestoreResult:
    """Result of a restore operation."""

    backup_id: str
    collection: str
    codec: str
    artifact_path: str
    written: int = 0
    skipped: int = 0
    failed: int = 0
    failures: List[RecordFailure] = field(default_factory=list)
    dry_run: bool = False
    duration_seconds: float = 0.0


async def restore_backup(
    config: BackupConfig,
    state: BackupState,
    request: RestoreRequest,
) -> RestoreResult:
    """
    Restore one collection from a backup.

    Args:
        config: Backup configuration
        state: Runtime state
        request: What to restore

    Returns:
        RestoreResult with written/skipped/failed counts

    Raises:
        ArtifactNotFoundError: If the backup id resolves to nothing
        RestoreError: If the artifact is too large or the format is not allowed
        CorruptArchiveError: If the artifact cannot be decompressed or decoded
    """
    clock = time.monotonic()
    artifact, records = await _load(config, state, request)
    result = await _write(state, request, artifact, records)
    result.duration_seconds = round(time.monotonic() - clock, 3)
    _log_result(result)
    return result


async def restore_run(
    config: BackupConfig,
    state: BackupState,
    backup_id: str,
    format: str = AUTO,
    overwrite: bool = False,
    dry_run: bool = False,
) -> List[RestoreResult]:
    """
    Restore every collection of a run into same-named collections.

    All artifacts are loaded and decoded before anything is written, so
    a corrupt artifact aborts the whole restore without partial writes.
    """
    stamp = stamp_from_run_id(backup_id)
    if stamp is None:
        raise ArtifactNotFoundError(f"Backup not found: {backup_id}", details={"backup_id": backup_id})

    run_log = await state["run_logs"].read(run_id_for(stamp))
    if run_log is not None and run_log.collections:
        collections = run_log.collections
    else:
        from docbackup.catalog import find_run_artifacts

        collections = sorted({a.collection for a in find_run_artifacts(config.root_dir, stamp)})

    if not collections:
        raise ArtifactNotFoundError(f"Backup not found: {backup_id}", details={"backup_id": backup_id})

    logger.info("restore_run_started", backup_id=backup_id, collections=len(collections), dry_run=dry_run)

    loaded: List[Tuple[RestoreRequest, ArtifactFile, List[Record]]] = []
    for collection in collections:
        request = RestoreRequest(
            backup_id=run_id_for(stamp),
            target_collection=collection,
            format=format,
            overwrite=overwrite,
            dry_run=dry_run,
        )
        artifact, records = await _load(config, state, request, run_log=run_log)
        loaded.append((request, artifact, records))

    results: List[RestoreResult] = []
    for request, artifact, records in loaded:
        clock = time.monotonic()
        result = await _write(state, request, artifact, records)
        result.duration_seconds = round(time.monotonic() - clock, 3)
        _log_result(result)
        results.append(result)
    return results


async def resolve_artifact(
    config: BackupConfig,
    state: BackupState,
    request: RestoreRequest,
    run_log: RunLog | None = None,
) -> ArtifactFile:
    """
    Find the artifact a restore request refers to.

    Resolution order: explicit path, artifact file name searched across
    the tier directories, then run id plus source collection (via the
    run's manifests, falling back to a directory scan). In auto mode the
    document dump is preferred over the relational dump; spreadsheets are
    only used when asked for by name.
    """
    wanted = _wanted_formats(request.format)

    candidate = Path(request.backup_id)
    if candidate.is_file() and (candidate.is_absolute() or len(candidate.parts) > 1):
        return _check_named(candidate, request)

    if len(candidate.parts) == 1:
        named = parse_artifact_name(candidate)
        if named is not None:
            for tier in Tier:
                path = tier_directory(config.root_dir, tier) / candidate.name
                if path.is_file():
                    return _check_named(path, request)
            raise ArtifactNotFoundError(
                f"Backup file not found: {request.backup_id}",
                details={"backup_id": request.backup_id},
            )

    stamp = stamp_from_run_id(request.backup_id)
    if stamp is None:
        raise ArtifactNotFoundError(
            f"Backup not found: {request.backup_id}",
            details={"backup_id": request.backup_id},
        )

    if run_log is None:
        run_log = await state["run_logs"].read(run_id_for(stamp))

    if run_log is not None:
        for fmt in wanted:
            for manifest in run_log.manifests:
                if manifest.collection != request.source or manifest.codec != fmt.value:
                    continue
                artifact = parse_artifact_name(Path(manifest.path))
                if artifact is not None and artifact.path.is_file():
                    return artifact

    from docbackup.catalog import find_run_artifacts

    source_name = sanitize_collection_name(request.source)
    scanned = [
        a for a in find_run_artifacts(config.root_dir, stamp) if a.collection == source_name
    ]
    for fmt in wanted:
        matches = sorted((a for a in scanned if a.format is fmt), key=lambda a: a.path.name, reverse=True)
        if matches:
            return matches[0]

    raise ArtifactNotFoundError(
        f"No {'/'.join(f.value for f in wanted)} backup of {request.source!r} in {request.backup_id}",
        details={"backup_id": request.backup_id, "collection": request.source},
    )


def _wanted_formats(value: str) -> Sequence[ExportFormat]:
    if not value or value.lower() == AUTO:
        return AUTO_RESTORE_ORDER
    return (parse_format(value),)


def _check_named(path: Path, request: RestoreRequest) -> ArtifactFile:
    """Validate an artifact named directly by path or file name."""
    artifact = parse_artifact_name(path)
    if artifact is None:
        raise RestoreError(
            f"Cannot detect the format of {path.name}",
            details={"path": str(path)},
        )

    if not request.format or request.format.lower() == AUTO:
        if artifact.format not in AUTO_RESTORE_ORDER:
            raise RestoreError(explain_tabular_not_auto(path.name), details={"path": str(path)})
    elif parse_format(request.format) is not artifact.format:
        raise RestoreError(
            f"{path.name} is a {artifact.format.value} backup, not {request.format}",
            details={"path": str(path)},
        )
    return artifact


async def _load(
    config: BackupConfig,
    state: BackupState,
    request: RestoreRequest,
    run_log: RunLog | None = None,
) -> Tuple[ArtifactFile, List[Record]]:
    """Resolve, read, decompress and decode. Nothing is written here."""
    artifact = await resolve_artifact(config, state, request, run_log=run_log)

    size = artifact.path.stat().st_size
    if size > config.max_restore_bytes:
        raise RestoreError(
            f"Backup file is too large to restore: {size} bytes "
            f"(limit {config.max_restore_bytes})",
            details={"path": str(artifact.path), "size": size},
        )

    try:
        data = await read_artifact(artifact.path)
    except BackupError as e:
        raise RestoreError(e.message, details=e.details) from e

    if artifact.compression is not None:
        data = await decompress_async(data, artifact.compression)

    try:
        records = get_codec(artifact.format).decode(data)
    except FormatError as e:
        raise CorruptArchiveError(
            f"Cannot decode {artifact.path.name}: {e.message}",
            details={"path": str(artifact.path)},
        ) from e

    logger.debug(
        "restore_artifact_loaded",
        path=str(artifact.path),
        codec=artifact.format.value,
        records=len(records),
    )
    return artifact, records


async def _write(
    state: BackupState,
    request: RestoreRequest,
    artifact: ArtifactFile,
    records: List[Record],
) -> RestoreResult:
    result = RestoreResult(
        backup_id=request.backup_id,
        collection=request.target_collection,
        codec=artifact.format.value,
        artifact_path=str(artifact.path),
        dry_run=request.dry_run,
    )

    for record in records:
        if request.dry_run:
            result.skipped += 1
            continue

        try:
            await state["store"].write_record(request.target_collection, record, request.overwrite)
            result.written += 1
        except DuplicateRecordError as e:
            result.failed += 1
            result.failures.append(RecordFailure(record.id, "duplicate", e.message))
        except Exception as e:
            result.failed += 1
            result.failures.append(RecordFailure(record.id, type(e).__name__, str(e)))
            logger.error(
                "restore_record_failed",
                collection=request.target_collection,
                record_id=record.id,
                error=str(e),
            )

    state["total_restored"] += result.written
    return result


def _log_result(result: RestoreResult) -> None:
    logger.info(
        "restore_completed",
        backup_id=result.backup_id,
        collection=result.collection,
        codec=result.codec,
        written=result.written,
        skipped=result.skipped,
        failed=result.failed,
        duration=result.duration_seconds,
        dry_run=result.dry_run,
    )
