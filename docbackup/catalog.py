# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
docbackup Catalog - Run logs, history and deletion.

Every finished (non dry-run) run leaves {root}/logs/{run_id}.json. The
history is read back from these files, newest first. Runs of different
tiers may start and finish at the same time, so stamps are reserved and
writes go through one lock.
"""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Set

import aiofiles
import structlog

from docbackup.backup.manager import (
    ArtifactFile,
    RUN_ID_PREFIX,
    format_stamp,
    list_artifacts,
    run_id_for,
    stamp_from_run_id,
    write_artifact,
)
from docbackup.backup.retention import tier_directory
from docbackup.config import BackupConfig, Tier
from docbackup.core import BackupState, RunLog
from docbackup.exceptions import ArtifactNotFoundError, BackupError

logger = structlog.get_logger()

LOG_SUFFIX = ".json"


class RunLogStore:
    """Reads and writes RunLog JSON files in the logs directory."""

    def __init__(self, logs_dir: Path):
        self.logs_dir = Path(logs_dir)
        self._lock = asyncio.Lock()
        self._reserved: Set[str] = set()

    def path_for(self, run_id: str) -> Path:
        return self.logs_dir / f"{run_id}{LOG_SUFFIX}"

    async def reserve(self, started_at: datetime) -> datetime:
        """
        Claim a run start time whose stamp no other run uses.

        A stamp already taken in this process, or by a run log on disk, moves
        the start one millisecond later until it is free.
        """
        async with self._lock:
            moment = started_at
            while True:
                stamp = format_stamp(moment)
                if stamp not in self._reserved and not self.path_for(run_id_for(stamp)).exists():
                    self._reserved.add(stamp)
                    return moment
                moment += timedelta(milliseconds=1)

    async def write(self, run_log: RunLog) -> Path:
        """Persist a finalized RunLog (atomic write)."""
        payload = json.dumps(run_log.to_dict(), indent=2).encode()
        async with self._lock:
            path = await write_artifact(self.logs_dir, self.path_for(run_log.run_id).name, payload)
        logger.debug("run_log_written", run_id=run_log.run_id, path=str(path))
        return path

    async def read(self, run_id: str) -> RunLog | None:
        """Load one RunLog; None when there is no log for the run."""
        path = self.path_for(run_id)
        try:
            async with aiofiles.open(path, "r") as f:
                content = await f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise BackupError(f"Cannot read run log: {e}", details={"path": str(path)}) from e

        try:
            return RunLog.from_dict(json.loads(content))
        except (ValueError, KeyError, TypeError) as e:
            raise BackupError(f"Invalid run log: {e}", details={"path": str(path)}) from e

    def run_ids(self) -> List[str]:
        """Run ids with a log file, newest first."""
        if not self.logs_dir.is_dir():
            return []
        names = [
            path.name[: -len(LOG_SUFFIX)]
            for path in self.logs_dir.iterdir()
            if path.name.startswith(RUN_ID_PREFIX) and path.name.endswith(LOG_SUFFIX)
        ]
        return sorted(names, reverse=True)

    async def list(self, limit: int | None = None) -> List[RunLog]:
        """Most recent RunLogs, newest first. Unreadable logs are skipped."""
        logs: List[RunLog] = []
        for run_id in self.run_ids():
            if limit is not None and len(logs) >= limit:
                break
            try:
                run_log = await self.read(run_id)
            except BackupError as e:
                logger.warning("run_log_skipped", run_id=run_id, error=str(e))
                continue
            if run_log is not None:
                logs.append(run_log)
        return logs

    async def delete(self, run_id: str) -> bool:
        async with self._lock:
            path = self.path_for(run_id)
            try:
                path.unlink()
            except FileNotFoundError:
                return False
            except OSError as e:
                raise BackupError(f"Cannot delete run log: {e}", details={"path": str(path)}) from e
        return True


@dataclass
class DeleteResult:
    """Result of deleting a backup run."""

    run_id: str
    deleted_files: List[str] = field(default_factory=list)
    failed_files: List[str] = field(default_factory=list)
    log_deleted: bool = False


def find_run_artifacts(root: Path, stamp: str) -> List[ArtifactFile]:
    """Every artifact of a run across all tiers."""
    found: List[ArtifactFile] = []
    for tier in Tier:
        found.extend(a for a in list_artifacts(tier_directory(root, tier)) if a.stamp == stamp)
    return sorted(found, key=lambda a: (a.collection, a.path.name))


async def list_history(
    config: BackupConfig,
    state: BackupState,
    limit: int | None = None,
) -> List[RunLog]:
    """
    Recent runs, newest first.

    Args:
        config: Backup configuration
        state: Runtime state
        limit: Maximum runs (defaults to config.history_limit)
    """
    return await state["run_logs"].list(config.history_limit if limit is None else limit)


async def get_run_log(config: BackupConfig, state: BackupState, backup_id: str) -> RunLog:
    """
    Load the RunLog of one run.

    Raises:
        ArtifactNotFoundError: If the run has no log
    """
    stamp = stamp_from_run_id(backup_id)
    run_log = await state["run_logs"].read(run_id_for(stamp)) if stamp else None
    if run_log is None:
        raise ArtifactNotFoundError(
            f"Backup not found: {backup_id}",
            details={"backup_id": backup_id},
        )
    return run_log


async def delete_backup(config: BackupConfig, state: BackupState, backup_id: str) -> DeleteResult:
    """
    Delete every artifact of a run across all tiers, plus its run log.

    Raises:
        ArtifactNotFoundError: If nothing matches the backup id
    """
    stamp = stamp_from_run_id(backup_id)
    if stamp is None:
        raise ArtifactNotFoundError(
            f"Backup not found: {backup_id}",
            details={"backup_id": backup_id},
        )

    run_id = run_id_for(stamp)
    artifacts = find_run_artifacts(config.root_dir, stamp)
    has_log = state["run_logs"].path_for(run_id).exists()

    if not artifacts and not has_log:
        raise ArtifactNotFoundError(
            f"Backup not found: {backup_id}",
            details={"backup_id": backup_id},
        )

    result = DeleteResult(run_id=run_id)
    for artifact in artifacts:
        try:
            artifact.path.unlink()
            result.deleted_files.append(artifact.path.name)
        except OSError as e:
            result.failed_files.append(artifact.path.name)
            logger.warning("backup_file_delete_failed", path=str(artifact.path), error=str(e))

    result.log_deleted = await state["run_logs"].delete(run_id)

    logger.info(
        "backup_deleted",
        run_id=run_id,
        files_deleted=len(result.deleted_files),
        files_failed=len(result.failed_files),
        log_deleted=result.log_deleted,
    )
    return result
