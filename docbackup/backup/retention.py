# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
docbackup Retention Manager - Tier directories and pruning.

Retention counts runs, not files: a tier keeping N runs keeps every
artifact whose stamp is among the N most recent stamps in that tier.
All files of one (collection, stamp) group go together or not at all.
"""

from dataclasses import dataclass, field
from datetime import datetime, UTC
from pathlib import Path
from typing import Dict, List, Tuple

import structlog

from docbackup.backup.manager import ArtifactFile, list_artifacts
from docbackup.config import Tier
from docbackup.exceptions import BackupError

logger = structlog.get_logger()

DELETING_SUFFIX = ".deleting"

GroupKey = Tuple[str, str]  # (collection, stamp)


@dataclass
class PruneResult:
    """Result of pruning one tier."""

    tier: str
    kept: List[GroupKey] = field(default_factory=list)
    deleted: List[GroupKey] = field(default_factory=list)
    failed: List[GroupKey] = field(default_factory=list)
    bytes_freed: int = 0
    dry_run: bool = False


def tier_directory(root: Path, tier: Tier | str) -> Path:
    """Directory holding a tier's artifacts: {root}/{tier}."""
    return Path(root) / Tier(tier).value


def list_artifact_groups(directory: Path) -> Dict[GroupKey, List[ArtifactFile]]:
    """Group a directory's artifacts by (collection, stamp)."""
    groups: Dict[GroupKey, List[ArtifactFile]] = {}
    for artifact in list_artifacts(directory):
        groups.setdefault(artifact.group_key, []).append(artifact)
    return groups


def prune_tier(
    root: Path,
    tier: Tier | str,
    keep: int,
    dry_run: bool = False,
) -> PruneResult:
    """
    Delete the groups outside the `keep` most recent runs of a tier.

    Groups are deleted oldest first. A group that cannot be deleted
    completely is restored, logged and counted in `failed`.

    Args:
        root: Backup root directory
        tier: A scheduled tier
        keep: Number of runs to keep (>= 1)
        dry_run: Report what would be deleted without deleting

    Returns:
        PruneResult listing kept, deleted and failed groups
    """
    tier = Tier(tier)
    if tier is Tier.MANUAL:
        raise BackupError("Manual backups are never pruned")
    if keep < 1:
        raise BackupError(f"keep must be >= 1, got {keep}")

    result = PruneResult(tier=tier.value, dry_run=dry_run)
    directory = tier_directory(root, tier)
    if not dry_run:
        remove_stale_deletions(directory)

    groups = list_artifact_groups(directory)
    if not groups:
        return result

    stamps = sorted({stamp for _, stamp in groups}, reverse=True)
    kept_stamps = set(stamps[:keep])

    # Oldest first
    for key in sorted(groups, key=lambda k: (k[1], k[0])):
        if key[1] in kept_stamps:
            result.kept.append(key)
            continue

        files = groups[key]
        size = sum(_size(artifact.path) for artifact in files)

        if dry_run:
            result.deleted.append(key)
            result.bytes_freed += size
            logger.debug("artifact_group_would_prune", tier=tier.value, collection=key[0], stamp=key[1])
            continue

        if _delete_group(files):
            result.deleted.append(key)
            result.bytes_freed += size
            logger.debug("artifact_group_pruned", tier=tier.value, collection=key[0], stamp=key[1])
        else:
            result.failed.append(key)

    logger.info(
        "tier_pruning_complete",
        tier=tier.value,
        kept=len(result.kept),
        deleted=len(result.deleted),
        failed=len(result.failed),
        bytes_freed=result.bytes_freed,
        dry_run=dry_run,
    )
    return result


def _delete_group(files: List[ArtifactFile]) -> bool:
    """Rename every file aside, then unlink. Rolls the renames back on failure."""
    moved: List[Tuple[Path, Path]] = []
    try:
        for artifact in files:
            pending = artifact.path.with_name(artifact.path.name + DELETING_SUFFIX)
            artifact.path.rename(pending)
            moved.append((artifact.path, pending))
    except OSError as e:
        for original, pending in reversed(moved):
            try:
                pending.rename(original)
            except OSError as rollback_error:
                logger.error(
                    "prune_rollback_failed",
                    path=str(original),
                    error=str(rollback_error),
                )
        logger.warning(
            "prune_group_failed",
            path=str(files[0].path),
            error=str(e),
        )
        return False

    for _, pending in moved:
        try:
            pending.unlink()
        except OSError as e:
            # Already renamed out of the artifact namespace; left for the next prune
            logger.warning("prune_unlink_failed", path=str(pending), error=str(e))
    return True


def remove_stale_deletions(directory: Path) -> int:
    """Remove '.deleting' leftovers from an interrupted prune."""
    removed = 0
    if not directory.is_dir():
        return removed
    for path in directory.glob(f"*{DELETING_SUFFIX}"):
        try:
            path.unlink()
            removed += 1
        except OSError as e:
            logger.warning("stale_deletion_remove_failed", path=str(path), error=str(e))
    return removed


def get_storage_stats(root: Path) -> dict:
    """
    Get statistics about backup storage per tier.

    Args:
        root: Backup root directory

    Returns:
        Dict with per-tier file counts, bytes and run counts
    """
    stats: dict = {"tiers": {}, "total_files": 0, "total_bytes": 0}

    for tier in Tier:
        artifacts = list_artifacts(tier_directory(root, tier))
        stamps = sorted({artifact.stamp for artifact in artifacts})
        size = sum(_size(artifact.path) for artifact in artifacts)
        stats["tiers"][tier.value] = {
            "files": len(artifacts),
            "bytes": size,
            "runs": len(stamps),
            "oldest_run": stamps[0] if stamps else None,
            "newest_run": stamps[-1] if stamps else None,
        }
        stats["total_files"] += len(artifacts)
        stats["total_bytes"] += size

    stats["computed_at"] = datetime.now(UTC).isoformat()
    return stats


def _size(path: Path) -> int:
    try:
        return path.stat().st_size
    except OSError:
        return 0
