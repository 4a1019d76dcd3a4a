# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Backup Engine - Artifact files, export, retention and restore.
"""

from docbackup.backup.manager import (
    ArtifactFile,
    artifact_name,
    format_stamp,
    list_artifacts,
    parse_artifact_name,
    read_artifact,
    write_artifact,
)

from docbackup.backup.retention import (
    PruneResult,
    get_storage_stats,
    list_artifact_groups,
    prune_tier,
    tier_directory,
)

from docbackup.backup.restore import (
    RecordFailure,
    RestoreRequest,
    RestoreResult,
    restore_backup,
    restore_run,
)

__all__ = [
    # Manager
    "ArtifactFile",
    "artifact_name",
    "format_stamp",
    "list_artifacts",
    "parse_artifact_name",
    "read_artifact",
    "write_artifact",
    # Retention
    "PruneResult",
    "get_storage_stats",
    "list_artifact_groups",
    "prune_tier",
    "tier_directory",
    # Restore
    "RecordFailure",
    "RestoreRequest",
    "RestoreResult",
    "restore_backup",
    "restore_run",
]
