# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
docbackup - Tiered backups of a document database.

Exports every collection into three archival formats (SQL dump, BSON dump,
spreadsheet), keeps daily/weekly/monthly tiers pruned to their retention,
records every run in a JSON run log, and restores collections from any
backup. Package name: docbackup.
"""

__version__ = "0.1.0"

# Configuration creation (user-facing API)
from docbackup.builder import create_config

# Core functions
from docbackup.core import (
    initialize_backup_state,
    run_backup,
    RunLog,
    RunStatus,
)

# Run history
from docbackup.catalog import (
    delete_backup,
    get_run_log,
    list_history,
)

# Restore
from docbackup.backup.restore import (
    RestoreRequest,
    restore_backup,
    restore_run,
)

# Scheduling
from docbackup.scheduler import BackupScheduler

# Records and stores
from docbackup.records import Record
from docbackup.store import InMemoryRecordStore, RecordStore

# Environment-based configuration and profiles (additional helpers)
from docbackup.env import (
    create_config_from_env,
    long_retention,
    lightweight,
)

__all__ = [
    # Version
    "__version__",
    # Configuration creation (primary user-facing APIs)
    "create_config",
    "create_config_from_env",
    "long_retention",
    "lightweight",
    # Core orchestration functions
    "initialize_backup_state",
    "run_backup",
    "RunLog",
    "RunStatus",
    # History
    "delete_backup",
    "get_run_log",
    "list_history",
    # Restore
    "RestoreRequest",
    "restore_backup",
    "restore_run",
    # Scheduling
    "BackupScheduler",
    # Records
    "Record",
    "RecordStore",
    "InMemoryRecordStore",
]
