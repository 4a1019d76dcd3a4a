# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Environment-based configuration helpers and profiles.

These helpers are small, convenient wrappers around create_config() and
BackupConfig.with_updates(). They make it easy to:

- Build a configuration from environment variables
- Apply ready-made retention profiles
"""

from __future__ import annotations

import os
import re
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Mapping

from docbackup.builder import create_config
from docbackup.config import (
    DEFAULT_TIERS,
    SCHEDULED_TIERS,
    BackupConfig,
    Compression,
    ExportFormat,
    TierConfig,
)
from docbackup.errors import explain_invalid_compression, explain_invalid_integer_env
from docbackup.exceptions import ConfigurationError

# Format toggles, all enabled unless set to "false"
FORMAT_ENV: Dict[str, ExportFormat] = {
    "BACKUP_FORMAT_POSTGRESQL": ExportFormat.RELATIONAL,
    "BACKUP_FORMAT_MONGODB": ExportFormat.DOCUMENT,
    "BACKUP_FORMAT_EXCEL": ExportFormat.TABULAR,
}

_SIZE_RE = re.compile(r"^\s*(\d+)\s*([kmg]?)b?\s*$", re.IGNORECASE)
_SIZE_UNITS = {"": 1, "k": 1024, "m": 1024 * 1024, "g": 1024 * 1024 * 1024}


def _parse_int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    value = env.get(name)
    if not value:
        return default
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(explain_invalid_integer_env(name, value, minimum)) from exc
    if number < minimum:
        raise ConfigurationError(explain_invalid_integer_env(name, value, minimum))
    return number


def _parse_size(env: Mapping[str, str], name: str, default: int) -> int:
    """Byte size such as '52428800', '50m' or '10MB'."""
    value = env.get(name)
    if not value:
        return default
    match = _SIZE_RE.match(value)
    if not match:
        raise ConfigurationError(explain_invalid_integer_env(name, value, 1))
    return int(match.group(1)) * _SIZE_UNITS[match.group(2).lower()]


def _parse_flag(env: Mapping[str, str], name: str) -> bool:
    return env.get(name, "").strip().lower() != "false"


def _parse_list(value: str | None) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_compression(value: str | None) -> Compression:
    if not value:
        return Compression.ZSTD
    try:
        return Compression(value.strip().lower())
    except ValueError as exc:
        raise ConfigurationError(explain_invalid_compression(value)) from exc


def create_config_from_env(env: Mapping[str, str] | None = None) -> BackupConfig:
    """
    Create a BackupConfig from environment variables.

    Optional environment variables:
        - BACKUP_DIR: Backup root directory (default: ./backup)
        - BACKUP_RETENTION_DAILY / _WEEKLY / _MONTHLY: Runs kept (7 / 4 / 12)
        - BACKUP_CRON_DAILY / _WEEKLY / _MONTHLY: 5-field cron expressions
        - BACKUP_CRON_DAILY_ENABLED (etc.): "false" disables the tier
        - BACKUP_FORMAT_POSTGRESQL / _MONGODB / _EXCEL: "false" disables a format
        - BACKUP_INCLUDE_COLLECTIONS: Comma-separated, back up exactly these
        - BACKUP_EXCLUDE_COLLECTIONS: Comma-separated, skipped otherwise
        - BACKUP_WORKERS: Concurrent collection exports (default: 3)
        - BACKUP_PAGE_SIZE: Records per page (default: 100)
        - BACKUP_COMPRESSION: 'zstd' | 'gzip' (default: zstd)
        - MAX_BACKUP_FILE_SIZE: Largest restorable artifact, e.g. '50m'
        - BACKUP_LOG_LEVEL: debug | info | warning | error (default: info)
        - BACKUP_LOG_FILE: Structured log file (default: {BACKUP_DIR}/logs/backup.log)
        - BACKUP_LOG_MAX_SIZE / BACKUP_LOG_MAX_FILES: Log rotation ('10m' / 5)
        - TZ: Timezone the schedules are evaluated in (default: UTC)

    Args:
        env: Mapping to read instead of os.environ
    """
    env = os.environ if env is None else env

    schedules: Dict[str, str] = {}
    retention: Dict[str, int] = {}
    disabled: List[str] = []

    for tier in SCHEDULED_TIERS:
        key = tier.value.upper()
        retention[tier.value] = _parse_int(
            env, f"BACKUP_RETENTION_{key}", DEFAULT_TIERS[tier].retention, minimum=1
        )
        cron = env.get(f"BACKUP_CRON_{key}")
        if cron:
            schedules[tier.value] = cron
        if not _parse_flag(env, f"BACKUP_CRON_{key}_ENABLED"):
            disabled.append(tier.value)

    formats = [fmt for name, fmt in FORMAT_ENV.items() if _parse_flag(env, name)]
    compression = _parse_compression(env.get("BACKUP_COMPRESSION"))
    log_file = env.get("BACKUP_LOG_FILE")

    return create_config(
        Path(env.get("BACKUP_DIR") or "./backup"),
        include=_parse_list(env.get("BACKUP_INCLUDE_COLLECTIONS")),
        exclude=_parse_list(env.get("BACKUP_EXCLUDE_COLLECTIONS")),
        formats=formats,
        schedules=schedules,
        retention=retention,
        disabled_tiers=disabled,
        compression=compression,
        timezone=env.get("TZ") or "UTC",
        worker_pool_size=_parse_int(env, "BACKUP_WORKERS", 3, minimum=1),
        page_size=_parse_int(env, "BACKUP_PAGE_SIZE", 100, minimum=1),
        max_restore_bytes=_parse_size(env, "MAX_BACKUP_FILE_SIZE", 50 * 1024 * 1024),
        log_level=(env.get("BACKUP_LOG_LEVEL") or "INFO").upper(),
        log_file=Path(log_file) if log_file else None,
        log_max_bytes=_parse_size(env, "BACKUP_LOG_MAX_SIZE", 10 * 1024 * 1024),
        log_backup_count=_parse_int(env, "BACKUP_LOG_MAX_FILES", 5),
    )


# ============================================================================
# Profiles
# ============================================================================

def long_retention(config: BackupConfig) -> BackupConfig:
    """
    Keep more history.

    - At least 14 daily, 8 weekly and 24 monthly runs
    """

    minimums = {"daily": 14, "weekly": 8, "monthly": 24}
    tiers = {
        tier: _with_retention(tier_config, max(tier_config.retention, minimums[tier.value]))
        for tier, tier_config in config.tiers.items()
    }
    return config.with_updates(tiers=tiers)


def lightweight(config: BackupConfig) -> BackupConfig:
    """
    Smallest footprint.

    - Document dumps only (the lossless format)
    - Single worker
    - At most 3 daily runs kept
    """

    tiers = dict(config.tiers)
    for tier, tier_config in config.tiers.items():
        if tier.value == "daily":
            tiers[tier] = _with_retention(tier_config, min(tier_config.retention, 3))

    return config.with_updates(
        formats=(ExportFormat.DOCUMENT,),
        worker_pool_size=1,
        tiers=tiers,
    )


def _with_retention(tier_config: TierConfig, retention: int) -> TierConfig:
    return replace(tier_config, retention=retention)
