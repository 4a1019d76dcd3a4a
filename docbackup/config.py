# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
docbackup Configuration - Immutable configuration data structures.

All configuration is frozen (immutable) after creation to prevent
accidental modification while runs are in flight.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Tuple


class Tier(str, Enum):
    """Retention tier a run belongs to."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    MANUAL = "manual"  # Outside any schedule, never pruned


SCHEDULED_TIERS: Tuple[Tier, ...] = (Tier.DAILY, Tier.WEEKLY, Tier.MONTHLY)


class ExportFormat(str, Enum):
    """Archival format produced for each collection."""

    RELATIONAL = "relational"  # SQL dump
    DOCUMENT = "document"  # BSON dump
    TABULAR = "tabular"  # Spreadsheet


# Names used by the original tooling, the CLI and environment variables
FORMAT_ALIASES: Dict[str, ExportFormat] = {
    "relational": ExportFormat.RELATIONAL,
    "postgresql": ExportFormat.RELATIONAL,
    "sql": ExportFormat.RELATIONAL,
    "document": ExportFormat.DOCUMENT,
    "mongodb": ExportFormat.DOCUMENT,
    "bson": ExportFormat.DOCUMENT,
    "tabular": ExportFormat.TABULAR,
    "excel": ExportFormat.TABULAR,
    "xlsx": ExportFormat.TABULAR,
}


class Compression(str, Enum):
    """Streaming compression applied to the relational and document dumps."""

    ZSTD = "zstd"
    GZIP = "gzip"

    @property
    def suffix(self) -> str:
        return "zst" if self is Compression.ZSTD else "gz"


def parse_format(value: "str | ExportFormat") -> ExportFormat:
    """Resolve a format name or alias."""
    if isinstance(value, ExportFormat):
        return value
    try:
        return FORMAT_ALIASES[value.strip().lower()]
    except KeyError:
        from docbackup.errors import explain_invalid_format
        from docbackup.exceptions import ConfigurationError

        raise ConfigurationError(explain_invalid_format(value, FORMAT_ALIASES))


def parse_formats(value: str) -> Tuple[ExportFormat, ...]:
    """Parse 'all' or a comma-separated list of format names."""
    if not value or value.strip().lower() == "all":
        return tuple(ExportFormat)
    formats: List[ExportFormat] = []
    for name in value.split(","):
        if name.strip():
            fmt = parse_format(name)
            if fmt not in formats:
                formats.append(fmt)
    return tuple(formats)


def _validate_cron(expression: str, timezone: str) -> str | None:
    """Return a reason string when a cron expression cannot be parsed."""
    from apscheduler.triggers.cron import CronTrigger

    if not expression or len(expression.split()) != 5:
        return "expected 5 fields"
    try:
        CronTrigger.from_crontab(expression, timezone=timezone)
    except (ValueError, TypeError, LookupError) as e:
        return str(e)
    return None


@dataclass(frozen=True)
class TierConfig:
    """Schedule and retention for one tier."""

    name: Tier
    schedule: str
    retention: int
    enabled: bool = True
    description: str = ""


DEFAULT_TIERS: Dict[Tier, TierConfig] = {
    Tier.DAILY: TierConfig(Tier.DAILY, "0 2 * * *", 7, True, "Daily backup at 2:00 AM"),
    Tier.WEEKLY: TierConfig(Tier.WEEKLY, "0 3 * * 0", 4, True, "Weekly backup (Sunday) at 3:00 AM"),
    Tier.MONTHLY: TierConfig(
        Tier.MONTHLY, "0 4 1 * *", 12, True, "Monthly backup (1st of month) at 4:00 AM"
    ),
}


@dataclass(frozen=True)
class BackupConfig:
    """
    Immutable configuration for the backup pipeline.

    This configuration is frozen after creation so concurrent runs
    can share it safely.
    """

    # Root of the backup tree: {root}/{tier}/ and {root}/logs/
    root_dir: Path = field(default_factory=lambda: Path("./backup"))

    # Schedule and retention per scheduled tier
    tiers: Dict[Tier, TierConfig] = field(default_factory=lambda: dict(DEFAULT_TIERS))

    # Timezone the cron expressions are evaluated in
    timezone: str = "UTC"

    # Formats written for every collection
    formats: Tuple[ExportFormat, ...] = tuple(ExportFormat)

    # Compression for relational and document dumps
    compression: Compression = Compression.ZSTD
    compression_level: int = 19

    # If non-empty, back up exactly these collections
    include_collections: List[str] = field(default_factory=list)

    # Subtracted from the discovered collections when no include list is set
    exclude_collections: List[str] = field(default_factory=list)

    # Concurrent collection exports per run
    worker_pool_size: int = 3

    # Records fetched per page
    page_size: int = 100

    # Per page-fetch timeout
    page_timeout_seconds: float = 30.0

    # Attempts per page for transient store failures (including the first)
    retry_attempts: int = 4
    retry_max_wait_seconds: float = 8.0

    # Refuse to restore artifacts larger than this (bytes)
    max_restore_bytes: int = 50 * 1024 * 1024

    # Number of runs returned by list_history()
    history_limit: int = 20

    # Structured log file (defaults to {root_dir}/logs/backup.log)
    log_level: str = "INFO"
    log_file: Path | None = None
    log_max_bytes: int = 10 * 1024 * 1024
    log_backup_count: int = 5

    def __post_init__(self) -> None:
        """Validate configuration after creation."""
        errors: List[str] = []

        if not str(self.root_dir):
            errors.append("root_dir must not be empty")

        for tier, tier_config in self.tiers.items():
            if tier not in SCHEDULED_TIERS:
                errors.append(f"{tier.value} is not a scheduled tier")
                continue
            if tier_config.name != tier:
                errors.append(f"tier key {tier.value} does not match {tier_config.name.value}")
            if tier_config.retention < 1:
                errors.append(
                    f"{tier.value} retention must be >= 1, got {tier_config.retention}"
                )
            if tier_config.enabled:
                reason = _validate_cron(tier_config.schedule, self.timezone)
                if reason:
                    from docbackup.errors import explain_invalid_schedule

                    errors.append(explain_invalid_schedule(tier.value, tier_config.schedule, reason))

        if not self.formats:
            errors.append("at least one format must be enabled")

        if not 1 <= self.compression_level <= 22:
            errors.append(f"compression_level must be 1-22, got {self.compression_level}")

        if self.compression is Compression.GZIP and self.compression_level > 9:
            errors.append(f"gzip compression_level must be 1-9, got {self.compression_level}")

        if self.worker_pool_size < 1:
            errors.append(f"worker_pool_size must be >= 1, got {self.worker_pool_size}")

        if self.page_size < 1:
            errors.append(f"page_size must be >= 1, got {self.page_size}")

        if self.page_timeout_seconds <= 0:
            errors.append(f"page_timeout_seconds must be > 0, got {self.page_timeout_seconds}")

        if self.retry_attempts < 1:
            errors.append(f"retry_attempts must be >= 1, got {self.retry_attempts}")

        if self.max_restore_bytes < 1:
            errors.append(f"max_restore_bytes must be >= 1, got {self.max_restore_bytes}")

        overlap = set(self.include_collections) & set(self.exclude_collections)
        if overlap:
            errors.append(f"collections both included and excluded: {sorted(overlap)}")

        # Raise all errors at once
        if errors:
            from docbackup.exceptions import ConfigurationError

            raise ConfigurationError(
                "Configuration validation failed",
                details={"errors": errors},
            )

    @property
    def logs_dir(self) -> Path:
        return self.root_dir / "logs"

    @property
    def resolved_log_file(self) -> Path:
        return self.log_file or self.logs_dir / "backup.log"

    def check_root_dir(self, create: bool = True) -> Path:
        """
        Verify the backup root can be used, creating it when asked.

        With create=False a root that does not exist yet passes; the first
        run creates it.

        Raises:
            ConfigurationError: If the root is not a directory, cannot be
                created, or is not readable and writable
        """
        import os

        from docbackup.errors import explain_unreadable_root
        from docbackup.exceptions import ConfigurationError

        root = self.root_dir
        reason = None
        if create:
            try:
                root.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                reason = e.strerror or str(e)
        if reason is None and root.exists():
            if not root.is_dir():
                reason = "not a directory"
            elif not os.access(root, os.R_OK | os.W_OK | os.X_OK):
                reason = "permission denied"

        if reason:
            raise ConfigurationError(explain_unreadable_root(str(root), reason))
        return root

    def retention_for(self, tier: Tier) -> int | None:
        """Runs kept for a tier, or None when the tier is never pruned."""
        tier_config = self.tiers.get(tier)
        return tier_config.retention if tier_config else None

    def with_updates(self, **kwargs) -> "BackupConfig":
        """
        Create a new config with updated values.

        Since the config is frozen, this creates a new instance.
        """
        from dataclasses import fields

        current = {f.name: getattr(self, f.name) for f in fields(self)}
        current.update(kwargs)
        return BackupConfig(**current)
