# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
docbackup Builder - Functional builder pattern for configuration.

This module provides pure functions for building BackupConfig objects.
Each function takes a config dict and returns a new dict with the
modification applied (immutable updates).
"""

from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Tuple

from docbackup.config import (
    DEFAULT_TIERS,
    BackupConfig,
    Compression,
    ExportFormat,
    Tier,
    TierConfig,
    parse_format,
)
from docbackup.exceptions import ConfigurationError


# Type alias for builder functions
ConfigDict = Dict[str, Any]
BuilderFunc = Callable[[ConfigDict], ConfigDict]


def create_empty_config() -> ConfigDict:
    """
    Create an initial configuration dictionary.

    Returns:
        Dict with default values for all configuration fields
    """
    return {
        "root_dir": Path("./backup"),
        "tiers": dict(DEFAULT_TIERS),
        "timezone": "UTC",
        "formats": tuple(ExportFormat),
        "compression": Compression.ZSTD,
        "compression_level": 19,
        "include_collections": [],
        "exclude_collections": [],
        "worker_pool_size": 3,
        "page_size": 100,
        "page_timeout_seconds": 30.0,
        "retry_attempts": 4,
        "retry_max_wait_seconds": 8.0,
        "max_restore_bytes": 50 * 1024 * 1024,
        "history_limit": 20,
        "log_level": "INFO",
        "log_file": None,
        "log_max_bytes": 10 * 1024 * 1024,
        "log_backup_count": 5,
    }


def with_root_dir(config: ConfigDict, root_dir: Path | str) -> ConfigDict:
    """
    Set the backup root directory.

    Args:
        config: Current configuration dictionary
        root_dir: Directory holding the tier directories and logs/

    Returns:
        New configuration dictionary with root_dir set
    """
    return {**config, "root_dir": Path(root_dir)}


def include_collections(config: ConfigDict, names: Iterable[str]) -> ConfigDict:
    """
    Back up exactly these collections.

    Unknown names make a run fail, they are never silently skipped.
    """
    merged = list(config["include_collections"])
    merged.extend(name for name in names if name not in merged)
    return {**config, "include_collections": merged}


def exclude_collections(config: ConfigDict, names: Iterable[str]) -> ConfigDict:
    """Skip these collections when no include list is set."""
    merged = list(config["exclude_collections"])
    merged.extend(name for name in names if name not in merged)
    return {**config, "exclude_collections": merged}


def enable_formats(config: ConfigDict, formats: Iterable[ExportFormat | str]) -> ConfigDict:
    """
    Choose the formats written for every collection.

    Args:
        config: Current configuration dictionary
        formats: Format names or aliases, e.g. ["document", "excel"]

    Returns:
        New configuration dictionary with formats set
    """
    parsed = tuple(dict.fromkeys(parse_format(fmt) for fmt in formats))
    return {**config, "formats": parsed}


def schedule_tier(config: ConfigDict, tier: Tier | str, cron: str) -> ConfigDict:
    """
    Set the cron schedule of a tier (5-field cron expression).

    Example:
        schedule_tier(config, "daily", "30 1 * * *")
    """
    tier, tiers = _tiers_for(config, tier)
    tiers[tier] = replace(tiers[tier], schedule=cron, enabled=True)
    return {**config, "tiers": tiers}


def keep_runs(config: ConfigDict, tier: Tier | str, count: int) -> ConfigDict:
    """Set how many runs a tier keeps."""
    tier, tiers = _tiers_for(config, tier)
    tiers[tier] = replace(tiers[tier], retention=count)
    return {**config, "tiers": tiers}


def disable_tier(config: ConfigDict, tier: Tier | str) -> ConfigDict:
    """
    Stop scheduling a tier.

    Its existing backups are still pruned by manual trigger_tier() runs.
    """
    tier, tiers = _tiers_for(config, tier)
    tiers[tier] = replace(tiers[tier], enabled=False)
    return {**config, "tiers": tiers}


def with_timezone(config: ConfigDict, timezone: str) -> ConfigDict:
    """Timezone the tier schedules are evaluated in."""
    return {**config, "timezone": timezone}


def with_worker_pool(config: ConfigDict, size: int) -> ConfigDict:
    """
    Set how many collections are exported concurrently.

    Args:
        config: Current configuration dictionary
        size: Worker pool size (>= 1)

    Returns:
        New configuration dictionary with worker_pool_size set
    """
    return {**config, "worker_pool_size": size}


def with_page_size(config: ConfigDict, page_size: int) -> ConfigDict:
    """Set the number of records fetched per page."""
    return {**config, "page_size": page_size}


def use_compression(
    config: ConfigDict,
    method: Compression | str,
    level: int | None = None,
) -> ConfigDict:
    """
    Choose the compression for relational and document dumps.

    Args:
        config: Current configuration dictionary
        method: "zstd" (default) or "gzip"
        level: Compression level (zstd 1-22, gzip 1-9)
    """
    method = Compression(method)
    if level is None:
        level = 19 if method is Compression.ZSTD else 6
    return {**config, "compression": method, "compression_level": level}


def _tiers_for(config: ConfigDict, tier: Tier | str) -> Tuple[Tier, Dict[Tier, TierConfig]]:
    tier = Tier(tier)
    if tier not in config["tiers"]:
        raise ConfigurationError(f"{tier.value} is not a scheduled tier")
    return tier, dict(config["tiers"])


def build_config(config_dict: ConfigDict) -> BackupConfig:
    """
    Build the final immutable BackupConfig from a dictionary.

    Raises:
        ConfigurationError: If any value is invalid
    """
    return BackupConfig(**config_dict)


def pipe(*funcs: BuilderFunc) -> BuilderFunc:
    """
    Compose multiple builder functions into a single function.

    This allows a more readable pipeline style:
        config = pipe(
            lambda c: with_root_dir(c, "/var/backups/app"),
            lambda c: keep_runs(c, "daily", 14),
            lambda c: exclude_collections(c, ["sessions"]),
        )(create_empty_config())
    """

    def composed(config: ConfigDict) -> ConfigDict:
        result = config
        for func in funcs:
            result = func(result)
        return result

    return composed


def build_from_steps(*steps: BuilderFunc) -> BackupConfig:
    """
    Build a config by applying steps to the default configuration.

    This is a convenience function that combines pipe() and build_config().
    """
    return build_config(pipe(*steps)(create_empty_config()))


def create_config(
    root_dir: str | Path = "./backup",
    *,
    include: List[str] | None = None,
    exclude: List[str] | None = None,
    formats: Iterable[ExportFormat | str] | None = None,
    schedules: Dict[str, str] | None = None,
    retention: Dict[str, int] | None = None,
    disabled_tiers: Iterable[str] | None = None,
    compression: str | Compression = Compression.ZSTD,
    compression_level: int | None = None,
    **kwargs: Any,
) -> BackupConfig:
    """
    Create backup configuration from simple parameters.

    This is the recommended user-facing API for creating configurations.

    Args:
        root_dir: Backup root directory (default: "./backup")
        include: Back up exactly these collections (default: all)
        exclude: Collections to skip when no include list is given
        formats: Format names, e.g. ["document", "relational"] (default: all three)
        schedules: Cron expression per tier, e.g. {"daily": "0 2 * * *"}
        retention: Runs kept per tier, e.g. {"daily": 7, "weekly": 4}
        disabled_tiers: Tiers that are never scheduled
        compression: "zstd" or "gzip"
        compression_level: Overrides the method's default level
        **kwargs: Any other BackupConfig field (worker_pool_size, page_size, ...)

    Returns:
        Validated, immutable BackupConfig instance

    Example:
        config = create_config(
            "/var/backups/app",
            exclude=["sessions", "audit_logs"],
            retention={"daily": 14},
            worker_pool_size=4,
        )
    """
    config_dict = with_root_dir(create_empty_config(), root_dir)

    if include:
        config_dict = include_collections(config_dict, include)

    if exclude:
        config_dict = exclude_collections(config_dict, exclude)

    if formats is not None:
        config_dict = enable_formats(config_dict, formats)

    for tier, cron in (schedules or {}).items():
        config_dict = schedule_tier(config_dict, tier, cron)

    for tier, count in (retention or {}).items():
        config_dict = keep_runs(config_dict, tier, count)

    for tier in disabled_tiers or ():
        config_dict = disable_tier(config_dict, tier)

    config_dict = use_compression(config_dict, compression, compression_level)

    # Apply any additional kwargs
    for key, value in kwargs.items():
        if key in config_dict:
            config_dict[key] = value

    return build_config(config_dict)
