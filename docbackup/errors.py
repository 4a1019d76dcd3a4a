# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Human-friendly error message helpers for docbackup.

These helpers centralize wording for common configuration errors so that
all modules present consistent, actionable messages.
"""

from typing import Iterable


def explain_invalid_integer_env(name: str, value: str | None, minimum: int = 0) -> str:
    """
    Explain that an integer environment variable is invalid.
    """

    return (
        f"Invalid {name} value: {value!r}. "
        f"It must be an integer greater than or equal to {minimum}."
    )


def explain_invalid_schedule(tier: str, expression: str, reason: str) -> str:
    """
    Explain that a tier's cron expression cannot be parsed.
    """

    return (
        f"Invalid schedule for the {tier} tier: {expression!r} ({reason}). "
        "Expected a 5-field cron expression such as '0 2 * * *'."
    )


def explain_invalid_format(value: str, known: Iterable[str]) -> str:
    """
    Explain that an export format name is unknown.
    """

    return (
        f"Unknown backup format: {value!r}. "
        f"Expected 'all' or one of: {', '.join(sorted(known))}."
    )


def explain_invalid_compression(value: str | None) -> str:
    """
    Explain that BACKUP_COMPRESSION is invalid.
    """

    return (
        f"Invalid compression method: {value!r}. "
        "Expected 'zstd' or 'gzip'."
    )


def explain_unreadable_root(root_dir: str, reason: str) -> str:
    """
    Explain that the backup root directory cannot be used.
    """

    return (
        f"Backup directory {root_dir!r} is not usable: {reason}. "
        "Set BACKUP_DIR to a writable location or pass root_dir=... to create_config()."
    )


def explain_unknown_collections(names: Iterable[str]) -> str:
    """
    Explain that an include list names collections the store does not have.
    """

    return (
        f"Unknown collection(s) in include list: {', '.join(sorted(names))}. "
        "Check BACKUP_INCLUDE_COLLECTIONS or the collections=... argument."
    )


def explain_tabular_not_auto(path: str) -> str:
    """
    Explain why a spreadsheet artifact is not restored without being asked for.
    """

    return (
        f"{path} is a spreadsheet export, which flattens nested fields. "
        "Pass format='tabular' to restore from it anyway."
    )
