# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
docbackup Exceptions - Custom exceptions for the docbackup package.
"""


class BackupPipelineError(Exception):
    """Base exception for all docbackup errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(BackupPipelineError):
    """Raised when configuration is invalid (fatal at startup)."""

    pass


class StoreError(BackupPipelineError):
    """Raised when the record store fails."""

    pass


class TransientStoreError(StoreError):
    """Network or timeout failure talking to the record store. Retryable."""

    pass


class StorePermissionError(StoreError, PermissionError):
    """The record store refused access. Never retried."""

    pass


class DuplicateRecordError(StoreError):
    """Insert-only write hit an existing record with the same identifier."""

    def __init__(self, collection: str, record_id: str):
        super().__init__(
            f"Record {record_id!r} already exists in {collection!r}",
            details={"collection": collection, "record_id": record_id},
        )
        self.collection = collection
        self.record_id = record_id


class FormatError(BackupPipelineError):
    """Raised when a codec cannot represent a value."""

    pass


class CorruptArchiveError(BackupPipelineError):
    """Raised when an archive cannot be decompressed or decoded."""

    pass


class BackupError(BackupPipelineError):
    """Raised when backup file operations fail."""

    pass


class RestoreError(BackupPipelineError):
    """Raised when a restore request cannot be carried out."""

    pass


class ArtifactNotFoundError(BackupPipelineError, LookupError):
    """Raised when a backup identifier does not resolve to any artifact."""

    pass


class RunInProgressError(BackupPipelineError):
    """Raised when a tier is triggered while a run for it is still going."""

    pass
