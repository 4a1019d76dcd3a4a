# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
docbackup Backup Manager - Artifact files on disk.

This module owns the artifact naming scheme, atomic writes, reads and
checksums. Artifact names look like:

    {collection}_{YYYY-MM-DDTHH-MM-SS-mmmZ}.{ext}

where the timestamp is the run's start time with ':' and '.' replaced by
'-' so it is safe on every filesystem.
"""

import hashlib
import re
from dataclasses import dataclass
from datetime import datetime, UTC
from pathlib import Path
from typing import List, Tuple

import aiofiles
import structlog

from docbackup.codecs import detect_format
from docbackup.config import Compression, ExportFormat
from docbackup.exceptions import BackupError
from docbackup.records import ensure_utc

logger = structlog.get_logger()

RUN_ID_PREFIX = "backup_"
TEMP_SUFFIX = ".tmp"

_STAMP_PATTERN = r"\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}-\d{3}Z"
_STAMP_RE = re.compile(rf"^{_STAMP_PATTERN}$")
_ARTIFACT_RE = re.compile(
    rf"^(?P<collection>.+)_(?P<stamp>{_STAMP_PATTERN})\.(?P<ext>[A-Za-z0-9.]+)$"
)


@dataclass(frozen=True)
class ArtifactFile:
    """One artifact file found on disk."""

    path: Path
    collection: str
    stamp: str
    format: ExportFormat
    compression: Compression | None

    @property
    def run_id(self) -> str:
        return run_id_for(self.stamp)

    @property
    def group_key(self) -> Tuple[str, str]:
        """All codec files of one collection in one run share this key."""
        return (self.collection, self.stamp)


def format_stamp(moment: datetime) -> str:
    """Format a run start time as a filename-safe ISO 8601 stamp."""
    utc = ensure_utc(moment)
    return f"{utc.strftime('%Y-%m-%dT%H-%M-%S')}-{utc.microsecond // 1000:03d}Z"


def parse_stamp(stamp: str) -> datetime:
    """Inverse of format_stamp()."""
    if not _STAMP_RE.match(stamp):
        raise ValueError(f"Invalid run stamp: {stamp!r}")
    moment = datetime.strptime(stamp[:19], "%Y-%m-%dT%H-%M-%S")
    return moment.replace(microsecond=int(stamp[20:23]) * 1000, tzinfo=UTC)


def run_id_for(stamp: str) -> str:
    return f"{RUN_ID_PREFIX}{stamp}"


def stamp_from_run_id(run_id: str) -> str | None:
    """Extract the stamp from 'backup_{stamp}' (or a bare stamp)."""
    stamp = run_id[len(RUN_ID_PREFIX):] if run_id.startswith(RUN_ID_PREFIX) else run_id
    return stamp if _STAMP_RE.match(stamp) else None


def artifact_name(collection: str, stamp: str, extension: str) -> str:
    return f"{sanitize_collection_name(collection)}_{stamp}.{extension}"


def parse_artifact_name(path: Path) -> ArtifactFile | None:
    """Parse an artifact path; returns None for anything that is not an artifact."""
    match = _ARTIFACT_RE.match(path.name)
    if not match:
        return None
    detected = detect_format(path.name)
    if detected is None:
        return None
    fmt, compression = detected
    return ArtifactFile(
        path=path,
        collection=match.group("collection"),
        stamp=match.group("stamp"),
        format=fmt,
        compression=compression,
    )


def list_artifacts(directory: Path) -> List[ArtifactFile]:
    """List artifact files in a directory (non-recursive)."""
    if not directory.is_dir():
        return []
    artifacts: List[ArtifactFile] = []
    for path in directory.iterdir():
        if not path.is_file() or path.name.endswith(TEMP_SUFFIX):
            continue
        artifact = parse_artifact_name(path)
        if artifact is not None:
            artifacts.append(artifact)
    return artifacts


async def write_artifact(directory: Path, filename: str, payload: bytes) -> Path:
    """
    Write an artifact file.

    The file is written atomically (write to temp, then rename) so readers
    and the retention manager never see partial files.

    Returns:
        Path to the written file
    """
    path = directory / filename
    temp_path = directory / f"{filename}{TEMP_SUFFIX}"
    try:
        directory.mkdir(parents=True, exist_ok=True)

        async with aiofiles.open(temp_path, "wb") as f:
            await f.write(payload)

        # Rename to final path (atomic on most filesystems)
        temp_path.replace(path)

        logger.debug("artifact_written", path=str(path), size=len(payload))
        return path

    except OSError as e:
        temp_path.unlink(missing_ok=True)
        raise BackupError(
            f"Failed to write artifact: {e}",
            details={"path": str(path)},
        ) from e


async def read_artifact(path: Path) -> bytes:
    """Read an artifact file."""
    try:
        async with aiofiles.open(path, "rb") as f:
            return await f.read()
    except FileNotFoundError as e:
        raise BackupError(
            f"Artifact not found: {path}",
            details={"path": str(path)},
        ) from e
    except OSError as e:
        raise BackupError(
            f"Failed to read artifact: {e}",
            details={"path": str(path)},
        ) from e


def calculate_checksum(data: bytes) -> str:
    """SHA-256 hex digest of an artifact payload."""
    return hashlib.sha256(data).hexdigest()


async def verify_artifact(path: Path, expected_checksum: str) -> Tuple[bool, str]:
    """
    Verify an artifact against the checksum recorded in its manifest.

    Returns:
        Tuple of (is_valid, actual_checksum)
    """
    try:
        content = await read_artifact(path)
    except BackupError as e:
        logger.error("artifact_verification_failed", path=str(path), error=str(e))
        return (False, "")
    actual = calculate_checksum(content)
    return (actual == expected_checksum, actual)


def sanitize_collection_name(name: str) -> str:
    """
    Make a collection name safe to embed in a filename.

    Replaces path separators and special characters with underscores.
    """
    safe = name.replace("/", "_").replace("\\", "_")

    for char in [":", "*", "?", '"', "<", ">", "|"]:
        safe = safe.replace(char, "_")

    # Ensure not too long (keep the first 150 chars and a hash of the rest)
    if len(safe) > 160:
        name_hash = hashlib.sha256(name.encode()).hexdigest()[:8]
        safe = safe[:150] + "_" + name_hash

    return safe
