# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
docbackup Collection Exporter - Snapshot one collection into every codec.

Paging happens first and completely; only then are the codec files
encoded, compressed and written. A collection whose paging fails or is
cancelled therefore leaves no files behind. A codec that cannot encode
the records fails on its own without affecting the other codecs.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, List, Sequence

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from docbackup.backup.compressor import compress_async, get_compression_stats
from docbackup.backup.manager import artifact_name, calculate_checksum, write_artifact
from docbackup.codecs import CodecSpec
from docbackup.config import Compression
from docbackup.core import BackupManifest, CollectionError
from docbackup.exceptions import BackupError, FormatError, TransientStoreError
from docbackup.records import Record
from docbackup.store import Page, RecordStore

logger = structlog.get_logger()

# Retried page-fetch errors. Permission errors fail on the first attempt
RETRYABLE_ERRORS = (TransientStoreError, asyncio.TimeoutError)


@dataclass
class CollectionExport:
    """Outcome of exporting one collection."""

    collection: str
    record_count: int = 0
    manifests: List[BackupManifest] = field(default_factory=list)
    errors: List[CollectionError] = field(default_factory=list)
    paged: bool = False
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        """Paging completed and at least one codec file was produced."""
        return self.paged and bool(self.manifests)


async def export_collection(
    store: RecordStore,
    collection: str,
    codecs: Sequence[CodecSpec],
    destination: Path,
    stamp: str,
    *,
    page_size: int = 100,
    page_timeout: float = 30.0,
    retry_attempts: int = 4,
    retry_max_wait: float = 8.0,
    cancel_event: asyncio.Event | None = None,
    compression: Compression = Compression.ZSTD,
    compression_level: int | None = None,
    exported_at: datetime | None = None,
) -> CollectionExport:
    """
    Export one collection into the destination directory.

    Args:
        store: Record store to page from
        collection: Collection name
        codecs: Codecs to write, in order
        destination: Tier directory the files go into
        stamp: Run stamp embedded in every file name
        page_size: Records per page
        page_timeout: Seconds allowed per page fetch
        retry_attempts: Attempts per page (including the first)
        retry_max_wait: Upper bound on the backoff between attempts
        cancel_event: Checked between pages
        compression: Applied to codecs that are compressed

    Returns:
        CollectionExport with the manifests of the files written
    """
    result = CollectionExport(collection=collection)
    exported_at = exported_at or datetime.now(UTC)

    logger.info("collection_export_started", collection=collection, stamp=stamp)

    try:
        records = await _page_all(
            store,
            collection,
            page_size=page_size,
            page_timeout=page_timeout,
            retry_attempts=retry_attempts,
            retry_max_wait=retry_max_wait,
            cancel_event=cancel_event,
        )
    except Exception as e:
        logger.error("collection_paging_failed", collection=collection, error=str(e))
        result.errors.append(CollectionError(collection=collection, message=_describe(e)))
        return result

    if records is None:
        logger.warning("collection_export_cancelled", collection=collection)
        result.cancelled = True
        return result

    result.paged = True
    result.record_count = len(records)

    for codec in codecs:
        filename = artifact_name(collection, stamp, codec.file_extension(compression))
        try:
            payload = _encode(codec, collection, records, exported_at)
            raw_size = len(payload)
            if codec.compressed:
                payload = await compress_async(payload, compression, compression_level)

            path = await write_artifact(destination, filename, payload)
        except (FormatError, BackupError) as e:
            logger.error(
                "codec_export_failed",
                collection=collection,
                codec=codec.format.value,
                error=str(e),
            )
            result.errors.append(
                CollectionError(
                    collection=collection,
                    message=_describe(e),
                    codec=codec.format.value,
                )
            )
            continue

        result.manifests.append(
            BackupManifest(
                collection=collection,
                codec=codec.format.value,
                path=str(path),
                record_count=len(records),
                byte_size=len(payload),
                checksum=calculate_checksum(payload),
            )
        )
        logger.debug(
            "codec_file_written",
            collection=collection,
            codec=codec.format.value,
            path=str(path),
            **get_compression_stats(raw_size, len(payload)),
        )

    logger.info(
        "collection_export_completed",
        collection=collection,
        records=result.record_count,
        files=len(result.manifests),
        errors=len(result.errors),
    )
    return result


def _encode(codec: CodecSpec, collection: str, records: List[Record], exported_at: datetime) -> bytes:
    """Run one encoder. Anything it raises besides FormatError becomes a FormatError."""
    try:
        return codec.encode(collection, records, exported_at)
    except FormatError:
        raise
    except Exception as e:
        raise FormatError(f"{codec.format.value} encoder failed: {_describe(e)}") from e


async def _page_all(
    store: RecordStore,
    collection: str,
    *,
    page_size: int,
    page_timeout: float,
    retry_attempts: int,
    retry_max_wait: float,
    cancel_event: asyncio.Event | None,
) -> List[Record] | None:
    """Fetch every page in order. Returns None if cancelled between pages."""
    records: List[Record] = []
    cursor: Any = None

    while True:
        if cancel_event is not None and cancel_event.is_set():
            return None

        page, cursor = await _fetch_page(
            store,
            collection,
            cursor,
            page_size=page_size,
            page_timeout=page_timeout,
            retry_attempts=retry_attempts,
            retry_max_wait=retry_max_wait,
        )
        records.extend(page)

        if cursor is None:
            return records


async def _fetch_page(
    store: RecordStore,
    collection: str,
    cursor: Any,
    *,
    page_size: int,
    page_timeout: float,
    retry_attempts: int,
    retry_max_wait: float,
) -> Page:
    """One page fetch under a timeout, retried with exponential backoff."""
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(retry_attempts),
        wait=wait_exponential(multiplier=0.5, max=retry_max_wait),
        retry=retry_if_exception_type(RETRYABLE_ERRORS),
        before_sleep=_log_retry(collection),
        reraise=True,
    ):
        with attempt:
            return await asyncio.wait_for(
                store.page_records(collection, cursor, page_size),
                timeout=page_timeout,
            )


def _log_retry(collection: str):
    def before_sleep(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "page_fetch_retry",
            collection=collection,
            attempt=retry_state.attempt_number,
            error=_describe(error) if error else None,
        )

    return before_sleep


def _describe(error: BaseException) -> str:
    if isinstance(error, asyncio.TimeoutError):
        return "Page fetch timed out"
    return str(error) or type(error).__name__
