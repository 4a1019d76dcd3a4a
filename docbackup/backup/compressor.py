# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
docbackup Compressor - Compression pipeline for dump files.

The relational and document dumps are wrapped in zstd (default) or gzip.
zstd frames are written with the content size in the header, so truncated
archives are detected on decompression instead of yielding partial data.
gzip is supported for archives produced by older tooling (.sql.gz, .bson.gz).
"""

import asyncio
import gzip
import io
import zlib
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable

import structlog
import zstandard as zstd

from docbackup.config import Compression
from docbackup.exceptions import BackupError, CorruptArchiveError

logger = structlog.get_logger()

# Thread pool for CPU-bound compression of large payloads
_executor = ThreadPoolExecutor(max_workers=4)

# Payloads above this size are (de)compressed off the event loop
OFFLOAD_THRESHOLD = 1024 * 1024  # 1MB

# Chunk size fed to the streaming compressors
CHUNK_SIZE = 256 * 1024

DEFAULT_ZSTD_LEVEL = 19
DEFAULT_GZIP_LEVEL = 6


def compress(data: bytes, method: Compression = Compression.ZSTD, level: int | None = None) -> bytes:
    """
    Compress a payload with the streaming compressor for `method`.

    Args:
        data: Raw codec output
        method: zstd or gzip
        level: Compression level (defaults: zstd 19, gzip 6)

    Returns:
        Compressed bytes
    """
    return compress_chunks(_chunks(data), len(data), method, level)


def compress_chunks(
    chunks: Iterable[bytes],
    size: int,
    method: Compression = Compression.ZSTD,
    level: int | None = None,
) -> bytes:
    """Compress an iterable of chunks whose total size is known."""
    buffer = io.BytesIO()
    if level is None:
        level = DEFAULT_ZSTD_LEVEL if method == Compression.ZSTD else DEFAULT_GZIP_LEVEL

    try:
        if method == Compression.ZSTD:
            cctx = zstd.ZstdCompressor(level=level, write_content_size=True)
            with cctx.stream_writer(buffer, size=size, closefd=False) as writer:
                for chunk in chunks:
                    writer.write(chunk)
        else:
            with gzip.GzipFile(
                fileobj=buffer,
                mode="wb",
                compresslevel=min(level, 9),
                mtime=0,
            ) as writer:
                for chunk in chunks:
                    writer.write(chunk)
    except zstd.ZstdError as e:
        raise BackupError(f"Compression failed: {e}", details={"method": method.value}) from e

    return buffer.getvalue()


def decompress(data: bytes, method: Compression = Compression.ZSTD) -> bytes:
    """
    Decompress a payload.

    Raises:
        CorruptArchiveError: If the data is corrupted or truncated
    """
    try:
        if method == Compression.ZSTD:
            dctx = zstd.ZstdDecompressor()
            return dctx.decompress(data)
        return gzip.decompress(data)
    except (zstd.ZstdError, OSError, EOFError, zlib.error) as e:
        raise CorruptArchiveError(
            f"Decompression failed: {e}",
            details={"method": method.value, "compressed_size": len(data)},
        ) from e


async def compress_async(
    data: bytes,
    method: Compression = Compression.ZSTD,
    level: int | None = None,
) -> bytes:
    """
    Compress data, running in the thread pool for large payloads.
    """
    if len(data) > OFFLOAD_THRESHOLD:
        loop = asyncio.get_running_loop()
        compressed = await loop.run_in_executor(_executor, compress, data, method, level)
    else:
        compressed = compress(data, method, level)

    logger.debug(
        "compression_complete",
        method=method.value,
        original_size=len(data),
        compressed_size=len(compressed),
        compression_ratio=f"{len(data) / len(compressed):.2f}x" if compressed else "0x",
    )
    return compressed


async def decompress_async(data: bytes, method: Compression = Compression.ZSTD) -> bytes:
    """
    Decompress data, running in the thread pool for large payloads.
    """
    if len(data) > OFFLOAD_THRESHOLD:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(_executor, decompress, data, method)
    return decompress(data, method)


def _chunks(data: bytes) -> Iterable[bytes]:
    view = memoryview(data)
    for start in range(0, len(view), CHUNK_SIZE):
        yield view[start : start + CHUNK_SIZE]


def get_compression_stats(
    original_size: int,
    compressed_size: int,
) -> dict:
    """
    Calculate compression statistics.

    Args:
        original_size: Original data size in bytes
        compressed_size: Compressed data size in bytes

    Returns:
        Dict with compression statistics
    """
    if compressed_size == 0:
        return {
            "original_size": original_size,
            "compressed_size": compressed_size,
            "compression_ratio": 0,
            "space_saved_bytes": 0,
            "space_saved_percent": 0,
        }

    ratio = original_size / compressed_size
    saved_bytes = original_size - compressed_size
    saved_percent = (saved_bytes / original_size) * 100 if original_size > 0 else 0

    return {
        "original_size": original_size,
        "compressed_size": compressed_size,
        "compression_ratio": round(ratio, 2),
        "space_saved_bytes": saved_bytes,
        "space_saved_percent": round(saved_percent, 2),
    }
