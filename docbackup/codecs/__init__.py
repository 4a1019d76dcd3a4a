# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Codec Set - Encoders/decoders for the three archival formats.

Each codec turns an ordered sequence of Records into bytes and back:

- relational: SQL dump (schema + one INSERT per record), compressed
- document: length-prefixed BSON documents, compressed, lossless
- tabular: spreadsheet with a data sheet and a metadata sheet, lossy
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Sequence, Tuple

from docbackup.codecs import document, relational, tabular
from docbackup.config import Compression, ExportFormat
from docbackup.records import Record

Encoder = Callable[[str, Sequence[Record], datetime], bytes]
Decoder = Callable[[bytes], List[Record]]


@dataclass(frozen=True)
class CodecSpec:
    """Static description of one codec."""

    format: ExportFormat
    extension: str
    compressed: bool
    lossy: bool
    encode: Encoder
    decode: Decoder

    def file_extension(self, compression: Compression) -> str:
        """Full extension, e.g. 'sql.zst' or 'xlsx'."""
        if self.compressed:
            return f"{self.extension}.{compression.suffix}"
        return self.extension


CODECS: Dict[ExportFormat, CodecSpec] = {
    ExportFormat.RELATIONAL: CodecSpec(
        ExportFormat.RELATIONAL, "sql", True, False, relational.encode, relational.decode
    ),
    ExportFormat.DOCUMENT: CodecSpec(
        ExportFormat.DOCUMENT, "bson", True, False, document.encode, document.decode
    ),
    ExportFormat.TABULAR: CodecSpec(
        ExportFormat.TABULAR, "xlsx", False, True, tabular.encode, tabular.decode
    ),
}

# Candidates tried by an "auto" restore, most faithful first
AUTO_RESTORE_ORDER: Tuple[ExportFormat, ...] = (ExportFormat.DOCUMENT, ExportFormat.RELATIONAL)


def get_codec(fmt: ExportFormat) -> CodecSpec:
    return CODECS[fmt]


def detect_format(filename: str) -> Tuple[ExportFormat, Compression | None] | None:
    """
    Detect codec and compression from an artifact file name.

    Returns:
        (format, compression) or None if the extension is not recognised
    """
    lower = filename.lower()
    for spec in CODECS.values():
        if spec.compressed:
            for compression in Compression:
                if lower.endswith(f".{spec.file_extension(compression)}"):
                    return (spec.format, compression)
        elif lower.endswith(f".{spec.extension}"):
            return (spec.format, None)
    return None


__all__ = [
    "CodecSpec",
    "CODECS",
    "AUTO_RESTORE_ORDER",
    "get_codec",
    "detect_format",
]
