# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Document Codec - mongodump-style BSON stream.

One BSON document per record, concatenated. Every BSON document starts with
its own int32 length, so the stream is self-delimiting and can be read back
with bson.decode_all() or fed to mongorestore. Nested objects and arrays are
kept as-is, which makes this the only lossless codec. Timestamps are stored
as BSON datetimes (millisecond precision, UTC).
"""

from datetime import datetime, UTC
from typing import List, Sequence

import bson
from bson.codec_options import CodecOptions
from bson.errors import BSONError

from docbackup.exceptions import CorruptArchiveError, FormatError
from docbackup.records import ID_FIELD, UPDATED_FIELD, Record, validate_value

_CODEC_OPTIONS = CodecOptions(tz_aware=True, tzinfo=UTC)


def encode(collection: str, records: Sequence[Record], exported_at: datetime) -> bytes:
    """Encode records as concatenated BSON documents."""
    chunks: List[bytes] = []
    for record in records:
        for name, value in record.data.items():
            validate_value(value, f"{record.id}.{name}")
        try:
            chunks.append(bson.encode(record.to_document(), codec_options=_CODEC_OPTIONS))
        except (BSONError, OverflowError) as e:
            raise FormatError(
                f"Record cannot be encoded as BSON: {e}",
                details={"collection": collection, "record_id": record.id},
            ) from e
    return b"".join(chunks)


def decode(data: bytes) -> List[Record]:
    """
    Decode a BSON stream back into Records.

    Raises:
        CorruptArchiveError: If the stream is truncated or malformed
    """
    try:
        documents = bson.decode_all(data, _CODEC_OPTIONS)
    except (BSONError, ValueError, IndexError) as e:
        raise CorruptArchiveError(f"Invalid BSON stream: {e}") from e

    records: List[Record] = []
    for document in documents:
        record_id = document.pop(ID_FIELD, None)
        updated_at = document.pop(UPDATED_FIELD, None)
        if record_id is None or not isinstance(updated_at, datetime):
            raise CorruptArchiveError(
                "BSON document is missing _id or _updated_at",
                details={"keys": list(document)},
            )
        records.append(Record(id=str(record_id), updated_at=updated_at, data=document))
    return records
