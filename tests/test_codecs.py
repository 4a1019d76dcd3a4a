# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Tests for the record model, the codecs and the compressor.
"""

from datetime import datetime, timezone, timedelta, UTC
from decimal import Decimal

import pytest

from docbackup.backup.compressor import compress, decompress, get_compression_stats
from docbackup.codecs import CODECS, detect_format, document, get_codec, relational, tabular
from docbackup.config import Compression, ExportFormat
from docbackup.exceptions import CorruptArchiveError, FormatError
from docbackup.records import FieldKind, Record, field_kind, validate_value

MOMENT = datetime(2025, 1, 1, 8, 30, tzinfo=UTC)


# ============================================================================
# Records
# ============================================================================

def test_field_kind_classifies_closed_set():
    """Every supported value maps to exactly one kind; bool is not a number."""
    assert field_kind(None) == FieldKind.NULL
    assert field_kind(True) == FieldKind.BOOLEAN
    assert field_kind(3) == FieldKind.NUMBER
    assert field_kind(2.5) == FieldKind.NUMBER
    assert field_kind("x") == FieldKind.STRING
    assert field_kind(MOMENT) == FieldKind.TIMESTAMP
    assert field_kind({"a": 1}) == FieldKind.OBJECT
    assert field_kind([1, 2]) == FieldKind.ARRAY


def test_unsupported_values_raise_format_error():
    """Values outside the closed set are rejected, never coerced."""
    with pytest.raises(FormatError):
        field_kind(Decimal("1.5"))

    with pytest.raises(FormatError):
        validate_value({"nested": [b"raw"]})

    with pytest.raises(FormatError):
        validate_value({1: "non-string key"})


def test_cyclic_values_raise_format_error():
    """A container that contains itself cannot be encoded."""
    cycle: dict = {"name": "loop"}
    cycle["self"] = cycle

    with pytest.raises(FormatError) as exc_info:
        validate_value(cycle)

    assert "Cyclic" in exc_info.value.message


def test_shared_values_are_not_cycles():
    """The same list referenced twice is fine as long as it is not nested in itself."""
    shared = [1, 2]
    assert validate_value({"a": shared, "b": shared}) == FieldKind.OBJECT


def test_record_from_source_document_metadata():
    """$id/$createdAt/$updatedAt are lifted out and other $-metadata dropped."""
    record = Record.from_document(
        {
            "$id": "abc",
            "$createdAt": "2024-01-01T10:00:00Z",
            "$updatedAt": "2024-02-01T10:00:00+02:00",
            "$permissions": ["read"],
            "title": "Hello",
        }
    )

    assert record.id == "abc"
    assert record.updated_at == datetime(2024, 2, 1, 8, 0, tzinfo=UTC)
    assert record.data == {"title": "Hello"}


def test_record_from_document_falls_back_to_creation_time():
    """Without a modification time, the creation time is used."""
    record = Record.from_document({"id": "1", "createdAt": "2024-01-01T10:00:00Z"})

    assert record.id == "1"
    assert record.updated_at == datetime(2024, 1, 1, 10, 0, tzinfo=UTC)


def test_record_normalises_timezone():
    """Naive times are taken as UTC and aware times are converted."""
    naive = Record(id="1", updated_at=datetime(2025, 1, 1, 12, 0))
    aware = Record(id="2", updated_at=datetime(2025, 1, 1, 14, 0, tzinfo=timezone(timedelta(hours=2))))

    assert naive.updated_at.tzinfo == UTC
    assert aware.updated_at == datetime(2025, 1, 1, 12, 0, tzinfo=UTC)


def test_record_rejects_reserved_fields():
    with pytest.raises(ValueError):
        Record(id="1", updated_at=MOMENT, data={"_id": "other"})

    with pytest.raises(ValueError):
        Record(id="", updated_at=MOMENT)


# ============================================================================
# Codec set
# ============================================================================

def test_codec_registry_and_extensions():
    """Relational and document dumps are compressed; spreadsheets are not."""
    assert get_codec(ExportFormat.RELATIONAL).file_extension(Compression.ZSTD) == "sql.zst"
    assert get_codec(ExportFormat.DOCUMENT).file_extension(Compression.GZIP) == "bson.gz"
    assert get_codec(ExportFormat.TABULAR).file_extension(Compression.ZSTD) == "xlsx"
    assert get_codec(ExportFormat.TABULAR).lossy
    assert not any(CODECS[f].lossy for f in (ExportFormat.RELATIONAL, ExportFormat.DOCUMENT))


def test_detect_format_from_file_name():
    assert detect_format("users_x.sql.zst") == (ExportFormat.RELATIONAL, Compression.ZSTD)
    assert detect_format("users_x.bson.gz") == (ExportFormat.DOCUMENT, Compression.GZIP)
    assert detect_format("users_x.xlsx") == (ExportFormat.TABULAR, None)
    assert detect_format("users_x.csv") is None


def test_relational_dump_shape(make_records):
    """Schema first, then one INSERT per record, inside a transaction."""
    sql = relational.encode("users", make_records(2), MOMENT).decode()

    assert sql.startswith("-- Collection: users")
    assert 'CREATE TABLE IF NOT EXISTS "users"' in sql
    assert '"_id" TEXT PRIMARY KEY' in sql
    assert '"age" NUMERIC' in sql
    assert '"active" BOOLEAN' in sql
    assert '"joined" TIMESTAMPTZ' in sql
    assert '"tags" JSONB' in sql
    assert sql.count("INSERT INTO") == 2
    assert sql.rstrip().endswith("COMMIT;")


def test_relational_escapes_quotes_and_comment_markers():
    """Strings with quotes, semicolons and -- survive the dump."""
    tricky = "O'Brien; -- not a comment"
    records = [Record(id="1", updated_at=MOMENT, data={"name": tricky, 'we"ird': 1})]

    decoded = relational.decode(relational.encode('my"table', records, MOMENT))

    assert decoded[0].data == {"name": tricky, 'we"ird': 1}


def test_relational_fields_missing_in_some_records_come_back_null():
    records = [
        Record(id="1", updated_at=MOMENT, data={"a": 1, "b": "x"}),
        Record(id="2", updated_at=MOMENT, data={"a": 2}),
    ]

    decoded = relational.decode(relational.encode("t", records, MOMENT))

    assert decoded[1].data == {"a": 2, "b": None}


def test_relational_rejects_non_finite_numbers():
    records = [Record(id="1", updated_at=MOMENT, data={"ratio": float("inf")})]

    with pytest.raises(FormatError):
        relational.encode("metrics", records, MOMENT)


def test_tabular_keeps_ids_and_flattens_nested_values(make_records):
    """The spreadsheet is lossy but keeps ids, scalars and JSON-encoded nesting."""
    records = make_records(3)

    decoded = tabular.decode(tabular.encode("users", records, MOMENT))

    assert [r.id for r in decoded] == [r.id for r in records]
    assert [r.updated_at for r in decoded] == [r.updated_at for r in records]
    assert decoded[0].data["name"] == records[0].data["name"]
    assert decoded[0].data["tags"] == records[0].data["tags"]
    assert decoded[0].data["profile"] == records[0].data["profile"]
    # Timestamps become ISO 8601 text
    assert decoded[0].data["joined"] == records[0].data["joined"].isoformat()


def test_tabular_drops_characters_worksheets_cannot_hold():
    """Control characters are dropped from ids, field names, values and the collection name."""
    records = [Record(id="a\x021", updated_at=MOMENT, data={"bad\x01key": "x\x00y"})]

    decoded = tabular.decode(tabular.encode("logs\x03", records, MOMENT))

    assert decoded[0].id == "a1"
    assert decoded[0].data == {"badkey": "xy"}
    assert tabular.sheet_title("logs\x03") == "logs"


def test_tabular_rejects_field_names_that_become_one_column():
    records = [Record(id="1", updated_at=MOMENT, data={"key": 1, "k\x01ey": 2})]

    with pytest.raises(FormatError):
        tabular.encode("t", records, MOMENT)


def test_tabular_sheet_title_avoids_metadata_sheet():
    assert tabular.sheet_title("Metadata") == "Metadata_data"
    assert tabular.sheet_title("a/b:c") == "a_b_c"
    assert len(tabular.sheet_title("x" * 50)) == 31


def test_document_codec_is_self_delimiting(make_records):
    """Concatenated documents decode in order."""
    records = make_records(5)
    data = document.encode("users", records, MOMENT)

    assert [r.id for r in document.decode(data)] == [r.id for r in records]


def test_document_codec_truncates_timestamps_to_milliseconds():
    """BSON datetimes hold milliseconds; the microseconds below that are dropped."""
    precise = datetime(2025, 1, 1, 8, 30, 15, 123456, tzinfo=UTC)
    record = Record(id="1", updated_at=precise, data={"seen": precise, "name": "a"})

    decoded = document.decode(document.encode("events", [record], MOMENT))[0]

    truncated = precise.replace(microsecond=123000)
    assert decoded.updated_at == truncated
    assert decoded.data == {"seen": truncated, "name": "a"}


@pytest.mark.parametrize(
    "codec, payload",
    [
        (document, b"\x10\x00\x00\x00garbage"),
        (relational, b"INSERT INTO \"t\" (\"_id\") VALUES ('unterminated"),
        (tabular, b"not a zip file"),
    ],
)
def test_corrupt_payloads_raise_corrupt_archive_error(codec, payload):
    with pytest.raises(CorruptArchiveError):
        codec.decode(payload)


# ============================================================================
# Compressor
# ============================================================================

@pytest.mark.parametrize("method", list(Compression))
def test_compression_reduces_text(method):
    data = b"INSERT INTO users VALUES ('x');\n" * 2000

    compressed = compress(data, method, 3)

    assert len(compressed) < len(data)
    assert decompress(compressed, method) == data


def test_level_zero_is_used_as_given():
    """Level 0 is a real gzip level (stored), not a request for the default."""
    data = b"INSERT INTO users VALUES ('x');\n" * 2000

    stored = compress(data, Compression.GZIP, 0)

    assert len(stored) > len(data)
    assert decompress(stored, Compression.GZIP) == data
    assert decompress(compress(data, Compression.ZSTD, 0), Compression.ZSTD) == data


def test_truncated_archive_is_corrupt():
    compressed = compress(b"payload " * 500, Compression.ZSTD, 3)

    with pytest.raises(CorruptArchiveError):
        decompress(compressed[: len(compressed) // 2], Compression.ZSTD)

    with pytest.raises(CorruptArchiveError):
        decompress(b"not gzip", Compression.GZIP)


def test_compression_stats():
    stats = get_compression_stats(1000, 250)

    assert stats["compression_ratio"] == 4.0
    assert stats["space_saved_bytes"] == 750
    assert stats["space_saved_percent"] == 75.0
    assert get_compression_stats(10, 0)["compression_ratio"] == 0
