# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Tabular Codec - Excel workbook for humans.

One data sheet per collection (rows = records, columns = union of fields)
plus a Metadata sheet. Nested values are flattened to JSON text and
timestamps to ISO 8601 text, so this format is lossy and is only restored
from when explicitly requested.
"""

import io
import json
import math
import re
import zipfile
from datetime import datetime
from typing import Any, Dict, List, Sequence

from openpyxl import Workbook, load_workbook
from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE
from openpyxl.utils.exceptions import InvalidFileException

from docbackup.exceptions import CorruptArchiveError, FormatError
from docbackup.records import (
    ID_FIELD,
    UPDATED_FIELD,
    FieldKind,
    Record,
    parse_timestamp,
    validate_value,
)

METADATA_SHEET = "Metadata"
SOURCE_NAME = "docbackup"

_INVALID_TITLE_CHARS = re.compile(r"[\[\]:*?/\\]")
_MAX_TITLE = 31


def sheet_title(collection: str) -> str:
    """Sanitise a collection name into a valid, non-reserved sheet title."""
    title = _INVALID_TITLE_CHARS.sub("_", _clean(collection)).strip("'")[:_MAX_TITLE] or "Data"
    if title.lower() == METADATA_SHEET.lower():
        title = f"{title}_data"
    return title


def encode(collection: str, records: Sequence[Record], exported_at: datetime) -> bytes:
    """
    Encode records as an .xlsx workbook.

    Characters a worksheet cannot hold are dropped from every cell, field
    names and ids included.

    Raises:
        FormatError: If two field names are the same once cleaned, or a
            field name is nothing but such characters
    """
    columns: List[str] = []
    headers: Dict[str, str] = {}
    seen = set()
    for record in records:
        for name in record.data:
            if name in seen:
                continue
            seen.add(name)
            header = _clean(name)
            if not header or header in (ID_FIELD, UPDATED_FIELD):
                raise FormatError(f"Field name {name!r} cannot be a spreadsheet column")
            if header in headers:
                raise FormatError(
                    f"Field names {headers[header]!r} and {name!r} are the same spreadsheet column"
                )
            headers[header] = name
            columns.append(name)

    workbook = Workbook()
    sheet = workbook.active
    sheet.title = sheet_title(collection)
    sheet.append([ID_FIELD, UPDATED_FIELD, *(_clean(name) for name in columns)])

    for row_index, record in enumerate(records, start=2):
        values = [_clean(record.id), record.updated_at.isoformat()]
        values.extend(
            _to_cell(record.data.get(name), f"{record.id}.{name}") for name in columns
        )
        for col_index, value in enumerate(values, start=1):
            cell = sheet.cell(row=row_index, column=col_index, value=value)
            # Keep text that starts with "=" from being stored as a formula
            if isinstance(value, str) and value.startswith("="):
                cell.data_type = "s"

    metadata = workbook.create_sheet(METADATA_SHEET)
    metadata.append(["Collection", _clean(collection)])
    metadata.append(["Total Records", len(records)])
    metadata.append(["Exported At", exported_at.isoformat()])
    metadata.append(["Source", SOURCE_NAME])

    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def _clean(text: str) -> str:
    return ILLEGAL_CHARACTERS_RE.sub("", text)


def _to_cell(value: Any, path: str) -> Any:
    kind = validate_value(value, path)
    if kind == FieldKind.NULL:
        return None
    if kind == FieldKind.STRING:
        return _clean(value)
    if kind == FieldKind.BOOLEAN:
        return value
    if kind == FieldKind.NUMBER:
        if isinstance(value, float) and not math.isfinite(value):
            return repr(value)
        return value
    if kind == FieldKind.TIMESTAMP:
        return value.isoformat()
    try:
        text = json.dumps(value, default=_json_default, ensure_ascii=False)
    except ValueError as e:
        raise FormatError(f"Value cannot be flattened at {path}: {e}") from e
    return ILLEGAL_CHARACTERS_RE.sub("", text)


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def decode(data: bytes) -> List[Record]:
    """
    Read records back from the first non-metadata sheet.

    Values that look like JSON objects or arrays are parsed back; everything
    else comes back as the spreadsheet stored it.

    Raises:
        CorruptArchiveError: If the workbook cannot be read
    """
    try:
        workbook = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as e:
        raise CorruptArchiveError(f"Invalid spreadsheet: {e}") from e

    try:
        sheets = [ws for ws in workbook.worksheets if ws.title != METADATA_SHEET]
        if not sheets:
            raise CorruptArchiveError("Spreadsheet has no data sheet")

        rows = sheets[0].iter_rows(values_only=True)
        header = next(rows, None)
        if not header or ID_FIELD not in header or UPDATED_FIELD not in header:
            raise CorruptArchiveError("Spreadsheet header is missing _id or _updated_at")

        records: List[Record] = []
        for row in rows:
            if row is None or all(value is None for value in row):
                continue
            document: Dict[str, Any] = {}
            for name, value in zip(header, row):
                if name is None:
                    continue
                document[str(name)] = _from_cell(value)
            records.append(_build_record(document))
        return records
    finally:
        workbook.close()


def _from_cell(value: Any) -> Any:
    if isinstance(value, str) and value[:1] in ("{", "["):
        try:
            return json.loads(value)
        except ValueError:
            return value
    return value


def _build_record(document: Dict[str, Any]) -> Record:
    record_id = document.pop(ID_FIELD, None)
    updated_at = document.pop(UPDATED_FIELD, None)
    if record_id is None or updated_at is None:
        raise CorruptArchiveError("Spreadsheet row is missing _id or _updated_at")
    try:
        return Record(id=str(record_id), updated_at=parse_timestamp(updated_at), data=document)
    except (FormatError, ValueError) as e:
        raise CorruptArchiveError(f"Invalid spreadsheet row: {e}") from e
