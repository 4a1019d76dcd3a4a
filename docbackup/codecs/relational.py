# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Relational Codec - PostgreSQL-compatible SQL dump.

The dump is a CREATE TABLE statement whose columns are inferred from the
union of fields across all records, followed by one INSERT per record.
Each column gets the widest SQL type that fits every non-null value seen;
conflicting kinds widen to TEXT, so decoding returns such values as strings.

Decoding reads the column types back from the CREATE TABLE statement (it is
never executed) and rebuilds Records from the INSERT statements.
"""

import json
import math
import re
from datetime import datetime
from typing import Any, Dict, List, Sequence, Tuple

from docbackup.exceptions import CorruptArchiveError, FormatError
from docbackup.records import (
    ID_FIELD,
    UPDATED_FIELD,
    FieldKind,
    Record,
    parse_timestamp,
    validate_value,
)

TEXT = "TEXT"
NUMERIC = "NUMERIC"
BOOLEAN = "BOOLEAN"
TIMESTAMPTZ = "TIMESTAMPTZ"
JSONB = "JSONB"

KIND_TO_SQL: Dict[FieldKind, str] = {
    FieldKind.STRING: TEXT,
    FieldKind.NUMBER: NUMERIC,
    FieldKind.BOOLEAN: BOOLEAN,
    FieldKind.TIMESTAMP: TIMESTAMPTZ,
    FieldKind.OBJECT: JSONB,
    FieldKind.ARRAY: JSONB,
}

# Emit COMMIT/BEGIN every N rows to keep transactions small on replay
BATCH_ROWS = 1000

_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?(?:[eE][-+]?\d+)?")
_KEYWORD_RE = re.compile(r"[A-Za-z_]+")
_IDENTIFIER_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_$]*")


# ============================================================================
# Encoding
# ============================================================================

def infer_columns(records: Sequence[Record]) -> Dict[str, str]:
    """
    Infer data columns and their SQL types, in first-seen field order.

    Raises:
        FormatError: If a value is unsupported or cyclic
    """
    seen: Dict[str, set] = {}
    for record in records:
        for name, value in record.data.items():
            kind = validate_value(value, f"{record.id}.{name}")
            types = seen.setdefault(name, set())
            if kind != FieldKind.NULL:
                types.add(KIND_TO_SQL[kind])

    return {name: types.pop() if len(types) == 1 else TEXT for name, types in seen.items()}


def encode(collection: str, records: Sequence[Record], exported_at: datetime) -> bytes:
    """Encode records as a SQL dump."""
    columns = infer_columns(records)
    table = quote_identifier(collection)
    column_names = [ID_FIELD, UPDATED_FIELD, *columns]
    column_list = ", ".join(quote_identifier(c) for c in column_names)

    column_defs = [f"{quote_identifier(ID_FIELD)} TEXT PRIMARY KEY"]
    column_defs.append(f"{quote_identifier(UPDATED_FIELD)} {TIMESTAMPTZ}")
    column_defs.extend(f"{quote_identifier(name)} {sql_type}" for name, sql_type in columns.items())

    lines = [
        f"-- Collection: {_single_line(collection)}",
        f"-- Exported at: {exported_at.isoformat()}",
        f"-- Total records: {len(records)}",
        "",
        f"CREATE TABLE IF NOT EXISTS {table} ({', '.join(column_defs)});",
        "",
        "BEGIN;",
    ]

    for index, record in enumerate(records, start=1):
        values = [
            _quote_string(record.id),
            _quote_string(record.updated_at.isoformat()),
        ]
        for name, sql_type in columns.items():
            values.append(_to_literal(record.data.get(name), sql_type, f"{record.id}.{name}"))
        lines.append(f"INSERT INTO {table} ({column_list}) VALUES ({', '.join(values)});")

        if index % BATCH_ROWS == 0 and index < len(records):
            lines.append("COMMIT;")
            lines.append("BEGIN;")

    lines.append("COMMIT;")
    lines.append("")
    return "\n".join(lines).encode("utf-8")


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def _quote_string(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _single_line(value: str) -> str:
    return value.replace("\r", " ").replace("\n", " ")


def _to_literal(value: Any, sql_type: str, path: str) -> str:
    kind = validate_value(value, path)

    if kind == FieldKind.NULL:
        return "NULL"

    if sql_type == NUMERIC:
        if isinstance(value, float) and not math.isfinite(value):
            raise FormatError(
                f"Non-finite number cannot be stored in a NUMERIC column: {path}",
                details={"path": path, "value": repr(value)},
            )
        return repr(value) if isinstance(value, float) else str(value)

    if sql_type == BOOLEAN:
        return "TRUE" if value else "FALSE"

    if sql_type == TIMESTAMPTZ:
        return _quote_string(value.isoformat())

    if sql_type == JSONB:
        return _quote_string(_to_json(value, path))

    # TEXT, including widened columns
    if kind == FieldKind.STRING:
        return _quote_string(value)
    if kind == FieldKind.BOOLEAN:
        return _quote_string("true" if value else "false")
    if kind == FieldKind.TIMESTAMP:
        return _quote_string(value.isoformat())
    if kind == FieldKind.NUMBER:
        if isinstance(value, float) and not math.isfinite(value):
            raise FormatError(
                f"Non-finite number cannot be represented: {path}",
                details={"path": path, "value": repr(value)},
            )
        return _quote_string(repr(value) if isinstance(value, float) else str(value))
    return _quote_string(_to_json(value, path))


def _to_json(value: Any, path: str) -> str:
    try:
        return json.dumps(value, default=_json_default, allow_nan=False, ensure_ascii=False)
    except ValueError as e:
        raise FormatError(f"Value cannot be encoded as JSON at {path}: {e}") from e


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, tuple):
        return list(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


# ============================================================================
# Decoding
# ============================================================================

def decode(data: bytes) -> List[Record]:
    """
    Decode a SQL dump back into Records.

    Raises:
        CorruptArchiveError: If the dump cannot be parsed
    """
    try:
        sql = data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise CorruptArchiveError(f"SQL dump is not valid UTF-8: {e}") from e

    column_types: Dict[str, str] = {}
    records: List[Record] = []

    for statement in split_statements(sql):
        keyword = statement.split(None, 1)[0].upper()
        if keyword == "CREATE":
            column_types = _parse_create_table(statement)
        elif keyword == "INSERT":
            columns, values = _parse_insert(statement)
            records.append(_build_record(columns, values, column_types))
        # BEGIN / COMMIT / anything else is not needed to rebuild records

    return records


def split_statements(sql: str) -> List[str]:
    """Split SQL text on top-level semicolons, skipping -- comments."""
    statements: List[str] = []
    current: List[str] = []
    i = 0
    length = len(sql)
    quote: str | None = None

    while i < length:
        char = sql[i]
        if quote:
            current.append(char)
            if char == quote:
                if i + 1 < length and sql[i + 1] == quote:
                    current.append(sql[i + 1])
                    i += 1
                else:
                    quote = None
        elif char in ("'", '"'):
            quote = char
            current.append(char)
        elif char == "-" and sql.startswith("--", i):
            newline = sql.find("\n", i)
            i = length if newline == -1 else newline
            continue
        elif char == ";":
            text = "".join(current).strip()
            if text:
                statements.append(text)
            current = []
        else:
            current.append(char)
        i += 1

    if quote:
        raise CorruptArchiveError("SQL dump ends inside a quoted string")
    if "".join(current).strip():
        raise CorruptArchiveError("SQL dump ends with an unterminated statement")
    return statements


class _Scanner:
    """Minimal tokenizer for the statements this codec writes."""

    def __init__(self, text: str):
        self.text = text
        self.pos = 0

    def skip_ws(self) -> None:
        while self.pos < len(self.text) and self.text[self.pos].isspace():
            self.pos += 1

    def peek(self) -> str:
        self.skip_ws()
        return self.text[self.pos] if self.pos < len(self.text) else ""

    def expect(self, char: str) -> None:
        if self.peek() != char:
            raise CorruptArchiveError(
                f"Expected {char!r} at offset {self.pos}",
                details={"statement": self.text[:120]},
            )
        self.pos += 1

    def keyword(self) -> str:
        self.skip_ws()
        match = _KEYWORD_RE.match(self.text, self.pos)
        if not match:
            raise CorruptArchiveError(
                f"Expected keyword at offset {self.pos}",
                details={"statement": self.text[:120]},
            )
        self.pos = match.end()
        return match.group(0).upper()

    def quoted(self, quote: str) -> str:
        self.expect(quote)
        parts: List[str] = []
        while True:
            end = self.text.find(quote, self.pos)
            if end == -1:
                raise CorruptArchiveError("Unterminated quoted token")
            parts.append(self.text[self.pos : end])
            self.pos = end + 1
            if self.text.startswith(quote, self.pos):
                parts.append(quote)
                self.pos += 1
            else:
                return "".join(parts)

    def identifier(self) -> str:
        if self.peek() == '"':
            return self.quoted('"')
        self.skip_ws()
        match = _IDENTIFIER_RE.match(self.text, self.pos)
        if not match:
            raise CorruptArchiveError(f"Expected identifier at offset {self.pos}")
        self.pos = match.end()
        return match.group(0)

    def literal(self) -> Tuple[str, Any]:
        """Return (token_type, value) with token_type in string/number/null/bool."""
        char = self.peek()
        if char == "'":
            return ("string", self.quoted("'"))
        number = _NUMBER_RE.match(self.text, self.pos)
        if number:
            self.pos = number.end()
            return ("number", number.group(0))
        word = self.keyword()
        if word == "NULL":
            return ("null", None)
        if word in ("TRUE", "FALSE"):
            return ("bool", word == "TRUE")
        raise CorruptArchiveError(f"Unexpected token {word!r} in VALUES list")

    def at_end(self) -> bool:
        return self.peek() == ""


def _parse_create_table(statement: str) -> Dict[str, str]:
    scanner = _Scanner(statement)
    if scanner.keyword() != "CREATE" or scanner.keyword() != "TABLE":
        raise CorruptArchiveError("Malformed CREATE TABLE statement")
    if scanner.peek() != '"':
        saved = scanner.pos
        if scanner.keyword() == "IF":
            scanner.keyword()  # NOT
            scanner.keyword()  # EXISTS
        else:
            scanner.pos = saved
    scanner.identifier()
    scanner.expect("(")

    column_types: Dict[str, str] = {}
    while True:
        name = scanner.identifier()
        sql_type = scanner.keyword()
        column_types[name] = sql_type
        # Skip constraints such as PRIMARY KEY / NOT NULL
        while scanner.peek() not in (",", ")", ""):
            scanner.keyword()
        if scanner.peek() == ",":
            scanner.expect(",")
            continue
        scanner.expect(")")
        break
    return column_types


def _parse_insert(statement: str) -> Tuple[List[str], List[Tuple[str, Any]]]:
    scanner = _Scanner(statement)
    if scanner.keyword() != "INSERT" or scanner.keyword() != "INTO":
        raise CorruptArchiveError("Malformed INSERT statement")
    scanner.identifier()

    scanner.expect("(")
    columns = [scanner.identifier()]
    while scanner.peek() == ",":
        scanner.expect(",")
        columns.append(scanner.identifier())
    scanner.expect(")")

    if scanner.keyword() != "VALUES":
        raise CorruptArchiveError("INSERT statement without VALUES")

    scanner.expect("(")
    values = [scanner.literal()]
    while scanner.peek() == ",":
        scanner.expect(",")
        values.append(scanner.literal())
    scanner.expect(")")

    if not scanner.at_end():
        raise CorruptArchiveError("Trailing content after INSERT values")
    if len(columns) != len(values):
        raise CorruptArchiveError(
            "INSERT column/value count mismatch",
            details={"columns": len(columns), "values": len(values)},
        )
    return columns, values


def _from_literal(token: Tuple[str, Any], sql_type: str | None) -> Any:
    token_type, raw = token
    if token_type == "null":
        return None
    if token_type == "bool":
        return raw
    if token_type == "number":
        try:
            return int(raw)
        except ValueError:
            return float(raw)

    # Quoted string
    if sql_type == TIMESTAMPTZ:
        return parse_timestamp(raw)
    if sql_type in (JSONB, "JSON"):
        try:
            return json.loads(raw)
        except ValueError as e:
            raise CorruptArchiveError(f"Invalid JSON value in dump: {e}") from e
    return raw


def _build_record(
    columns: List[str],
    values: List[Tuple[str, Any]],
    column_types: Dict[str, str],
) -> Record:
    row = {
        column: _from_literal(value, column_types.get(column))
        for column, value in zip(columns, values)
    }
    record_id = row.pop(ID_FIELD, None)
    updated_at = row.pop(UPDATED_FIELD, None)
    if record_id is None or updated_at is None:
        raise CorruptArchiveError(
            "INSERT statement is missing _id or _updated_at",
            details={"columns": columns},
        )
    try:
        if not isinstance(updated_at, datetime):
            updated_at = parse_timestamp(updated_at)
        return Record(id=str(record_id), updated_at=updated_at, data=row)
    except (FormatError, ValueError) as e:
        raise CorruptArchiveError(f"Invalid record in SQL dump: {e}") from e
