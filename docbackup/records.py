# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
docbackup Records - Schema-less document model.

A Record is one document from a collection: an opaque identifier, a
last-modified timestamp and an ordered mapping of field values. Field values
belong to a closed set of kinds (FieldKind); every codec classifies values
with field_kind() and handles each kind explicitly, so anything outside the
set is rejected with a FormatError instead of being silently coerced.
"""

from dataclasses import dataclass, field
from datetime import datetime, UTC
from enum import Enum
from typing import Any, Dict, Iterator, Mapping, Tuple

from docbackup.exceptions import FormatError

ID_FIELD = "_id"
UPDATED_FIELD = "_updated_at"
RESERVED_FIELDS = (ID_FIELD, UPDATED_FIELD)

# Source-database spellings, consumed by Record.from_document()
_ID_KEYS = (ID_FIELD, "$id")
_UPDATED_KEYS = (UPDATED_FIELD, "$updatedAt")
_CREATED_KEYS = ("$createdAt",)
_FALLBACK_ID_KEYS = ("id",)
_FALLBACK_UPDATED_KEYS = ("updatedAt", "updated_at")
_FALLBACK_CREATED_KEYS = ("createdAt", "created_at")


class FieldKind(str, Enum):
    """Closed set of field value kinds."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    NULL = "null"
    TIMESTAMP = "timestamp"
    OBJECT = "object"
    ARRAY = "array"


SCALAR_KINDS = frozenset(
    {
        FieldKind.STRING,
        FieldKind.NUMBER,
        FieldKind.BOOLEAN,
        FieldKind.NULL,
        FieldKind.TIMESTAMP,
    }
)


def field_kind(value: Any) -> FieldKind:
    """
    Classify a Python value into a FieldKind.

    bool is checked before int because bool is an int subclass.

    Raises:
        FormatError: If the value is outside the supported variant set
    """
    if value is None:
        return FieldKind.NULL
    if isinstance(value, bool):
        return FieldKind.BOOLEAN
    if isinstance(value, (int, float)):
        return FieldKind.NUMBER
    if isinstance(value, str):
        return FieldKind.STRING
    if isinstance(value, datetime):
        return FieldKind.TIMESTAMP
    if isinstance(value, Mapping):
        return FieldKind.OBJECT
    if isinstance(value, (list, tuple)):
        return FieldKind.ARRAY
    raise FormatError(
        f"Unsupported field value type: {type(value).__name__}",
        details={"type": type(value).__name__},
    )


def walk_value(value: Any, path: str = "$") -> Iterator[Tuple[str, FieldKind, Any]]:
    """
    Yield (path, kind, value) for a value and everything nested inside it.

    Raises:
        FormatError: On unsupported types, non-string object keys, or cycles
    """
    yield from _walk(value, path, set())


def _walk(value: Any, path: str, active: set) -> Iterator[Tuple[str, FieldKind, Any]]:
    kind = field_kind(value)
    yield (path, kind, value)

    if kind not in (FieldKind.OBJECT, FieldKind.ARRAY):
        return

    marker = id(value)
    if marker in active:
        raise FormatError(
            f"Cyclic reference at {path}",
            details={"path": path},
        )
    active.add(marker)
    try:
        if kind == FieldKind.OBJECT:
            for key, child in value.items():
                if not isinstance(key, str):
                    raise FormatError(
                        f"Object keys must be strings, got {type(key).__name__} at {path}",
                        details={"path": path},
                    )
                yield from _walk(child, f"{path}.{key}", active)
        else:
            for index, child in enumerate(value):
                yield from _walk(child, f"{path}[{index}]", active)
    finally:
        active.discard(marker)


def validate_value(value: Any, path: str = "$") -> FieldKind:
    """Validate a whole value tree and return the kind of its root."""
    walker = walk_value(value, path)
    _, root_kind, _ = next(walker)
    for _ in walker:
        pass
    return root_kind


def ensure_utc(value: datetime) -> datetime:
    """Return a timezone-aware UTC datetime (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_timestamp(value: Any) -> datetime:
    """Parse a datetime or ISO 8601 string into a UTC datetime."""
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, str):
        try:
            return ensure_utc(datetime.fromisoformat(value))
        except ValueError as e:
            raise FormatError(f"Invalid timestamp: {value!r}") from e
    raise FormatError(f"Invalid timestamp: {value!r}")


@dataclass
class Record:
    """One document from a collection."""

    id: str
    updated_at: datetime
    data: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id:
            raise ValueError(f"Record id must be a non-empty string, got {self.id!r}")
        for name in RESERVED_FIELDS:
            if name in self.data:
                raise ValueError(f"{name!r} is reserved and cannot be a data field")
        self.updated_at = ensure_utc(self.updated_at)

    def to_document(self) -> Dict[str, Any]:
        """Flatten into a single mapping with _id and _updated_at first."""
        return {ID_FIELD: self.id, UPDATED_FIELD: self.updated_at, **self.data}

    @classmethod
    def from_document(
        cls,
        document: Mapping[str, Any],
        default_time: datetime | None = None,
    ) -> "Record":
        """
        Build a Record from a flat mapping.

        Accepts the pipeline's own _id/_updated_at fields as well as the
        source database's $id/$createdAt/$updatedAt metadata. Other
        $-prefixed metadata is dropped. When no modification time is present
        the creation time is used, then default_time, then the current time.
        """
        data = dict(document)

        record_id = _pop_first(data, _ID_KEYS)
        if record_id is None:
            record_id = _get_first(data, _FALLBACK_ID_KEYS)
        if record_id is None:
            raise FormatError("Document has no identifier", details={"keys": list(document)})

        updated = _pop_first(data, _UPDATED_KEYS)
        created = _pop_first(data, _CREATED_KEYS)
        if updated is None:
            updated = _get_first(data, _FALLBACK_UPDATED_KEYS)
        if created is None:
            created = _get_first(data, _FALLBACK_CREATED_KEYS)

        stamp = updated if updated is not None else created
        if stamp is None:
            updated_at = default_time or datetime.now(UTC)
        else:
            updated_at = parse_timestamp(stamp)

        for key in [k for k in data if k.startswith("$")]:
            del data[key]

        return cls(id=str(record_id), updated_at=updated_at, data=data)


def _pop_first(data: Dict[str, Any], keys: Tuple[str, ...]) -> Any:
    found = None
    for key in keys:
        if key in data:
            value = data.pop(key)
            if found is None:
                found = value
    return found


def _get_first(data: Dict[str, Any], keys: Tuple[str, ...]) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None
