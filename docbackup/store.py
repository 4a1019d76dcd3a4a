# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Record Store Layer - The minimal contract the pipeline needs from the database.

The pipeline never talks to the document database directly. It lists
collection names, pages through records, and writes records back, all
through an object implementing RecordStore.
"""

import asyncio
from collections import defaultdict, deque
from typing import Any, Deque, Dict, Iterable, List, Protocol, Tuple

from docbackup.exceptions import DuplicateRecordError, StoreError
from docbackup.records import Record

# (records, next_cursor); next_cursor is None once the collection is exhausted
Page = Tuple[List[Record], Any]


class RecordStore(Protocol):
    """Protocol for the document database the pipeline backs up."""

    async def list_collections(self) -> List[str]:
        """Return the names of all collections."""
        ...

    async def page_records(
        self,
        collection: str,
        cursor: Any,
        page_size: int,
    ) -> Page:
        """
        Fetch one page of records.

        Args:
            collection: Collection name
            cursor: None for the first page, then the cursor returned by
                the previous call
            page_size: Maximum records to return

        Raises:
            TransientStoreError: On network failures or timeouts
            StorePermissionError: When access is denied
        """
        ...

    async def write_record(
        self,
        collection: str,
        record: Record,
        overwrite: bool,
    ) -> None:
        """
        Write one record.

        Raises:
            DuplicateRecordError: If overwrite is False and a record with
                the same id exists
        """
        ...


class InMemoryRecordStore:
    """
    Dict-backed RecordStore.

    Used by the CLI demo mode and the test suite. Supports fault injection:
    queued exceptions are raised by the next page fetches of a collection,
    and page_delay slows every page fetch down.
    """

    def __init__(self, collections: Dict[str, Iterable[Record]] | None = None):
        self._collections: Dict[str, Dict[str, Record]] = {}
        self._faults: Dict[str, Deque[BaseException]] = defaultdict(deque)
        self.page_delay: float = 0.0
        self.page_calls: Dict[str, int] = defaultdict(int)
        for name, records in (collections or {}).items():
            self.add_collection(name, records)

    def add_collection(self, name: str, records: Iterable[Record] = ()) -> None:
        """Create (or replace) a collection."""
        self._collections[name] = {record.id: record for record in records}

    def records(self, collection: str) -> List[Record]:
        """Return a copy of the records currently in a collection."""
        return list(self._collections.get(collection, {}).values())

    def inject_failure(
        self,
        collection: str,
        error: BaseException,
        times: int = 1,
    ) -> None:
        """Raise error on the next `times` page fetches of a collection."""
        for _ in range(times):
            self._faults[collection].append(error)

    async def list_collections(self) -> List[str]:
        return list(self._collections)

    async def page_records(
        self,
        collection: str,
        cursor: Any,
        page_size: int,
    ) -> Page:
        self.page_calls[collection] += 1

        if self.page_delay:
            await asyncio.sleep(self.page_delay)

        if self._faults[collection]:
            raise self._faults[collection].popleft()

        if collection not in self._collections:
            raise StoreError(
                f"Unknown collection: {collection}",
                details={"collection": collection},
            )

        offset = int(cursor or 0)
        records = list(self._collections[collection].values())
        page = records[offset : offset + page_size]
        next_offset = offset + len(page)
        next_cursor = next_offset if next_offset < len(records) else None
        return (page, next_cursor)

    async def write_record(
        self,
        collection: str,
        record: Record,
        overwrite: bool,
    ) -> None:
        existing = self._collections.setdefault(collection, {})
        if record.id in existing and not overwrite:
            raise DuplicateRecordError(collection, record.id)
        existing[record.id] = record
