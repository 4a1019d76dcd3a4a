# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Test fixtures for docbackup tests.

Provides temporary backup roots, a seeded in-memory record store, and test
configuration helpers.
"""

import os
import tempfile
from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import Callable, Generator, List

import pytest

from docbackup.records import Record

# Set test environment variables
os.environ["DOCBACKUP_ADMIN_API_KEY"] = "test-api-key-12345"

BASE_TIME = datetime(2025, 3, 1, 12, 0, 0, tzinfo=UTC)


def build_records(count: int, prefix: str = "user") -> List[Record]:
    """Records with one field of every scalar kind plus nested values."""
    return [
        Record(
            id=f"{prefix}-{index}",
            updated_at=BASE_TIME + timedelta(minutes=index),
            data={
                "name": f"{prefix.title()} {index}",
                "age": 20 + index,
                "score": index + 0.5,
                "active": index % 2 == 0,
                "joined": BASE_TIME - timedelta(days=index),
                "tags": ["a", f"t{index}"],
                "profile": {"city": "Pune", "level": index},
                "note": None,
            },
        )
        for index in range(1, count + 1)
    ]


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_records() -> Callable[..., List[Record]]:
    """Factory for test records."""
    return build_records


@pytest.fixture
def store():
    """In-memory store with a users and an orders collection."""
    from docbackup.store import InMemoryRecordStore

    return InMemoryRecordStore(
        {
            "users": build_records(3, "user"),
            "orders": build_records(5, "order"),
        }
    )


@pytest.fixture
def test_config(temp_dir: Path):
    """Create a test configuration with fast retries and cheap compression."""
    from docbackup.config import BackupConfig

    return BackupConfig(
        root_dir=temp_dir / "backup",
        compression_level=3,
        page_size=2,
        page_timeout_seconds=1.0,
        retry_attempts=3,
        retry_max_wait_seconds=0.01,
    )


@pytest.fixture
def test_state(test_config, store):
    """Create initialized backup state for testing."""
    from docbackup.core import initialize_backup_state

    return initialize_backup_state(test_config, store)


@pytest.fixture
def run_times() -> List[datetime]:
    """Three distinct run start times, oldest first."""
    return [BASE_TIME + timedelta(days=day) for day in range(3)]
