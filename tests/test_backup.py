# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Tests for the backup engine.

These tests verify:
- Artifact naming and atomic writes
- Paging, retries, timeouts and cancellation in the exporter
- Retention pruning and its failure handling
- Run orchestration (worker pool, cancellation, run logs)
"""

import asyncio
from datetime import datetime, UTC
from pathlib import Path

import pytest

from docbackup.backup.exporter import export_collection
from docbackup.backup.manager import (
    artifact_name,
    format_stamp,
    list_artifacts,
    parse_artifact_name,
    parse_stamp,
    sanitize_collection_name,
    stamp_from_run_id,
    verify_artifact,
    write_artifact,
)
from docbackup.backup.retention import (
    DELETING_SUFFIX,
    get_storage_stats,
    prune_tier,
    tier_directory,
)
from docbackup.builder import create_config
from docbackup.catalog import delete_backup, list_history
from docbackup.codecs import CODECS
from docbackup.config import Compression, ExportFormat, Tier
from docbackup.core import RunPhase, RunStatus, initialize_backup_state, run_backup
from docbackup.exceptions import BackupError, StorePermissionError, TransientStoreError
from docbackup.store import InMemoryRecordStore

STAMP = "2025-03-01T12-00-00-000Z"
STARTED_AT = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)
ALL_CODECS = list(CODECS.values())


class CancellingStore(InMemoryRecordStore):
    """Sets a cancel event when a collection's Nth page is fetched."""

    def __init__(self, collections, event: asyncio.Event, collection: str, on_call: int, delay: float = 0.0):
        super().__init__(collections)
        self.event = event
        self.cancel_collection = collection
        self.on_call = on_call
        self.delay = delay

    async def page_records(self, collection, cursor, page_size):
        if collection == self.cancel_collection:
            await asyncio.sleep(self.delay)
            if self.page_calls[collection] + 1 == self.on_call:
                self.event.set()
        return await super().page_records(collection, cursor, page_size)


async def _export(store, collection, destination, **kwargs):
    options = {
        "page_size": 2,
        "page_timeout": 1.0,
        "retry_attempts": 3,
        "retry_max_wait": 0.01,
        "compression_level": 3,
    }
    options.update(kwargs)
    return await export_collection(store, collection, ALL_CODECS, destination, STAMP, **options)


# ============================================================================
# Artifact files
# ============================================================================

def test_stamp_round_trip():
    moment = datetime(2025, 3, 1, 12, 0, 0, 123456, tzinfo=UTC)

    stamp = format_stamp(moment)

    assert stamp == "2025-03-01T12-00-00-123Z"
    assert parse_stamp(stamp) == datetime(2025, 3, 1, 12, 0, 0, 123000, tzinfo=UTC)
    assert stamp_from_run_id(f"backup_{stamp}") == stamp
    assert stamp_from_run_id(stamp) == stamp
    assert stamp_from_run_id("backup_yesterday") is None


def test_artifact_names_parse_back():
    name = artifact_name("users", STAMP, "sql.zst")
    artifact = parse_artifact_name(Path(name))

    assert name == f"users_{STAMP}.sql.zst"
    assert artifact.collection == "users"
    assert artifact.stamp == STAMP
    assert artifact.format is ExportFormat.RELATIONAL
    assert artifact.compression is Compression.ZSTD
    assert artifact.run_id == f"backup_{STAMP}"


def test_collection_names_with_underscores_and_separators():
    """The stamp anchors the split, so underscores in names are safe."""
    name = artifact_name("audit_logs/2025", STAMP, "xlsx")

    assert name == f"audit_logs_2025_{STAMP}.xlsx"
    assert parse_artifact_name(Path(name)).collection == "audit_logs_2025"


def test_long_collection_names_are_shortened():
    safe = sanitize_collection_name("c" * 300)

    assert len(safe) == 159
    assert safe.startswith("c" * 150 + "_")


@pytest.mark.asyncio
async def test_write_artifact_is_atomic_and_verifiable(temp_dir: Path):
    """No temp file is left behind and the checksum matches."""
    from docbackup.backup.manager import calculate_checksum

    path = await write_artifact(temp_dir / "daily", f"users_{STAMP}.xlsx", b"payload")

    assert path.read_bytes() == b"payload"
    assert [p.name for p in (temp_dir / "daily").iterdir()] == [path.name]
    assert await verify_artifact(path, calculate_checksum(b"payload")) == (True, calculate_checksum(b"payload"))
    assert (await verify_artifact(path, "0" * 64))[0] is False


def test_list_artifacts_ignores_temp_and_foreign_files(temp_dir: Path):
    (temp_dir / f"users_{STAMP}.bson.zst").write_bytes(b"x")
    (temp_dir / f"users_{STAMP}.bson.zst.tmp").write_bytes(b"x")
    (temp_dir / "notes.txt").write_text("hello")

    assert [a.path.name for a in list_artifacts(temp_dir)] == [f"users_{STAMP}.bson.zst"]
    assert list_artifacts(temp_dir / "missing") == []


# ============================================================================
# Exporter
# ============================================================================

@pytest.mark.asyncio
async def test_export_pages_through_collection(temp_dir: Path, store):
    """Five records at page size 2 take three page fetches."""
    export = await _export(store, "orders", temp_dir)

    assert export.succeeded
    assert export.record_count == 5
    assert store.page_calls["orders"] == 3
    assert len(export.manifests) == 3
    assert all(m.checksum and len(m.checksum) == 64 for m in export.manifests)
    assert sorted(p.name for p in temp_dir.iterdir()) == sorted(
        artifact_name("orders", STAMP, spec.file_extension(Compression.ZSTD)) for spec in ALL_CODECS
    )


@pytest.mark.asyncio
async def test_transient_errors_are_retried(temp_dir: Path, store):
    store.inject_failure("users", TransientStoreError("connection reset"), times=2)

    export = await _export(store, "users", temp_dir)

    assert export.succeeded
    assert export.errors == []
    assert store.page_calls["users"] == 4  # 2 failures + 2 pages


@pytest.mark.asyncio
async def test_exhausted_retries_record_collection_error(temp_dir: Path, store):
    store.inject_failure("users", TransientStoreError("connection reset"), times=3)

    export = await _export(store, "users", temp_dir)

    assert not export.succeeded
    assert export.manifests == []
    assert export.errors[0].message == "connection reset"
    assert store.page_calls["users"] == 3
    assert list(temp_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_permission_errors_are_not_retried(temp_dir: Path, store):
    store.inject_failure("users", StorePermissionError("access denied"), times=3)

    export = await _export(store, "users", temp_dir)

    assert not export.succeeded
    assert store.page_calls["users"] == 1
    assert "access denied" in export.errors[0].message


@pytest.mark.asyncio
async def test_page_timeouts_count_as_transient(temp_dir: Path, store):
    store.page_delay = 0.2

    export = await _export(store, "users", temp_dir, page_timeout=0.02, retry_attempts=2)

    assert not export.succeeded
    assert export.errors[0].message == "Page fetch timed out"
    assert store.page_calls["users"] == 2


@pytest.mark.asyncio
async def test_cancelled_export_writes_nothing(temp_dir: Path, make_records):
    """Cancellation at a page boundary drops the partial collection."""
    event = asyncio.Event()
    store = CancellingStore({"orders": make_records(5, "order")}, event, "orders", on_call=2)

    export = await _export(store, "orders", temp_dir, cancel_event=event)

    assert export.cancelled
    assert not export.succeeded
    assert export.manifests == []
    assert store.page_calls["orders"] == 2
    assert list(temp_dir.iterdir()) == []



# ============================================================================
# Retention
# ============================================================================

def _seed_tier(root: Path, tier: str, stamps, collections=("users",)):
    directory = tier_directory(root, tier)
    directory.mkdir(parents=True, exist_ok=True)
    for stamp in stamps:
        for collection in collections:
            for ext in ("sql.zst", "bson.zst", "xlsx"):
                (directory / f"{collection}_{stamp}.{ext}").write_bytes(b"0123456789")
    return directory


STAMPS = [
    "2025-03-01T02-00-00-000Z",
    "2025-03-02T02-00-00-000Z",
    "2025-03-03T02-00-00-000Z",
    "2025-03-04T02-00-00-000Z",
]


def test_prune_keeps_newest_groups(temp_dir: Path):
    directory = _seed_tier(temp_dir, "daily", STAMPS, collections=("users", "orders"))

    result = prune_tier(temp_dir, "daily", keep=2)

    assert {stamp for _, stamp in result.deleted} == set(STAMPS[:2])
    assert len(result.deleted) == 4
    assert result.bytes_freed == 4 * 3 * 10
    assert {a.stamp for a in list_artifacts(directory)} == set(STAMPS[2:])
    assert not list(directory.glob(f"*{DELETING_SUFFIX}"))


def test_prune_dry_run_deletes_nothing(temp_dir: Path):
    directory = _seed_tier(temp_dir, "weekly", STAMPS)

    result = prune_tier(temp_dir, "weekly", keep=1, dry_run=True)

    assert len(result.deleted) == 3
    assert len(list_artifacts(directory)) == 12


def test_prune_rejects_manual_tier_and_zero_keep(temp_dir: Path):
    with pytest.raises(BackupError):
        prune_tier(temp_dir, Tier.MANUAL, keep=5)

    with pytest.raises(BackupError):
        prune_tier(temp_dir, Tier.DAILY, keep=0)


def test_prune_restores_group_when_a_file_cannot_be_moved(temp_dir: Path, monkeypatch):
    """A group is deleted completely or not at all."""
    directory = _seed_tier(temp_dir, "daily", STAMPS[:2])
    original_rename = Path.rename

    def failing_rename(self, target):
        if self.name.endswith(".xlsx") and STAMPS[0] in self.name:
            raise PermissionError("locked")
        return original_rename(self, target)

    monkeypatch.setattr(Path, "rename", failing_rename)

    result = prune_tier(temp_dir, "daily", keep=1)

    assert result.deleted == []
    assert result.failed == [("users", STAMPS[0])]
    assert len([a for a in list_artifacts(directory) if a.stamp == STAMPS[0]]) == 3
    assert not list(directory.glob(f"*{DELETING_SUFFIX}"))


def test_prune_cleans_interrupted_deletions(temp_dir: Path):
    directory = _seed_tier(temp_dir, "daily", STAMPS[-1:])
    leftover = directory / f"users_{STAMPS[0]}.xlsx{DELETING_SUFFIX}"
    leftover.write_bytes(b"x")

    prune_tier(temp_dir, "daily", keep=1)

    assert not leftover.exists()


def test_storage_stats(temp_dir: Path):
    _seed_tier(temp_dir, "daily", STAMPS[:2])
    _seed_tier(temp_dir, "manual", STAMPS[3:])

    stats = get_storage_stats(temp_dir)

    assert stats["tiers"]["daily"]["runs"] == 2
    assert stats["tiers"]["daily"]["oldest_run"] == STAMPS[0]
    assert stats["tiers"]["manual"]["files"] == 3
    assert stats["tiers"]["weekly"]["files"] == 0
    assert stats["total_bytes"] == 9 * 10


# ============================================================================
# Orchestrator
# ============================================================================

@pytest.mark.asyncio
async def test_run_writes_run_log_and_updates_state(test_config, test_state):
    run_log = await run_backup(test_config, test_state, tier="daily")

    assert run_log.status == RunStatus.SUCCESS
    assert run_log.collections_attempted == 2
    assert run_log.total_records == 8
    assert run_log.collections == ["orders", "users"]
    assert [(m.collection, m.codec) for m in run_log.manifests] == sorted(
        (m.collection, m.codec) for m in run_log.manifests
    )
    assert test_state["run_logs"].path_for(run_log.run_id).is_file()
    assert test_state["last_runs"]["daily"] is run_log
    assert test_state["total_runs"] == 1
    assert test_state["running"] == {}
    assert test_state["phases"] == {"daily": RunPhase.TERMINAL}


@pytest.mark.asyncio
async def test_dry_run_plans_files_without_paging(test_config, test_state, store):
    """A dry run resolves the collections and names their files; the store is never paged."""
    run_log = await run_backup(test_config, test_state, tier="daily", dry_run=True, now=STARTED_AT)

    assert run_log.status == RunStatus.SUCCESS
    assert run_log.collections_attempted == 2
    assert run_log.total_records == 0
    assert run_log.planned == {
        name: [artifact_name(name, STAMP, spec.file_extension(Compression.ZSTD)) for spec in ALL_CODECS]
        for name in ("orders", "users")
    }
    assert store.page_calls["users"] == 0
    assert store.page_calls["orders"] == 0
    assert not test_config.root_dir.exists()


@pytest.mark.asyncio
async def test_runs_of_different_tiers_started_together_stay_apart(test_config, test_state):
    """Two tiers starting in the same millisecond get their own run ids, logs and files."""
    daily, weekly = await asyncio.gather(
        run_backup(test_config, test_state, tier="daily", now=STARTED_AT),
        run_backup(test_config, test_state, tier="weekly", now=STARTED_AT),
    )

    assert daily.run_id != weekly.run_id
    assert {r.run_id for r in await list_history(test_config, test_state)} == {daily.run_id, weekly.run_id}
    assert test_state["phases"] == {"daily": RunPhase.TERMINAL, "weekly": RunPhase.TERMINAL}

    await delete_backup(test_config, test_state, daily.run_id)

    assert list_artifacts(tier_directory(test_config.root_dir, "daily")) == []
    assert len(list_artifacts(tier_directory(test_config.root_dir, "weekly"))) == 6
    assert [r.run_id for r in await list_history(test_config, test_state)] == [weekly.run_id]


@pytest.mark.asyncio
async def test_each_tier_reports_its_own_phase(test_config, test_state, store):
    """A finished tier reads terminal while another tier is still exporting."""
    store.page_delay = 0.05

    weekly = asyncio.create_task(run_backup(test_config, test_state, tier="weekly", now=STARTED_AT))
    await asyncio.sleep(0.02)
    assert test_state["phases"]["weekly"] == RunPhase.EXPORTING

    await run_backup(test_config, test_state, tier="daily", dry_run=True, now=STARTED_AT)
    assert test_state["phases"] == {"daily": RunPhase.TERMINAL, "weekly": RunPhase.EXPORTING}

    await weekly
    assert test_state["phases"]["weekly"] == RunPhase.TERMINAL


@pytest.mark.asyncio
async def test_run_honours_excludes_and_format_override(temp_dir: Path, store):
    config = create_config(temp_dir / "backup", exclude=["orders"], compression_level=3)
    state = initialize_backup_state(config, store)

    run_log = await run_backup(config, state, formats=["mongodb"])

    assert run_log.tier == "manual"
    assert run_log.collections == ["users"]
    assert [m.codec for m in run_log.manifests] == ["document"]
    assert Path(run_log.manifests[0].path).parent.name == "manual"


@pytest.mark.asyncio
async def test_worker_pool_bounds_concurrency(temp_dir: Path, make_records):
    """At most worker_pool_size collections page at the same time."""
    active = 0
    peak = 0

    class TrackingStore(InMemoryRecordStore):
        async def page_records(self, collection, cursor, page_size):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            try:
                await asyncio.sleep(0.01)
                return await super().page_records(collection, cursor, page_size)
            finally:
                active -= 1

    store = TrackingStore({f"c{i}": make_records(2, f"c{i}") for i in range(6)})
    config = create_config(temp_dir / "backup", formats=["document"], worker_pool_size=2, compression_level=3)
    state = initialize_backup_state(config, store)

    run_log = await run_backup(config, state)

    assert run_log.status == RunStatus.SUCCESS
    assert peak == 2


@pytest.mark.asyncio
async def test_cancelled_run_keeps_finished_collections(temp_dir: Path, make_records):
    """Collections finished before the cancel are kept; the run is marked cancelled."""
    event = asyncio.Event()
    store = CancellingStore(
        {"users": make_records(3), "orders": make_records(5, "order")},
        event,
        "orders",
        on_call=2,
        delay=0.05,
    )
    config = create_config(temp_dir / "backup", compression_level=3, page_size=2)
    state = initialize_backup_state(config, store)

    run_log = await run_backup(config, state, tier="daily", cancel_event=event)

    assert run_log.cancelled
    assert run_log.status == RunStatus.PARTIAL_SUCCESS
    assert run_log.collections == ["users"]
    assert not [a for a in list_artifacts(tier_directory(config.root_dir, "daily")) if a.collection == "orders"]


@pytest.mark.asyncio
async def test_run_cancelled_before_start_fails(test_config, test_state):
    event = asyncio.Event()
    event.set()

    run_log = await run_backup(test_config, test_state, tier="daily", cancel_event=event)

    assert run_log.cancelled
    assert run_log.status == RunStatus.FAILED
    assert run_log.errors == []


@pytest.mark.asyncio
async def test_store_listing_failure_fails_run(temp_dir: Path):
    class BrokenStore(InMemoryRecordStore):
        async def list_collections(self):
            raise ConnectionError("database unreachable")

    config = create_config(temp_dir / "backup", compression_level=3)
    state = initialize_backup_state(config, BrokenStore())

    run_log = await run_backup(config, state, tier="daily")

    assert run_log.status == RunStatus.FAILED
    assert "database unreachable" in run_log.errors[0].message
    assert state["last_error"] == run_log.errors[0].message
