# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Critical Safety Tests for reconciliation.

These tests verify the core safety guarantees:
1. In-flight uploads - A hash with a recent upload queue entry is ALWAYS kept
2. Exclusivity - The shortest key is NEVER in a duplicate-trim deletion set
3. Recently touched - A hash added inside the grace window is NEVER fully deleted
4. Idempotence - Reconciling twice on unchanged state gives the same answer
5. Forward progress - A failing hash is reported and its transaction ended

These tests MUST pass before any production deployment.
"""

from datetime import datetime, timedelta
from pathlib import Path

import pytest

from s3purge.config import PurgeConfig
from s3purge.deletion import AuditLog
from s3purge.exceptions import ReconciliationError
from s3purge.grouping import Group
from s3purge.reconcile import (
    DispositionKind,
    decide_disposition,
    reconcile_group,
    shortest_key,
)
from s3purge.refdb import StorageFileState

from tests.conftest import HASH_A, HASH_B, ReferenceTables


def three_key_group(content_hash: str = HASH_A) -> Group:
    return Group(content_hash, [content_hash, f"{content_hash}/x.pdf", f"{content_hash}/y.pdf"])


# ============================================================================
# Test 1: IN-FLIGHT UPLOADS
# ============================================================================

@pytest.mark.asyncio
async def test_in_flight_upload_always_keeps_unreferenced_hash(
    reference_db, tables: ReferenceTables, live_config: PurgeConfig, now: datetime, long_ago
):
    """
    CRITICAL: A queued upload inside the grace window wins over everything.

    The hash is unreferenced and old, which would otherwise mean DeleteAll.
    """
    await tables.add_storage_file(HASH_A, added=long_ago)
    await tables.queue_upload(HASH_A, queued=now - timedelta(hours=1))

    outcome = await reconcile_group(reference_db, three_key_group(), live_config, now=now)

    assert outcome.ok
    assert outcome.disposition.kind == DispositionKind.KEEP
    assert outcome.disposition.delete_keys == ()
    assert outcome.disposition.reason == "upload_in_flight"
    assert await tables.count("storageFiles", HASH_A) == 1


@pytest.mark.asyncio
async def test_in_flight_upload_keeps_referenced_duplicates(
    reference_db, tables: ReferenceTables, config: PurgeConfig, now: datetime, long_ago
):
    """Duplicate trimming is skipped too while an upload is in flight."""
    await tables.add_storage_file(HASH_A, added=long_ago, libraries=[1])
    await tables.queue_upload(HASH_A, queued=now - timedelta(days=3))

    outcome = await reconcile_group(reference_db, three_key_group(), config, now=now)

    assert outcome.disposition.kind == DispositionKind.KEEP
    assert not outcome.disposition.deletes


@pytest.mark.asyncio
async def test_upload_queued_before_grace_window_does_not_block(
    reference_db, tables: ReferenceTables, config: PurgeConfig, now: datetime, long_ago
):
    await tables.add_storage_file(HASH_A, added=long_ago)
    await tables.queue_upload(HASH_A, queued=now - timedelta(days=45))

    outcome = await reconcile_group(reference_db, three_key_group(), config, now=now)

    assert outcome.disposition.kind == DispositionKind.DELETE_ALL


@pytest.mark.asyncio
async def test_upload_of_other_hash_does_not_block(
    reference_db, tables: ReferenceTables, config: PurgeConfig, now: datetime, long_ago
):
    await tables.add_storage_file(HASH_A, added=long_ago)
    await tables.queue_upload(HASH_B, queued=now - timedelta(hours=1))

    outcome = await reconcile_group(reference_db, three_key_group(), config, now=now)

    assert outcome.disposition.kind == DispositionKind.DELETE_ALL


def test_decide_in_flight_overrides_every_reference_state():
    group = three_key_group()
    for referenced in (True, False):
        for recently_touched in (True, False):
            disposition = decide_disposition(
                group,
                upload_in_flight=True,
                referenced=referenced,
                recently_touched=recently_touched,
            )
            assert disposition.kind == DispositionKind.KEEP
            assert disposition.delete_keys == ()


# ============================================================================
# Test 2: DISPOSITION SCENARIOS
# ============================================================================

@pytest.mark.asyncio
async def test_unreferenced_old_hash_deletes_all_keys(
    reference_db, tables: ReferenceTables, live_config: PurgeConfig, now: datetime, long_ago
):
    await tables.add_storage_file(HASH_A, added=long_ago)

    outcome = await reconcile_group(reference_db, three_key_group(), live_config, now=now)

    assert outcome.disposition.kind == DispositionKind.DELETE_ALL
    assert outcome.disposition.delete_keys == (HASH_A, f"{HASH_A}/x.pdf", f"{HASH_A}/y.pdf")
    assert outcome.archived_rows == 1
    assert await tables.count("storageFiles", HASH_A) == 0
    assert await tables.count("storageFilesDeleted", HASH_A) == 1


@pytest.mark.asyncio
async def test_referenced_hash_trims_duplicates_keeping_bare_key(
    reference_db, tables: ReferenceTables, live_config: PurgeConfig, now: datetime, long_ago
):
    await tables.add_storage_file(HASH_A, added=long_ago, libraries=[7])

    outcome = await reconcile_group(reference_db, three_key_group(), live_config, now=now)

    assert outcome.disposition.kind == DispositionKind.DELETE_DUPLICATES
    assert set(outcome.disposition.delete_keys) == {f"{HASH_A}/x.pdf", f"{HASH_A}/y.pdf"}
    assert outcome.disposition.kept_key == HASH_A
    assert outcome.archived_rows == 0
    assert await tables.count("storageFiles", HASH_A) == 1


@pytest.mark.asyncio
async def test_single_referenced_key_is_kept(
    reference_db, tables: ReferenceTables, config: PurgeConfig, now: datetime, long_ago
):
    await tables.add_storage_file(HASH_A, added=long_ago, libraries=[1, 2])

    outcome = await reconcile_group(
        reference_db, Group(HASH_A, [f"{HASH_A}/paper.pdf"]), config, now=now
    )

    assert outcome.disposition.kind == DispositionKind.KEEP
    assert outcome.disposition.delete_keys == ()
    assert outcome.disposition.kept_key == f"{HASH_A}/paper.pdf"


@pytest.mark.asyncio
async def test_hash_without_storage_rows_is_deleted(
    reference_db, config: PurgeConfig, now: datetime
):
    """Objects the reference tables have never heard of are unreferenced."""
    outcome = await reconcile_group(
        reference_db, Group(HASH_B, [f"{HASH_B}/orphan.pdf"]), config, now=now
    )

    assert outcome.disposition.kind == DispositionKind.DELETE_ALL
    assert outcome.disposition.delete_keys == (f"{HASH_B}/orphan.pdf",)


# ============================================================================
# Test 3: EXCLUSIVITY
# ============================================================================

@pytest.mark.parametrize(
    "keys",
    [
        [HASH_A, f"{HASH_A}/a.pdf"],
        [f"{HASH_A}/long-name.pdf", f"{HASH_A}/b.pdf", f"{HASH_A}/medium.pdf"],
        [f"{HASH_A}/a.pdf", f"{HASH_A}/b.pdf"],
        [f"{HASH_A}/zz", HASH_A, f"{HASH_A}/"],
    ],
)
def test_duplicate_trim_never_deletes_shortest_key(keys):
    group = Group(HASH_A, keys)
    disposition = decide_disposition(
        group, upload_in_flight=False, referenced=True, recently_touched=False
    )

    kept = shortest_key(keys)
    assert disposition.kind == DispositionKind.DELETE_DUPLICATES
    assert disposition.kept_key == kept
    assert kept not in disposition.delete_keys
    assert len(disposition.delete_keys) == len(keys) - 1


def test_shortest_key_tie_keeps_first_in_feed_order():
    keys = [f"{HASH_A}/b.pdf", f"{HASH_A}/a.pdf"]
    assert shortest_key(keys) == f"{HASH_A}/b.pdf"


# ============================================================================
# Test 4: RECENTLY TOUCHED GRACE
# ============================================================================

@pytest.mark.asyncio
async def test_recently_added_unreferenced_hash_is_never_deleted_entirely(
    reference_db, tables: ReferenceTables, live_config: PurgeConfig, now: datetime
):
    """
    CRITICAL: A reference dropped moments ago must not cost the object.

    The row was added 2 days ago, inside the 30 day window.
    """
    await tables.add_storage_file(HASH_A, added=now - timedelta(days=2))

    outcome = await reconcile_group(reference_db, three_key_group(), live_config, now=now)

    assert outcome.disposition.kind == DispositionKind.DELETE_DUPLICATES
    assert outcome.disposition.reason == "recently_touched"
    assert HASH_A not in outcome.disposition.delete_keys
    # Row is inside the grace window and must survive
    assert outcome.archived_rows == 0
    assert await tables.count("storageFiles", HASH_A) == 1


@pytest.mark.asyncio
async def test_recently_added_single_key_is_kept(
    reference_db, tables: ReferenceTables, config: PurgeConfig, now: datetime
):
    await tables.add_storage_file(HASH_A, added=now - timedelta(days=2))

    outcome = await reconcile_group(reference_db, Group(HASH_A, [HASH_A]), config, now=now)

    assert outcome.disposition.kind == DispositionKind.KEEP


@pytest.mark.asyncio
async def test_newest_row_decides_recent_touch(
    reference_db, tables: ReferenceTables, config: PurgeConfig, now: datetime, long_ago
):
    await tables.add_storage_file(HASH_A, added=long_ago, filename="old.pdf")
    await tables.add_storage_file(HASH_A, added=now - timedelta(days=1), filename="new.pdf")

    outcome = await reconcile_group(reference_db, three_key_group(), config, now=now)

    assert outcome.disposition.kind == DispositionKind.DELETE_DUPLICATES


@pytest.mark.asyncio
async def test_zero_grace_days_deletes_recent_rows(
    reference_db, tables: ReferenceTables, config: PurgeConfig, now: datetime
):
    await tables.add_storage_file(HASH_A, added=now - timedelta(days=2))

    outcome = await reconcile_group(
        reference_db, three_key_group(), config.with_updates(grace_period_days=0), now=now
    )

    assert outcome.disposition.kind == DispositionKind.DELETE_ALL


# ============================================================================
# Test 5: IDEMPOTENCE AND DRY-RUN
# ============================================================================

@pytest.mark.asyncio
async def test_reconcile_twice_gives_same_disposition(
    reference_db, tables: ReferenceTables, config: PurgeConfig, now: datetime, long_ago
):
    await tables.add_storage_file(HASH_A, added=long_ago)

    first = await reconcile_group(reference_db, three_key_group(), config, now=now)
    second = await reconcile_group(reference_db, three_key_group(), config, now=now)

    assert first.disposition == second.disposition


@pytest.mark.asyncio
async def test_dry_run_audits_but_leaves_rows(
    reference_db,
    tables: ReferenceTables,
    config: PurgeConfig,
    now: datetime,
    long_ago,
    temp_dir: Path,
):
    await tables.add_storage_file(HASH_A, added=long_ago)
    audit_log = AuditLog(temp_dir / "audit.txt")
    await audit_log.reset()

    outcome = await reconcile_group(
        reference_db, three_key_group(), config, audit_log=audit_log, now=now
    )

    assert outcome.disposition.kind == DispositionKind.DELETE_ALL
    assert outcome.archived_rows == 0
    assert await tables.count("storageFiles", HASH_A) == 1
    assert (temp_dir / "audit.txt").read_text() == (
        f"{HASH_A}\n{HASH_A}/x.pdf\n{HASH_A}/y.pdf\n\n"
    )


# ============================================================================
# Test 6: FORWARD PROGRESS ON ERRORS
# ============================================================================

class RecordingDB:
    """Reference database stand-in that records transaction calls."""

    def __init__(self, fail_on: str | None = None):
        self.fail_on = fail_on
        self.calls = []

    async def begin(self):
        self.calls.append("begin")

    async def commit(self):
        self.calls.append("commit")

    async def rollback(self):
        self.calls.append("rollback")

    async def lock_upload_queue(self, content_hash, since):
        self.calls.append("lock_upload_queue")
        if self.fail_on == "lock_upload_queue":
            raise RuntimeError("deadlock found when trying to get lock")
        return 0

    async def lock_storage_files(self, content_hash):
        self.calls.append("lock_storage_files")
        if self.fail_on == "lock_storage_files":
            raise RuntimeError("lock wait timeout exceeded")
        return StorageFileState(records=1, referenced=False, last_added=None)

    async def archive_unreferenced(self, content_hash, added_before, deleted_at):
        self.calls.append("archive_unreferenced")
        if self.fail_on == "archive_unreferenced":
            raise RuntimeError("disk full")
        return 1

    async def close(self):
        pass


@pytest.mark.asyncio
async def test_error_is_captured_and_transaction_committed(config: PurgeConfig, now):
    db = RecordingDB(fail_on="lock_storage_files")

    outcome = await reconcile_group(db, three_key_group(), config, now=now)

    assert not outcome.ok
    assert isinstance(outcome.error, ReconciliationError)
    assert outcome.error.content_hash == HASH_A
    assert outcome.error.details["hash"] == HASH_A
    assert db.calls == ["begin", "lock_upload_queue", "lock_storage_files", "commit"]


@pytest.mark.asyncio
async def test_error_rolls_back_when_configured(live_config: PurgeConfig, now):
    db = RecordingDB(fail_on="archive_unreferenced")

    outcome = await reconcile_group(
        db, three_key_group(), live_config.with_updates(rollback_on_error=True), now=now
    )

    assert not outcome.ok
    assert db.calls[-1] == "rollback"
    assert "commit" not in db.calls


@pytest.mark.asyncio
async def test_successful_group_is_committed(live_config: PurgeConfig, now):
    db = RecordingDB()

    outcome = await reconcile_group(db, three_key_group(), live_config, now=now)

    assert outcome.ok
    assert outcome.archived_rows == 1
    assert db.calls == [
        "begin",
        "lock_upload_queue",
        "lock_storage_files",
        "archive_unreferenced",
        "commit",
    ]
