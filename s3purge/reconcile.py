# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
s3purge Reconciliation - Decide and act on the disposition of one hash.

Each group is reconciled in its own database transaction:

1. Lock upload queue rows for the hash queued inside the grace window.
   Any such row means an upload is in flight: keep everything.
2. Lock the hash's storageFiles rows joined to their library relations.
3. An unreferenced hash whose rows were added inside the grace window
   counts as recently referenced.
4. Unreferenced and not recent: delete every key. Referenced or recent with
   two or more keys: keep the shortest key, delete the others. Otherwise keep.

Failures inside the transaction are returned as a ReconcileOutcome carrying a
ReconciliationError; the transaction is still ended (committed, or rolled back
when rollback_on_error is set) and the run moves on to the next hash.
"""

from dataclasses import dataclass
from datetime import datetime, UTC
from enum import Enum
from typing import Sequence, Tuple

import structlog

from s3purge.config import PurgeConfig
from s3purge.deletion import AuditLog, record_and_archive
from s3purge.exceptions import ReconciliationError
from s3purge.grouping import Group
from s3purge.refdb import ReferenceDB

logger = structlog.get_logger()


class DispositionKind(str, Enum):
    """What to do with the objects of one hash."""

    KEEP = "keep"
    DELETE_ALL = "delete_all"
    DELETE_DUPLICATES = "delete_duplicates"


@dataclass(frozen=True)
class Disposition:
    """Decision for one group. Not persisted, only acted upon."""

    kind: DispositionKind
    hash: str
    delete_keys: Tuple[str, ...] = ()
    kept_key: str | None = None
    reason: str = ""

    @property
    def deletes(self) -> bool:
        return bool(self.delete_keys)


@dataclass
class ReconcileOutcome:
    """Result of reconciling one group: a disposition or an error."""

    group: Group
    disposition: Disposition | None = None
    error: ReconciliationError | None = None
    archived_rows: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None and self.disposition is not None


def shortest_key(keys: Sequence[str]) -> str:
    """
    The canonical copy: the bare hash key if present, else the shortest
    hash/filename key. Ties keep the first key in feed order.
    """
    return min(keys, key=len)


def decide_disposition(
    group: Group,
    *,
    upload_in_flight: bool,
    referenced: bool,
    recently_touched: bool,
) -> Disposition:
    """Apply the disposition rules to the locked reference state of a group."""
    if upload_in_flight:
        return Disposition(DispositionKind.KEEP, group.hash, reason="upload_in_flight")

    if not referenced and not recently_touched:
        return Disposition(
            DispositionKind.DELETE_ALL,
            group.hash,
            delete_keys=tuple(group.keys),
            reason="unreferenced",
        )

    reason = "referenced" if referenced else "recently_touched"
    if len(group.keys) >= 2:
        kept = shortest_key(group.keys)
        kept_index = group.keys.index(kept)
        doomed = tuple(key for i, key in enumerate(group.keys) if i != kept_index)
        return Disposition(
            DispositionKind.DELETE_DUPLICATES,
            group.hash,
            delete_keys=doomed,
            kept_key=kept,
            reason=reason,
        )

    return Disposition(
        DispositionKind.KEEP, group.hash, kept_key=group.keys[0], reason=reason
    )


async def _reconcile_locked(
    db: ReferenceDB,
    group: Group,
    config: PurgeConfig,
    audit_log: AuditLog,
    now: datetime,
) -> ReconcileOutcome:
    """Body of the group transaction. Never raises."""
    outcome = ReconcileOutcome(group)
    cutoff = now - config.grace_period

    try:
        queued = await db.lock_upload_queue(group.hash, cutoff)
        if queued:
            outcome.disposition = decide_disposition(
                group, upload_in_flight=True, referenced=False, recently_touched=False
            )
            return outcome

        state = await db.lock_storage_files(group.hash)
        recently_touched = (
            not state.referenced
            and state.last_added is not None
            and state.last_added > cutoff
        )
        disposition = decide_disposition(
            group,
            upload_in_flight=False,
            referenced=state.referenced,
            recently_touched=recently_touched,
        )
        outcome.disposition = disposition

        if disposition.deletes:
            outcome.archived_rows = await record_and_archive(
                db, audit_log, group.hash, disposition.delete_keys, config, now
            )

    except Exception as e:
        outcome.error = ReconciliationError(
            group.hash,
            f"Failed to reconcile hash {group.hash}: {e}",
            details={"keys": len(group.keys)},
        )
        logger.error(
            "group_reconcile_failed",
            hash=group.hash,
            keys=len(group.keys),
            error=str(e),
        )

    return outcome


async def reconcile_group(
    db: ReferenceDB,
    group: Group,
    config: PurgeConfig,
    *,
    audit_log: AuditLog | None = None,
    now: datetime | None = None,
) -> ReconcileOutcome:
    """
    Reconcile one group in its own transaction.

    The transaction is always ended: committed, or rolled back when the group
    failed and config.rollback_on_error is set. Errors from begin, commit or
    rollback mean the connection itself is broken and propagate.

    Args:
        db: Reference database (one open connection)
        group: Keys of one hash
        config: Purge configuration
        audit_log: Where doomed keys are recorded
        now: Clock override

    Returns:
        ReconcileOutcome with the disposition, or the captured error
    """
    now = now or datetime.now(UTC)
    audit_log = audit_log or AuditLog(None)

    await db.begin()
    outcome = await _reconcile_locked(db, group, config, audit_log, now)

    if outcome.error is not None and config.rollback_on_error:
        await db.rollback()
    else:
        await db.commit()

    if outcome.disposition is not None:
        logger.debug(
            "group_reconciled",
            hash=group.hash,
            disposition=outcome.disposition.kind.value,
            reason=outcome.disposition.reason,
            keys=len(group.keys),
            doomed=len(outcome.disposition.delete_keys),
        )
    return outcome
