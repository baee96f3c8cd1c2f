# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
s3purge Deletion - Audit trail, storage row archival and object deletion.

Order for one hash:
1. Append the doomed keys to the audit log (every mode, dry-run included)
2. Execute mode: copy unreferenced storageFiles rows into storageFilesDeleted,
   then delete them, inside the group's transaction
3. Execute mode: after the transaction commits, delete the objects in
   batches of at most 1000 keys

The database is authoritative. An object that survives a failed delete only
wastes space and is picked up by the next run; an object deleted while its
row survives would break the live system. Object deletion therefore never
runs before the commit and its failures never reach the database side.
"""

from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

import aiofiles
import structlog

from s3purge.config import PurgeConfig
from s3purge.refdb import ReferenceDB
from s3purge.store import DeleteReport, delete_keys

logger = structlog.get_logger()


class AuditLog:
    """
    Append-only plain-text list of keys, one group per block.

    Each group is written as its keys, one per line, followed by a blank line.
    A log without a path records nothing.
    """

    def __init__(self, path: Path | None):
        self.path = path
        self.groups_written = 0

    @property
    def enabled(self) -> bool:
        return self.path is not None

    async def reset(self) -> None:
        """Truncate the log at the start of a run."""
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(self.path, "w") as f:
            await f.write("")
        self.groups_written = 0

    async def append_group(self, keys: Iterable[str]) -> None:
        if self.path is None:
            return
        block = "".join(f"{key}\n" for key in keys) + "\n"
        async with aiofiles.open(self.path, "a") as f:
            await f.write(block)
        self.groups_written += 1


async def archive_storage_files(
    db: ReferenceDB,
    content_hash: str,
    config: PurgeConfig,
    now: datetime,
) -> int:
    """
    Archive and delete the storageFiles rows of hash that no library uses.

    Rows last added inside the grace window are left alone. Must be called
    inside the group's transaction, after its rows were locked.
    """
    removed = await db.archive_unreferenced(
        content_hash,
        added_before=now - config.grace_period,
        deleted_at=now,
    )
    if removed:
        logger.info("storage_files_archived", hash=content_hash, rows=removed)
    return removed


async def record_and_archive(
    db: ReferenceDB,
    audit_log: AuditLog,
    content_hash: str,
    keys: Iterable[str],
    config: PurgeConfig,
    now: datetime,
) -> int:
    """
    Database side of a deletion: audit first, then archive in execute mode.

    Returns:
        Number of storageFiles rows removed (always 0 in dry-run)
    """
    await audit_log.append_group(keys)
    if not config.is_live:
        return 0
    return await archive_storage_files(db, content_hash, config, now)


async def purge_objects(
    s3_client: Any,
    config: PurgeConfig,
    content_hash: str,
    keys: Iterable[str],
) -> DeleteReport:
    """
    Delete objects from the data bucket; a no-op outside execute mode.

    Store failures are logged and returned in the report, never raised.
    """
    keys = list(keys)
    if not config.is_live or not keys:
        return DeleteReport()

    report = await delete_keys(
        s3_client,
        config.bucket,
        keys,
        batch_size=config.delete_batch_size,
        attempts=config.store_retry_attempts,
    )
    logger.info(
        "objects_deleted",
        hash=content_hash,
        requested=report.requested,
        deleted=report.deleted,
        failed=len(report.failed),
    )
    return report
