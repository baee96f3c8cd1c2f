# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
PostgreSQL Reference Database - asyncpg backend.

Table and column names are the camelCase names of the MySQL schema,
quoted. PostgreSQL refuses FOR UPDATE on the nullable side of an outer
join, so the join read locks storageFiles rows (FOR UPDATE OF sf) and the
storageFileLibraries rows are locked by a second FOR SHARE read. Timestamp
columns are assumed to be `timestamp without time zone` holding UTC.
"""

from datetime import datetime
from typing import Any

import asyncpg
import structlog

from s3purge.exceptions import FatalConfigError
from s3purge.refdb import StorageFileState, fold_storage_rows, mask_password, to_db_time

logger = structlog.get_logger()


def _rowcount(status: str) -> int:
    """Row count from an asyncpg command status such as 'DELETE 3'."""
    try:
        return int(status.split()[-1])
    except (ValueError, IndexError):
        return 0


class PostgresReferenceDB:
    """Reference tables on PostgreSQL."""

    def __init__(self, conn: Any):
        self._conn = conn
        self._transaction: Any = None

    async def begin(self) -> None:
        self._transaction = self._conn.transaction()
        await self._transaction.start()

    async def commit(self) -> None:
        transaction, self._transaction = self._transaction, None
        if transaction is not None:
            await transaction.commit()

    async def rollback(self) -> None:
        transaction, self._transaction = self._transaction, None
        if transaction is not None:
            await transaction.rollback()

    async def lock_upload_queue(self, content_hash: str, since: datetime) -> int:
        rows = await self._conn.fetch(
            """
            SELECT "uploadKey" FROM "storageUploadQueue"
            WHERE hash = $1 AND time > $2
            FOR UPDATE
            """,
            content_hash,
            to_db_time(since),
        )
        return len(rows)

    async def lock_storage_files(self, content_hash: str) -> StorageFileState:
        rows = await self._conn.fetch(
            """
            SELECT sf."storageFileID", sf."lastAdded", sfl."libraryID"
            FROM "storageFiles" sf
            LEFT JOIN "storageFileLibraries" sfl ON (sfl."storageFileID" = sf."storageFileID")
            WHERE sf.hash = $1
            FOR UPDATE OF sf
            """,
            content_hash,
        )
        await self._conn.fetch(
            """
            SELECT 1 FROM "storageFileLibraries" sfl
            JOIN "storageFiles" sf ON (sf."storageFileID" = sfl."storageFileID")
            WHERE sf.hash = $1
            FOR SHARE OF sfl
            """,
            content_hash,
        )
        return fold_storage_rows(
            (row["storageFileID"], row["lastAdded"], row["libraryID"]) for row in rows
        )

    async def archive_unreferenced(
        self,
        content_hash: str,
        added_before: datetime,
        deleted_at: datetime,
    ) -> int:
        cutoff = to_db_time(added_before)
        await self._conn.execute(
            """
            INSERT INTO "storageFilesDeleted"
                ("storageFileID", hash, filename, size, zip, "lastAdded", "deletedAt")
            SELECT sf."storageFileID", sf.hash, sf.filename, sf.size, sf.zip,
                   sf."lastAdded", $3
            FROM "storageFiles" sf
            WHERE sf.hash = $1 AND sf."lastAdded" <= $2
              AND NOT EXISTS (
                  SELECT 1 FROM "storageFileLibraries" sfl
                  WHERE sfl."storageFileID" = sf."storageFileID"
              )
            """,
            content_hash,
            cutoff,
            to_db_time(deleted_at),
        )
        status = await self._conn.execute(
            """
            DELETE FROM "storageFiles" sf
            WHERE sf.hash = $1 AND sf."lastAdded" <= $2
              AND NOT EXISTS (
                  SELECT 1 FROM "storageFileLibraries" sfl
                  WHERE sfl."storageFileID" = sf."storageFileID"
              )
            """,
            content_hash,
            cutoff,
        )
        return _rowcount(status)

    async def close(self) -> None:
        await self._conn.close()


async def connect_postgres(database_url: str) -> PostgresReferenceDB:
    """
    Open the single PostgreSQL connection used for a run.

    Raises:
        FatalConfigError: If the server cannot be reached or rejects the login
    """
    try:
        conn = await asyncpg.connect(database_url)
    except Exception as e:
        raise FatalConfigError(
            f"Failed to connect to PostgreSQL: {e}",
            details={"database_url": mask_password(database_url)},
        ) from e

    logger.info("reference_db_connected", backend="postgres")
    return PostgresReferenceDB(conn)
