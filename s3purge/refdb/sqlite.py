# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
SQLite Reference Database - aiosqlite backend for local runs and tests.

SQLite has no row locks: BEGIN IMMEDIATE takes the database write lock for
the whole transaction, which excludes every other writer and is strictly
stronger than the row locks the server backends take. Timestamps are stored
as 'YYYY-MM-DD HH:MM:SS' UTC text so they compare lexicographically.
"""

from datetime import datetime
from pathlib import Path

import aiosqlite
import structlog

from s3purge.exceptions import FatalConfigError, ReferenceDBError
from s3purge.refdb import StorageFileState, fold_storage_rows, to_db_time

logger = structlog.get_logger()


def format_db_time(value: datetime) -> str:
    return to_db_time(value).strftime("%Y-%m-%d %H:%M:%S")


def sqlite_path(database_url: str) -> Path:
    """Path part of a sqlite:///path URL."""
    return Path(database_url[len("sqlite:///"):])


async def init_reference_schema(db_path: Path) -> None:
    """
    Create the reference tables if they don't exist.

    This is idempotent and safe to call multiple times.

    Args:
        db_path: Path to the SQLite database file
    """
    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS storageFiles (
                    storageFileID INTEGER PRIMARY KEY AUTOINCREMENT,
                    hash TEXT NOT NULL,
                    filename TEXT NOT NULL DEFAULT '',
                    size INTEGER NOT NULL DEFAULT 0,
                    zip INTEGER NOT NULL DEFAULT 0,
                    lastAdded TEXT NOT NULL
                )
            """)
            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_storageFiles_hash
                ON storageFiles(hash)
            """)
            await db.execute("""
                CREATE TABLE IF NOT EXISTS storageFileLibraries (
                    storageFileID INTEGER NOT NULL,
                    libraryID INTEGER NOT NULL,
                    PRIMARY KEY (storageFileID, libraryID)
                )
            """)
            await db.execute("""
                CREATE TABLE IF NOT EXISTS storageUploadQueue (
                    uploadKey TEXT PRIMARY KEY,
                    userID INTEGER NOT NULL DEFAULT 0,
                    hash TEXT NOT NULL,
                    filename TEXT NOT NULL DEFAULT '',
                    zip INTEGER NOT NULL DEFAULT 0,
                    size INTEGER NOT NULL DEFAULT 0,
                    time TEXT NOT NULL
                )
            """)
            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_storageUploadQueue_hash
                ON storageUploadQueue(hash)
            """)
            await db.execute("""
                CREATE TABLE IF NOT EXISTS storageFilesDeleted (
                    storageFileID INTEGER NOT NULL,
                    hash TEXT NOT NULL,
                    filename TEXT NOT NULL,
                    size INTEGER NOT NULL,
                    zip INTEGER NOT NULL,
                    lastAdded TEXT NOT NULL,
                    deletedAt TEXT NOT NULL
                )
            """)
            await db.commit()
    except Exception as e:
        raise ReferenceDBError(
            f"Failed to initialize reference database: {e}",
            details={"db_path": str(db_path)},
        )


class SQLiteReferenceDB:
    """Reference tables in a local SQLite file."""

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def begin(self) -> None:
        await self._db.execute("BEGIN IMMEDIATE")

    async def commit(self) -> None:
        await self._db.execute("COMMIT")

    async def rollback(self) -> None:
        await self._db.execute("ROLLBACK")

    async def lock_upload_queue(self, content_hash: str, since: datetime) -> int:
        async with self._db.execute(
            "SELECT COUNT(*) FROM storageUploadQueue WHERE hash = ? AND time > ?",
            (content_hash, format_db_time(since)),
        ) as cursor:
            row = await cursor.fetchone()
            return row[0] if row else 0

    async def lock_storage_files(self, content_hash: str) -> StorageFileState:
        async with self._db.execute(
            """
            SELECT sf.storageFileID, sf.lastAdded, sfl.libraryID
            FROM storageFiles sf
            LEFT JOIN storageFileLibraries sfl ON (sfl.storageFileID = sf.storageFileID)
            WHERE sf.hash = ?
            """,
            (content_hash,),
        ) as cursor:
            rows = await cursor.fetchall()
        return fold_storage_rows(rows)

    async def archive_unreferenced(
        self,
        content_hash: str,
        added_before: datetime,
        deleted_at: datetime,
    ) -> int:
        cutoff = format_db_time(added_before)
        unreferenced = """
            hash = ? AND lastAdded <= ?
            AND NOT EXISTS (
                SELECT 1 FROM storageFileLibraries sfl
                WHERE sfl.storageFileID = storageFiles.storageFileID
            )
        """
        await self._db.execute(
            f"""
            INSERT INTO storageFilesDeleted
                (storageFileID, hash, filename, size, zip, lastAdded, deletedAt)
            SELECT storageFileID, hash, filename, size, zip, lastAdded, ?
            FROM storageFiles
            WHERE {unreferenced}
            """,
            (format_db_time(deleted_at), content_hash, cutoff),
        )
        cursor = await self._db.execute(
            f"DELETE FROM storageFiles WHERE {unreferenced}",
            (content_hash, cutoff),
        )
        return cursor.rowcount

    async def close(self) -> None:
        await self._db.close()


async def connect_sqlite(database_url: str) -> SQLiteReferenceDB:
    """
    Open a SQLite reference database with manual transaction control.

    Raises:
        FatalConfigError: If the file does not exist or cannot be opened
    """
    path = sqlite_path(database_url)
    if not path.exists():
        raise FatalConfigError(
            "SQLite reference database does not exist", details={"path": str(path)}
        )

    try:
        db = await aiosqlite.connect(path, isolation_level=None)
    except Exception as e:
        raise FatalConfigError(
            f"Failed to open SQLite reference database: {e}",
            details={"path": str(path)},
        ) from e

    logger.info("reference_db_connected", backend="sqlite", path=str(path))
    return SQLiteReferenceDB(db)
