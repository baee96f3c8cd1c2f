# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Reference Database Layer - Locked reads and archive-then-delete writes
against the storage reference tables.

Tables (owned by the live system, only read and pruned here):

- storageFiles(storageFileID, hash, filename, size, zip, lastAdded)
- storageFileLibraries(storageFileID, libraryID)
- storageUploadQueue(uploadKey, userID, hash, filename, zip, size, time)
- storageFilesDeleted(storageFileID, hash, filename, size, zip, lastAdded, deletedAt)

Every backend runs one transaction at a time on a single connection and
takes exclusive locks on the rows it reads, so a hash cannot change between
the reference check and the delete.
"""

from dataclasses import dataclass
from datetime import datetime, UTC
from typing import Any, Iterable, Protocol, Tuple
from urllib.parse import urlparse

from s3purge.errors import explain_unsupported_database_url
from s3purge.exceptions import ConfigurationError


@dataclass(frozen=True)
class StorageFileState:
    """Locked view of the storageFiles rows of one hash."""

    records: int
    referenced: bool
    last_added: datetime | None


class ReferenceDB(Protocol):
    """Transactional access to the reference tables."""

    async def begin(self) -> None:
        ...

    async def commit(self) -> None:
        ...

    async def rollback(self) -> None:
        ...

    async def lock_upload_queue(self, content_hash: str, since: datetime) -> int:
        """Lock queue rows for hash queued after since; return how many exist."""
        ...

    async def lock_storage_files(self, content_hash: str) -> StorageFileState:
        """Lock storageFiles rows for hash and report their library relations."""
        ...

    async def archive_unreferenced(
        self,
        content_hash: str,
        added_before: datetime,
        deleted_at: datetime,
    ) -> int:
        """
        Copy unreferenced rows last added before added_before into
        storageFilesDeleted, then delete them. Returns rows deleted.
        """
        ...

    async def close(self) -> None:
        ...


def as_utc(value: datetime | str | None) -> datetime | None:
    """Normalize a database timestamp to an aware UTC datetime."""
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def mask_password(url: str) -> str:
    """Mask password in connection URL for logging."""
    parsed = urlparse(url)
    if parsed.password:
        return url.replace(f":{parsed.password}@", ":***@")
    return url


def to_db_time(value: datetime) -> datetime:
    """Naive UTC datetime, as stored in the TIMESTAMP columns."""
    return value.astimezone(UTC).replace(tzinfo=None)


def fold_storage_rows(rows: Iterable[Tuple[Any, Any, Any]]) -> StorageFileState:
    """
    Reduce (storageFileID, lastAdded, libraryID) join rows to a StorageFileState.
    """
    file_ids = set()
    referenced = False
    last_added: datetime | None = None

    for storage_file_id, added, library_id in rows:
        file_ids.add(storage_file_id)
        if library_id is not None:
            referenced = True
        added = as_utc(added)
        if added is not None and (last_added is None or added > last_added):
            last_added = added

    return StorageFileState(records=len(file_ids), referenced=referenced, last_added=last_added)


async def open_reference_db(database_url: str) -> ReferenceDB:
    """
    Connect to the reference database named by URL.

    Args:
        database_url: mysql://, postgresql:// (postgres://) or sqlite:///path

    Raises:
        ConfigurationError: If the scheme has no backend
        FatalConfigError: If the database is unreachable
    """
    lower = database_url.lower()
    if lower.startswith(("mysql://", "mysql+aiomysql://", "mariadb://")):
        from s3purge.refdb.mysql import connect_mysql

        return await connect_mysql(database_url)
    elif lower.startswith(("postgres://", "postgresql://")):
        from s3purge.refdb.postgres import connect_postgres

        return await connect_postgres(database_url)
    elif lower.startswith("sqlite:///"):
        from s3purge.refdb.sqlite import connect_sqlite

        return await connect_sqlite(database_url)
    else:
        raise ConfigurationError(explain_unsupported_database_url(database_url))


__all__ = [
    "ReferenceDB",
    "StorageFileState",
    "as_utc",
    "fold_storage_rows",
    "mask_password",
    "open_reference_db",
    "to_db_time",
]
