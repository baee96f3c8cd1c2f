# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Test fixtures for s3purge tests.

Provides an in-memory async S3 client, a SQLite reference database, and
configuration helpers.
"""

import csv
import gzip
import io
import json
import tempfile
from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import Any, Dict, Generator, Iterable, List, Tuple
from urllib.parse import quote_plus

import aiosqlite
import pytest
import pytest_asyncio
from botocore.exceptions import ClientError
from tenacity import wait_none

from s3purge import store
from s3purge.config import PurgeConfig, PurgeMode
from s3purge.refdb.sqlite import connect_sqlite, format_db_time, init_reference_schema

# Content hashes used across the tests
HASH_A = "0123456789abcdefghijklmnopqrstuv"
HASH_B = "a1b2c3d4e5f6g7h8i9j0k1l2m3n4o5p6"
HASH_C = "zyxwvutsrqponmlkjihgfedcba987654"

DATA_BUCKET = "zfs-storage"
INVENTORY_BUCKET = "zfs-inventory"
INVENTORY_ID = "weekly"


# ============================================================================
# Fake S3
# ============================================================================

class FakeBody:
    """Streaming body stand-in supporting `async with body as stream`."""

    def __init__(self, data: bytes):
        self._data = data

    async def __aenter__(self) -> "FakeBody":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        return None

    async def read(self) -> bytes:
        return self._data


def client_error(code: str, status: int = 500, operation: str = "Op") -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


class FakeS3Client:
    """
    In-memory S3 client with the aiobotocore call shapes used by s3purge.

    Failures can be queued per operation with fail_next(operation, exc).
    """

    def __init__(self) -> None:
        self.buckets: Dict[str, Dict[str, bytes]] = {}
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.delete_requests: List[List[str]] = []
        self.inventory_configurations: List[Dict[str, Any]] = []
        self.rejected_keys: set = set()
        self._failures: Dict[str, List[Exception]] = {}

    async def __aenter__(self) -> "FakeS3Client":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        return None

    def put(self, bucket: str, key: str, data: bytes = b"x") -> None:
        self.buckets.setdefault(bucket, {})[key] = data

    def keys(self, bucket: str) -> List[str]:
        return sorted(self.buckets.get(bucket, {}))

    def fail_next(self, operation: str, exc: Exception, times: int = 1) -> None:
        self._failures.setdefault(operation, []).extend([exc] * times)

    def _maybe_fail(self, operation: str) -> None:
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    async def list_objects_v2(self, **params: Any) -> Dict[str, Any]:
        self.calls.append(("list_objects_v2", params))
        self._maybe_fail("list_objects_v2")

        bucket = self.buckets.get(params["Bucket"], {})
        matching = sorted(k for k in bucket if k.startswith(params.get("Prefix", "")))
        start = int(params.get("ContinuationToken") or 0)
        page_size = params.get("MaxKeys", 1000)
        page = matching[start : start + page_size]

        response: Dict[str, Any] = {"IsTruncated": start + page_size < len(matching)}
        if page:
            response["Contents"] = [{"Key": k, "Size": len(bucket[k])} for k in page]
        if response["IsTruncated"]:
            response["NextContinuationToken"] = str(start + page_size)
        return response

    async def get_object(self, **params: Any) -> Dict[str, Any]:
        self.calls.append(("get_object", params))
        self._maybe_fail("get_object")

        bucket = self.buckets.get(params["Bucket"], {})
        if params["Key"] not in bucket:
            raise client_error("NoSuchKey", 404, "GetObject")
        return {"Body": FakeBody(bucket[params["Key"]])}

    async def delete_objects(self, **params: Any) -> Dict[str, Any]:
        self.calls.append(("delete_objects", params))
        self._maybe_fail("delete_objects")

        keys = [obj["Key"] for obj in params["Delete"]["Objects"]]
        assert len(keys) <= 1000
        self.delete_requests.append(keys)

        bucket = self.buckets.setdefault(params["Bucket"], {})
        errors = []
        for key in keys:
            if key in self.rejected_keys:
                errors.append({"Key": key, "Code": "AccessDenied", "Message": "Access Denied"})
                continue
            bucket.pop(key, None)

        response: Dict[str, Any] = {}
        if errors:
            response["Errors"] = errors
        return response

    async def put_bucket_inventory_configuration(self, **params: Any) -> Dict[str, Any]:
        self.calls.append(("put_bucket_inventory_configuration", params))
        self._maybe_fail("put_bucket_inventory_configuration")
        self.inventory_configurations.append(params)
        return {}


class FakeSession:
    """aiobotocore session stand-in handing out one shared FakeS3Client."""

    def __init__(self, client: FakeS3Client):
        self.client = client
        self.client_kwargs: List[Dict[str, Any]] = []

    def create_client(self, service: str, **kwargs: Any) -> FakeS3Client:
        assert service == "s3"
        self.client_kwargs.append(kwargs)
        return self.client


# ============================================================================
# Inventory helpers
# ============================================================================

def make_inventory_part(keys: Iterable[str], bucket: str = DATA_BUCKET) -> bytes:
    """Gzip CSV inventory data file with URL-encoded keys."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL)
    for key in keys:
        writer.writerow([bucket, quote_plus(key, safe="/"), "1024", "2026-01-01T00:00:00.000Z", "etag"])
    return gzip.compress(buffer.getvalue().encode("utf-8"))


def publish_inventory(
    client: FakeS3Client,
    parts: List[List[str]],
    stamp: str = "2026-10-11T00-00Z",
    file_schema: str | None = "Bucket, Key, Size, LastModifiedDate, ETag",
) -> str:
    """Write an inventory run (data files and manifest); return the manifest key."""
    root = f"{DATA_BUCKET}/{INVENTORY_ID}"
    files = []
    for i, keys in enumerate(parts):
        data_key = f"{root}/data/{stamp}-part{i:03d}.csv.gz"
        client.put(INVENTORY_BUCKET, data_key, make_inventory_part(keys))
        files.append({"key": data_key, "size": 0, "MD5checksum": "0"})

    document: Dict[str, Any] = {
        "sourceBucket": DATA_BUCKET,
        "destinationBucket": f"arn:aws:s3:::{INVENTORY_BUCKET}",
        "fileFormat": "CSV",
        "files": files,
    }
    if file_schema is not None:
        document["fileSchema"] = file_schema

    manifest_key = f"{root}/{stamp}/manifest.json"
    client.put(INVENTORY_BUCKET, manifest_key, json.dumps(document).encode("utf-8"))
    return manifest_key


# ============================================================================
# Reference database helpers
# ============================================================================

class ReferenceTables:
    """Seeds and inspects the SQLite reference tables over a separate connection."""

    def __init__(self, db_path: Path):
        self.db_path = db_path

    async def add_storage_file(
        self,
        content_hash: str,
        *,
        added: datetime,
        libraries: Iterable[int] = (),
        filename: str = "file.pdf",
    ) -> int:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO storageFiles (hash, filename, size, zip, lastAdded)
                VALUES (?, ?, 1024, 0, ?)
                """,
                (content_hash, filename, format_db_time(added)),
            )
            storage_file_id = cursor.lastrowid
            for library_id in libraries:
                await db.execute(
                    "INSERT INTO storageFileLibraries (storageFileID, libraryID) VALUES (?, ?)",
                    (storage_file_id, library_id),
                )
            await db.commit()
            return storage_file_id

    async def queue_upload(self, content_hash: str, *, queued: datetime) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO storageUploadQueue (uploadKey, userID, hash, filename, time)
                VALUES (?, 1, ?, 'upload.pdf', ?)
                """,
                (f"{content_hash}-{queued.timestamp()}", content_hash, format_db_time(queued)),
            )
            await db.commit()

    async def count(self, table: str, content_hash: str) -> int:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                f"SELECT COUNT(*) FROM {table} WHERE hash = ?", (content_hash,)
            ) as cursor:
                row = await cursor.fetchone()
                return row[0]


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture(autouse=True)
def no_retry_wait(monkeypatch: pytest.MonkeyPatch) -> None:
    """Retry immediately so transient-failure tests run fast."""
    monkeypatch.setattr(store, "_WAIT", wait_none())


@pytest.fixture
def now() -> datetime:
    return datetime(2026, 10, 19, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def long_ago(now: datetime) -> datetime:
    return now - timedelta(days=365)


@pytest.fixture
def s3_client() -> FakeS3Client:
    return FakeS3Client()


@pytest.fixture
def s3_session(s3_client: FakeS3Client) -> FakeSession:
    return FakeSession(s3_client)


@pytest_asyncio.fixture
async def reference_db_path(temp_dir: Path) -> Path:
    """Create a temporary reference database."""
    db_path = temp_dir / "reference.db"
    await init_reference_schema(db_path)
    return db_path


@pytest.fixture
def tables(reference_db_path: Path) -> ReferenceTables:
    return ReferenceTables(reference_db_path)


@pytest_asyncio.fixture
async def reference_db(reference_db_path: Path):
    db = await connect_sqlite(f"sqlite:///{reference_db_path}")
    yield db
    await db.close()


@pytest.fixture
def config(temp_dir: Path, reference_db_path: Path) -> PurgeConfig:
    """Dry-run configuration against the temporary reference database."""
    return PurgeConfig(
        bucket=DATA_BUCKET,
        inventory_bucket=INVENTORY_BUCKET,
        inventory_id=INVENTORY_ID,
        database_url=f"sqlite:///{reference_db_path}",
        audit_log_path=temp_dir / "audit" / "purge.txt",
        progress_interval_seconds=60.0,
    )


@pytest.fixture
def live_config(config: PurgeConfig) -> PurgeConfig:
    return config.with_updates(mode=PurgeMode.EXECUTE)
