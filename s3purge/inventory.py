# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
s3purge Inventory - Manifest resolution and inventory row parsing.

S3 Inventory delivers, per run, a manifest.json under
<source bucket>/<inventory id>/<YYYY-MM-DDTHH-MMZ>/ in the destination bucket,
listing gzip-compressed CSV data files. The key column of those CSVs is form
URL-encoded (space as "+", literal "+" as "%2B").
"""

import csv
import gzip
import io
import json
import zlib
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List
from urllib.parse import unquote_plus

import structlog

from s3purge.config import PurgeConfig
from s3purge.exceptions import (
    InventoryPartError,
    MalformedManifestError,
    ManifestNotFound,
)
from s3purge.store import call_with_retry, get_object_bytes, iter_keys

logger = structlog.get_logger()

MANIFEST_SUFFIX = "manifest.json"

# Column order when the manifest carries no fileSchema
DEFAULT_FILE_SCHEMA = ["Bucket", "Key", "Size", "LastModifiedDate", "ETag"]


@dataclass(frozen=True)
class InventoryRow:
    """One object listed by the inventory. Only bucket and key drive decisions."""

    bucket: str
    key: str
    size: int | None = None
    last_modified: str | None = None
    etag: str | None = None


@dataclass(frozen=True)
class ManifestFile:
    """One gzip CSV data file of an inventory run."""

    key: str
    size: int | None = None
    md5: str | None = None


@dataclass
class Manifest:
    """Parsed inventory manifest."""

    key: str
    files: List[ManifestFile]
    source_bucket: str | None = None
    file_format: str = "CSV"
    file_schema: List[str] = field(default_factory=lambda: list(DEFAULT_FILE_SCHEMA))


# ============================================================================
# Manifest resolution
# ============================================================================

def manifest_prefix(config: PurgeConfig) -> str:
    """Prefix of the dated inventory directories (keys that start with a year)."""
    return f"{config.bucket}/{config.inventory_id}/20"


async def find_manifest_key(
    s3_client: Any,
    inventory_bucket: str,
    prefix: str,
    *,
    attempts: int = 5,
) -> str:
    """
    Return the most recent manifest key under prefix.

    Dated directory names sort chronologically, so the last key in
    lexicographic order is the newest manifest.

    Raises:
        ManifestNotFound: If no key under prefix ends with manifest.json
    """
    manifest_keys = [
        key
        async for key in iter_keys(s3_client, inventory_bucket, prefix, attempts=attempts)
        if key.endswith(MANIFEST_SUFFIX)
    ]
    if not manifest_keys:
        raise ManifestNotFound(
            "No inventory manifest found",
            details={"bucket": inventory_bucket, "prefix": prefix},
        )

    manifest_keys.sort(reverse=True)
    return manifest_keys[0]


def parse_manifest(manifest_key: str, raw: bytes) -> Manifest:
    """
    Parse manifest JSON.

    Raises:
        MalformedManifestError: If the document is not JSON or has no files list
    """
    try:
        document = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedManifestError(
            f"Manifest is not valid JSON: {e}", details={"key": manifest_key}
        ) from e

    if not isinstance(document, dict) or not isinstance(document.get("files"), list):
        raise MalformedManifestError(
            "Manifest has no files list", details={"key": manifest_key}
        )

    files: List[ManifestFile] = []
    for entry in document["files"]:
        if not isinstance(entry, dict) or not entry.get("key"):
            raise MalformedManifestError(
                "Manifest file entry without key",
                details={"key": manifest_key, "entry": entry},
            )
        files.append(
            ManifestFile(
                key=entry["key"],
                size=entry.get("size"),
                md5=entry.get("MD5checksum"),
            )
        )

    file_format = document.get("fileFormat", "CSV")
    if str(file_format).upper() != "CSV":
        raise MalformedManifestError(
            f"Unsupported inventory file format: {file_format}",
            details={"key": manifest_key},
        )

    schema = document.get("fileSchema")
    file_schema = (
        [column.strip() for column in schema.split(",")]
        if isinstance(schema, str) and schema.strip()
        else list(DEFAULT_FILE_SCHEMA)
    )

    return Manifest(
        key=manifest_key,
        files=files,
        source_bucket=document.get("sourceBucket"),
        file_format="CSV",
        file_schema=file_schema,
    )


async def resolve_manifest(s3_client: Any, config: PurgeConfig) -> Manifest:
    """
    Find and load the most recent inventory manifest for the data bucket.

    Raises:
        ManifestNotFound: Nothing to reconcile
        MalformedManifestError: The manifest is unusable
    """
    prefix = manifest_prefix(config)
    manifest_key = await find_manifest_key(
        s3_client,
        config.inventory_bucket,
        prefix,
        attempts=config.store_retry_attempts,
    )
    raw = await get_object_bytes(
        s3_client,
        config.inventory_bucket,
        manifest_key,
        attempts=config.store_retry_attempts,
    )
    manifest = parse_manifest(manifest_key, raw)

    logger.info(
        "manifest_resolved",
        manifest_key=manifest_key,
        files=len(manifest.files),
        source_bucket=manifest.source_bucket,
    )
    return manifest


# ============================================================================
# Inventory rows
# ============================================================================

def _column_index(file_schema: List[str]) -> Dict[str, int]:
    index = {name.lower(): i for i, name in enumerate(file_schema)}
    if "key" not in index:
        index["key"] = 1
    index.setdefault("bucket", 0)
    return index


def _cell(row: List[str], index: Dict[str, int], name: str) -> str | None:
    position = index.get(name)
    if position is None or position >= len(row):
        return None
    return row[position]


def parse_inventory_csv(
    data: bytes,
    file_schema: List[str] | None = None,
) -> Iterator[InventoryRow]:
    """
    Decompress and parse one inventory data file, preserving row order.

    Raises:
        InventoryPartError: If the data is not gzip or not CSV
    """
    index = _column_index(file_schema or DEFAULT_FILE_SCHEMA)

    try:
        text = io.TextIOWrapper(gzip.GzipFile(fileobj=io.BytesIO(data)), encoding="utf-8")
        for row in csv.reader(text):
            if not row:
                continue
            key = _cell(row, index, "key")
            if key is None:
                raise InventoryPartError("Inventory row has no key column", details={"row": row})

            size = _cell(row, index, "size")
            yield InventoryRow(
                bucket=_cell(row, index, "bucket") or "",
                key=unquote_plus(key),
                size=int(size) if size and size.isdigit() else None,
                last_modified=_cell(row, index, "lastmodifieddate"),
                etag=_cell(row, index, "etag"),
            )
    except (OSError, EOFError, zlib.error, csv.Error, UnicodeDecodeError) as e:
        raise InventoryPartError(f"Failed to read inventory data: {e}") from e


async def fetch_inventory_part(
    s3_client: Any,
    config: PurgeConfig,
    part: ManifestFile,
    file_schema: List[str] | None = None,
) -> List[InventoryRow]:
    """Download one inventory part and return its rows in order."""
    data = await get_object_bytes(
        s3_client,
        config.inventory_bucket,
        part.key,
        attempts=config.store_retry_attempts,
    )
    try:
        rows = list(parse_inventory_csv(data, file_schema))
    except InventoryPartError as e:
        e.details.setdefault("key", part.key)
        raise

    logger.debug("inventory_part_loaded", key=part.key, rows=len(rows), bytes=len(data))
    return rows


# ============================================================================
# Provisioning
# ============================================================================

def build_inventory_configuration(
    config: PurgeConfig,
    frequency: str = "Weekly",
) -> Dict[str, Any]:
    """Inventory configuration delivering CSV listings to the inventory bucket."""
    return {
        "Id": config.inventory_id,
        "IsEnabled": True,
        "Schedule": {"Frequency": frequency},
        "Destination": {
            "S3BucketDestination": {
                "Bucket": f"arn:aws:s3:::{config.inventory_bucket}",
                "Format": "CSV",
            }
        },
        "OptionalFields": ["Size", "LastModifiedDate", "ETag"],
        "IncludedObjectVersions": "Current",
    }


async def provision_inventory(
    s3_client: Any,
    config: PurgeConfig,
    frequency: str = "Weekly",
) -> Dict[str, Any]:
    """
    Enable the inventory export on the data bucket.

    One-time setup; the first manifest appears within 48 hours.
    """
    inventory_configuration = build_inventory_configuration(config, frequency)
    await call_with_retry(
        "put_bucket_inventory_configuration",
        s3_client.put_bucket_inventory_configuration,
        attempts=config.store_retry_attempts,
        Bucket=config.bucket,
        Id=config.inventory_id,
        InventoryConfiguration=inventory_configuration,
    )
    logger.info(
        "inventory_provisioned",
        bucket=config.bucket,
        inventory_id=config.inventory_id,
        destination=config.inventory_bucket,
        frequency=frequency,
    )
    return inventory_configuration
