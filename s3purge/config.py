# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
s3purge Configuration - Immutable configuration data structures.

All configuration is frozen (immutable) after creation to prevent
accidental modification during a run.
"""

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import List
import re


# S3 DeleteObjects accepts at most this many keys per request
MAX_DELETE_BATCH = 1000


class PurgeMode(str, Enum):
    """Purge execution mode."""

    DRY_RUN = "dry_run"  # Audit log only, no deletions
    EXECUTE = "execute"  # Archive DB rows and delete objects


def _validate_bucket_name(bucket: str) -> bool:
    """
    Validate S3 bucket name according to AWS rules.

    Rules:
    - 3-63 characters
    - Lowercase letters, numbers, hyphens
    - Must start and end with letter or number
    - No consecutive periods
    - Not formatted as IP address
    """
    if not bucket or len(bucket) < 3 or len(bucket) > 63:
        return False

    if not re.match(r"^[a-z0-9][a-z0-9.-]*[a-z0-9]$", bucket):
        return False

    if ".." in bucket:
        return False

    if re.match(r"^\d+\.\d+\.\d+\.\d+$", bucket):
        return False

    return True


def _validate_inventory_id(inventory_id: str) -> bool:
    """Inventory configuration ids are up to 64 chars of [A-Za-z0-9._-]."""
    return bool(re.match(r"^[A-Za-z0-9._-]{1,64}$", inventory_id or ""))


@dataclass(frozen=True)
class PurgeConfig:
    """
    Immutable configuration for an inventory-driven purge run.

    The data bucket holds the content-addressed objects; the inventory bucket
    receives the S3 Inventory export for the data bucket.
    """

    # Required: content-addressed data bucket
    bucket: str

    # Required: bucket the inventory export is delivered to
    inventory_bucket: str

    # Required: inventory configuration id on the data bucket
    inventory_id: str

    # Required: reference database URL (mysql://, postgresql://, sqlite:///)
    database_url: str

    region: str = "us-east-1"
    endpoint_url: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None

    # Inventory bucket connection, falls back to the data bucket settings
    inventory_region: str | None = None
    inventory_endpoint_url: str | None = None
    inventory_access_key_id: str | None = None
    inventory_secret_access_key: str | None = None

    # Execution mode (default: dry_run for safety)
    mode: PurgeMode = PurgeMode.DRY_RUN

    # Recent uploads and reference changes inside this window block deletion
    grace_period_days: int = 30

    # Append-only record of every key deleted or slated for deletion
    audit_log_path: Path | None = None

    delete_batch_size: int = MAX_DELETE_BATCH

    # Attempts per S3 request before TransientStoreError
    store_retry_attempts: int = 5

    progress_interval_seconds: float = 10.0

    # Defer the end-of-part group flush so a hash straddling two parts is merged
    group_across_parts: bool = False

    # Roll back (instead of commit) a group transaction that raised
    rollback_on_error: bool = False

    def __post_init__(self) -> None:
        """Validate configuration after creation."""
        errors: List[str] = []

        if not _validate_bucket_name(self.bucket):
            errors.append(f"Invalid bucket name: {self.bucket}")

        if not _validate_bucket_name(self.inventory_bucket):
            errors.append(f"Invalid inventory bucket name: {self.inventory_bucket}")

        if not _validate_inventory_id(self.inventory_id):
            errors.append(f"Invalid inventory id: {self.inventory_id!r}")

        if not self.database_url:
            errors.append("database_url is required")

        if self.grace_period_days < 0:
            errors.append(f"grace_period_days must be >= 0, got {self.grace_period_days}")

        if not 1 <= self.delete_batch_size <= MAX_DELETE_BATCH:
            errors.append(
                f"delete_batch_size must be 1-{MAX_DELETE_BATCH}, got {self.delete_batch_size}"
            )

        if self.store_retry_attempts < 1:
            errors.append(
                f"store_retry_attempts must be >= 1, got {self.store_retry_attempts}"
            )

        if self.progress_interval_seconds <= 0:
            errors.append(
                f"progress_interval_seconds must be > 0, got {self.progress_interval_seconds}"
            )

        if errors:
            from s3purge.exceptions import ConfigurationError

            raise ConfigurationError(
                "Configuration validation failed",
                details={"errors": errors},
            )

        # Print warning for execute mode
        if self.mode == PurgeMode.EXECUTE:
            import sys

            print(
                "⚠️  WARNING: Execute mode enabled. Deletions will occur.",
                file=sys.stderr,
            )

    @property
    def is_live(self) -> bool:
        return self.mode == PurgeMode.EXECUTE

    @property
    def grace_period(self) -> timedelta:
        return timedelta(days=self.grace_period_days)

    def with_updates(self, **kwargs) -> "PurgeConfig":
        """
        Create a new config with updated values.

        Since the config is frozen, this creates a new instance.
        """
        from dataclasses import asdict

        current = asdict(self)
        current.update(kwargs)
        return PurgeConfig(**current)
