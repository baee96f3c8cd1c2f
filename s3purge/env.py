# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Environment-based configuration helpers and safety profiles.

These helpers are small wrappers around create_config() and
PurgeConfig.with_updates(). They make it easy to:

- Build a configuration from environment variables
- Apply a ready-made safety profile
"""

from __future__ import annotations

import os
from pathlib import Path

from s3purge.builder import create_config
from s3purge.config import PurgeConfig, PurgeMode
from s3purge.errors import (
    explain_invalid_grace_days_env,
    explain_invalid_int_env,
    explain_invalid_mode_env,
    explain_missing_env,
)
from s3purge.exceptions import ConfigurationError


def _parse_mode(value: str | None) -> PurgeMode:
    if not value:
        return PurgeMode.DRY_RUN
    try:
        return PurgeMode(value.lower())
    except ValueError as exc:
        raise ConfigurationError(explain_invalid_mode_env(value)) from exc


def _parse_grace_days(value: str | None) -> int:
    if not value:
        return 30
    try:
        days = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(explain_invalid_grace_days_env(value)) from exc
    if days < 0:
        raise ConfigurationError(explain_invalid_grace_days_env(value))
    return days


def _parse_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ConfigurationError(explain_invalid_int_env(name, value)) from exc


def _parse_bool(value: str | None) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


def _require(name: str, what: str) -> str:
    value = os.getenv(name)
    if not value:
        raise ConfigurationError(explain_missing_env(name, what))
    return value


def create_config_from_env(**overrides) -> PurgeConfig:
    """
    Create a PurgeConfig from environment variables.

    Required:
        - S3PURGE_BUCKET: Content-addressed data bucket
        - S3PURGE_INVENTORY_BUCKET: Bucket the inventory export is delivered to
        - S3PURGE_INVENTORY_ID: Inventory configuration id
        - S3PURGE_DATABASE_URL: Reference database URL

    Optional environment variables:
        - AWS_REGION: Data bucket region (default: us-east-1)
        - S3PURGE_ENDPOINT_URL: Custom S3 endpoint for the data bucket
        - S3PURGE_INVENTORY_REGION / S3PURGE_INVENTORY_ENDPOINT_URL
        - S3PURGE_INVENTORY_ACCESS_KEY_ID / S3PURGE_INVENTORY_SECRET_ACCESS_KEY
        - S3PURGE_MODE: 'dry_run' | 'execute' (default: dry_run)
        - S3PURGE_GRACE_DAYS: Non-negative integer (default: 30)
        - S3PURGE_AUDIT_LOG: Path of the audit log
        - S3PURGE_DELETE_BATCH_SIZE: 1-1000 (default: 1000)
        - S3PURGE_GROUP_ACROSS_PARTS: 'true' to merge hashes split across parts

    Data bucket credentials come from the regular AWS credential chain.
    Keyword overrides win over the environment.
    """

    values = dict(
        bucket=_require("S3PURGE_BUCKET", "Data bucket"),
        inventory_bucket=_require("S3PURGE_INVENTORY_BUCKET", "Inventory bucket"),
        inventory_id=_require("S3PURGE_INVENTORY_ID", "Inventory id"),
        database_url=_require("S3PURGE_DATABASE_URL", "Reference database"),
        region=os.getenv("AWS_REGION", "us-east-1"),
        mode=_parse_mode(os.getenv("S3PURGE_MODE")),
        grace_period_days=_parse_grace_days(os.getenv("S3PURGE_GRACE_DAYS")),
        audit_log_path=Path(os.environ["S3PURGE_AUDIT_LOG"])
        if os.getenv("S3PURGE_AUDIT_LOG")
        else None,
        endpoint_url=os.getenv("S3PURGE_ENDPOINT_URL"),
        inventory_region=os.getenv("S3PURGE_INVENTORY_REGION"),
        inventory_endpoint_url=os.getenv("S3PURGE_INVENTORY_ENDPOINT_URL"),
        inventory_access_key_id=os.getenv("S3PURGE_INVENTORY_ACCESS_KEY_ID"),
        inventory_secret_access_key=os.getenv("S3PURGE_INVENTORY_SECRET_ACCESS_KEY"),
        delete_batch_size=_parse_int("S3PURGE_DELETE_BATCH_SIZE", 1000),
        group_across_parts=_parse_bool(os.getenv("S3PURGE_GROUP_ACROSS_PARTS")),
    )
    values.update({k: v for k, v in overrides.items() if v is not None})

    bucket = values.pop("bucket")
    return create_config(bucket, **values)


# ============================================================================
# Profiles
# ============================================================================

def safe_defaults(config: PurgeConfig) -> PurgeConfig:
    """
    Apply conservative, safety-first defaults.

    - Always use DRY_RUN mode
    - Ensure at least 30 days of grace
    - Roll back a group's transaction on error
    """

    return config.with_updates(
        mode=PurgeMode.DRY_RUN,
        grace_period_days=max(config.grace_period_days, 30),
        rollback_on_error=True,
    )
