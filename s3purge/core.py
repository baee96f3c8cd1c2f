# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
s3purge Core - Orchestrates one inventory-driven purge run.

Manifest -> inventory parts -> groups -> reconciliation -> deletion, strictly
sequential: one part at a time, one group transaction at a time, on a single
database connection. A terminated run leaves every finished group committed
and is safe to rerun against the same manifest.
"""

from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Any, Dict, List, TypedDict

import structlog
from ulid import ULID

from s3purge.config import PurgeConfig
from s3purge.deletion import AuditLog, purge_objects
from s3purge.exceptions import ManifestNotFound
from s3purge.grouping import Group, GroupExtractor
from s3purge.inventory import fetch_inventory_part, resolve_manifest
from s3purge.progress import ProgressReporter, ProgressTracker
from s3purge.reconcile import DispositionKind, reconcile_group
from s3purge.refdb import ReferenceDB, open_reference_db
from s3purge.store import create_s3_client

logger = structlog.get_logger()


@dataclass
class PurgeResult:
    """Result of a purge run."""

    operation_id: str  # ULID
    mode: str
    manifest_key: str | None = None
    parts_total: int = 0
    parts_processed: int = 0
    rows_scanned: int = 0
    rows_skipped: int = 0
    groups_seen: int = 0
    groups_kept: int = 0
    groups_deleted_all: int = 0
    groups_trimmed: int = 0
    groups_failed: int = 0
    keys_slated: int = 0
    keys_deleted: int = 0
    store_delete_failures: int = 0
    storage_rows_archived: int = 0
    errors: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0


class PurgeState(TypedDict):
    """Runtime state for purge runs."""

    db: ReferenceDB
    s3_session: Any  # aiobotocore session
    audit_log: AuditLog
    progress: ProgressTracker
    last_run_at: datetime | None
    total_runs: int
    last_error: str | None


async def initialize_purge_state(config: PurgeConfig) -> PurgeState:
    """
    Initialize runtime state for purge runs.

    Opens the reference database connection and the S3 session.

    Raises:
        FatalConfigError: If the reference database is unreachable
    """
    from aiobotocore.session import get_session

    db = await open_reference_db(config.database_url)

    return PurgeState(
        db=db,
        s3_session=get_session(),
        audit_log=AuditLog(config.audit_log_path),
        progress=ProgressTracker(),
        last_run_at=None,
        total_runs=0,
        last_error=None,
    )


def _data_client(config: PurgeConfig, state: PurgeState) -> Any:
    return create_s3_client(
        state["s3_session"],
        region=config.region,
        endpoint_url=config.endpoint_url,
        access_key_id=config.access_key_id,
        secret_access_key=config.secret_access_key,
    )


def _inventory_client(config: PurgeConfig, state: PurgeState) -> Any:
    return create_s3_client(
        state["s3_session"],
        region=config.inventory_region or config.region,
        endpoint_url=config.inventory_endpoint_url or config.endpoint_url,
        access_key_id=config.inventory_access_key_id or config.access_key_id,
        secret_access_key=config.inventory_secret_access_key or config.secret_access_key,
    )


async def process_group(
    config: PurgeConfig,
    state: PurgeState,
    data_client: Any,
    group: Group,
    result: PurgeResult,
) -> None:
    """Reconcile one group, then delete its doomed objects once committed."""
    tracker = state["progress"]
    outcome = await reconcile_group(state["db"], group, config, audit_log=state["audit_log"])

    result.groups_seen += 1
    tracker.groups_done += 1

    if not outcome.ok:
        result.groups_failed += 1
        tracker.group_errors += 1
        if outcome.error is not None:
            result.errors.append(str(outcome.error))
        return

    disposition = outcome.disposition
    result.storage_rows_archived += outcome.archived_rows

    if disposition.kind == DispositionKind.KEEP:
        result.groups_kept += 1
        return
    if disposition.kind == DispositionKind.DELETE_ALL:
        result.groups_deleted_all += 1
    else:
        result.groups_trimmed += 1

    result.keys_slated += len(disposition.delete_keys)

    if not config.is_live:
        tracker.deleted_keys += len(disposition.delete_keys)
        logger.info(
            "would_delete",
            hash=group.hash,
            disposition=disposition.kind.value,
            keys=list(disposition.delete_keys),
        )
        return

    report = await purge_objects(data_client, config, group.hash, disposition.delete_keys)
    result.keys_deleted += report.deleted
    result.store_delete_failures += len(report.failed)
    tracker.deleted_keys += report.deleted


async def run_purge(config: PurgeConfig, state: PurgeState) -> PurgeResult:
    """
    Run a complete purge against the newest inventory manifest.

    This is the main entry point. It:
    1. Resolves the most recent manifest (none: empty result)
    2. Streams each inventory part in manifest order
    3. Groups rows by content hash
    4. Reconciles every group in its own transaction
    5. Deletes doomed objects after each commit (execute mode)

    Per-group failures are collected in the result; manifest, part and
    connection failures propagate.
    """
    operation_id = str(ULID())
    start_time = datetime.now(UTC)
    result = PurgeResult(operation_id=operation_id, mode=config.mode.value)

    logger.info(
        "purge_started",
        operation_id=operation_id,
        mode=config.mode.value,
        bucket=config.bucket,
        grace_days=config.grace_period_days,
    )

    tracker = ProgressTracker()
    state["progress"] = tracker
    reporter = ProgressReporter(tracker, config.progress_interval_seconds)

    try:
        await state["audit_log"].reset()

        async with _inventory_client(config, state) as inventory_client, _data_client(
            config, state
        ) as data_client:
            try:
                manifest = await resolve_manifest(inventory_client, config)
            except ManifestNotFound as e:
                logger.warning("manifest_not_found", operation_id=operation_id, **e.details)
                return _finish(state, result, start_time)

            result.manifest_key = manifest.key
            result.parts_total = tracker.parts_total = len(manifest.files)
            logger.info("manifest_parts", count=len(manifest.files))

            reporter.start()
            try:
                extractor = GroupExtractor()
                for part in manifest.files:
                    rows = await fetch_inventory_part(
                        inventory_client, config, part, manifest.file_schema
                    )
                    tracker.start_part(part.key, len(rows))
                    logger.info(
                        "part_started",
                        part=f"{tracker.parts_done + 1}/{tracker.parts_total}",
                        key=part.key,
                        rows=len(rows),
                    )

                    for row in rows:
                        tracker.rows_done += 1
                        group = extractor.push(row)
                        if group is not None:
                            await process_group(config, state, data_client, group, result)

                    if not config.group_across_parts:
                        tail = extractor.flush()
                        if tail is not None:
                            await process_group(config, state, data_client, tail, result)

                    result.rows_scanned += len(rows)
                    result.parts_processed += 1
                    tracker.finish_part()

                tail = extractor.flush()
                if tail is not None:
                    await process_group(config, state, data_client, tail, result)

                result.rows_skipped = extractor.skipped
            finally:
                await reporter.stop()

        return _finish(state, result, start_time)

    except Exception as e:
        state["last_error"] = str(e)
        logger.error("purge_failed", operation_id=operation_id, error=str(e))
        raise


def _finish(state: PurgeState, result: PurgeResult, start_time: datetime) -> PurgeResult:
    result.duration_seconds = (datetime.now(UTC) - start_time).total_seconds()
    state["last_run_at"] = datetime.now(UTC)
    state["total_runs"] += 1

    logger.info(
        "purge_completed",
        operation_id=result.operation_id,
        mode=result.mode,
        parts=result.parts_processed,
        groups=result.groups_seen,
        slated=result.keys_slated,
        deleted=result.keys_deleted,
        failed_groups=result.groups_failed,
        duration=result.duration_seconds,
    )
    return result


async def shutdown_purge_state(state: PurgeState) -> None:
    """Cleanup resources."""
    try:
        await state["db"].close()
    except Exception as e:
        logger.warning("reference_db_close_failed", error=str(e))

    logger.info("purge_state_shutdown_complete")


def get_metrics(state: PurgeState) -> Dict[str, Any]:
    """Counters of the current (or last) run plus lifetime totals."""
    return {
        **state["progress"].snapshot(),
        "total_runs": state["total_runs"],
        "last_run_at": state["last_run_at"].isoformat() if state["last_run_at"] else None,
        "last_error": state["last_error"],
        "audit_groups_written": state["audit_log"].groups_written,
    }
