# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
s3purge Object Store - Listing, fetching and batched deletes over aiobotocore.

Every request is retried with exponential backoff on transient failures
(throttling, 5xx, connection resets, timeouts), bounded by a per-request
attempt budget. A request that keeps failing raises TransientStoreError.

Listing follows continuation tokens in an explicit loop. Deletes are
best-effort: per-key and per-batch failures are logged and reported, never
raised, because the reference database is authoritative and a surviving
object is only wasted space that a later run reclaims.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, List, Tuple

import structlog
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from s3purge.config import MAX_DELETE_BATCH
from s3purge.exceptions import TransientStoreError

logger = structlog.get_logger()

_TRANSIENT_ERROR_CODES = {
    "SlowDown",
    "Throttling",
    "ThrottlingException",
    "RequestTimeout",
    "RequestTimeoutException",
    "InternalError",
    "ServiceUnavailable",
    "500",
    "502",
    "503",
    "504",
}

_TRANSIENT_EXCEPTIONS = (
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
    asyncio.TimeoutError,
    ConnectionError,
)

# Module level so tests can swap in tenacity.wait_none()
_WAIT = wait_exponential(multiplier=0.5, min=0.5, max=30)


def is_transient_error(exc: BaseException) -> bool:
    """Return True if an S3 failure is worth retrying."""
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = str(error.get("Code", ""))
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0
        return code in _TRANSIENT_ERROR_CODES or int(status) >= 500
    return isinstance(exc, _TRANSIENT_EXCEPTIONS)


def _log_retry_for(operation: str, state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    logger.warning(
        "store_request_retrying",
        operation=operation,
        attempt=state.attempt_number,
        wait_seconds=state.next_action.sleep if state.next_action else None,
        error=str(exc),
    )


async def call_with_retry(
    operation: str,
    func: Callable[..., Awaitable[Any]],
    *,
    attempts: int = 5,
    **kwargs: Any,
) -> Any:
    """
    Await func(**kwargs), retrying transient failures.

    Args:
        operation: Name used in logs and errors (e.g. "list_objects_v2")
        func: Bound aiobotocore client method
        attempts: Maximum number of attempts
        **kwargs: Request parameters

    Raises:
        TransientStoreError: If the request is still failing after all attempts
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=_WAIT,
        retry=retry_if_exception(is_transient_error),
        before_sleep=lambda state: _log_retry_for(operation, state),
        reraise=True,
    )
    try:
        async for attempt in retrying:
            with attempt:
                return await func(**kwargs)
    except Exception as e:
        if is_transient_error(e):
            raise TransientStoreError(
                f"S3 {operation} failed after {attempts} attempts: {e}",
                details={"operation": operation},
            ) from e
        raise


async def iter_keys(
    s3_client: Any,
    bucket: str,
    prefix: str,
    *,
    attempts: int = 5,
    page_size: int = 1000,
) -> AsyncIterator[str]:
    """
    Yield every key under a prefix, following continuation tokens.

    The loop is bounded only by the store's IsTruncated flag.
    """
    token: str | None = None
    pages = 0
    while True:
        params: dict = {"Bucket": bucket, "Prefix": prefix, "MaxKeys": page_size}
        if token:
            params["ContinuationToken"] = token

        page = await call_with_retry(
            "list_objects_v2",
            s3_client.list_objects_v2,
            attempts=attempts,
            **params,
        )
        pages += 1

        for obj in page.get("Contents", []):
            yield obj["Key"]

        token = page.get("NextContinuationToken")
        if not page.get("IsTruncated") or not token:
            break

    logger.debug("prefix_listed", bucket=bucket, prefix=prefix, pages=pages)


async def list_keys(
    s3_client: Any,
    bucket: str,
    prefix: str,
    *,
    attempts: int = 5,
) -> List[str]:
    """List all keys under a prefix."""
    return [key async for key in iter_keys(s3_client, bucket, prefix, attempts=attempts)]


async def get_object_bytes(
    s3_client: Any,
    bucket: str,
    key: str,
    *,
    attempts: int = 5,
) -> bytes:
    """Download an object body."""

    async def _get(**params: Any) -> bytes:
        response = await s3_client.get_object(**params)
        async with response["Body"] as stream:
            return await stream.read()

    return await call_with_retry(
        "get_object", _get, attempts=attempts, Bucket=bucket, Key=key
    )


@dataclass
class DeleteReport:
    """Outcome of a batched delete."""

    requested: int = 0
    deleted: int = 0
    batches: int = 0
    failed: List[Tuple[str, str]] = field(default_factory=list)  # (key, error)

    def merge(self, other: "DeleteReport") -> None:
        self.requested += other.requested
        self.deleted += other.deleted
        self.batches += other.batches
        self.failed.extend(other.failed)


def chunk_keys(keys: List[str], batch_size: int = MAX_DELETE_BATCH) -> List[List[str]]:
    """Split keys into consecutive chunks of at most batch_size."""
    if batch_size < 1 or batch_size > MAX_DELETE_BATCH:
        raise ValueError(f"batch_size must be 1-{MAX_DELETE_BATCH}, got {batch_size}")
    return [keys[i : i + batch_size] for i in range(0, len(keys), batch_size)]


async def delete_keys(
    s3_client: Any,
    bucket: str,
    keys: List[str],
    *,
    batch_size: int = MAX_DELETE_BATCH,
    attempts: int = 5,
) -> DeleteReport:
    """
    Delete keys with DeleteObjects, batch_size keys per request.

    Never raises for store failures; failed keys are returned in the report.
    """
    report = DeleteReport(requested=len(keys))

    for chunk in chunk_keys(list(keys), batch_size):
        report.batches += 1
        try:
            response = await call_with_retry(
                "delete_objects",
                s3_client.delete_objects,
                attempts=attempts,
                Bucket=bucket,
                Delete={"Objects": [{"Key": key} for key in chunk], "Quiet": True},
            )
        except Exception as e:
            logger.warning(
                "delete_batch_failed",
                bucket=bucket,
                keys=len(chunk),
                first_key=chunk[0],
                error=str(e),
            )
            report.failed.extend((key, str(e)) for key in chunk)
            continue

        errors = response.get("Errors", [])
        for error in errors:
            logger.warning(
                "delete_key_failed",
                bucket=bucket,
                s3_key=error.get("Key"),
                code=error.get("Code"),
                error=error.get("Message"),
            )
            report.failed.append((error.get("Key", ""), error.get("Code", "")))
        report.deleted += len(chunk) - len(errors)

    return report


def create_s3_client(
    session: Any,
    *,
    region: str | None,
    endpoint_url: str | None = None,
    access_key_id: str | None = None,
    secret_access_key: str | None = None,
) -> Any:
    """
    Create an aiobotocore S3 client context manager.

    Credentials fall back to the default AWS chain when not given.
    """
    kwargs: dict = {"region_name": region}
    if endpoint_url:
        kwargs["endpoint_url"] = endpoint_url
    if access_key_id and secret_access_key:
        kwargs["aws_access_key_id"] = access_key_id
        kwargs["aws_secret_access_key"] = secret_access_key
    return session.create_client("s3", **kwargs)
