# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
S3 Purge Exceptions - Custom exceptions for the s3purge package.

Per-group failures (ReconciliationError) are isolated by the engine and never
abort a run. Manifest, part and configuration failures propagate to the caller.
"""


class PurgeError(Exception):
    """Base exception for all s3purge errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class FatalConfigError(PurgeError):
    """Raised when the run cannot start: bad config, unreachable database, bad manifest."""

    pass


class ConfigurationError(FatalConfigError):
    """Raised when configuration is invalid."""

    pass


class MalformedManifestError(FatalConfigError):
    """Raised when the inventory manifest is not the expected JSON document."""

    pass


class ManifestNotFound(PurgeError):
    """Raised when no manifest.json exists under the inventory prefix."""

    pass


class InventoryPartError(PurgeError):
    """Raised when an inventory data file cannot be decompressed or parsed."""

    pass


class TransientStoreError(PurgeError):
    """Raised when an S3 call keeps failing after all retries."""

    pass


class ReferenceDBError(PurgeError):
    """Raised when reference database operations fail."""

    pass


class ReconciliationError(PurgeError):
    """Raised (and captured) when one hash cannot be reconciled."""

    def __init__(self, content_hash: str, message: str, details: dict | None = None):
        self.content_hash = content_hash
        super().__init__(message, details={"hash": content_hash, **(details or {})})
