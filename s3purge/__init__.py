# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
S3 Inventory Purge - Reconcile an S3 bucket against its reference database.

Walks the newest S3 Inventory report of a content-addressed bucket, groups
objects by content hash, checks each hash against the storageFiles reference
tables under a row lock, and deletes unreferenced objects and redundant
copies. Dry-run by default. Package name: s3purge.
"""

__version__ = "0.1.0"

# Configuration creation (user-facing API)
from s3purge.builder import create_config

# Core functions
from s3purge.core import (
    PurgeResult,
    initialize_purge_state,
    run_purge,
    get_metrics,
    shutdown_purge_state,
)

# Environment-based configuration and profiles (additional helpers)
from s3purge.env import create_config_from_env, safe_defaults

__all__ = [
    # Version
    "__version__",
    # Configuration creation (primary user-facing APIs)
    "create_config",
    "create_config_from_env",
    "safe_defaults",
    # Core orchestration functions
    "PurgeResult",
    "initialize_purge_state",
    "run_purge",
    "get_metrics",
    "shutdown_purge_state",
]
