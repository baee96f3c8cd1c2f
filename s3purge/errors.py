# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Human-friendly error message helpers for s3purge.

These helpers centralize wording for common configuration errors so that
all modules present consistent, actionable messages.
"""


def explain_missing_env(name: str, what: str) -> str:
    """
    Explain that a required environment variable is missing.
    """

    return (
        f"{what} is not configured. "
        f"Set the {name} environment variable or pass it to create_config()."
    )


def explain_invalid_grace_days_env(value: str | None) -> str:
    """
    Explain that S3PURGE_GRACE_DAYS is invalid.
    """

    return (
        f"Invalid S3PURGE_GRACE_DAYS value: {value!r}. "
        "It must be a non-negative integer number of days."
    )


def explain_invalid_mode_env(value: str | None) -> str:
    """
    Explain that S3PURGE_MODE is invalid.
    """

    return (
        f"Invalid S3PURGE_MODE value: {value!r}. "
        "Expected one of: 'dry_run' or 'execute'."
    )


def explain_invalid_int_env(name: str, value: str | None) -> str:
    return f"Invalid {name} value: {value!r}. It must be an integer."


def explain_unsupported_database_url(url: str) -> str:
    """
    Explain that the database URL scheme has no reference database backend.
    """

    scheme = url.split(":", 1)[0] if ":" in url else url
    return (
        f"Unsupported database URL scheme: {scheme!r}. "
        "Expected mysql://, postgresql:// or sqlite:///path."
    )
