# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""Command line entry point. Configuration comes from S3PURGE_* variables."""

import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict
from pathlib import Path

import click
import structlog

from s3purge.config import PurgeConfig, PurgeMode
from s3purge.core import initialize_purge_state, run_purge, shutdown_purge_state
from s3purge.env import create_config_from_env
from s3purge.exceptions import ManifestNotFound, PurgeError
from s3purge.inventory import provision_inventory, resolve_manifest
from s3purge.store import create_s3_client


def configure_logging(log_level: str = "INFO", json_logs: bool = False) -> None:
    """Route structlog events to stderr, filtered at log_level."""
    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(log_level.upper())
        ),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


async def _run(config: PurgeConfig) -> dict:
    state = await initialize_purge_state(config)
    try:
        result = await run_purge(config, state)
    finally:
        await shutdown_purge_state(state)
    return asdict(result)


async def _provision(config: PurgeConfig, frequency: str) -> dict:
    from aiobotocore.session import get_session

    async with create_s3_client(
        get_session(),
        region=config.region,
        endpoint_url=config.endpoint_url,
        access_key_id=config.access_key_id,
        secret_access_key=config.secret_access_key,
    ) as client:
        return await provision_inventory(client, config, frequency)


async def _show_manifest(config: PurgeConfig) -> dict:
    from aiobotocore.session import get_session

    async with create_s3_client(
        get_session(),
        region=config.inventory_region or config.region,
        endpoint_url=config.inventory_endpoint_url or config.endpoint_url,
        access_key_id=config.inventory_access_key_id or config.access_key_id,
        secret_access_key=config.inventory_secret_access_key or config.secret_access_key,
    ) as client:
        manifest = await resolve_manifest(client, config)
    return {
        "manifest_key": manifest.key,
        "source_bucket": manifest.source_bucket,
        "file_format": manifest.file_format,
        "file_schema": manifest.file_schema,
        "files": [{"key": f.key, "size": f.size} for f in manifest.files],
    }


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--json-logs", is_flag=True, help="Emit log events as JSON lines")
def cli(debug: bool, json_logs: bool) -> None:
    """s3purge - Purge unreferenced objects from a content-addressed S3 bucket."""
    log_level = "DEBUG" if debug else os.environ.get("S3PURGE_LOG_LEVEL", "INFO")
    configure_logging(log_level, json_logs)


@cli.command()
@click.option("--execute", is_flag=True, help="Really delete (default is a dry run)")
@click.option(
    "--audit-log",
    type=click.Path(dir_okay=False, path_type=Path),
    help="File listing every key deleted or slated for deletion",
)
@click.option("--grace-days", type=int, help="Grace window in days (default: 30)")
@click.option(
    "--group-across-parts",
    is_flag=True,
    help="Merge a hash split across two inventory parts into one group",
)
def run(
    execute: bool,
    audit_log: Path | None,
    grace_days: int | None,
    group_across_parts: bool,
) -> None:
    """Run one purge against the newest inventory manifest."""
    try:
        config = create_config_from_env(
            mode=PurgeMode.EXECUTE if execute else None,
            audit_log_path=audit_log,
            grace_period_days=grace_days,
            group_across_parts=True if group_across_parts else None,
        )
        output = asyncio.run(_run(config))
    except PurgeError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(json.dumps(output, indent=2))
    if output["groups_failed"]:
        sys.exit(2)


@cli.command("provision-inventory")
@click.option(
    "--frequency",
    type=click.Choice(["Daily", "Weekly"]),
    default="Weekly",
    show_default=True,
)
def provision_inventory_command(frequency: str) -> None:
    """Enable the S3 Inventory export on the data bucket."""
    try:
        config = create_config_from_env()
        output = asyncio.run(_provision(config, frequency))
    except PurgeError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(json.dumps(output, indent=2))


@cli.command("show-manifest")
def show_manifest() -> None:
    """Print the newest inventory manifest and its parts."""
    try:
        config = create_config_from_env()
        output = asyncio.run(_show_manifest(config))
    except ManifestNotFound as e:
        click.echo(f"No manifest: {e}", err=True)
        sys.exit(1)
    except PurgeError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(json.dumps(output, indent=2))


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
