# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
s3purge Progress - Periodic status events for long runs.

The orchestrator owns the ProgressTracker and is its only writer; the
reporter only reads it. Nothing here influences a decision.
"""

import asyncio
from dataclasses import asdict, dataclass

import structlog

logger = structlog.get_logger()


@dataclass
class ProgressTracker:
    """Counters of the current run."""

    parts_total: int = 0
    parts_done: int = 0
    current_part: str | None = None
    rows_total: int = 0
    rows_done: int = 0
    groups_done: int = 0
    group_errors: int = 0
    deleted_keys: int = 0

    def start_part(self, key: str, rows_total: int) -> None:
        self.current_part = key
        self.rows_total = rows_total
        self.rows_done = 0

    def finish_part(self) -> None:
        self.parts_done += 1

    def snapshot(self) -> dict:
        return asdict(self)


class ProgressReporter:
    """Emits a purge_progress event every interval seconds while running."""

    def __init__(self, tracker: ProgressTracker, interval_seconds: float = 10.0):
        self.tracker = tracker
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task | None = None

    def emit(self) -> None:
        t = self.tracker
        logger.info(
            "purge_progress",
            file=f"{min(t.parts_done + 1, t.parts_total)}/{t.parts_total}",
            rows=f"{t.rows_done}/{t.rows_total}",
            deleted=t.deleted_keys,
            groups=t.groups_done,
            errors=t.group_errors,
            part=t.current_part,
        )

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            self.emit()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the periodic task and emit a final event."""
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.emit()
