# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
s3purge Grouping - Partition a sorted inventory feed into per-hash groups.

Object keys are either "<hash>" or "<hash>/<filename>", where hash is a
32-character [a-z0-9] content fingerprint. Inventory parts are sorted by key,
so all keys of one hash are contiguous within a part.

Grouping restarts with every inventory part: a hash whose keys straddle two
parts is seen as two partial groups, each reconciled independently. Callers
that need strict global grouping must pre-merge parts, or keep one
GroupExtractor across parts and flush it only at the end of the run.
"""

import re
from dataclasses import dataclass, field
from typing import Iterable, Iterator, List

from s3purge.inventory import InventoryRow

HASH_PATTERN = re.compile(r"[a-z0-9]{32}")


def extract_hash(key: str) -> str | None:
    """Return the content hash of a managed key, or None for anything else."""
    candidate = key.split("/", 1)[0]
    if HASH_PATTERN.fullmatch(candidate):
        return candidate
    return None


@dataclass
class Group:
    """All keys of one content hash seen contiguously in the feed."""

    hash: str
    keys: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        for key in self.keys:
            if key != self.hash and not key.startswith(self.hash + "/"):
                raise ValueError(f"Key {key!r} does not belong to hash {self.hash}")

    def __len__(self) -> int:
        return len(self.keys)


class GroupExtractor:
    """
    Accumulates rows of the current hash and hands back closed groups.

    push() returns the previous group when a differing hash arrives;
    flush() returns whatever is pending.
    """

    def __init__(self) -> None:
        self._hash: str | None = None
        self._keys: List[str] = []
        self.skipped = 0

    def push(self, row: InventoryRow) -> Group | None:
        content_hash = extract_hash(row.key)
        if content_hash is None:
            self.skipped += 1
            return None

        closed = None
        if self._keys and content_hash != self._hash:
            closed = Group(self._hash, self._keys)
            self._keys = []

        self._hash = content_hash
        self._keys.append(row.key)
        return closed

    def flush(self) -> Group | None:
        if not self._keys:
            return None
        group = Group(self._hash, self._keys)
        self._hash = None
        self._keys = []
        return group


def iter_groups(rows: Iterable[InventoryRow]) -> Iterator[Group]:
    """Yield the maximal runs of equal hash in rows, then the trailing run."""
    extractor = GroupExtractor()
    for row in rows:
        group = extractor.push(row)
        if group is not None:
            yield group

    tail = extractor.flush()
    if tail is not None:
        yield tail
