"""Shared helpers for storage backends."""

from __future__ import annotations

import re
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

_NON_ALNUM_RE = re.compile(r"[^a-zA-Z0-9]")


def dt_to_str(dt: datetime) -> str:
    return dt.isoformat()


def str_to_dt(s: str) -> datetime:
    dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def identity_key(address: str) -> str:
    """Directory-safe identity for a chat address ("628123@s.whatsapp.net" -> "628123")."""
    user = address.split("@", 1)[0] if "@" in address else address
    return _NON_ALNUM_RE.sub("_", user)


def legacy_key(address: str) -> str:
    """File stem used by the old flat history layout (whole address sanitized)."""
    return _NON_ALNUM_RE.sub("_", address)


def extension_for_mime(mime_type: str) -> str:
    subtype = mime_type.split("/", 1)[1] if "/" in mime_type else ""
    subtype = subtype.split(";", 1)[0].strip().lower()
    subtype = _NON_ALNUM_RE.sub("", subtype)
    return subtype or "bin"


def mime_for_extension(ext: str) -> str:
    if ext == "bin":
        return "application/octet-stream"
    return f"image/{ext}"


class PartitionLocks:
    """One lock per (identity, track) partition.

    Entries exist only while some thread holds or waits on the partition,
    so the map stays bounded by the number of in-flight partitions.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[tuple[str, str], list] = {}  # key -> [lock, users]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, identity: str, track: str) -> Iterator[None]:
        key = (identity, track)
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]


class IdGenerator:
    """Millisecond-timestamp ids, strictly increasing per partition."""

    def __init__(self, clock=None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc).timestamp())
        self._last: dict[tuple[str, str], int] = {}
        self._guard = threading.Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._last)

    def next_id(self, identity: str, track: str, taken=None) -> str:
        """Return a fresh id. ``taken`` is an optional predicate for ids already on disk."""
        key = (identity, track)
        with self._guard:
            candidate = int(self._clock() * 1000)
            last = self._last.get(key)
            if last is not None and candidate <= last:
                candidate = last + 1
            while taken is not None and taken(str(candidate)):
                candidate += 1
            self._last[key] = candidate
            return str(candidate)

    def forget(self, identity: str, track: str) -> None:
        """Drop the sequence for a cleared partition; ``taken`` still guards reuse."""
        with self._guard:
            self._last.pop((identity, track), None)
