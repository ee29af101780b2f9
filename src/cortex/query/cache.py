"""In-process cache of query results over archives.

Keys cover the archive paths together with each file's stat signature, so
an append or re-ingest that replaces an archive never serves the old answer.
Only results computed purely from archives are cached; anything that folded
in hot events is recomputed every call.
"""

from __future__ import annotations

import hashlib
import json
import threading
import time
from collections import OrderedDict
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from cortex.query.intent import QueryIntent
from cortex.query.results import ResultSet


@dataclass
class _Entry:
    result: ResultSet
    stored_at: float
    archives: frozenset[str]


def _signature(path: Path) -> list[int]:
    try:
        stat = path.stat()
    except OSError:
        return [-1, -1]
    return [stat.st_mtime_ns, stat.st_size]


class QueryCache:
    """Bounded TTL cache; the oldest entry is evicted when full."""

    def __init__(self, max_entries: int = 1000, ttl_seconds: float = 3600):
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._entries: OrderedDict[str, _Entry] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def make_key(
        self, archive_paths: Sequence[Path], intent: QueryIntent, catalog_fingerprint: str
    ) -> str:
        payload = {
            "archives": [[str(Path(p)), *_signature(Path(p))] for p in archive_paths],
            "intent": intent.model_dump(mode="json", exclude={"warnings"}),
            "catalog": catalog_fingerprint,
        }
        encoded = json.dumps(payload, sort_keys=True, default=str).encode()
        return hashlib.sha256(encoded).hexdigest()

    def get(self, key: str) -> ResultSet | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            if time.monotonic() - entry.stored_at > self.ttl_seconds:
                del self._entries[key]
                self.misses += 1
                return None
            self.hits += 1
            return entry.result.model_copy(deep=True)

    def set(self, key: str, result: ResultSet, archive_paths: Sequence[Path]) -> None:
        with self._lock:
            self._entries.pop(key, None)
            while len(self._entries) >= self.max_entries:
                self._entries.popitem(last=False)
            self._entries[key] = _Entry(
                result=result.model_copy(deep=True),
                stored_at=time.monotonic(),
                archives=frozenset(str(Path(p)) for p in archive_paths),
            )

    def invalidate_archive(self, path: Path) -> int:
        """Drop every entry computed from `path`; returns how many were dropped."""
        target = str(Path(path))
        with self._lock:
            stale = [key for key, entry in self._entries.items() if target in entry.archives]
            for key in stale:
                del self._entries[key]
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> dict[str, int]:
        return {
            "size": len(self._entries),
            "max_size": self.max_entries,
            "hits": self.hits,
            "misses": self.misses,
        }

    def __len__(self) -> int:
        return len(self._entries)
