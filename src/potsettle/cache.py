from __future__ import annotations

import threading
from typing import Any, Generic, Optional, Sequence, TypeVar

from potsettle.models import ParticipantPosition
from potsettle.services.positions import positions_digest_source
from potsettle.services.signing import canonical_hash

T = TypeVar("T")

CacheKey = tuple[str, str]


def cache_key(
    session_id: str,
    positions: Sequence[ParticipantPosition],
    options: Optional[dict[str, Any]] = None,
) -> CacheKey:
    """``(session_id, sha256 of the sorted positions and options)``."""
    digest = canonical_hash({"positions": positions_digest_source(positions), "options": options or {}})
    return session_id, digest


class SettlementCache(Generic[T]):
    """Entries are immutable results; concurrent writers overwrite, last one wins."""

    def __init__(self) -> None:
        self._entries: dict[str, dict[str, T]] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get(self, key: CacheKey) -> Optional[T]:
        session_id, digest = key
        with self._lock:
            value = self._entries.get(session_id, {}).get(digest)
            if value is None:
                self._misses += 1
            else:
                self._hits += 1
            return value

    def put(self, key: CacheKey, value: T) -> None:
        session_id, digest = key
        with self._lock:
            self._entries.setdefault(session_id, {})[digest] = value

    def clear(self, session_id: Optional[str] = None) -> int:
        """Drop one session's entries, or everything. Returns how many were dropped."""
        with self._lock:
            if session_id is None:
                dropped = sum(len(v) for v in self._entries.values())
                self._entries.clear()
                return dropped
            return len(self._entries.pop(session_id, {}))

    @property
    def hits(self) -> int:
        return self._hits

    @property
    def misses(self) -> int:
        return self._misses

    @property
    def size(self) -> int:
        with self._lock:
            return sum(len(v) for v in self._entries.values())
