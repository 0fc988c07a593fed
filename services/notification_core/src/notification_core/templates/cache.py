"""Single cache tier: TTL entries with least-recently-used eviction."""

import pickle
import sys
import zlib
from collections import OrderedDict
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from shared.enums import CacheTier

from notification_core.config import TierSettings


def estimate_size(value: Any) -> int:
    """Approximate payload size in bytes."""
    if isinstance(value, bytes):
        return len(value)
    if isinstance(value, str):
        return len(value.encode("utf-8"))
    try:
        return len(pickle.dumps(value))
    except Exception:
        return sys.getsizeof(value)


@dataclass(slots=True)
class CacheEntry:
    key: str
    payload: Any
    compressed: bool
    created_at: float
    last_accessed: float
    ttl: float
    size: int
    dependencies: frozenset[str]
    hits: int = 0

    @property
    def value(self) -> Any:
        if self.compressed:
            return pickle.loads(zlib.decompress(self.payload))
        return self.payload

    def expired(self, now: float) -> bool:
        return now - self.created_at >= self.ttl


RemovalListener = Callable[[CacheTier, CacheEntry, str], None]


class TierCache:
    """Bounded map of cache entries ordered from least to most recently used.

    Every removal (eviction, expiry, delete) is reported to *on_remove*
    with a reason so the owner can keep side structures in sync.
    """

    def __init__(
        self,
        tier: CacheTier,
        settings: TierSettings,
        on_remove: RemovalListener | None = None,
    ) -> None:
        if settings.capacity < 1:
            raise ValueError(f"{tier} tier capacity must be at least 1")
        self.tier = tier
        self.capacity = settings.capacity
        self.default_ttl = settings.ttl_seconds
        self.compress = settings.compress
        self._on_remove = on_remove
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._bytes = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    @property
    def total_bytes(self) -> int:
        return self._bytes

    def keys(self) -> list[str]:
        return list(self._entries)

    def peek(self, key: str) -> CacheEntry | None:
        """Return the entry without touching its recency."""
        return self._entries.get(key)

    def lookup(self, key: str, now: float) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expired(now):
            self._remove(key, "expired")
            return None
        entry.last_accessed = now
        entry.hits += 1
        self._entries.move_to_end(key)
        return entry

    def store(
        self,
        key: str,
        value: Any,
        now: float,
        *,
        ttl: float | None = None,
        dependencies: Iterable[str] = (),
    ) -> CacheEntry:
        if key in self._entries:
            self._remove(key, "replaced")
        while len(self._entries) >= self.capacity:
            oldest = next(iter(self._entries))
            self._remove(oldest, "evicted")

        if self.compress:
            payload = zlib.compress(pickle.dumps(value))
            size = len(payload)
        else:
            payload = value
            size = estimate_size(value)
        entry = CacheEntry(
            key=key,
            payload=payload,
            compressed=self.compress,
            created_at=now,
            last_accessed=now,
            ttl=self.default_ttl if ttl is None else ttl,
            size=size,
            dependencies=frozenset(dependencies),
        )
        self._entries[key] = entry
        self._bytes += size
        return entry

    def delete(self, key: str, reason: str = "invalidated") -> bool:
        if key not in self._entries:
            return False
        self._remove(key, reason)
        return True

    def purge_expired(self, now: float) -> int:
        expired = [key for key, entry in self._entries.items() if entry.expired(now)]
        for key in expired:
            self._remove(key, "expired")
        return len(expired)

    def clear(self) -> int:
        count = len(self._entries)
        for key in list(self._entries):
            self._remove(key, "cleared")
        return count

    def _remove(self, key: str, reason: str) -> None:
        entry = self._entries.pop(key)
        self._bytes -= entry.size
        if self._on_remove is not None:
            self._on_remove(self.tier, entry, reason)
