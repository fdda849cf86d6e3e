"""Key-prefixed key/value cache with per-entry expiry checked on read.

The store wraps any mutable mapping: a plain dict for process-wide caches, or
the Flask ``session`` for values that should follow the browser session.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, MutableMapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "localbuy_"


class TTLCache:
    """Prefixed wrapper around a mapping with minute-based expirations."""

    def __init__(
        self,
        storage: Optional[MutableMapping[str, Any]] = None,
        *,
        prefix: str = DEFAULT_PREFIX,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.storage: MutableMapping[str, Any] = storage if storage is not None else {}
        self.prefix = prefix
        self.clock = clock
        self._hits = 0
        self._misses = 0
        self._sets = 0
        self._removes = 0

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def _own_keys(self) -> list[str]:
        return [key for key in list(self.storage.keys()) if isinstance(key, str) and key.startswith(self.prefix)]

    def _is_expired(self, entry: Any, now: float) -> bool:
        if not isinstance(entry, dict) or "value" not in entry:
            return True
        expires = entry.get("expires")
        return expires is not None and now > float(expires)

    def _touch(self) -> None:
        # Flask's session only persists when flagged as modified.
        if hasattr(self.storage, "modified"):
            self.storage.modified = True  # type: ignore[attr-defined]

    def set(self, key: str, value: Any, expire_minutes: Optional[float] = None) -> bool:
        """Store ``value`` under ``key``; ``expire_minutes=None`` never expires."""

        now = self.clock()
        self.storage[self._key(key)] = {
            "value": value,
            "timestamp": now,
            "expires": now + expire_minutes * 60 if expire_minutes else None,
        }
        self._sets += 1
        self._touch()
        return True

    def get(self, key: str, default: Any = None) -> Any:
        """Return the live value for ``key`` or ``default`` when missing or expired."""

        cache_key = self._key(key)
        entry = self.storage.get(cache_key)
        if entry is None:
            self._misses += 1
            return default

        if self._is_expired(entry, self.clock()):
            self.storage.pop(cache_key, None)
            self._touch()
            self._misses += 1
            logger.debug("Cache entry expired: %s", cache_key)
            return default

        self._hits += 1
        return entry["value"]

    def has(self, key: str) -> bool:
        entry = self.storage.get(self._key(key))
        return entry is not None and not self._is_expired(entry, self.clock())

    def remove(self, key: str) -> bool:
        removed = self.storage.pop(self._key(key), None) is not None
        if removed:
            self._removes += 1
            self._touch()
        return removed

    def keys(self) -> list[str]:
        return [key[len(self.prefix) :] for key in self._own_keys()]

    def get_all(self) -> dict[str, Any]:
        """Return every live entry keyed without the prefix."""

        now = self.clock()
        items: dict[str, Any] = {}
        for cache_key in self._own_keys():
            entry = self.storage.get(cache_key)
            if not self._is_expired(entry, now):
                items[cache_key[len(self.prefix) :]] = entry["value"]
        return items

    def clear(self) -> int:
        """Drop every entry owned by this prefix, leaving foreign keys alone."""

        own_keys = self._own_keys()
        for cache_key in own_keys:
            self.storage.pop(cache_key, None)
        if own_keys:
            self._touch()
        return len(own_keys)

    def clear_expired(self) -> int:
        """Remove expired or corrupt entries and return how many were dropped."""

        now = self.clock()
        stale = [key for key in self._own_keys() if self._is_expired(self.storage.get(key), now)]
        for cache_key in stale:
            self.storage.pop(cache_key, None)
        if stale:
            self._touch()
            logger.debug("Cache cleanup removed %d expired entries", len(stale))
        return len(stale)

    def size_bytes(self) -> int:
        size = 0
        for cache_key in self._own_keys():
            try:
                size += len(json.dumps(self.storage.get(cache_key), default=str))
            except (TypeError, ValueError):
                continue
        return size

    def stats(self) -> dict[str, object]:
        reads = self._hits + self._misses
        return {
            "itemCount": len(self._own_keys()),
            "sizeBytes": self.size_bytes(),
            "hits": self._hits,
            "misses": self._misses,
            "sets": self._sets,
            "removes": self._removes,
            "hitRate": round(self._hits / reads * 100, 2) if reads else 0,
        }

    def export(self) -> dict[str, object]:
        return {"timestamp": self.clock(), "stats": self.stats(), "data": self.get_all()}

    def import_data(self, data: Any, *, overwrite: bool = False) -> int:
        """Load entries from an :meth:`export` payload; imported values never expire."""

        if not isinstance(data, dict) or not isinstance(data.get("data"), dict):
            raise ValueError("Import payload must contain a 'data' mapping.")
        imported = 0
        for key, value in data["data"].items():
            if not overwrite and self.has(key):
                continue
            self.set(str(key), value)
            imported += 1
        return imported


# Product detail payloads shared by the storefront and the admin console in this process.
PRODUCT_CACHE = TTLCache(prefix="product_")
PRODUCT_CACHE_MINUTES = 5


def invalidate_product_cache() -> int:
    """Drop every cached product detail after a catalogue, stock or review write."""

    return PRODUCT_CACHE.clear()
