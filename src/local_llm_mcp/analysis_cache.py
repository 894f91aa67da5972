"""
Analysis Cache for the Local LLM MCP Server

In-memory TTL cache for task results, keyed by a deterministic hash of
(task name, normalized parameters, sorted file list).

Key features:
- Deterministic keys: parameter order and file order don't matter
- Volatile fields (timestamps, request ids, "_"-prefixed keys) are ignored
- Lazy TTL eviction on read
- Bounded size with LRU eviction
- Lock-protected, safe to share between the event loop and worker threads
"""

import hashlib
import json
import logging
import sys
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Iterable

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 3600
DEFAULT_MAX_ENTRIES = 50

VOLATILE_PARAMS = frozenset({"timestamp", "request_id", "session_id", "cancel"})


@dataclass
class CacheEntry:
    """A cached task result."""

    key: str
    value: Any
    cached_at: float
    ttl: float
    model_used: str = ""
    execution_time_ms: float = 0.0
    hits: int = 0

    def is_expired(self, now: float) -> bool:
        return now - self.cached_at > self.ttl


def normalize_params(params: dict[str, Any]) -> dict[str, Any]:
    """Drop fields that would make otherwise identical requests miss."""
    return {
        k: v for k, v in params.items()
        if k not in VOLATILE_PARAMS and not k.startswith("_")
    }


class AnalysisCache:
    """TTL + LRU cache for analysis results."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

    @staticmethod
    def generate_key(task_name: str, params: dict[str, Any], files: Iterable[Any] = ()) -> str:
        """Deterministic cache key: "<task_name>:<sha256>"."""
        payload = json.dumps(
            {
                "params": normalize_params(params),
                "files": sorted(str(f) for f in files),
            },
            sort_keys=True,
            default=str,
            ensure_ascii=False,
        )
        digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()
        return f"{task_name}:{digest}"

    def get_entry(self, key: str) -> CacheEntry | None:
        """Get the live entry for key, evicting it if expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None

            if entry.is_expired(self._clock()):
                del self._entries[key]
                self._expirations += 1
                self._misses += 1
                logger.debug(f"[CACHE] Expired {key}")
                return None

            self._entries.move_to_end(key)
            entry.hits += 1
            self._hits += 1
            return entry

    def get(self, key: str) -> Any | None:
        entry = self.get_entry(key)
        return entry.value if entry is not None else None

    def cache_analysis(
        self,
        key: str,
        value: Any,
        model_used: str = "",
        execution_time_ms: float = 0.0,
        ttl: float | None = None,
    ) -> None:
        """Store a result. The last write for a key wins."""
        with self._lock:
            if key in self._entries:
                del self._entries[key]

            # Remove least recently used if at capacity
            while len(self._entries) >= self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                self._evictions += 1
                logger.debug(f"[CACHE] Evicted {evicted}")

            self._entries[key] = CacheEntry(
                key=key,
                value=value,
                cached_at=self._clock(),
                ttl=self.ttl_seconds if ttl is None else ttl,
                model_used=model_used,
                execution_time_ms=execution_time_ms,
            )

    def clear(self, key: str | None = None) -> int:
        """Remove one entry, or all entries when key is None. Returns the count removed."""
        with self._lock:
            if key is not None:
                return 1 if self._entries.pop(key, None) is not None else 0
            removed = len(self._entries)
            self._entries.clear()
            logger.info(f"[CACHE] Cleared {removed} entries")
            return removed

    def __contains__(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and not entry.is_expired(self._clock())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_statistics(self) -> dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            now = self._clock()
            total = self._hits + self._misses
            ages = [now - e.cached_at for e in self._entries.values()]
            memory = sum(
                sys.getsizeof(k) + len(json.dumps(e.value, default=str))
                for k, e in self._entries.items()
            )
            return {
                "entry_count": len(self._entries),
                "max_entries": self.max_entries,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": self._hits / total if total > 0 else 0,
                "evictions": self._evictions,
                "expirations": self._expirations,
                "ttl_seconds": self.ttl_seconds,
                "memory_usage_bytes": memory,
                "oldest_entry_age": max(ages) if ages else None,
                "newest_entry_age": min(ages) if ages else None,
            }
