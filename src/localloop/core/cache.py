from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable

"""
In-memory query cache for authority reads.

The authority owns membership state, so cached reads are only a convenience:
- values are keyed by (namespace, key), e.g. ("membership", profile_id),
- every successful state-changing call invalidates the cache instead of patching it,
- a read that was in flight while its namespace was invalidated is returned to its
  caller but never stored (it may describe the world before the change).
"""


@dataclass
class CacheStats:
    """Cache usage counters (best-effort)."""

    hits: int = 0
    misses: int = 0
    sets: int = 0
    invalidations: int = 0
    discarded: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "hits": int(self.hits),
            "misses": int(self.misses),
            "sets": int(self.sets),
            "invalidations": int(self.invalidations),
            "discarded": int(self.discarded),
        }


class QueryCache:
    """A process-local cache keyed by (namespace, key) with namespace invalidation."""

    def __init__(self, enabled: bool = True):
        self._enabled = enabled
        self._entries: dict[tuple[str, str], Any] = {}
        self._generations: dict[str, int] = {}
        self._epoch = 0
        self.stats = CacheStats()

    @property
    def enabled(self) -> bool:
        return self._enabled

    def _generation(self, namespace: str) -> tuple[int, int]:
        # A global invalidate must also reach namespaces that were never cached.
        return self._epoch, self._generations.get(namespace, 0)

    def contains(self, namespace: str, key: str) -> bool:
        return (namespace, key) in self._entries

    def get(self, namespace: str, key: str, default: Any = None) -> Any:
        """Return a cached value (which may legitimately be None) or `default`."""
        if not self._enabled:
            return default
        if (namespace, key) in self._entries:
            self.stats.hits += 1
            return self._entries[(namespace, key)]
        self.stats.misses += 1
        return default

    def set(self, namespace: str, key: str, value: Any) -> None:
        if not self._enabled:
            return None
        self._entries[(namespace, key)] = value
        self.stats.sets += 1

    def invalidate(self, namespace: str | None = None) -> None:
        """Drop one namespace, or everything when `namespace` is None."""
        if namespace is None:
            self._entries.clear()
            self._epoch += 1
        else:
            for entry_key in [k for k in self._entries if k[0] == namespace]:
                del self._entries[entry_key]
            self._generations[namespace] = self._generations.get(namespace, 0) + 1
        self.stats.invalidations += 1

    async def get_or_fetch(
        self,
        namespace: str,
        key: str,
        fetcher: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Return cached value, or await `fetcher()` and store the result.

        Errors from `fetcher` propagate and nothing is cached.
        """
        if self._enabled and (namespace, key) in self._entries:
            self.stats.hits += 1
            return self._entries[(namespace, key)]
        self.stats.misses += 1

        generation = self._generation(namespace)
        value = await fetcher()
        if self._generation(namespace) != generation:
            self.stats.discarded += 1
            return value
        self.set(namespace, key, value)
        return value
