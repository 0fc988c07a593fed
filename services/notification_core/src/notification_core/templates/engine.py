"""Four-tier template cache with dependency-tag invalidation."""

import inspect
import logging
import re
from collections import Counter
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any

from shared.clock import Clock
from shared.enums import CacheTier
from shared.scheduling import ScheduledJob, Scheduler

from notification_core.config import TemplateCacheConfig
from notification_core.errors import CacheComputeFailed
from notification_core.templates.cache import CacheEntry, TierCache

logger = logging.getLogger(__name__)

ComputeFunc = Callable[[], Any | Awaitable[Any]]

_METRIC_KEYS = (
    "hits",
    "misses",
    "sets",
    "evictions",
    "expirations",
    "invalidations",
    "compute_errors",
)


@dataclass(frozen=True, slots=True)
class WarmEntry:
    tier: CacheTier
    key: str
    compute: ComputeFunc
    ttl: float | None = None
    dependencies: tuple[str, ...] = ()


class TemplateCacheEngine:
    """Raw, compiled, rendered and metadata tiers behind one interface.

    Entries may declare dependency tags.  Invalidating a tag removes every
    entry in every tier that declared it, so a changed template definition
    drops its compiled form and all renders made from it.
    """

    def __init__(
        self,
        *,
        clock: Clock,
        scheduler: Scheduler,
        config: TemplateCacheConfig | None = None,
    ) -> None:
        self._clock = clock
        self._scheduler = scheduler
        self._config = config or TemplateCacheConfig()
        self._tiers = {
            tier: TierCache(tier, self._config.tier(tier), on_remove=self._on_remove)
            for tier in CacheTier
        }
        self._graph: dict[str, set[tuple[CacheTier, str]]] = {}
        self._metrics: dict[CacheTier, Counter[str]] = {
            tier: Counter() for tier in CacheTier
        }
        self._jobs: list[ScheduledJob] = []

    def start(self) -> None:
        if self._jobs:
            return
        self._jobs = [
            self._scheduler.schedule(
                "template_cache.cleanup",
                self._config.cleanup_interval_seconds,
                self.cleanup_expired,
            ),
            self._scheduler.schedule(
                "template_cache.metrics_reset",
                self._config.metrics_reset_interval_seconds,
                self.reset_metrics,
            ),
        ]
        logger.info("Template cache started")

    def stop(self) -> None:
        for job in self._jobs:
            job.cancel()
        self._jobs = []
        logger.info("Template cache stopped")

    async def get_or_compute(
        self,
        tier: CacheTier,
        key: str,
        compute: ComputeFunc,
        *,
        ttl: float | None = None,
        dependencies: Iterable[str] = (),
        skip_cache: bool = False,
    ) -> Any:
        """Return the cached value for *key* or compute and store it.

        *compute* may be a plain or a coroutine function.  Its exceptions
        surface as CacheComputeFailed and nothing is stored.  A ``None``
        result is returned but not cached.
        """
        tier = CacheTier(tier)
        if skip_cache:
            return await self._compute(tier, key, compute)

        entry = self._tiers[tier].lookup(key, self._clock.now())
        if entry is not None:
            self._count(tier, "hits")
            return entry.value

        self._count(tier, "misses")
        value = await self._compute(tier, key, compute)
        if value is not None:
            self.set(tier, key, value, ttl=ttl, dependencies=dependencies)
        return value

    def get(self, tier: CacheTier, key: str) -> Any | None:
        tier = CacheTier(tier)
        entry = self._tiers[tier].lookup(key, self._clock.now())
        self._count(tier, "hits" if entry is not None else "misses")
        return entry.value if entry is not None else None

    def set(
        self,
        tier: CacheTier,
        key: str,
        value: Any,
        *,
        ttl: float | None = None,
        dependencies: Iterable[str] = (),
    ) -> CacheEntry:
        tier = CacheTier(tier)
        entry = self._tiers[tier].store(
            key, value, self._clock.now(), ttl=ttl, dependencies=dependencies
        )
        for tag in entry.dependencies:
            self._graph.setdefault(tag, set()).add((tier, key))
        self._count(tier, "sets")
        return entry

    async def _compute(self, tier: CacheTier, key: str, compute: ComputeFunc) -> Any:
        try:
            result = compute()
            if inspect.isawaitable(result):
                result = await result
        except CacheComputeFailed:
            # Already counted and wrapped by the inner tier.
            raise
        except Exception as exc:
            self._count(tier, "compute_errors")
            logger.warning(
                "Cache compute failed",
                extra={"tier": tier, "key": key, "error": str(exc)},
            )
            raise CacheComputeFailed(tier, key, exc) from exc
        return result

    def invalidate(
        self,
        key: str | None = None,
        *,
        pattern: str | re.Pattern[str] | None = None,
        tags: Iterable[str] | None = None,
    ) -> int:
        """Remove entries by key substring, key regex or dependency tag.

        A key also invalidates the dependency tag of the same name.
        Returns the number of removed entries.  Raises ValueError when no
        selector is given.
        """
        if key is None and pattern is None and tags is None:
            raise ValueError("invalidate() needs a key, a pattern or tags")
        if tags is not None:
            tags = list(tags)

        removed = 0
        if key is not None:
            removed += self._invalidate_matching(lambda k: key in k)
            removed += self._invalidate_tags([key])
        if pattern is not None:
            regex = re.compile(pattern) if isinstance(pattern, str) else pattern
            removed += self._invalidate_matching(lambda k: regex.search(k) is not None)
        if tags is not None:
            removed += self._invalidate_tags(tags)

        logger.info(
            "Cache invalidated",
            extra={
                "key": key,
                "pattern": getattr(pattern, "pattern", pattern),
                "tags": tags,
                "removed": removed,
            },
        )
        return removed

    def _invalidate_matching(self, predicate: Callable[[str], bool]) -> int:
        removed = 0
        for cache in self._tiers.values():
            for cached_key in [k for k in cache.keys() if predicate(k)]:
                removed += cache.delete(cached_key)
        return removed

    def _invalidate_tags(self, tags: Iterable[str]) -> int:
        removed = 0
        for tag in tags:
            for tier, cached_key in self._graph.pop(tag, set()):
                removed += self._tiers[tier].delete(cached_key)
        return removed

    def _on_remove(self, tier: CacheTier, entry: CacheEntry, reason: str) -> None:
        for tag in entry.dependencies:
            dependents = self._graph.get(tag)
            if dependents is None:
                continue
            dependents.discard((tier, entry.key))
            if not dependents:
                del self._graph[tag]
        if reason == "evicted":
            self._count(tier, "evictions")
        elif reason == "expired":
            self._count(tier, "expirations")
        elif reason == "invalidated":
            self._count(tier, "invalidations")

    async def warm_cache(self, entries: Iterable[WarmEntry]) -> int:
        """Pre-compute *entries*; failures are logged and skipped."""
        warmed = 0
        for item in entries:
            try:
                await self.get_or_compute(
                    item.tier,
                    item.key,
                    item.compute,
                    ttl=item.ttl,
                    dependencies=item.dependencies,
                )
            except CacheComputeFailed:
                logger.exception(
                    "Cache warm-up entry failed",
                    extra={"tier": item.tier, "key": item.key},
                )
                continue
            warmed += 1
        logger.info("Cache warmed", extra={"entries": warmed})
        return warmed

    def cleanup_expired(self) -> int:
        now = self._clock.now()
        purged = sum(cache.purge_expired(now) for cache in self._tiers.values())
        if purged:
            logger.info("Expired cache entries purged", extra={"purged": purged})
        return purged

    def reset_metrics(self) -> None:
        for counter in self._metrics.values():
            counter.clear()
        logger.debug("Cache metrics reset")

    def clear(self) -> int:
        cleared = sum(cache.clear() for cache in self._tiers.values())
        self._graph.clear()
        logger.info("Cache cleared", extra={"cleared": cleared})
        return cleared

    def _count(self, tier: CacheTier, metric: str) -> None:
        if self._config.enable_metrics:
            self._metrics[tier][metric] += 1

    @property
    def total_bytes(self) -> int:
        return sum(cache.total_bytes for cache in self._tiers.values())

    def hit_rate(self) -> float:
        hits = sum(m["hits"] for m in self._metrics.values())
        requests = hits + sum(m["misses"] for m in self._metrics.values())
        return hits / requests if requests else 0.0

    def get_metrics(self) -> dict[str, dict[str, float | int]]:
        metrics: dict[str, dict[str, float | int]] = {}
        for tier, counter in self._metrics.items():
            requests = counter["hits"] + counter["misses"]
            metrics[tier.value] = {
                **{key: counter[key] for key in _METRIC_KEYS},
                "hit_rate": counter["hits"] / requests if requests else 0.0,
                "entries": len(self._tiers[tier]),
                "bytes": self._tiers[tier].total_bytes,
            }
        hits = sum(m["hits"] for m in self._metrics.values())
        misses = sum(m["misses"] for m in self._metrics.values())
        metrics["overall"] = {
            "hits": hits,
            "misses": misses,
            "hit_rate": self.hit_rate(),
            "entries": sum(len(cache) for cache in self._tiers.values()),
            "bytes": self.total_bytes,
            "dependency_tags": len(self._graph),
        }
        return metrics

    def _health_issues(self) -> list[str]:
        issues = []
        requests = sum(m["hits"] + m["misses"] for m in self._metrics.values())
        hit_rate = self.hit_rate()
        if (
            requests > self._config.min_requests_for_health
            and hit_rate < self._config.hit_rate_threshold
        ):
            issues.append(f"hit rate {hit_rate:.2f} below {self._config.hit_rate_threshold}")
        if self.total_bytes > self._config.max_total_bytes:
            issues.append(
                f"cache size {self.total_bytes} bytes above {self._config.max_total_bytes}"
            )
        return issues

    def is_healthy(self) -> bool:
        return not self._health_issues()

    def get_status(self) -> dict[str, Any]:
        issues = self._health_issues()
        return {
            "healthy": not issues,
            "issues": issues,
            "hit_rate": self.hit_rate(),
            "total_bytes": self.total_bytes,
            "tiers": {
                tier.value: {
                    "entries": len(cache),
                    "capacity": cache.capacity,
                    "ttl_seconds": cache.default_ttl,
                    "compressed": cache.compress,
                    "bytes": cache.total_bytes,
                }
                for tier, cache in self._tiers.items()
            },
        }
