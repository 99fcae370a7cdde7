"""Per-tenant ID-to-name tables with LRU partition eviction and an idle sweep."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from threading import RLock
from typing import Dict, Iterable, List, Optional, Set

from autotask_mcp.tenant import TenantContext, tenant_key_for, tenant_label_for


logger = logging.getLogger(__name__)

DEFAULT_MAX_TENANTS = 50
DEFAULT_STALE_SECONDS = 30 * 60
DEFAULT_IDLE_SECONDS = 30 * 60
DEFAULT_SWEEP_SECONDS = 5 * 60


class EntityKind(str, Enum):
    COMPANIES = "companies"
    RESOURCES = "resources"


@dataclass(frozen=True)
class _Entry:
    name: str
    ts: float


@dataclass
class TenantMappingCache:
    tenant_id: str
    last_accessed_at: float
    companies: Dict[int, _Entry] = field(default_factory=dict)
    resources: Dict[int, _Entry] = field(default_factory=dict)
    companies_refreshed_at: Optional[float] = None
    resources_refreshed_at: Optional[float] = None
    unavailable: Set[EntityKind] = field(default_factory=set)

    def table(self, kind: EntityKind) -> Dict[int, _Entry]:
        return self.companies if kind is EntityKind.COMPANIES else self.resources

    def refreshed_at(self, kind: EntityKind) -> Optional[float]:
        if kind is EntityKind.COMPANIES:
            return self.companies_refreshed_at
        return self.resources_refreshed_at

    def _stamp(self, kind: EntityKind, ts: Optional[float]) -> None:
        if kind is EntityKind.COMPANIES:
            self.companies_refreshed_at = ts
        else:
            self.resources_refreshed_at = ts

    def _touch(self, now: float) -> None:
        # never move backwards, even if the wall clock does
        if now > self.last_accessed_at:
            self.last_accessed_at = now


class TenantCacheManager:
    """Owns every tenant partition.

    All partition and table mutations happen under one lock; callers do their
    network I/O outside of it and hand the results back through
    :meth:`set_name` / :meth:`replace_table`.
    """

    def __init__(
        self,
        max_tenants: int = DEFAULT_MAX_TENANTS,
        stale_seconds: float = DEFAULT_STALE_SECONDS,
        idle_seconds: float = DEFAULT_IDLE_SECONDS,
        sweep_interval: float = DEFAULT_SWEEP_SECONDS,
    ):
        if max_tenants < 1:
            raise ValueError("max_tenants must be at least 1")
        self.max_tenants = max_tenants
        self.stale_seconds = stale_seconds
        self.idle_seconds = idle_seconds
        self.sweep_interval = sweep_interval
        self._lock = RLock()
        self._partitions: "OrderedDict[str, TenantMappingCache]" = OrderedDict()
        self._sweep_task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._partitions)

    def __contains__(self, context: Optional[TenantContext]) -> bool:
        with self._lock:
            return tenant_key_for(context) in self._partitions

    # Partitions

    def get_or_create(self, context: Optional[TenantContext]) -> TenantMappingCache:
        key = tenant_key_for(context)
        now = time.time()
        with self._lock:
            cache = self._partitions.get(key)
            if cache is not None:
                cache._touch(now)
                self._partitions.move_to_end(key)
                return cache

            if len(self._partitions) >= self.max_tenants:
                self._evict_least_recent()

            cache = TenantMappingCache(tenant_id=tenant_label_for(context), last_accessed_at=now)
            self._partitions[key] = cache
            logger.info(
                f"Created mapping cache for tenant {cache.tenant_id} "
                f"(key {key[:8]}..., {len(self._partitions)} tenants)"
            )
            return cache

    def _evict_least_recent(self) -> None:
        # min() keeps the first of equal timestamps, i.e. insertion/access order
        oldest_key = min(self._partitions, key=lambda k: self._partitions[k].last_accessed_at)
        evicted = self._partitions.pop(oldest_key)
        logger.info(
            f"Evicted mapping cache for tenant {evicted.tenant_id} due to size limit "
            f"({len(self._partitions)} tenants remain)"
        )

    def evict_idle(self, now: Optional[float] = None) -> int:
        """Drop every partition unused for longer than the idle window"""
        now = time.time() if now is None else now
        with self._lock:
            expired_keys = [
                key for key, cache in self._partitions.items()
                if now - cache.last_accessed_at > self.idle_seconds
            ]
            for key in expired_keys:
                cache = self._partitions.pop(key)
                logger.debug(f"Cleaned up idle mapping cache for tenant {cache.tenant_id}")
            remaining = len(self._partitions)
        if expired_keys:
            logger.info(f"Cleaned up {len(expired_keys)} idle tenant caches ({remaining} remain)")
        return len(expired_keys)

    def clear(self, context: Optional[TenantContext]) -> bool:
        with self._lock:
            cache = self._partitions.pop(tenant_key_for(context), None)
        if cache is None:
            return False
        logger.info(f"Cleared mapping cache for tenant {cache.tenant_id}")
        return True

    def clear_all(self) -> int:
        with self._lock:
            count = len(self._partitions)
            self._partitions.clear()
        logger.info(f"Cleared all mapping caches ({count} tenants)")
        return count

    def clear_kind(self, context: Optional[TenantContext], kind: EntityKind) -> None:
        with self._lock:
            cache = self.get_or_create(context)
            cache.table(kind).clear()
            cache._stamp(kind, None)
            cache.unavailable.discard(kind)
        logger.info(f"Cleared {kind.value} mapping cache for tenant {cache.tenant_id}")

    def partitions(self) -> List[TenantMappingCache]:
        with self._lock:
            return list(self._partitions.values())

    # Tables

    def get_name(self, cache: TenantMappingCache, kind: EntityKind, entity_id: int) -> Optional[str]:
        """Return a fresh cached name, or None on miss / stale entry"""
        now = time.time()
        with self._lock:
            cache._touch(now)
            entry = cache.table(kind).get(entity_id)
            if entry is None or now - entry.ts >= self.stale_seconds:
                return None
            return entry.name

    def get_names(
        self, cache: TenantMappingCache, kind: EntityKind, entity_ids: Iterable[int]
    ) -> Dict[int, str]:
        now = time.time()
        found = {}
        with self._lock:
            cache._touch(now)
            table = cache.table(kind)
            for entity_id in entity_ids:
                entry = table.get(entity_id)
                if entry is not None and now - entry.ts < self.stale_seconds:
                    found[entity_id] = entry.name
        return found

    def set_name(self, cache: TenantMappingCache, kind: EntityKind, entity_id: int, name: str) -> None:
        now = time.time()
        with self._lock:
            cache._touch(now)
            cache.table(kind)[entity_id] = _Entry(name=name, ts=now)

    def replace_table(self, cache: TenantMappingCache, kind: EntityKind, names: Dict[int, str]) -> None:
        """Swap in a fully fetched table and stamp it as refreshed"""
        now = time.time()
        fresh = {entity_id: _Entry(name=name, ts=now) for entity_id, name in names.items()}
        with self._lock:
            cache._touch(now)
            if kind is EntityKind.COMPANIES:
                cache.companies = fresh
            else:
                cache.resources = fresh
            cache._stamp(kind, now)
            cache.unavailable.discard(kind)

    def mark_unavailable(self, cache: TenantMappingCache, kind: EntityKind) -> None:
        now = time.time()
        with self._lock:
            cache._touch(now)
            cache.unavailable.add(kind)
            # stamped so that refresh logic also leaves this table alone
            cache._stamp(kind, now)

    def is_unavailable(self, cache: TenantMappingCache, kind: EntityKind) -> bool:
        with self._lock:
            return kind in cache.unavailable

    def is_fresh(self, cache: TenantMappingCache, kind: EntityKind, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        with self._lock:
            refreshed_at = cache.refreshed_at(kind)
            return refreshed_at is not None and now - refreshed_at < self.stale_seconds

    def stats(self, cache: TenantMappingCache, now: Optional[float] = None) -> Dict:
        now = time.time() if now is None else now
        with self._lock:
            return {
                "tenant_id": cache.tenant_id,
                "company_count": len(cache.companies),
                "resource_count": len(cache.resources),
                "companies_refreshed_at": cache.companies_refreshed_at,
                "resources_refreshed_at": cache.resources_refreshed_at,
                "companies_fresh": self.is_fresh(cache, EntityKind.COMPANIES, now),
                "resources_fresh": self.is_fresh(cache, EntityKind.RESOURCES, now),
                "companies_unavailable": EntityKind.COMPANIES in cache.unavailable,
                "resources_unavailable": EntityKind.RESOURCES in cache.unavailable,
                "last_used": cache.last_accessed_at,
            }

    # Background sweep

    def start(self) -> None:
        """Start the periodic idle sweep on the running event loop"""
        if self._sweep_task is not None and not self._sweep_task.done():
            return
        self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                self.evict_idle()
            except Exception as e:
                logger.error(f"Mapping cache sweep failed: {e}")

    @property
    def sweeping(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    def shutdown(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            self._sweep_task = None
        with self._lock:
            self._partitions.clear()
