"""ID-to-name resolution for companies and resources, cached per tenant.

Lookups go cache -> direct GET by ID -> filtered query on ``id``. A failed
lookup never raises to the caller; it yields None and the tool shows the
raw ID instead. Accounts where an entity collection is not available (405)
are remembered per tenant so that every miss does not hit the API again.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Iterable, List, Optional

from autotask_mcp.autotask_client import (
    COMPANIES,
    RESOURCES,
    AutotaskClient,
    AutotaskUnavailableError,
    build_filter,
)
from autotask_mcp.call_tracker import NULL_TRACKER
from autotask_mcp.config import Settings, settings as default_settings
from autotask_mcp.tenant import TenantContext, tenant_label_for
from autotask_mcp.tenant_cache import EntityKind, TenantCacheManager, TenantMappingCache

logger = logging.getLogger(__name__)


def company_display_name(item: Dict) -> Optional[str]:
    name = (item.get("companyName") or "").strip()
    return name or None


def resource_display_name(item: Dict) -> Optional[str]:
    parts = [(item.get("firstName") or "").strip(), (item.get("lastName") or "").strip()]
    name = " ".join(part for part in parts if part)
    return name or None


_ENTITY_NAMES = {
    EntityKind.COMPANIES: COMPANIES,
    EntityKind.RESOURCES: RESOURCES,
}

_NAME_EXTRACTORS = {
    EntityKind.COMPANIES: company_display_name,
    EntityKind.RESOURCES: resource_display_name,
}


class MappingService:
    """Resolves Autotask company/resource IDs to display names"""

    def __init__(self, client: AutotaskClient, cache: TenantCacheManager, fetch_concurrency: int = 10):
        self.client = client
        self.cache = cache
        self.fetch_concurrency = max(1, fetch_concurrency)

    @classmethod
    async def create(cls, client: AutotaskClient, config: Optional[Settings] = None) -> "MappingService":
        config = config or default_settings
        manager = TenantCacheManager(
            max_tenants=config.mapping_cache_max_tenants,
            stale_seconds=config.mapping_cache_stale_seconds,
            idle_seconds=config.mapping_cache_idle_seconds,
            sweep_interval=config.mapping_cache_sweep_seconds,
        )
        service = cls(client, manager, fetch_concurrency=config.mapping_fetch_concurrency)
        manager.start()
        logger.info(
            f"MappingService initialized with per-tenant caching "
            f"(max_tenants={manager.max_tenants}, stale={manager.stale_seconds}s, "
            f"idle={manager.idle_seconds}s)"
        )
        return service

    # Single lookups

    async def resolve_name(
        self,
        kind: EntityKind,
        entity_id: int,
        context: Optional[TenantContext] = None,
        tracker=None,
    ) -> Optional[str]:
        tracker = tracker or NULL_TRACKER
        cache = self.cache.get_or_create(context)

        if self.cache.is_unavailable(cache, kind):
            return None

        name = self.cache.get_name(cache, kind, entity_id)
        if name is not None:
            logger.debug(f"{kind.value} {entity_id} found in cache: {name}")
            tracker.record_cache_hit(_ENTITY_NAMES[kind], "getName", {"id": entity_id})
            return name

        logger.debug(f"{kind.value} {entity_id} not in cache, doing direct lookup")
        return await self._fetch_name(cache, kind, entity_id, context, tracker)

    async def get_company_name(self, company_id: int, context=None, tracker=None) -> Optional[str]:
        return await self.resolve_name(EntityKind.COMPANIES, company_id, context, tracker)

    async def get_resource_name(self, resource_id: int, context=None, tracker=None) -> Optional[str]:
        return await self.resolve_name(EntityKind.RESOURCES, resource_id, context, tracker)

    async def _fetch_name(
        self,
        cache: TenantMappingCache,
        kind: EntityKind,
        entity_id: int,
        context: Optional[TenantContext],
        tracker,
    ) -> Optional[str]:
        entity = _ENTITY_NAMES[kind]
        extract = _NAME_EXTRACTORS[kind]

        try:
            item = await self.client.get_entity(entity, entity_id, context, tracker)
            name = extract(item)
            if name:
                self.cache.set_name(cache, kind, entity_id, name)
                return name
        except Exception as e:
            logger.debug(f"Direct {entity} lookup failed for {entity_id}, trying search: {e}")

        try:
            items = await self.client.query_entities(
                entity,
                [build_filter("id", "eq", entity_id)],
                context,
                tracker,
                max_records=1,
            )
        except AutotaskUnavailableError as e:
            self._mark_unavailable(cache, kind, e)
            return None
        except Exception as e:
            logger.warning(f"Failed to get {kind.value} name for ID {entity_id}: {e}")
            return None

        for item in items:
            if item.get("id") == entity_id:
                name = extract(item)
                if name:
                    self.cache.set_name(cache, kind, entity_id, name)
                    return name
        return None

    def _mark_unavailable(self, cache: TenantMappingCache, kind: EntityKind, error: Exception) -> None:
        self.cache.mark_unavailable(cache, kind)
        logger.warning(
            f"{_ENTITY_NAMES[kind]} endpoint not available for tenant {cache.tenant_id} (405); "
            f"{kind.value} names will not be looked up until the cache is cleared: {error}"
        )

    # Batch lookups

    async def resolve_names(
        self,
        kind: EntityKind,
        entity_ids: Iterable[int],
        context: Optional[TenantContext] = None,
        tracker=None,
    ) -> List[Optional[str]]:
        """Resolve many IDs; result order and length follow ``entity_ids``"""
        tracker = tracker or NULL_TRACKER
        ids = list(entity_ids)
        if not ids:
            return []

        unique_ids = list(dict.fromkeys(ids))
        cache = self.cache.get_or_create(context)
        if self.cache.is_unavailable(cache, kind):
            return [None] * len(ids)

        results: Dict[int, Optional[str]] = dict(self.cache.get_names(cache, kind, unique_ids))
        for entity_id in results:
            tracker.record_cache_hit(_ENTITY_NAMES[kind], "getName", {"id": entity_id})

        misses = [entity_id for entity_id in unique_ids if entity_id not in results]
        if misses:
            logger.debug(f"Fetching {len(misses)} {kind.value} names not in cache")
            semaphore = asyncio.Semaphore(self.fetch_concurrency)

            async def fetch(entity_id: int) -> Optional[str]:
                async with semaphore:
                    # an earlier fetch in this batch may have hit a 405
                    if self.cache.is_unavailable(cache, kind):
                        return None
                    return await self._fetch_name(cache, kind, entity_id, context, tracker)

            fetched = await asyncio.gather(*(fetch(entity_id) for entity_id in misses))
            results.update(zip(misses, fetched))

        return [results.get(entity_id) for entity_id in ids]

    async def get_company_names(self, company_ids, context=None, tracker=None) -> List[Optional[str]]:
        return await self.resolve_names(EntityKind.COMPANIES, company_ids, context, tracker)

    async def get_resource_names(self, resource_ids, context=None, tracker=None) -> List[Optional[str]]:
        return await self.resolve_names(EntityKind.RESOURCES, resource_ids, context, tracker)

    # Bulk refresh

    async def preload(self, context: Optional[TenantContext] = None, force: bool = False, tracker=None) -> None:
        """Load every company and resource name for a tenant; never raises"""
        tenant_id = tenant_label_for(context)
        logger.info(f"Preloading mapping cache for tenant {tenant_id}")
        cache = self.cache.get_or_create(context)

        kinds = [
            kind for kind in EntityKind
            if force or not (self.cache.is_fresh(cache, kind) or self.cache.is_unavailable(cache, kind))
        ]
        await asyncio.gather(*(self._refresh_kind(cache, kind, context, tracker) for kind in kinds))

    async def _refresh_kind(
        self,
        cache: TenantMappingCache,
        kind: EntityKind,
        context: Optional[TenantContext],
        tracker,
    ) -> None:
        entity = _ENTITY_NAMES[kind]
        extract = _NAME_EXTRACTORS[kind]
        try:
            items = await self.client.query_entities(entity, None, context, tracker)
        except AutotaskUnavailableError as e:
            self._mark_unavailable(cache, kind, e)
            return
        except Exception as e:
            logger.warning(f"Failed to preload {kind.value} for tenant {cache.tenant_id}: {e}")
            return

        names = {}
        for item in items:
            entity_id = item.get("id")
            name = extract(item)
            if entity_id is not None and name:
                names[int(entity_id)] = name

        self.cache.replace_table(cache, kind, names)
        logger.info(f"Preloaded {len(names)} {kind.value} for tenant {cache.tenant_id}")

    # Management

    def clear(self, context: Optional[TenantContext] = None) -> bool:
        return self.cache.clear(context)

    def clear_all(self) -> int:
        return self.cache.clear_all()

    def clear_kind(self, kind: EntityKind, context: Optional[TenantContext] = None) -> None:
        self.cache.clear_kind(context, kind)

    def get_stats(self, context: Optional[TenantContext] = None) -> Dict:
        return self.cache.stats(self.cache.get_or_create(context))

    def get_global_stats(self) -> Dict:
        return {
            "tenant_count": len(self.cache),
            "max_tenants": self.cache.max_tenants,
            "tenants": [self.cache.stats(cache) for cache in self.cache.partitions()],
        }

    def shutdown(self) -> None:
        self.cache.shutdown()
        logger.info("MappingService shutdown complete")


# Process-wide MappingService: Uninitialized -> Initializing -> Ready
_instance: Optional[MappingService] = None
_initializing: Optional[asyncio.Future] = None


async def get_mapping_service(client: AutotaskClient, config: Optional[Settings] = None) -> MappingService:
    """Return the shared MappingService, building it on first use.

    Concurrent first callers wait for the one construction in flight. If it
    fails, every waiter gets the error and the next call starts over.
    """
    global _instance, _initializing

    if _instance is not None:
        return _instance

    if _initializing is not None:
        return await asyncio.shield(_initializing)

    future = asyncio.get_running_loop().create_future()
    _initializing = future
    try:
        service = await MappingService.create(client, config)
    except asyncio.CancelledError:
        _initializing = None
        # waiters were not cancelled themselves; they see a failed construction
        future.set_exception(RuntimeError("MappingService initialization was cancelled"))
        future.exception()
        raise
    except Exception as e:
        _initializing = None
        future.set_exception(e)
        # mark retrieved; waiters still receive the exception
        future.exception()
        logger.error(f"Failed to initialize MappingService: {e}")
        raise

    _instance = service
    _initializing = None
    future.set_result(service)
    return service


def reset_mapping_service() -> None:
    """Shut down and forget the shared instance"""
    global _instance, _initializing
    if _instance is not None:
        _instance.shutdown()
    _instance = None
    _initializing = None
