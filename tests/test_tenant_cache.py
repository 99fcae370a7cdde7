import asyncio
import sys
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT))

import autotask_mcp.tenant_cache as tenant_cache  # noqa: E402
from autotask_mcp.tenant import AutotaskCredentials, TenantContext  # noqa: E402
from autotask_mcp.tenant_cache import EntityKind, TenantCacheManager  # noqa: E402


def make_context(name):
    return TenantContext(
        tenant_id=name,
        credentials=AutotaskCredentials(username=f"{name}@example.com", secret="s", integration_code="CODE"),
    )


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_least_recently_used_tenant_is_evicted(monkeypatch):
    clock = FakeClock()
    monkeypatch.setattr(tenant_cache.time, "time", clock)
    manager = TenantCacheManager(max_tenants=2)
    t1, t2, t3 = make_context("t1"), make_context("t2"), make_context("t3")

    manager.get_or_create(t1)
    clock.now += 1
    manager.get_or_create(t2)
    clock.now += 1
    manager.get_or_create(t1)
    clock.now += 1
    manager.get_or_create(t3)

    assert len(manager) == 2
    assert t1 in manager
    assert t3 in manager
    assert t2 not in manager


def test_partitions_are_isolated(monkeypatch):
    manager = TenantCacheManager()
    a = manager.get_or_create(make_context("a"))
    b = manager.get_or_create(make_context("b"))

    manager.set_name(a, EntityKind.COMPANIES, 7, "Acme Co")

    assert manager.get_name(a, EntityKind.COMPANIES, 7) == "Acme Co"
    assert manager.get_name(b, EntityKind.COMPANIES, 7) is None
    assert manager.get_or_create(None).tenant_id == "default"


def test_idle_partitions_are_swept(monkeypatch):
    clock = FakeClock()
    monkeypatch.setattr(tenant_cache.time, "time", clock)
    manager = TenantCacheManager(idle_seconds=60)

    manager.get_or_create(make_context("old"))
    clock.now += 50
    manager.get_or_create(make_context("new"))

    assert manager.evict_idle(now=clock.now + 20) == 1
    assert len(manager) == 1
    assert make_context("new") in manager


def test_last_access_never_moves_backwards(monkeypatch):
    clock = FakeClock(5000.0)
    monkeypatch.setattr(tenant_cache.time, "time", clock)
    manager = TenantCacheManager()
    cache = manager.get_or_create(None)

    clock.now = 4000.0
    manager.get_or_create(None)
    manager.get_name(cache, EntityKind.RESOURCES, 1)

    assert cache.last_accessed_at == 5000.0


def test_stale_entries_read_as_misses(monkeypatch):
    clock = FakeClock()
    monkeypatch.setattr(tenant_cache.time, "time", clock)
    manager = TenantCacheManager(stale_seconds=100)
    cache = manager.get_or_create(None)

    manager.set_name(cache, EntityKind.RESOURCES, 1, "Jane Doe")
    clock.now += 99
    assert manager.get_names(cache, EntityKind.RESOURCES, [1, 2]) == {1: "Jane Doe"}

    clock.now += 1
    assert manager.get_name(cache, EntityKind.RESOURCES, 1) is None


def test_replace_table_and_freshness(monkeypatch):
    clock = FakeClock()
    monkeypatch.setattr(tenant_cache.time, "time", clock)
    manager = TenantCacheManager(stale_seconds=100)
    cache = manager.get_or_create(None)
    manager.set_name(cache, EntityKind.COMPANIES, 1, "Gone Ltd")

    manager.replace_table(cache, EntityKind.COMPANIES, {7: "Acme Co", 9: "Globex"})

    assert manager.get_name(cache, EntityKind.COMPANIES, 1) is None
    assert manager.get_name(cache, EntityKind.COMPANIES, 9) == "Globex"
    assert manager.is_fresh(cache, EntityKind.COMPANIES)
    assert not manager.is_fresh(cache, EntityKind.RESOURCES)
    assert not manager.is_fresh(cache, EntityKind.COMPANIES, now=clock.now + 100)


def test_unavailable_mark_is_cleared_per_kind():
    manager = TenantCacheManager()
    cache = manager.get_or_create(None)

    manager.mark_unavailable(cache, EntityKind.RESOURCES)
    stats = manager.stats(cache)
    assert stats["resources_unavailable"] is True
    assert stats["companies_unavailable"] is False
    assert stats["resources_refreshed_at"] is not None

    manager.clear_kind(None, EntityKind.RESOURCES)
    assert not manager.is_unavailable(cache, EntityKind.RESOURCES)
    assert manager.stats(cache)["resources_refreshed_at"] is None


def test_clear_and_clear_all():
    manager = TenantCacheManager()
    manager.get_or_create(make_context("a"))
    manager.get_or_create(make_context("b"))

    assert manager.clear(make_context("a")) is True
    assert manager.clear(make_context("a")) is False
    assert manager.clear_all() == 1
    assert len(manager) == 0


def test_background_sweep_evicts_idle_partitions():
    async def run():
        manager = TenantCacheManager(idle_seconds=0.01, sweep_interval=0.02)
        manager.get_or_create(make_context("idle"))
        manager.start()
        assert manager.sweeping
        await asyncio.sleep(0.1)
        remaining = len(manager)
        manager.shutdown()
        return manager, remaining

    manager, remaining = asyncio.run(run())
    assert remaining == 0
    assert not manager.sweeping
    # shutdown twice is harmless
    manager.shutdown()
