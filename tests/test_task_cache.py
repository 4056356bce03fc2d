# tests/test_task_cache.py

import asyncio
from datetime import datetime, timezone

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from app.cache.layer import MISS, CacheLayer
from app.cache.task_cache import (
    LIST_GENERATION,
    LIST_PREFIX,
    TASK_PREFIX,
    list_key,
    task_generation_key,
    task_key,
)
from app.core.config import Settings
from app.core.errors import CacheUnavailableError
from app.models import TaskPriority, TaskStatus
from app.schemas import ProjectRead, TaskFilter, TaskResponse

from tests.fakes import FakeRedis


def test_list_key_ignores_predicate_order() -> None:
    a = TaskFilter.model_validate({"status": "TODO", "priority": "HIGH", "projectId": "p1"})
    b = TaskFilter.model_validate({"projectId": "p1", "priority": "HIGH", "status": "TODO"})
    assert list_key(a) == list_key(b)
    assert list_key(a).startswith(LIST_PREFIX)


def test_list_key_distinguishes_absent_from_empty() -> None:
    assert list_key(TaskFilter()) != list_key(TaskFilter(project_id=""))
    assert list_key(TaskFilter()) != list_key(TaskFilter(assignee_id=""))
    assert list_key(TaskFilter(project_id="")) != list_key(TaskFilter(assignee_id=""))


def test_list_key_depends_on_values() -> None:
    assert list_key(TaskFilter(status=TaskStatus.TODO)) != list_key(
        TaskFilter(status=TaskStatus.COMPLETED)
    )
    assert list_key(TaskFilter(priority=TaskPriority.LOW)) != list_key(
        TaskFilter(status=TaskStatus.TODO)
    )


def test_list_key_normalizes_timezones() -> None:
    utc = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)
    local = datetime.fromisoformat("2026-05-01T14:00:00+02:00")
    assert list_key(TaskFilter(due_from=utc)) == list_key(TaskFilter(due_from=local))


def test_keys_embed_generation() -> None:
    assert task_key("abc") == f"{TASK_PREFIX}abc:0"
    assert task_key("abc", 3) == f"{TASK_PREFIX}abc:3"
    assert list_key(TaskFilter(), 1) != list_key(TaskFilter(), 2)
    assert list_key(TaskFilter(), 2).startswith(f"{LIST_PREFIX}2:")
    # counters live outside the prefixes invalidation deletes
    assert not LIST_GENERATION.startswith(LIST_PREFIX)
    assert not task_generation_key("abc").startswith(TASK_PREFIX)


@pytest.mark.asyncio
async def test_get_distinguishes_miss_from_empty_list(cache_layer, redis) -> None:
    assert await cache_layer.get("nothing") is MISS

    await cache_layer.set("empty", [], ttl=30)
    assert await cache_layer.get("empty") == []
    assert redis.ttls["test:empty"] == 30


@pytest.mark.asyncio
async def test_set_uses_default_ttl(cache_layer, redis, settings) -> None:
    await cache_layer.set("k", {"a": 1})
    assert redis.ttls["test:k"] == settings.l2_ttl_seconds


@pytest.mark.asyncio
async def test_delete_is_idempotent(cache_layer) -> None:
    await cache_layer.set("k", 1)
    await cache_layer.delete("k")
    await cache_layer.delete("k")
    await cache_layer.delete("never-existed")
    assert await cache_layer.get("k") is MISS


@pytest.mark.asyncio
async def test_delete_by_prefix_only_touches_namespace(cache_layer, redis) -> None:
    await cache_layer.set(f"{LIST_PREFIX}a", [1])
    await cache_layer.set(f"{LIST_PREFIX}b", [])
    await cache_layer.set(task_key("t1"), {"id": "t1"})
    redis.strings["other-app:tasks:list:x"] = "[]"

    assert await cache_layer.delete_by_prefix(LIST_PREFIX) == 2
    assert await cache_layer.delete_by_prefix(LIST_PREFIX) == 0

    assert await cache_layer.get(task_key("t1")) == {"id": "t1"}
    assert "other-app:tasks:list:x" in redis.strings


@pytest.mark.asyncio
async def test_unavailable_redis_raises_cache_unavailable(cache_layer, redis) -> None:
    redis.down = True
    with pytest.raises(CacheUnavailableError):
        await cache_layer.get("k")
    with pytest.raises(CacheUnavailableError):
        await cache_layer.delete_by_prefix(LIST_PREFIX)
    assert cache_layer.stats["errors"] == 2


@pytest.mark.asyncio
async def test_init_survives_unreachable_redis(settings) -> None:
    redis = FakeRedis()
    redis.down = True
    layer = CacheLayer(settings, redis=redis)

    await layer.init_cache()

    redis.down = False
    await layer.set("k", "v")
    assert await layer.get("k") == "v"


@pytest.mark.asyncio
async def test_memory_pressure_skips_redis_writes(settings) -> None:
    redis = FakeRedis(maxmemory=1000, used_memory=950)
    layer = CacheLayer(settings, redis=redis)

    await layer.set("k", [1, 2])

    assert redis.strings == {}
    assert layer.stats["pressure_skips"] == 1
    assert layer.get_stats()["redis_pressure"]["level"] == 9


@pytest.mark.asyncio
async def test_high_memory_pressure_caps_ttl(settings) -> None:
    redis = FakeRedis(maxmemory=1000, used_memory=750)
    layer = CacheLayer(settings, redis=redis)

    await layer.set("k", 1, ttl=600)

    assert redis.ttls["test:k"] == 60


@pytest.mark.asyncio
async def test_l1_is_cleared_by_prefix_delete() -> None:
    settings = Settings(redis_dsn="redis://fake", cache_namespace="test:", l1_enabled=True)
    redis = FakeRedis()
    layer = CacheLayer(settings, redis=redis)

    await layer.set(f"{LIST_PREFIX}a", [1])
    redis.strings.clear()
    # served from L1 even though Redis lost it
    assert await layer.get(f"{LIST_PREFIX}a") == [1]
    assert layer.stats["l1_hits"] == 1

    await layer.delete_by_prefix(LIST_PREFIX)
    assert await layer.get(f"{LIST_PREFIX}a") is MISS


@pytest.mark.asyncio
async def test_read_through_populates_once(task_cache) -> None:
    calls = []

    async def loader():
        calls.append(1)
        return []

    task_filter = TaskFilter(status=TaskStatus.IN_REVIEW)
    assert await task_cache.list_tasks(task_filter, loader) == []
    assert await task_cache.list_tasks(task_filter, loader) == []
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_invalidation_reports_failure_without_raising(task_cache, redis) -> None:
    redis.down = True
    assert await task_cache.invalidate_lists() is False
    assert await task_cache.invalidate_task("t1") is False

    redis.down = False
    assert await task_cache.invalidate_lists() is True
    assert await task_cache.invalidate_task("t1") is True


@pytest.mark.asyncio
async def test_close_releases_connection(cache_layer, redis) -> None:
    await cache_layer.get("k")
    await cache_layer.close()
    assert redis.closed


def _task(task_id: str, title: str) -> TaskResponse:
    return TaskResponse(
        id=task_id,
        title=title,
        status=TaskStatus.TODO,
        priority=TaskPriority.MEDIUM,
        project_id="p1",
        project=ProjectRead(id="p1", name="Apollo"),
        created_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )


@pytest.mark.asyncio
async def test_load_started_before_list_invalidation_is_not_served_after(task_cache) -> None:
    loaded = asyncio.Event()
    release = asyncio.Event()

    async def stale_loader():
        loaded.set()
        await release.wait()
        return [_task("t1", "A")]

    reader = asyncio.create_task(task_cache.list_tasks(TaskFilter(), stale_loader))
    await loaded.wait()
    assert await task_cache.invalidate_lists() is True
    release.set()
    assert [t.title for t in await reader] == ["A"]

    async def fresh_loader():
        return [_task("t1", "A"), _task("t2", "B")]

    fresh = await task_cache.list_tasks(TaskFilter(), fresh_loader)
    assert [t.title for t in fresh] == ["A", "B"]


@pytest.mark.asyncio
async def test_load_started_before_task_invalidation_is_not_served_after(task_cache) -> None:
    loaded = asyncio.Event()
    release = asyncio.Event()

    async def stale_loader():
        loaded.set()
        await release.wait()
        return _task("t1", "before")

    reader = asyncio.create_task(task_cache.get_task("t1", stale_loader))
    await loaded.wait()
    assert await task_cache.invalidate_task("t1") is True
    release.set()
    assert (await reader).title == "before"

    async def fresh_loader():
        return _task("t1", "after")

    assert (await task_cache.get_task("t1", fresh_loader)).title == "after"
    # and the fresh value is what gets cached
    assert (await task_cache.get_task("t1", stale_loader)).title == "after"


@pytest.mark.asyncio
async def test_invalidation_keeps_counting_when_cleanup_fails(task_cache, redis) -> None:
    async def failing_scan(*args, **kwargs):
        raise RedisConnectionError("scan timed out")

    redis.scan = failing_scan

    assert await task_cache.invalidate_lists() is True
    assert redis.strings[f"test:{LIST_GENERATION}"] == "1"


@pytest.mark.asyncio
async def test_counters_bypass_l1() -> None:
    settings = Settings(redis_dsn="redis://fake", cache_namespace="test:", l1_enabled=True)
    redis = FakeRedis()
    layer = CacheLayer(settings, redis=redis)

    assert await layer.get_counter("gen") == 0
    assert await layer.incr("gen") == 1
    # another process bumps it
    redis.strings["test:gen"] = "5"
    assert await layer.get_counter("gen") == 5

    redis.down = True
    with pytest.raises(CacheUnavailableError):
        await layer.incr("gen")
