import hashlib
import json
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from app.cache.layer import MISS, CacheLayer
from app.core.errors import CacheUnavailableError
from app.schemas import TaskFilter, TaskResponse

logger = logging.getLogger(__name__)

T = TypeVar("T")

TASK_PREFIX = "tasks:item:"
LIST_PREFIX = "tasks:list:"
# Generation counters sit outside the prefixes invalidation deletes
GENERATION_PREFIX = "tasks:gen:"
LIST_GENERATION = f"{GENERATION_PREFIX}list"


def task_generation_key(task_id: str) -> str:
    return f"{GENERATION_PREFIX}item:{task_id}"


def task_key(task_id: str, generation: int = 0) -> str:
    return f"{TASK_PREFIX}{task_id}:{generation}"


def list_key(task_filter: TaskFilter, generation: int = 0) -> str:
    """
    Cache key for a list query.

    Only supplied predicates take part, serialized with sorted keys, so the
    same predicate set always gives the same key and an absent predicate
    never collides with an empty one.
    """
    canonical = json.dumps(
        task_filter.predicates(), sort_keys=True, separators=(",", ":")
    )
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:32]
    return f"{LIST_PREFIX}{generation}:{digest}"


def _dump(task: TaskResponse) -> dict:
    return task.model_dump(mode="json", by_alias=True)


class TaskCache:
    """Read-through caching and invalidation for task queries.

    Every key embeds a generation read before the loader runs, and
    invalidation bumps that generation. A load that started before a write
    can only populate a key no later read will compute.

    Cache trouble never reaches the caller: reads fall back to the loader
    without writing anything back, and failed invalidations are logged.
    """

    def __init__(self, layer: CacheLayer, task_ttl: int = 120, list_ttl: int = 60):
        self.layer = layer
        self.task_ttl = task_ttl
        self.list_ttl = list_ttl

    async def get_task(
        self, task_id: str, loader: Callable[[], Awaitable[Optional[TaskResponse]]]
    ) -> Optional[TaskResponse]:
        return await self._read_through(
            task_generation_key(task_id),
            lambda generation: task_key(task_id, generation),
            loader,
            self.task_ttl,
            encode=_dump,
            decode=TaskResponse.model_validate,
        )

    async def list_tasks(
        self,
        task_filter: TaskFilter,
        loader: Callable[[], Awaitable[list[TaskResponse]]],
    ) -> list[TaskResponse]:
        return await self._read_through(
            LIST_GENERATION,
            lambda generation: list_key(task_filter, generation),
            loader,
            self.list_ttl,
            encode=lambda tasks: [_dump(t) for t in tasks],
            decode=lambda rows: [TaskResponse.model_validate(r) for r in rows],
        )

    async def _read_through(
        self,
        generation_key: str,
        make_key: Callable[[int], str],
        loader: Callable[[], Awaitable[T]],
        ttl: int,
        encode: Callable[[T], Any],
        decode: Callable[[Any], T],
    ) -> T:
        try:
            key = make_key(await self.layer.get_counter(generation_key))
            cached = await self.layer.get(key)
        except CacheUnavailableError as e:
            logger.warning(f"Cache degraded, reading from store: {e}")
            return await loader()
        if cached is not MISS:
            return decode(cached)

        async with self.layer.lock(key):
            # Another request may have filled it while we waited
            try:
                cached = await self.layer.get(key)
            except CacheUnavailableError as e:
                logger.warning(f"Cache degraded, reading {key} from store: {e}")
                return await loader()
            if cached is not MISS:
                return decode(cached)

            value = await loader()
            # Absent tasks are not cached
            if value is None:
                return value
            try:
                await self.layer.set(key, encode(value), ttl)
            except CacheUnavailableError as e:
                logger.warning(f"Could not populate {key}: {e}")
            return value

    async def invalidate_task(self, task_id: str) -> bool:
        try:
            await self.layer.incr(task_generation_key(task_id))
        except CacheUnavailableError as e:
            logger.warning(f"Could not invalidate task {task_id}: {e}")
            return False
        await self._drop_stale(f"{TASK_PREFIX}{task_id}:")
        return True

    async def invalidate_lists(self) -> bool:
        """Retire every cached list query, whatever its predicates."""
        try:
            await self.layer.incr(LIST_GENERATION)
        except CacheUnavailableError as e:
            logger.warning(f"Could not invalidate task lists: {e}")
            return False
        await self._drop_stale(LIST_PREFIX)
        return True

    async def _drop_stale(self, prefix: str):
        # Old generations are unreachable already; this only frees memory
        try:
            await self.layer.delete_by_prefix(prefix)
        except CacheUnavailableError as e:
            logger.warning(f"Stale {prefix}* entries left to expire: {e}")
