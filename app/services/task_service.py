import asyncio
import logging

from app.cache.task_cache import TaskCache
from app.core.errors import NotFoundError, QueueUnavailableError, ValidationError
from app.notifications.dispatcher import NotificationDispatcher
from app.repositories.task_store import TaskStore
from app.schemas import TaskCreate, TaskFilter, TaskResponse, TaskUpdate

logger = logging.getLogger(__name__)

# Fields that may be omitted from an update but never set to null
REQUIRED_FIELDS = ("title", "status", "priority", "project_id")


class TaskService:
    """
    Reads go through the cache; writes go store -> cache invalidation ->
    notification enqueue, in that order, before the response is returned.
    """

    def __init__(
        self,
        store: TaskStore,
        cache: TaskCache,
        dispatcher: NotificationDispatcher,
    ):
        self.store = store
        self.cache = cache
        self.dispatcher = dispatcher

    async def list_tasks(self, task_filter: TaskFilter) -> list[TaskResponse]:
        if (
            task_filter.due_from is not None
            and task_filter.due_to is not None
            and task_filter.due_from > task_filter.due_to
        ):
            raise ValidationError("dueFrom must not be after dueTo")

        async def load():
            tasks = await self.store.find_many(task_filter)
            return [TaskResponse.model_validate(t) for t in tasks]

        return await self.cache.list_tasks(task_filter, load)

    async def get_task(self, task_id: str) -> TaskResponse:
        async def load():
            task = await self.store.find_by_id(task_id)
            return TaskResponse.model_validate(task) if task is not None else None

        task = await self.cache.get_task(task_id, load)
        if task is None:
            raise NotFoundError("Task", task_id)
        return task

    async def create_task(self, task_data: TaskCreate) -> TaskResponse:
        fields = task_data.model_dump()
        await self._check_references(fields)

        try:
            task = await self.store.create(fields)
        finally:
            # A new task can match any list query; its own id was never cached
            await asyncio.shield(self.cache.invalidate_lists())

        response = TaskResponse.model_validate(task)
        if response.assignee is not None:
            await self._notify_assignee(response)
        return response

    async def update_task(self, task_id: str, task_data: TaskUpdate) -> TaskResponse:
        changes = task_data.model_dump(exclude_unset=True)
        nulled = [f for f in REQUIRED_FIELDS if f in changes and changes[f] is None]
        if nulled:
            raise ValidationError(f"Fields cannot be null: {', '.join(nulled)}")

        current = await self.store.find_by_id(task_id)
        if current is None:
            raise NotFoundError("Task", task_id)
        previous_assignee = current.assignee_id

        changed_refs = {
            k: v
            for k, v in changes.items()
            if k == "tag_ids" or (k in ("project_id", "assignee_id") and v != getattr(current, k))
        }
        await self._check_references(changed_refs)

        try:
            task = await self.store.update(task_id, changes)
        finally:
            await asyncio.shield(self._invalidate_task(task_id))
        if task is None:
            raise NotFoundError("Task", task_id)

        response = TaskResponse.model_validate(task)
        if response.assignee is not None and response.assignee_id != previous_assignee:
            await self._notify_assignee(response)
        return response

    async def _invalidate_task(self, task_id: str):
        await self.cache.invalidate_task(task_id)
        await self.cache.invalidate_lists()

    async def _check_references(self, fields: dict):
        project_id = fields.get("project_id")
        if project_id is not None and await self.store.get_project(project_id) is None:
            raise NotFoundError("Project", project_id)

        assignee_id = fields.get("assignee_id")
        if assignee_id is not None and await self.store.get_user(assignee_id) is None:
            raise NotFoundError("User", assignee_id)

        tag_ids = fields.get("tag_ids")
        if tag_ids:
            missing = await self.store.missing_tag_ids(tag_ids)
            if missing:
                raise NotFoundError("Tag", ", ".join(sorted(missing)))

    async def _notify_assignee(self, task: TaskResponse):
        """Queue the assignment email. The write already succeeded, so never raise."""
        try:
            job_id = await self.dispatcher.notify_assignment(task.assignee.email, task.title)
        except QueueUnavailableError as e:
            logger.error(f"Assignment notification for task {task.id} not queued: {e}")
            return
        logger.info(f"Queued assignment notification {job_id} for task {task.id}")
