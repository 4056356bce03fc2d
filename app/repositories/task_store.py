import logging
from typing import Any, Protocol, Sequence

from sqlalchemy.orm import selectinload
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.errors import StoreUnavailableError
from app.database import UNAVAILABLE_ERRORS
from app.models import Project, Tag, Task, User, get_utc_now
from app.schemas import TaskFilter

logger = logging.getLogger(__name__)


class TaskStore(Protocol):
    """What the task service needs from durable storage.

    Returned tasks always carry project, assignee and tags loaded.
    """

    async def find_many(self, task_filter: TaskFilter) -> Sequence[Task]: ...

    async def find_by_id(self, task_id: str) -> Task | None: ...

    async def create(self, fields: dict[str, Any]) -> Task: ...

    async def update(self, task_id: str, changes: dict[str, Any]) -> Task | None: ...

    async def get_project(self, project_id: str) -> Project | None: ...

    async def get_user(self, user_id: str) -> User | None: ...

    async def missing_tag_ids(self, tag_ids: Sequence[str]) -> set[str]: ...


class SQLModelTaskStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    @staticmethod
    def _select_tasks():
        # populate_existing refreshes relations of tasks already in the session
        return (
            select(Task)
            .options(
                selectinload(Task.project),
                selectinload(Task.assignee),
                selectinload(Task.tags),
            )
            .execution_options(populate_existing=True)
        )

    async def _exec(self, query):
        try:
            return await self.db.exec(query)
        except UNAVAILABLE_ERRORS as e:
            logger.error(f"Store query failed: {e}")
            raise StoreUnavailableError(str(e)) from e

    async def _commit(self):
        try:
            await self.db.commit()
        except UNAVAILABLE_ERRORS as e:
            logger.error(f"Store commit failed: {e}")
            await self.db.rollback()
            raise StoreUnavailableError(str(e)) from e

    async def find_many(self, task_filter: TaskFilter) -> list[Task]:
        query = self._select_tasks()
        if task_filter.status is not None:
            query = query.where(Task.status == task_filter.status)
        if task_filter.priority is not None:
            query = query.where(Task.priority == task_filter.priority)
        if task_filter.project_id is not None:
            query = query.where(Task.project_id == task_filter.project_id)
        if task_filter.assignee_id is not None:
            query = query.where(Task.assignee_id == task_filter.assignee_id)
        # Comparisons against NULL are never true, so undated tasks drop out
        if task_filter.due_from is not None:
            query = query.where(col(Task.due_date) >= task_filter.due_from)
        if task_filter.due_to is not None:
            query = query.where(col(Task.due_date) <= task_filter.due_to)
        query = query.order_by(col(Task.created_at), col(Task.id))

        result = await self._exec(query)
        return list(result.all())

    async def find_by_id(self, task_id: str) -> Task | None:
        result = await self._exec(self._select_tasks().where(Task.id == task_id))
        return result.first()

    async def _load_tags(self, tag_ids: Sequence[str]) -> list[Tag]:
        if not tag_ids:
            return []
        result = await self._exec(select(Tag).where(col(Tag.id).in_(tag_ids)))
        return list(result.all())

    async def create(self, fields: dict[str, Any]) -> Task:
        fields = dict(fields)
        tag_ids = fields.pop("tag_ids", None) or []

        task = Task(**fields)
        task.tags = await self._load_tags(tag_ids)
        self.db.add(task)
        await self._commit()

        logger.info(f"Created task {task.id}")
        return await self.find_by_id(task.id)

    async def update(self, task_id: str, changes: dict[str, Any]) -> Task | None:
        task = await self.find_by_id(task_id)
        if task is None:
            return None

        changes = dict(changes)
        tag_ids = changes.pop("tag_ids", None)
        task.sqlmodel_update(changes)
        if tag_ids is not None:
            task.tags = await self._load_tags(tag_ids)
        task.updated_at = get_utc_now()
        await self._commit()

        logger.info(f"Updated task {task_id}: {sorted(changes)}")
        return await self.find_by_id(task_id)

    async def get_project(self, project_id: str) -> Project | None:
        try:
            return await self.db.get(Project, project_id)
        except UNAVAILABLE_ERRORS as e:
            raise StoreUnavailableError(str(e)) from e

    async def get_user(self, user_id: str) -> User | None:
        try:
            return await self.db.get(User, user_id)
        except UNAVAILABLE_ERRORS as e:
            raise StoreUnavailableError(str(e)) from e

    async def missing_tag_ids(self, tag_ids: Sequence[str]) -> set[str]:
        found = await self._load_tags(tag_ids)
        return set(tag_ids) - {tag.id for tag in found}
