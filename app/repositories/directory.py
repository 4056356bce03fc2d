import logging

from sqlalchemy.exc import IntegrityError
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.errors import StoreUnavailableError, ValidationError
from app.database import UNAVAILABLE_ERRORS
from app.models import Project, Tag, User
from app.schemas import ProjectCreate, TagCreate, UserCreate

logger = logging.getLogger(__name__)


class DirectoryStore:
    """Projects, users and tags: the entities tasks point at."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _add(self, obj):
        self.db.add(obj)
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise ValidationError(f"{type(obj).__name__} already exists") from e
        except UNAVAILABLE_ERRORS as e:
            logger.error(f"Store commit failed: {e}")
            await self.db.rollback()
            raise StoreUnavailableError(str(e)) from e
        await self.db.refresh(obj)
        return obj

    async def _all(self, query) -> list:
        try:
            result = await self.db.exec(query)
        except UNAVAILABLE_ERRORS as e:
            logger.error(f"Store query failed: {e}")
            raise StoreUnavailableError(str(e)) from e
        return list(result.all())

    async def _get(self, model, entity_id: str):
        try:
            return await self.db.get(model, entity_id)
        except UNAVAILABLE_ERRORS as e:
            logger.error(f"Store query failed: {e}")
            raise StoreUnavailableError(str(e)) from e

    async def create_project(self, data: ProjectCreate) -> Project:
        return await self._add(Project.model_validate(data.model_dump()))

    async def list_projects(self) -> list[Project]:
        return await self._all(select(Project).order_by(col(Project.created_at)))

    async def get_project(self, project_id: str) -> Project | None:
        return await self._get(Project, project_id)

    async def create_user(self, data: UserCreate) -> User:
        return await self._add(User.model_validate(data.model_dump()))

    async def list_users(self) -> list[User]:
        return await self._all(select(User).order_by(col(User.created_at)))

    async def get_user(self, user_id: str) -> User | None:
        return await self._get(User, user_id)

    async def create_tag(self, data: TagCreate) -> Tag:
        return await self._add(Tag.model_validate(data.model_dump()))

    async def list_tags(self) -> list[Tag]:
        return await self._all(select(Tag).order_by(col(Tag.label)))
