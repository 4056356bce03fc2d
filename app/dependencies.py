from fastapi import Depends, Request
from sqlmodel.ext.asyncio.session import AsyncSession

from app.cache.task_cache import TaskCache
from app.database import get_db
from app.notifications.dispatcher import NotificationDispatcher
from app.repositories.directory import DirectoryStore
from app.repositories.task_store import SQLModelTaskStore
from app.services.task_service import TaskService


def get_task_cache(request: Request) -> TaskCache:
    return request.app.state.task_cache


def get_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.dispatcher


def get_task_service(
    db: AsyncSession = Depends(get_db),
    cache: TaskCache = Depends(get_task_cache),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> TaskService:
    return TaskService(SQLModelTaskStore(db), cache, dispatcher)


def get_directory(db: AsyncSession = Depends(get_db)) -> DirectoryStore:
    return DirectoryStore(db)
