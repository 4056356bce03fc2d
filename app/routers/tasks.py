from datetime import datetime

from fastapi import APIRouter, Depends, Query, status

from app.dependencies import get_task_service
from app.models import TaskPriority, TaskStatus
from app.schemas import TaskCreate, TaskFilter, TaskResponse, TaskUpdate
from app.services.task_service import TaskService

router = APIRouter(prefix="/tasks", tags=["tasks"])


@router.post("/", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
async def create_task(
    task_data: TaskCreate, service: TaskService = Depends(get_task_service)
):
    """Create a new task"""
    return await service.create_task(task_data)


@router.get("/", response_model=list[TaskResponse])
async def get_tasks(
    task_status: TaskStatus | None = Query(default=None, alias="status"),
    priority: TaskPriority | None = None,
    project_id: str | None = Query(default=None, alias="projectId"),
    assignee_id: str | None = Query(default=None, alias="assigneeId"),
    due_from: datetime | None = Query(default=None, alias="dueFrom"),
    due_to: datetime | None = Query(default=None, alias="dueTo"),
    service: TaskService = Depends(get_task_service),
):
    task_filter = TaskFilter(
        status=task_status,
        priority=priority,
        project_id=project_id,
        assignee_id=assignee_id,
        due_from=due_from,
        due_to=due_to,
    )
    return await service.list_tasks(task_filter)


@router.get("/{task_id}", response_model=TaskResponse)
async def get_task(task_id: str, service: TaskService = Depends(get_task_service)):
    """Get a specific task by ID"""
    return await service.get_task(task_id)


@router.patch("/{task_id}", response_model=TaskResponse)
async def update_task(
    task_id: str,
    task_data: TaskUpdate,
    service: TaskService = Depends(get_task_service),
):
    return await service.update_task(task_id, task_data)
