from datetime import datetime, timezone

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from typing_extensions import Annotated

from app.models import TaskPriority, TaskStatus


def ensure_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(ensure_utc)]


def _title_not_blank(value: str) -> str:
    if not value.strip():
        raise ValueError("title must not be blank")
    return value


class ApiModel(BaseModel):
    """camelCase on the wire, snake_case in Python"""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )


class ProjectCreate(ApiModel):
    name: str = Field(min_length=1, max_length=200)
    description: str | None = None


class ProjectRead(ApiModel):
    id: str
    name: str
    description: str | None = None


class UserCreate(ApiModel):
    email: str = Field(max_length=320, pattern=r"^[^@\s]+@[^@\s]+$")
    name: str = Field(min_length=1, max_length=200)


class UserRead(ApiModel):
    id: str
    email: str
    name: str


class TagCreate(ApiModel):
    label: str = Field(min_length=1, max_length=100)


class TagRead(ApiModel):
    id: str
    label: str


class TaskCreate(ApiModel):
    """Schema for creating a task"""

    title: str = Field(min_length=1, max_length=200)
    description: str | None = None
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM
    due_date: UtcDatetime | None = None
    project_id: str
    assignee_id: str | None = None
    tag_ids: list[str] = Field(default_factory=list)

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, value: str) -> str:
        return _title_not_blank(value)


class TaskUpdate(ApiModel):
    """Schema for updating a task - all fields optional.

    Only fields present in the request are applied. An explicit null for
    assigneeId unassigns the task.
    """

    title: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    status: TaskStatus | None = None
    priority: TaskPriority | None = None
    due_date: UtcDatetime | None = None
    project_id: str | None = None
    assignee_id: str | None = None
    tag_ids: list[str] | None = None

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, value: str | None) -> str | None:
        # None is rejected later by the service with a clearer message
        return value if value is None else _title_not_blank(value)


class TaskFilter(ApiModel):
    """Optional predicates for listing tasks. Supplied ones are ANDed."""

    status: TaskStatus | None = None
    priority: TaskPriority | None = None
    project_id: str | None = None
    assignee_id: str | None = None
    due_from: UtcDatetime | None = None
    due_to: UtcDatetime | None = None

    def predicates(self) -> dict:
        """Supplied predicates only, as JSON-compatible values."""
        return self.model_dump(mode="json", exclude_none=True)


class TaskResponse(ApiModel):
    """Schema for task responses"""

    id: str
    title: str
    description: str | None = None
    status: TaskStatus
    priority: TaskPriority
    due_date: UtcDatetime | None = None
    project_id: str
    assignee_id: str | None = None
    project: ProjectRead
    assignee: UserRead | None = None
    tags: list[TagRead] = Field(default_factory=list)
    created_at: UtcDatetime
    updated_at: UtcDatetime | None = None
