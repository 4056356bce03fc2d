import logging
from typing import Any, Protocol

from arq import Retry
from arq.connections import ArqRedis
from arq.worker import Function, func
from redis.asyncio import ConnectionPool
from redis.exceptions import RedisError

from app.core.config import Settings
from app.core.errors import QueueUnavailableError
from app.notifications.email import EmailService

logger = logging.getLogger(__name__)

TASK_ASSIGNMENT = "taskAssignment"


class JobPool(Protocol):
    """The part of arq's ArqRedis the dispatcher uses."""

    async def enqueue_job(self, function: str, *args: Any, **kwargs: Any) -> Any: ...


def build_job_pool(settings: Settings) -> ArqRedis:
    """Enqueue-side arq client. Connects lazily, so startup does not need Redis."""
    return ArqRedis(
        ConnectionPool.from_url(settings.redis_dsn),
        default_queue_name=settings.queue_name,
    )


class NotificationDispatcher:
    """Turns task events into queued notification jobs."""

    def __init__(self, pool: JobPool):
        self.pool = pool

    async def notify_assignment(self, assignee_email: str, task_title: str) -> str:
        """Returns the job id; raises QueueUnavailableError if Redis did not take it."""
        payload = {"assigneeEmail": assignee_email, "taskTitle": task_title}
        try:
            job = await self.pool.enqueue_job(TASK_ASSIGNMENT, payload)
        except RedisError as e:
            raise QueueUnavailableError(f"enqueue {TASK_ASSIGNMENT} failed: {e}") from e
        if job is None:
            # arq only refuses a job whose id is already queued
            raise QueueUnavailableError(f"enqueue {TASK_ASSIGNMENT} was refused")
        return job.job_id


async def send_task_assignment(ctx: dict[str, Any], payload: dict[str, Any]):
    """
    Worker-side handler for taskAssignment jobs.

    A failed send is retried with exponential backoff until the job's last
    try, where the error is raised and arq records the job as failed.
    """
    email_service: EmailService = ctx["email_service"]
    try:
        await email_service.send_task_assignment_notification(
            payload["assigneeEmail"], payload["taskTitle"]
        )
    except Exception as e:
        job_try = ctx.get("job_try", 1)
        if job_try >= ctx["max_tries"]:
            logger.error(
                f"Job {ctx.get('job_id')} ({TASK_ASSIGNMENT}) failed after {job_try} tries: {e!r}"
            )
            raise
        delay = ctx["backoff_seconds"] * (2 ** (job_try - 1))
        logger.warning(
            f"Job {ctx.get('job_id')} ({TASK_ASSIGNMENT}) try {job_try} failed, retrying in {delay:.1f}s: {e!r}"
        )
        raise Retry(defer=delay) from e


def job_functions(settings: Settings) -> list[Function]:
    """Handlers the worker registers, keyed by job kind."""
    return [
        func(
            send_task_assignment,
            name=TASK_ASSIGNMENT,
            max_tries=settings.queue_max_attempts,
        )
    ]
