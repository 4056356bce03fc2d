"""Notification worker: python -m app.worker"""

import asyncio
import logging
from typing import Any

from arq.connections import RedisSettings
from arq.worker import Worker

from app.core.config import Settings, get_settings
from app.core.logging_setup import setup_logging
from app.notifications.dispatcher import job_functions
from app.notifications.email import EmailService, build_email_service

logger = logging.getLogger(__name__)


def build_worker(
    settings: Settings, email_service: EmailService | None = None, **overrides: Any
) -> Worker:
    """arq worker consuming the notification queue.

    Jobs interrupted by a crash are picked up again once their in-progress
    marker expires; jobs out of tries keep their failed result for
    queue_keep_result_seconds.
    """
    email_service = email_service or build_email_service(settings)

    async def startup(ctx: dict[str, Any]):
        ctx["email_service"] = email_service
        ctx["max_tries"] = settings.queue_max_attempts
        ctx["backoff_seconds"] = settings.queue_backoff_seconds
        logger.info(f"Worker started on queue {settings.queue_name}")

    async def shutdown(ctx: dict[str, Any]):
        logger.info(f"Worker stopped on queue {settings.queue_name}")

    options: dict[str, Any] = {
        "functions": job_functions(settings),
        "queue_name": settings.queue_name,
        "redis_settings": RedisSettings.from_dsn(settings.redis_dsn),
        "on_startup": startup,
        "on_shutdown": shutdown,
        "max_tries": settings.queue_max_attempts,
        "poll_delay": settings.queue_poll_timeout,
        "keep_result": settings.queue_keep_result_seconds,
    }
    options.update(overrides)
    return Worker(**options)


async def run_worker():
    settings = get_settings()
    setup_logging(settings.log_level)

    # arq installs its own SIGINT/SIGTERM handlers, which cancel the main task
    worker = build_worker(settings)
    try:
        await worker.async_run()
    except asyncio.CancelledError:
        logger.info("Worker received shutdown signal")
    finally:
        await worker.close()
        logger.info("Worker connections closed")


if __name__ == "__main__":
    asyncio.run(run_worker())
