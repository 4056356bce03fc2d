import asyncio
import logging
from contextlib import AsyncExitStack, asynccontextmanager

from arq.worker import Worker
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from app.cache.layer import CacheLayer
from app.cache.task_cache import TaskCache
from app.core.config import SettingsDep, get_settings
from app.core.errors import NotFoundError, StoreUnavailableError, ValidationError
from app.core.logging_setup import setup_logging
from app.database import create_db_and_tables, engine
from app.notifications.dispatcher import NotificationDispatcher, build_job_pool
from app.routers import projects, tasks, users
from app.worker import build_worker

logger = logging.getLogger(__name__)


def _report_worker_exit(task: asyncio.Task):
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"In-app worker died: {exc!r}", exc_info=exc)
    else:
        logger.warning("In-app worker exited")


async def _stop_worker(worker: Worker, task: asyncio.Task):
    try:
        await worker.close()
    except Exception as e:
        logger.error(f"Error stopping in-app worker: {e!r}")
    # A crash was already reported by _report_worker_exit
    await asyncio.gather(task, return_exceptions=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    setup_logging(settings.log_level)
    if settings.create_tables_on_startup:
        await create_db_and_tables()

    # Callbacks run in reverse order, each one even if an earlier one raised
    async with AsyncExitStack() as stack:
        stack.push_async_callback(engine.dispose)

        cache_layer = CacheLayer(settings)
        stack.push_async_callback(cache_layer.close)
        await cache_layer.init_cache()

        job_pool = build_job_pool(settings)
        stack.push_async_callback(job_pool.aclose, True)

        app.state.cache_layer = cache_layer
        app.state.task_cache = TaskCache(
            cache_layer,
            task_ttl=settings.task_ttl_seconds,
            list_ttl=settings.list_ttl_seconds,
        )
        app.state.dispatcher = NotificationDispatcher(job_pool)

        if settings.run_worker_in_app:
            worker = build_worker(settings, handle_signals=False)
            worker_task = asyncio.create_task(worker.async_run())
            worker_task.add_done_callback(_report_worker_exit)
            stack.push_async_callback(_stop_worker, worker, worker_task)

        yield

    logger.info("Shutdown complete")


app = FastAPI(
    title="Task Management API",
    description="Async task management API with PostgreSQL, Redis caching and email notifications",
    swagger_ui_parameters={"displayRequestDuration": True},
    version="1.0.0",
    lifespan=lifespan,
)

# Include routers
app.include_router(tasks.router)
app.include_router(projects.router)
app.include_router(users.router)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"detail": str(exc)}
    )


@app.exception_handler(StoreUnavailableError)
async def store_unavailable_handler(request: Request, exc: StoreUnavailableError):
    logger.error(f"Store unavailable on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Database unavailable"},
    )


@app.get("/")
async def root():
    return {
        "message": "Welcome to Task Management API",
        "docs": "/docs",
        "version": "1.0.0",
    }


@app.get("/health")
async def health_check(request: Request, settings: SettingsDep):
    cache_layer = getattr(request.app.state, "cache_layer", None)
    return {
        "status": "healthy",
        "queue": settings.queue_name,
        "cache": cache_layer.get_stats() if cache_layer is not None else None,
    }
