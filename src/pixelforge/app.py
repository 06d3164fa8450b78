"""FastAPI application factory."""

# Import timezone enforcement (sets TZ=UTC)
import asyncio
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Response, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from pixelforge.api.routes import tasks, works
from pixelforge.container import build_services
from pixelforge.core import timezone  # noqa: F401
from pixelforge.core.config import Settings, configure_logging
from pixelforge.core.database import setup_db_session
from pixelforge.workers.scheduler import run_scheduler

logger = structlog.get_logger()


def create_resilient_worker(coro_func, services, worker_name: str, shutdown_event: asyncio.Event):
    """Create a worker with automatic restart on failure.

    Args:
        coro_func: Worker coroutine function (e.g., run_scheduler)
        services: Service container passed to the worker
        worker_name: Human-readable worker name for logging
        shutdown_event: Event to signal graceful shutdown

    Returns:
        Initial task handle (will be auto-recreated on crash)
    """
    RESTART_DELAY = 1  # Fixed 1 second delay between restarts

    def on_worker_done(task: asyncio.Task):
        if shutdown_event.is_set():
            logger.info("worker.shutdown_complete", worker=worker_name)
            return

        # Cancelled means normal shutdown
        if task.cancelled():
            logger.info("worker.cancelled", worker=worker_name)
            return

        exc = task.exception()
        if exc:
            logger.error(
                "worker.crashed",
                worker=worker_name,
                error=str(exc),
                error_type=type(exc).__name__,
                retry_in_seconds=RESTART_DELAY,
                exc_info=exc,
            )
        else:
            # Loop workers never return on their own
            logger.warning(
                "worker.stopped_unexpectedly",
                worker=worker_name,
                retry_in_seconds=RESTART_DELAY,
            )

        async def restart_worker():
            await asyncio.sleep(RESTART_DELAY)

            # Shutdown may have been requested during sleep
            if shutdown_event.is_set():
                return

            logger.info("worker.restarting", worker=worker_name)
            new_task = asyncio.create_task(coro_func(services))
            new_task.add_done_callback(on_worker_done)

        asyncio.create_task(restart_worker())

    task = asyncio.create_task(coro_func(services))
    task.add_done_callback(on_worker_done)
    return task


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Handles startup and shutdown tasks:
    - Startup: Configure logging, build the service container, start the scheduler
    - Shutdown: Stop the scheduler, wait for detached worker launches
    """
    settings = Settings()  # type: ignore[call-arg]

    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    services = build_services(settings, session_factory)

    # Store in app.state for access in routes
    app.state.session_factory = session_factory
    app.state.services = services

    shutdown_event = asyncio.Event()
    scheduler_task = None
    if settings.scheduler_enabled:
        scheduler_task = create_resilient_worker(
            run_scheduler, services, "scheduler", shutdown_event
        )

    logger.info(
        "application.startup",
        db_url=settings.database_url.split("@")[-1],
        scheduler_enabled=settings.scheduler_enabled,
    )

    yield

    logger.info("application.shutdown")
    shutdown_event.set()

    if scheduler_task is not None:
        scheduler_task.cancel()
        await asyncio.gather(scheduler_task, return_exceptions=True)

    # Launch requests already sent still get their acknowledgement handled
    await services.launcher.drain()


def add_health_check(app: FastAPI) -> None:
    """Register GET /health with a database connectivity test."""

    @app.get("/health")
    async def health_check(response: Response):
        """Health check endpoint with database connectivity test.

        Returns:
            200: {"status": "healthy"} if database connection succeeds
            503: {"status": "unhealthy", "error": {...}} if database connection fails
        """
        try:
            async with app.state.session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                result.scalar()

            logger.debug("health_check.success")
            return {"status": "healthy"}

        except Exception as e:
            logger.error(
                "health_check.failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {
                "status": "unhealthy",
                "error": {
                    "type": type(e).__name__,
                    "message": str(e),
                },
            }


def create_app() -> FastAPI:
    """Create and configure FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    settings = Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="PixelForge API",
        description="AI image generation task orchestration",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(tasks.router)  # prefix="/api/tasks" in definition
    app.include_router(works.router)  # prefix="/api/works" in definition

    add_health_check(app)

    return app


# Create app instance for uvicorn
app = create_app()
