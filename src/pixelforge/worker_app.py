"""FastAPI application hosting the isolated generation workers.

The scheduler and the dispatcher launch a worker with
POST /internal/workers/{worker_name}. The endpoint acknowledges with 202 as
soon as the job is accepted and runs the worker in the background, so the
launcher's short timeout only covers the acknowledgement.
"""

from contextlib import asynccontextmanager
from typing import Any, Optional
from uuid import UUID

import structlog
from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, status
from pydantic import BaseModel, Field

from pixelforge.api.dependencies import get_services, verify_worker_key
from pixelforge.app import add_health_check
from pixelforge.container import Services, build_services
from pixelforge.core import timezone  # noqa: F401
from pixelforge.core.config import Settings, configure_logging
from pixelforge.core.database import setup_db_session
from pixelforge.models.task import WORKER_BY_TYPE
from pixelforge.workers.generation_worker import run_generation_worker

logger = structlog.get_logger()

WORKER_NAMES = frozenset(WORKER_BY_TYPE.values())


class LaunchRequest(BaseModel):
    """Launch payload sent by WorkerLauncher."""

    task_id: UUID
    type: str
    original_parameters: dict[str, Any] = Field(default_factory=dict)
    caller_identity: Optional[str] = None


class LaunchAccepted(BaseModel):
    task_id: UUID
    worker_name: str
    accepted: bool = True


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = Settings()  # type: ignore[call-arg]
    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    app.state.session_factory = session_factory
    app.state.services = build_services(settings, session_factory)

    logger.info("worker_service.startup", workers=sorted(WORKER_NAMES))
    yield
    logger.info("worker_service.shutdown")


def create_worker_app() -> FastAPI:
    """Create the worker service application."""
    app = FastAPI(
        title="PixelForge Workers",
        description="Isolated generation workers",
        version="0.1.0",
        lifespan=lifespan,
    )

    @app.post(
        "/internal/workers/{worker_name}",
        response_model=LaunchAccepted,
        status_code=status.HTTP_202_ACCEPTED,
        dependencies=[Depends(verify_worker_key)],
    )
    async def launch_worker(
        worker_name: str,
        request: LaunchRequest,
        background_tasks: BackgroundTasks,
        idempotency_key: Optional[str] = Header(default=None),
        services: Services = Depends(get_services),
    ) -> LaunchAccepted:
        """Accept a launch and run the worker after responding.

        Raises:
            HTTPException 404: Unknown worker name
            HTTPException 422: Worker does not serve this task type
        """
        if worker_name not in WORKER_NAMES:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown worker")
        served = {t.value for t, name in WORKER_BY_TYPE.items() if name == worker_name}
        if request.type not in served:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"{worker_name} does not handle {request.type} tasks",
            )

        logger.info(
            "worker.launch.received",
            task_id=str(request.task_id),
            worker_name=worker_name,
            idempotency_key=idempotency_key,
        )
        # Duplicate launches for one task are absorbed by the worker's claim
        background_tasks.add_task(run_generation_worker, request.task_id, worker_name, services)
        return LaunchAccepted(task_id=request.task_id, worker_name=worker_name)

    add_health_check(app)

    return app


app = create_worker_app()
