"""Fire-and-forget launcher for isolated generation workers.

A launch is an HTTP request to the worker service that returns as soon as the
worker accepted the job. Timing out on that acknowledgement is not a failure:
the worker may already be running and will write its own terminal state.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, Optional
from uuid import UUID

import httpx
import structlog

from pixelforge.models.task import Task
from pixelforge.services.exceptions import WorkerLaunchRejected, WorkerLaunchTimeout

logger = structlog.get_logger()

RejectionHandler = Callable[[UUID, str], Awaitable[Any]]


def build_launch_payload(task: Task) -> dict[str, Any]:
    """Body of the launch request sent to an isolated worker."""
    return {
        "task_id": str(task.id),
        "type": task.type.value,
        "original_parameters": task.params,
        "caller_identity": str(task.user_id),
    }


class WorkerLauncher:
    """Launches isolated workers and tracks detached launches still in flight."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 3.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize launcher.

        Args:
            base_url: Worker service base URL (from WORKER_BASE_URL)
            api_key: Shared secret sent as X-Worker-Key
            timeout: Seconds to wait for the launch acknowledgement
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport
        self._pending: dict[UUID, asyncio.Task] = {}

    async def launch(self, worker_name: str, payload: dict[str, Any], idempotency_key: str) -> None:
        """Ask the worker service to start a worker.

        Args:
            worker_name: Worker to start (photography-worker, ...)
            payload: {task_id, type, original_parameters, caller_identity}
            idempotency_key: Task id; repeated launches for one key start one run

        Raises:
            WorkerLaunchTimeout: No acknowledgement within the timeout
            WorkerLaunchRejected: Worker service unreachable or refused the launch
        """
        url = f"{self.base_url}/internal/workers/{worker_name}"
        headers = {"X-Worker-Key": self.api_key, "Idempotency-Key": idempotency_key}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise WorkerLaunchTimeout(f"Launch of {worker_name} not acknowledged in time: {e}")
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise WorkerLaunchRejected(f"Worker service unreachable: {e}")

        if response.status_code >= 400:
            raise WorkerLaunchRejected(
                f"Worker {worker_name} rejected launch ({response.status_code}): {response.text}"
            )

        logger.info(
            "worker.launch.accepted",
            worker_name=worker_name,
            task_id=idempotency_key,
            status_code=response.status_code,
        )

    def launch_detached(
        self,
        task_id: UUID,
        worker_name: str,
        payload: dict[str, Any],
        on_rejected: RejectionHandler,
    ) -> asyncio.Task:
        """Launch a worker without waiting for the acknowledgement.

        The background launch has its own error boundary: a timeout is only
        logged, a rejection calls on_rejected(task_id, error_message).

        Returns:
            The background asyncio task
        """

        async def _run() -> None:
            try:
                await self.launch(worker_name, payload, idempotency_key=str(task_id))
            except WorkerLaunchTimeout as e:
                logger.warning(
                    "worker.launch.timeout",
                    task_id=str(task_id),
                    worker_name=worker_name,
                    error=str(e),
                )
            except WorkerLaunchRejected as e:
                logger.error(
                    "worker.launch.rejected",
                    task_id=str(task_id),
                    worker_name=worker_name,
                    error=str(e),
                )
                await on_rejected(task_id, str(e))
            except asyncio.CancelledError:
                logger.info("worker.launch.cancelled", task_id=str(task_id))
                raise
            except Exception as e:
                logger.error(
                    "worker.launch.unexpected_error",
                    task_id=str(task_id),
                    worker_name=worker_name,
                    error=str(e),
                    exc_info=True,
                )
            finally:
                self._pending.pop(task_id, None)

        background = asyncio.create_task(_run(), name=f"launch-{task_id}")
        self._pending[task_id] = background
        return background

    def cancel(self, task_id: UUID) -> bool:
        """Drop a detached launch that has not finished yet.

        Returns:
            True if a pending launch was cancelled
        """
        background = self._pending.pop(task_id, None)
        if background is None or background.done():
            return False
        background.cancel()
        return True

    async def drain(self) -> None:
        """Wait for every detached launch to finish (shutdown and tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending.values()), return_exceptions=True)
