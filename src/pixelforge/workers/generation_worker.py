"""Isolated generation worker.

Runs one handed-off task end to end (inputs, prompt, synchronous AI call,
storage) under a hard deadline and writes the task's terminal state itself.
Workers are never retried: every run ends in completed or failed.
"""

import asyncio
import time
from typing import Literal
from uuid import UUID

import structlog

from pixelforge.container import Services
from pixelforge.models.task import TaskState
from pixelforge.models.work import WorkStatus
from pixelforge.workers.step_handlers import (
    build_prompt,
    current_state_data,
    download_inputs,
    select_model,
    store_outputs,
)

logger = structlog.get_logger(__name__)

WorkerOutcome = Literal["completed", "failed", "skipped"]


async def _generate(task_id: UUID, services: Services) -> int:
    """Produce and store the task's images, then write completed.

    Returns:
        Number of images stored
    """
    async with await services.uow_factory() as uow:
        task = await uow.tasks.get_by_id(task_id)
    if task is None:
        raise ValueError(f"Task {task_id} not found")

    state_data = current_state_data(task)

    # Reuse what the scheduler already computed before the hand-off
    downloaded = state_data.get("downloaded_images") or await download_inputs(task, services)
    prompt = state_data.get("prompt") or await build_prompt(task, services)
    model_ref, model_name = await select_model(services)

    result = await services.ai.generate(
        prompt,
        downloaded,
        model_ref=model_ref,
        count=int(task.params.get("count") or 1),
    )
    stored = await store_outputs(task, result.images, services)

    state_data.update(
        {
            "downloaded_images": downloaded,
            "prompt": prompt,
            "ai_result": {"images": stored, "description": result.description, "model": model_name},
            "final_images": stored,
        }
    )

    async with await services.uow_factory() as uow:
        written = await uow.tasks.write_worker_result(task_id, TaskState.COMPLETED, state_data)
        if written:
            await uow.works.mark_completed(
                task_id,
                stored,
                ai_model=model_name,
                ai_prompt=prompt,
                ai_description=result.description,
            )

    if not written:
        logger.warning("worker.result_discarded", task_id=str(task_id), reason="already_terminal")
    return len(stored)


async def _write_failure(task_id: UUID, error_message: str, services: Services) -> None:
    """Write failed for the task and refund. Errors here are logged, not raised."""
    try:
        async with await services.uow_factory() as uow:
            written = await uow.tasks.write_worker_result(
                task_id, TaskState.FAILED, error_message=error_message[:1000]
            )
            if written:
                await uow.works.set_status(task_id, WorkStatus.FAILED, error_message=error_message)
    except Exception as e:
        logger.error(
            "worker.failure_write_failed",
            task_id=str(task_id),
            error=str(e),
            exc_info=True,
        )
        return

    if written:
        await services.reconciler.refund(task_id, error_message)


async def run_generation_worker(
    task_id: UUID, worker_name: str, services: Services
) -> WorkerOutcome:
    """Run one isolated worker invocation.

    Workflow:
    1. Claim the task (worker_started_at IS NULL); a duplicate launch exits here
    2. Generate under the WORKER_DEADLINE_SECONDS deadline
    3. On error or deadline write failed with the message and refund

    Args:
        task_id: Handed-off task to run
        worker_name: Name of the worker (photography-worker, ...)
        services: Service container

    Returns:
        "completed", "failed", or "skipped" for a duplicate invocation
    """
    async with await services.uow_factory() as uow:
        claimed = await uow.tasks.claim_for_worker(task_id, worker_name)
    if not claimed:
        logger.info("worker.duplicate_skipped", task_id=str(task_id), worker_name=worker_name)
        return "skipped"

    deadline = services.settings.worker_deadline_seconds
    start_time = time.time()
    logger.info("worker.task.started", task_id=str(task_id), worker_name=worker_name)

    try:
        images = await asyncio.wait_for(_generate(task_id, services), timeout=deadline)

    except asyncio.TimeoutError:
        message = f"Task processing timed out after {deadline:.0f} seconds"
        logger.error("worker.task.timeout", task_id=str(task_id), worker_name=worker_name)
        await _write_failure(task_id, message, services)
        return "failed"

    except Exception as e:
        logger.error(
            "worker.task.failed",
            task_id=str(task_id),
            worker_name=worker_name,
            error_type=type(e).__name__,
            error_message=str(e),
            exc_info=True,
        )
        await _write_failure(task_id, str(e) or type(e).__name__, services)
        return "failed"

    logger.info(
        "worker.task.succeeded",
        task_id=str(task_id),
        worker_name=worker_name,
        images=images,
        duration_seconds=time.time() - start_time,
    )
    return "completed"
