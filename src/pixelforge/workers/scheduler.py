"""Scheduler loop driving tasks through the pipeline state machine.

Every sweep walks the scheduled states in table order, selects a batch of
tasks per state and runs the state's handler for each of them concurrently.

Each task is isolated: its handler runs outside any transaction, and its
outcome is written by a short unit of work of its own (CAS transition, retry
increment, or failure + refund). One task's failure never rolls back another's.
"""

import asyncio
from datetime import timedelta

import structlog

from pixelforge.container import Services
from pixelforge.core.timezone import utc_now
from pixelforge.models.task import SCHEDULED_STATES, Task, TaskState
from pixelforge.services.exceptions import PermanentError, PermanentStepError
from pixelforge.workers.step_handlers import HANDLERS

logger = structlog.get_logger(__name__)

STALE_HANDOFF_MESSAGE = "Worker did not report a result"


async def process_single_task(task: Task, services: Services) -> None:
    """Run one step for one task and persist its outcome.

    Outcomes:
    - StepResult: CAS transition (a miss means another writer moved the task)
    - None: task stays in its polling state
    - PermanentError: task failed immediately, work failed, credits refunded
    - Other exception: retry_count + 1; the ceiling fails the task and refunds

    Args:
        task: Task snapshot selected by the sweep
        services: Service container
    """
    state = task.state
    handler = HANDLERS[state]

    try:
        result = await handler(task, services)

    except PermanentError as e:
        current = e.current_state if isinstance(e, PermanentStepError) else None
        logger.error(
            "task.step.permanent_failure",
            task_id=str(task.id),
            state=state.value,
            error_type=type(e).__name__,
            error_message=str(e),
        )
        await services.reconciler.fail_task(task.id, str(e), expected=[current or state])
        return

    except Exception as e:
        async with await services.uow_factory() as uow:
            outcome = await uow.tasks.record_failure(
                task.id, state, str(e) or type(e).__name__, services.settings.max_retries
            )

        if outcome is None:
            logger.info("task.step.retry_skipped", task_id=str(task.id), state=state.value)
        elif outcome.failed:
            logger.error(
                "task.step.retries_exhausted",
                task_id=str(task.id),
                state=state.value,
                retry_count=outcome.retry_count,
                error_message=str(e),
            )
            await services.reconciler.settle_failed(task.id, outcome.error_message)
        else:
            logger.warning(
                "task.step.retry",
                task_id=str(task.id),
                state=state.value,
                retry_count=outcome.retry_count,
                error_type=type(e).__name__,
                error_message=str(e),
            )
        return

    if result is None:
        return

    if result.persisted:
        logger.info(
            "task.step.succeeded",
            task_id=str(task.id),
            state=state.value,
            next_state=result.next_state.value,
        )
        return

    async with await services.uow_factory() as uow:
        moved = await uow.tasks.compare_and_set_state(
            task.id, state, result.next_state, result.state_data, **result.fields
        )
        if moved and result.work_images is not None:
            await uow.works.mark_completed(task.id, result.work_images, **result.work_fields)

    if moved:
        logger.info(
            "task.step.succeeded",
            task_id=str(task.id),
            state=state.value,
            next_state=result.next_state.value,
        )
    else:
        logger.info(
            "task.step.conflict",
            task_id=str(task.id),
            state=state.value,
            next_state=result.next_state.value,
        )


async def process_state(state: TaskState, services: Services) -> int:
    """Process one batch of tasks in a state.

    Uses a short unit of work to select (and, on PostgreSQL, lock) the batch,
    then runs the tasks concurrently, bounded by scheduler_concurrency.

    Args:
        state: Scheduled state to process
        services: Service container

    Returns:
        Number of tasks selected
    """
    settings = services.settings
    async with await services.uow_factory() as uow:
        tasks = await uow.tasks.list_by_state(
            state, limit=settings.scheduler_batch_size, max_retries=settings.max_retries
        )

    if not tasks:
        return 0

    semaphore = asyncio.Semaphore(max(1, settings.scheduler_concurrency))

    async def _guarded(task: Task) -> None:
        async with semaphore:
            await process_single_task(task, services)

    results = await asyncio.gather(*[_guarded(t) for t in tasks], return_exceptions=True)

    # Outcomes are logged in process_single_task; only unexpected errors remain here
    for task, result in zip(tasks, results):
        if isinstance(result, Exception):
            logger.error(
                "task.step.unhandled_error",
                task_id=str(task.id),
                state=state.value,
                error=str(result),
                error_type=type(result).__name__,
            )

    return len(tasks)


async def reap_stale_handoffs(services: Services) -> int:
    """Fail handed-off tasks whose worker never wrote a result.

    Covers workers killed before their own deadline write.

    Returns:
        Number of tasks failed
    """
    cutoff = utc_now() - timedelta(seconds=services.settings.handoff_stale_seconds)
    async with await services.uow_factory() as uow:
        stale = await uow.tasks.list_stale_handoffs(cutoff)

    reaped = 0
    for task in stale:
        if await services.reconciler.fail_task(
            task.id, STALE_HANDOFF_MESSAGE, expected=[TaskState.HANDED_OFF]
        ):
            reaped += 1

    if reaped:
        logger.warning("scheduler.handoffs_reaped", count=reaped)
    return reaped


async def run_sweep(services: Services) -> dict[str, int]:
    """Run one full sweep over every scheduled state.

    A failure while processing one state is logged and does not stop the others.

    Returns:
        Mapping of state name to number of tasks selected (plus "reaped")
    """
    processed: dict[str, int] = {}
    for state in SCHEDULED_STATES:
        try:
            count = await process_state(state, services)
        except Exception as e:
            logger.error(
                "scheduler.state.failed",
                state=state.value,
                error_type=type(e).__name__,
                error_message=str(e),
                exc_info=True,
            )
            continue
        if count:
            processed[state.value] = count

    try:
        processed["reaped"] = await reap_stale_handoffs(services)
    except Exception as e:
        logger.error(
            "scheduler.reaper.failed",
            error_type=type(e).__name__,
            error_message=str(e),
            exc_info=True,
        )

    logger.info("scheduler.sweep.completed", **processed)
    return processed


async def run_scheduler(services: Services) -> None:
    """Main scheduler loop.

    Sweeps every SCHEDULER_INTERVAL_SECONDS and handles graceful shutdown.

    Args:
        services: Service container (settings, unit of work factory, collaborators)
    """
    settings = services.settings
    logger.info(
        "scheduler.started",
        interval=settings.scheduler_interval_seconds,
        batch_size=settings.scheduler_batch_size,
        max_retries=settings.max_retries,
    )

    try:
        while True:
            try:
                await run_sweep(services)

                # Wait for next sweep
                await asyncio.sleep(settings.scheduler_interval_seconds)

            except asyncio.CancelledError:
                # Propagate cancellation for graceful shutdown
                raise

            except Exception as e:
                # Unexpected error in the loop - log and continue with backoff
                logger.error(
                    "scheduler.error",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                # Back off 5 seconds before retrying
                await asyncio.sleep(5)

    except asyncio.CancelledError:
        # Graceful shutdown
        logger.info("scheduler.stopped")
        raise
