"""Per-state step handlers for the task pipeline.

Each handler takes a task snapshot and the service container and returns:
- StepResult: the next state and the full replacement state_data
- None: nothing to do yet (the task stays and is polled again next sweep)

Handlers are idempotent: re-running one after a crash or a lost CAS writes
the same keys and the same storage paths again. Raising PermanentStepError
fails the task immediately; any other exception counts as one retry.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

import structlog

from pixelforge.container import Services
from pixelforge.core.timezone import utc_now
from pixelforge.models.task import (
    WORKER_BY_TYPE,
    Task,
    TaskState,
    empty_state_data,
)
from pixelforge.services.exceptions import (
    PermanentStepError,
    ServiceError,
    StorageError,
    WorkerLaunchRejected,
    WorkerLaunchTimeout,
)
from pixelforge.services.prompt.builder import default_prompt
from pixelforge.services.storage.client import encode_image, generated_image_path
from pixelforge.services.worker_launcher import build_launch_payload

logger = structlog.get_logger(__name__)


@dataclass
class StepResult:
    """Outcome of one successful step."""

    next_state: TaskState
    state_data: dict
    fields: dict[str, Any] = field(default_factory=dict)
    # Set by the uploading step: the work is finalized in the same unit of work
    work_images: Optional[list[dict]] = None
    work_fields: dict[str, Any] = field(default_factory=dict)
    # The handler already wrote the transition itself (hand-off before launch)
    persisted: bool = False


StepHandler = Callable[[Task, Services], Awaitable[Optional[StepResult]]]


def current_state_data(task: Task) -> dict:
    """Stored state_data on top of the skeleton, as a fresh dict to modify and write back."""
    return {**empty_state_data(), **(task.state_data or {})}


# Helpers shared with the isolated worker


async def download_inputs(task: Task, services: Services) -> list[dict]:
    """Download and inline every input image of a task.

    A failed image is logged and skipped. No inputs at all is valid.

    Returns:
        List of {ref, base64_data, mime_type, size}

    Raises:
        StorageError: Inputs were given but none could be downloaded
    """
    refs = list(task.params.get("images") or [])
    if not refs:
        return []

    downloaded = []
    for index, ref in enumerate(refs):
        try:
            content, content_type = await services.storage.download(ref)
            downloaded.append(encode_image(ref, content, content_type))
        except Exception as e:
            logger.warning(
                "task.image.download_failed",
                task_id=str(task.id),
                index=index,
                ref=ref,
                error=str(e),
            )

    if not downloaded:
        raise StorageError(f"Failed to download any of {len(refs)} input images")

    logger.info(
        "task.images.downloaded",
        task_id=str(task.id),
        downloaded=len(downloaded),
        requested=len(refs),
    )
    return downloaded


async def build_prompt(task: Task, services: Services) -> str:
    """Build the generation prompt, falling back to the canned prompt on any error."""
    params = task.params or {}
    parameters = dict(params.get("parameters") or {})
    parameters.setdefault("image_count", len(params.get("images") or []))

    try:
        scene = None
        scene_id = params.get("scene_id")
        if scene_id:
            async with await services.uow_factory() as uow:
                scene = await uow.scenes.get_active(scene_id)
            if scene is None:
                logger.warning("task.scene_not_found", task_id=str(task.id), scene_id=scene_id)

        return services.prompts.build(
            task.type.value,
            parameters,
            scene=scene,
            mode=task.mode.value,
            pose_description=params.get("pose_description"),
        )
    except Exception as e:
        logger.warning(
            "task.prompt.fallback",
            task_id=str(task.id),
            error=str(e),
            error_type=type(e).__name__,
        )
        return default_prompt(task.type.value)


async def select_model(services: Services) -> tuple[Optional[str], str]:
    """Pick the AI model to call.

    Returns:
        Tuple of (model_ref or None for the default model, display name)
    """
    async with await services.uow_factory() as uow:
        model = await uow.ai_models.select_best()
    if model is None:
        return None, services.settings.replicate_model_version
    return model.model_ref, model.name


async def store_outputs(task: Task, images: list[dict], services: Services) -> list[dict]:
    """Copy AI outputs to their deterministic storage paths.

    Returns:
        List of {url, width, height} pointing at the stored copies
    """
    stored = []
    for index, image in enumerate(images, start=1):
        path = generated_image_path(task.type.value, str(task.id), index)
        url = await services.storage.store_generated(image["url"], path)
        stored.append(
            {"url": url, "width": image.get("width", 1024), "height": image.get("height", 1024)}
        )
    return stored


# State handlers


async def handle_pending(task: Task, services: Services) -> Optional[StepResult]:
    return StepResult(TaskState.DOWNLOADING, empty_state_data())


async def handle_downloading(task: Task, services: Services) -> Optional[StepResult]:
    state_data = current_state_data(task)
    state_data["downloaded_images"] = await download_inputs(task, services)
    return StepResult(TaskState.DOWNLOADED, state_data)


async def handle_downloaded(task: Task, services: Services) -> Optional[StepResult]:
    state_data = current_state_data(task)
    state_data["prompt"] = await build_prompt(task, services)
    return StepResult(TaskState.AI_CALLING, state_data)


async def handle_ai_calling(task: Task, services: Services) -> Optional[StepResult]:
    """Start generation: hand off to an isolated worker, or start a polled prediction."""
    if task.type.value in services.settings.polled_task_types_list:
        return await _start_prediction(task, services)
    return await _hand_off(task, services)


async def _hand_off(task: Task, services: Services) -> Optional[StepResult]:
    """Move to handed_off first, then launch, so at most one worker run exists."""
    worker_name = WORKER_BY_TYPE[task.type]
    state_data = {
        **current_state_data(task),
        "worker_started": True,
        "worker_name": worker_name,
        "worker_launch_at": utc_now().isoformat(),
        "launch_timed_out": False,
    }

    async with await services.uow_factory() as uow:
        moved = await uow.tasks.compare_and_set_state(
            task.id,
            TaskState.AI_CALLING,
            TaskState.HANDED_OFF,
            state_data,
            worker_name=worker_name,
        )
    if not moved:
        logger.info("task.handoff.skipped", task_id=str(task.id), reason="state_changed")
        return None

    try:
        await services.launcher.launch(
            worker_name, build_launch_payload(task), idempotency_key=str(task.id)
        )
    except WorkerLaunchTimeout as e:
        logger.warning(
            "worker.launch.timeout",
            task_id=str(task.id),
            worker_name=worker_name,
            error=str(e),
        )
        state_data["launch_timed_out"] = True
        async with await services.uow_factory() as uow:
            await uow.tasks.update_state_data(task.id, TaskState.HANDED_OFF, state_data)
    except WorkerLaunchRejected as e:
        raise PermanentStepError(
            f"Worker launch rejected: {e}", current_state=TaskState.HANDED_OFF
        ) from e

    return StepResult(TaskState.HANDED_OFF, state_data, persisted=True)


async def _start_prediction(task: Task, services: Services) -> Optional[StepResult]:
    state_data = current_state_data(task)

    # A prediction started by an earlier attempt is reused instead of started twice
    if not state_data.get("ai_task_id"):
        model_ref, model_name = await select_model(services)
        prediction_id = await services.ai.start_prediction(
            state_data.get("prompt") or default_prompt(task.type.value),
            state_data.get("downloaded_images") or [],
            model_ref=model_ref,
            count=int(task.params.get("count") or 1),
        )
        state_data.update(
            {
                "ai_task_id": prediction_id,
                "ai_model": model_name,
                "ai_model_ref": model_ref,
                "ai_start_time": utc_now().isoformat(),
            }
        )

    return StepResult(TaskState.AI_PROCESSING, state_data)


async def handle_ai_processing(task: Task, services: Services) -> Optional[StepResult]:
    """Poll the prediction; store outputs once it succeeds."""
    state_data = current_state_data(task)
    prediction_id = state_data.get("ai_task_id")
    if not prediction_id:
        raise PermanentStepError("AI task id missing from state data")

    status = await services.ai.check_prediction(prediction_id, model=state_data.get("ai_model_ref"))

    if status.status == "failed":
        raise PermanentStepError(f"AI generation failed: {status.error or 'unknown error'}")

    if status.status != "succeeded" or status.result is None:
        started_raw = state_data.get("ai_start_time")
        started = datetime.fromisoformat(started_raw) if started_raw else task.state_started_at
        timeout = services.settings.ai_processing_timeout_seconds
        if (utc_now() - started).total_seconds() > timeout:
            raise PermanentStepError(f"AI processing timed out after {timeout // 60} minutes")
        logger.debug("task.ai.still_processing", task_id=str(task.id), prediction_id=prediction_id)
        return None

    stored = await store_outputs(task, status.result.images, services)
    state_data["ai_result"] = {
        "images": stored,
        "description": status.result.description,
        "model": state_data.get("ai_model") or status.result.model,
    }
    return StepResult(TaskState.AI_COMPLETED, state_data)


async def handle_ai_completed(task: Task, services: Services) -> Optional[StepResult]:
    if services.settings.server_side_watermark:
        return StepResult(TaskState.WATERMARKING, current_state_data(task))
    return StepResult(TaskState.UPLOADING, current_state_data(task))


async def handle_watermarking(task: Task, services: Services) -> Optional[StepResult]:
    state_data = current_state_data(task)
    images = (state_data.get("ai_result") or {}).get("images") or []
    if not images:
        raise ServiceError("No generated images to watermark")

    watermarked = []
    for index, image in enumerate(images, start=1):
        stamped = await services.watermark.apply(image["url"])
        path = generated_image_path(task.type.value, str(task.id), index, prefix="watermarked")
        url = await services.storage.upload(path, stamped, "image/png")
        watermarked.append({**image, "url": url})

    state_data["watermarked_images"] = watermarked
    return StepResult(TaskState.UPLOADING, state_data)


async def handle_uploading(task: Task, services: Services) -> Optional[StepResult]:
    state_data = current_state_data(task)
    ai_result = state_data.get("ai_result") or {}
    final_images = state_data.get("watermarked_images") or ai_result.get("images") or []
    if not final_images:
        raise ServiceError("No images to finalize")

    state_data["final_images"] = final_images
    return StepResult(
        TaskState.COMPLETED,
        state_data,
        work_images=final_images,
        work_fields={
            "ai_model": ai_result.get("model"),
            "ai_prompt": state_data.get("prompt"),
            "ai_description": ai_result.get("description"),
        },
    )


HANDLERS: dict[TaskState, StepHandler] = {
    TaskState.PENDING: handle_pending,
    TaskState.DOWNLOADING: handle_downloading,
    TaskState.DOWNLOADED: handle_downloaded,
    TaskState.AI_CALLING: handle_ai_calling,
    TaskState.AI_PROCESSING: handle_ai_processing,
    TaskState.AI_COMPLETED: handle_ai_completed,
    TaskState.WATERMARKING: handle_watermarking,
    TaskState.UPLOADING: handle_uploading,
}
