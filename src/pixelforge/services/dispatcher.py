"""Task dispatcher: the entry point for creating, observing and cancelling tasks.

Creation validates the request, charges credits, writes the task and an empty
work in one unit of work, and for direct-dispatch types launches the isolated
worker without waiting for it.
"""

import math
from enum import Enum
from typing import Any, Optional
from uuid import UUID

import structlog
from pydantic import BaseModel, Field

from pixelforge.container import Services
from pixelforge.models.scene import Scene
from pixelforge.models.task import (
    DIRECT_DISPATCH_TYPES,
    STATE_MESSAGES,
    WORKER_BY_TYPE,
    Task,
    TaskMode,
    TaskState,
    TaskStatus,
    TaskType,
)
from pixelforge.models.work import Work, WorkStatus
from pixelforge.services.exceptions import (
    InsufficientCreditsError,
    TaskNotFoundError,
    TaskValidationError,
    TooManyActiveTasksError,
)
from pixelforge.services.worker_launcher import build_launch_payload

logger = structlog.get_logger()

# Max input images and output count per type (normal mode)
IMAGE_LIMITS: dict[TaskType, int] = {TaskType.PHOTOGRAPHY: 5, TaskType.FITTING: 5}
COUNT_LIMITS: dict[TaskType, int] = {
    TaskType.PHOTOGRAPHY: 5,
    TaskType.FITTING: 3,
    TaskType.PERSONAL_FITTING: 5,
    TaskType.TRAVEL: 5,
}

# Generated images live under these path segments; they are never clothing originals
GENERATED_PATH_MARKERS = ("/photography/", "/fitting/")


class CreateTaskRequest(BaseModel):
    """Request model for creating a generation task."""

    type: TaskType = Field(..., description="Task type")
    mode: TaskMode = Field(default=TaskMode.NORMAL, description="normal or pose_variation")
    images: list[str] = Field(
        default_factory=list,
        description="Input image refs (clothing images; storage paths or URLs)",
    )
    user_photo: Optional[str] = Field(
        default=None, description="Photo of the user (personal-fitting, travel)"
    )
    count: int = Field(default=1, ge=1, le=5, description="Number of images to generate")
    scene_id: Optional[str] = Field(default=None, max_length=100)
    parameters: dict[str, Any] = Field(
        default_factory=dict,
        description="User parameters (gender, age, location, clothing_description, destination)",
    )
    reference_work_id: Optional[UUID] = Field(
        default=None, description="Completed work to derive a pose variation from"
    )
    pose_description: Optional[str] = Field(default=None, max_length=1000)


class CreateTaskResult(BaseModel):
    """Response model for a created task."""

    task_id: UUID
    work_id: UUID
    credits_used: int
    credits_remaining: int


class TaskProgress(BaseModel):
    """Response model for task progress queries."""

    task_id: UUID
    state: TaskState
    status: TaskStatus
    progress_percent: int
    message: str
    work_id: Optional[UUID] = None
    images: Optional[list[dict]] = None
    error: Optional[str] = None


class CancelOutcome(str, Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    NOT_CANCELABLE = "not_cancelable"


def validate_request(request: CreateTaskRequest) -> None:
    """Per-type validation that needs no database access.

    Raises:
        TaskValidationError: Request is invalid for its type
    """
    if request.count > COUNT_LIMITS[request.type]:
        raise TaskValidationError(
            f"count must be between 1 and {COUNT_LIMITS[request.type]} for {request.type.value}"
        )

    if request.mode == TaskMode.POSE_VARIATION:
        if request.type not in (TaskType.PHOTOGRAPHY, TaskType.FITTING):
            raise TaskValidationError(f"Pose variation is not available for {request.type.value}")
        if request.reference_work_id is None:
            raise TaskValidationError("Pose variation requires reference_work_id")
        if not (request.pose_description or "").strip():
            raise TaskValidationError("Pose variation requires a pose description")
        return

    if request.type in IMAGE_LIMITS:
        limit = IMAGE_LIMITS[request.type]
        if not 1 <= len(request.images) <= limit:
            raise TaskValidationError(
                f"{request.type.value} requires between 1 and {limit} clothing images"
            )

    elif request.type == TaskType.PERSONAL_FITTING:
        if not request.user_photo:
            raise TaskValidationError("personal-fitting requires a user photo")
        if not request.images and not request.parameters.get("clothing_description"):
            raise TaskValidationError(
                "personal-fitting requires clothing images or a clothing description"
            )

    elif request.type == TaskType.TRAVEL:
        if not request.user_photo:
            raise TaskValidationError("travel requires a user photo")
        if not request.parameters.get("destination"):
            raise TaskValidationError("travel requires a destination")


def compute_cost(
    request: CreateTaskRequest, scene: Optional[Scene], cost_per_image: dict[str, int], discount: float
) -> int:
    """Credits charged for a request.

    Scene pricing is base_credits + credits_per_image * count, discounted and
    floored for pose variation. Without a scene the per-type price applies.
    """
    if scene is not None:
        cost = scene.base_credits + scene.credits_per_image * request.count
        if request.mode == TaskMode.POSE_VARIATION:
            cost = math.floor(cost * discount)
        return cost
    return cost_per_image.get(request.type.value, 1) * request.count


def pose_variation_inputs(reference: Work) -> list[str]:
    """[generated model image, original clothing images...] for a pose variation."""
    model_image = reference.images[0]["url"]
    originals = [
        ref
        for ref in (reference.original_images or [])
        if isinstance(ref, str) and not any(marker in ref for marker in GENERATED_PATH_MARKERS)
    ]
    return [model_image, *originals]


class TaskDispatcher:
    """Creates, reports on and cancels tasks for a user."""

    def __init__(self, services: Services):
        self.services = services
        self.settings = services.settings

    async def create_task(self, user_id: UUID, request: CreateTaskRequest) -> CreateTaskResult:
        """Validate, charge, persist and (for direct types) launch a task.

        Args:
            user_id: Caller identity
            request: Validated request body

        Returns:
            CreateTaskResult with ids and credit figures

        Raises:
            TaskValidationError: Invalid request (nothing is written)
            InsufficientCreditsError: Balance does not cover the cost
            TooManyActiveTasksError: User already has MAX_ACTIVE_TASKS non-terminal tasks
        """
        validate_request(request)

        async with await self.services.uow_factory() as uow:
            # Locks the user row: concurrent creations for one user serialize here
            user = await uow.users.get_for_update(user_id)
            if user is None:
                raise TaskValidationError("Unknown user")

            inputs = list(request.images)
            scene_id = request.scene_id
            reference: Optional[Work] = None

            if request.mode == TaskMode.POSE_VARIATION:
                reference = await uow.works.get_for_user(request.reference_work_id, user_id)  # type: ignore[arg-type]
                if reference is None:
                    raise TaskValidationError("Reference work not found")
                if reference.status != WorkStatus.COMPLETED:
                    raise TaskValidationError("Reference work is not completed yet")
                if not reference.images:
                    raise TaskValidationError("Reference work has no generated images")
                inputs = pose_variation_inputs(reference)
                scene_id = scene_id or reference.scene_id
            elif request.user_photo:
                inputs = [request.user_photo, *inputs]

            scene = await uow.scenes.get_active(scene_id) if scene_id else None
            if request.scene_id and scene is None:
                raise TaskValidationError(f"Unknown scene: {request.scene_id}")

            cost = compute_cost(
                request,
                scene,
                self.settings.credit_cost_per_image,
                self.settings.pose_variation_discount,
            )
            if user.credits < cost:
                raise InsufficientCreditsError(required=cost, available=user.credits)

            active = await uow.tasks.count_active_by_user(user_id)
            if active >= self.settings.max_active_tasks:
                raise TooManyActiveTasksError(self.settings.max_active_tasks)

            task = Task(
                user_id=user_id,
                type=request.type,
                mode=request.mode,
                params={
                    "images": inputs,
                    "count": request.count,
                    "scene_id": scene_id,
                    "parameters": request.parameters,
                    "pose_description": request.pose_description,
                    "reference_work_id": str(reference.id) if reference else None,
                },
                credits_cost=cost,
                credits_deducted=True,
            )
            worker_name = None
            if request.type in DIRECT_DISPATCH_TYPES:
                worker_name = WORKER_BY_TYPE[request.type]
                task.hand_off(worker_name)
            await uow.tasks.add(task)

            balance = await self.services.ledger.debit(
                uow,
                user_id,
                cost,
                task_id=task.id,
                description=f"{request.type.value} ({request.count} images)",
            )

            work = Work(
                task_id=task.id,
                user_id=user_id,
                type=request.type.value,
                status=WorkStatus.PROCESSING if worker_name else WorkStatus.PENDING,
                parameters=request.parameters,
                original_images=inputs,
                scene_id=scene_id,
                reference_work_id=reference.id if reference else None,
                variation_type="pose" if reference else None,
                pose_description=request.pose_description,
            )
            await uow.works.add(work)

        logger.info(
            "task.created",
            task_id=str(task.id),
            user_id=str(user_id),
            type=request.type.value,
            mode=request.mode.value,
            credits_used=cost,
            direct_dispatch=worker_name is not None,
        )

        if worker_name is not None:
            self.services.launcher.launch_detached(
                task.id, worker_name, build_launch_payload(task), on_rejected=self._on_launch_rejected
            )

        return CreateTaskResult(
            task_id=task.id,
            work_id=work.id,
            credits_used=cost,
            credits_remaining=balance,
        )

    async def _on_launch_rejected(self, task_id: UUID, error: str) -> None:
        await self.services.reconciler.fail_task(
            task_id, f"Worker launch rejected: {error}", expected=[TaskState.HANDED_OFF]
        )

    async def get_progress(self, task_id: UUID, user_id: UUID) -> TaskProgress:
        """Report a task's progress to its owner.

        Raises:
            TaskNotFoundError: Task missing or owned by another user
        """
        async with await self.services.uow_factory() as uow:
            task = await uow.tasks.get_for_user(task_id, user_id)
            if task is None:
                raise TaskNotFoundError(f"Task {task_id} not found")
            work = await uow.works.get_by_task_id(task_id)

        images = None
        if task.state == TaskState.COMPLETED:
            images = (work.images if work else None) or task.state_data.get("final_images") or []

        return TaskProgress(
            task_id=task.id,
            state=task.state,
            status=task.status,
            progress_percent=task.progress_percent,
            message=STATE_MESSAGES[task.state],
            work_id=work.id if work else None,
            images=images,
            error=(task.error_message or "Generation failed")
            if task.state == TaskState.FAILED
            else None,
        )

    async def cancel_task(self, task_id: UUID, user_id: UUID) -> CancelOutcome:
        """Cancel a non-terminal task and refund its credits.

        Returns:
            CancelOutcome.OK, NOT_FOUND, or NOT_CANCELABLE for terminal tasks
        """
        cancelled = False
        async with await self.services.uow_factory() as uow:
            task = await uow.tasks.get_for_user(task_id, user_id)
            if task is None:
                return CancelOutcome.NOT_FOUND

            # The task may advance between read and write; follow it a few times
            for _ in range(3):
                if task is None or task.is_terminal:
                    break
                if await uow.tasks.compare_and_set_state(task.id, task.state, TaskState.CANCELLED):
                    cancelled = True
                    break
                task = await uow.tasks.get_by_id(task_id)

            if cancelled:
                await uow.works.set_status(task_id, WorkStatus.CANCELLED)

        if not cancelled:
            return CancelOutcome.NOT_CANCELABLE

        try:
            self.services.launcher.cancel(task_id)
        except Exception as e:
            logger.warning("worker.launch.cancel_failed", task_id=str(task_id), error=str(e))

        logger.info("task.cancelled", task_id=str(task_id), user_id=str(user_id))
        await self.services.reconciler.refund(task_id, "Task cancelled")
        return CancelOutcome.OK
