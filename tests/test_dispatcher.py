"""Task dispatcher tests.

Tests focus on:
- Creation: validation, pricing, debit, task + work written together
- Direct-dispatch types launched without waiting, rejection failing the task
- Pose variations derived from a completed work
- Active-task cap and insufficient credits leaving nothing behind
- Progress reports and cancellation with refund
"""

from uuid import uuid4

import pytest

from pixelforge.models.scene import Scene
from pixelforge.models.task import TaskMode, TaskState, TaskStatus, TaskType
from pixelforge.models.user import User
from pixelforge.models.work import Work, WorkStatus
from pixelforge.services.dispatcher import (
    CancelOutcome,
    CreateTaskRequest,
    TaskDispatcher,
    compute_cost,
    pose_variation_inputs,
)
from pixelforge.services.exceptions import (
    InsufficientCreditsError,
    TaskNotFoundError,
    TaskValidationError,
    TooManyActiveTasksError,
)


@pytest.fixture
def dispatcher(services) -> TaskDispatcher:
    return TaskDispatcher(services)


def photography_request(**overrides) -> CreateTaskRequest:
    values = {
        "type": TaskType.PHOTOGRAPHY,
        "images": ["uploads/shirt.png", "uploads/pants.png"],
        "count": 2,
        "parameters": {"gender": "female"},
    }
    values.update(overrides)
    return CreateTaskRequest(**values)


async def _count_tasks(services, user_id) -> int:
    async with await services.uow_factory() as uow:
        return len(await uow.tasks.list_by_user(user_id))


@pytest.mark.asyncio
async def test_create_photography_task(dispatcher, services, user, worker_service):
    result = await dispatcher.create_task(user.id, photography_request())

    assert result.credits_used == 2
    assert result.credits_remaining == 18

    async with await services.uow_factory() as uow:
        task = await uow.tasks.get_by_id(result.task_id)
        work = await uow.works.get_by_id(result.work_id)
        transactions = await uow.credit_transactions.list_by_task(task.id)

    assert task.state == TaskState.PENDING
    assert task.status == TaskStatus.PENDING
    assert task.credits_deducted is True
    assert task.params["images"] == ["uploads/shirt.png", "uploads/pants.png"]
    assert work.task_id == task.id
    assert work.status == WorkStatus.PENDING
    assert [t.amount for t in transactions] == [-2]
    # Swept types wait for the scheduler
    await services.launcher.drain()
    assert worker_service.requests == []


@pytest.mark.asyncio
async def test_create_personal_fitting_launches_worker(dispatcher, services, user, worker_service):
    result = await dispatcher.create_task(
        user.id,
        CreateTaskRequest(
            type=TaskType.PERSONAL_FITTING,
            user_photo="uploads/me.png",
            parameters={"clothing_description": "a red linen suit"},
        ),
    )
    await services.launcher.drain()

    async with await services.uow_factory() as uow:
        task = await uow.tasks.get_by_id(result.task_id)
        work = await uow.works.get_by_id(result.work_id)

    assert task.state == TaskState.HANDED_OFF
    assert task.worker_name == "personal-worker"
    assert task.params["images"] == ["uploads/me.png"]
    assert work.status == WorkStatus.PROCESSING
    [request] = worker_service.requests
    assert request.url.path == "/internal/workers/personal-worker"
    assert request.headers["Idempotency-Key"] == str(task.id)


@pytest.mark.asyncio
async def test_direct_launch_rejection_fails_and_refunds(dispatcher, services, user, worker_service):
    worker_service.status_code = 500

    result = await dispatcher.create_task(
        user.id,
        CreateTaskRequest(
            type=TaskType.TRAVEL,
            user_photo="uploads/me.png",
            parameters={"destination": "Kyoto"},
        ),
    )
    await services.launcher.drain()

    async with await services.uow_factory() as uow:
        task = await uow.tasks.get_by_id(result.task_id)
        balance = await uow.users.get_balance(user.id)

    assert task.state == TaskState.FAILED
    assert task.error_message.startswith("Worker launch rejected")
    assert balance == 20


@pytest.mark.asyncio
async def test_direct_launch_timeout_leaves_task_handed_off(
    dispatcher, services, user, worker_service
):
    worker_service.timeout = True

    result = await dispatcher.create_task(
        user.id,
        CreateTaskRequest(
            type=TaskType.TRAVEL, user_photo="uploads/me.png", parameters={"destination": "Rome"}
        ),
    )
    await services.launcher.drain()

    async with await services.uow_factory() as uow:
        task = await uow.tasks.get_by_id(result.task_id)
    assert task.state == TaskState.HANDED_OFF


@pytest.mark.asyncio
async def test_scene_pricing(dispatcher, services, user):
    async with await services.uow_factory() as uow:
        await uow.scenes.add(Scene(id="studio", name="Studio", base_credits=2, credits_per_image=3))

    result = await dispatcher.create_task(user.id, photography_request(scene_id="studio"))

    assert result.credits_used == 8
    assert result.credits_remaining == 12


@pytest.mark.asyncio
async def test_pose_variation(dispatcher, services, user):
    generated = "https://cdn.test/generated/photography/abc/1.png"
    async with await services.uow_factory() as uow:
        await uow.scenes.add(Scene(id="studio", name="Studio", base_credits=1, credits_per_image=2))
        reference = await uow.works.add(
            Work(
                task_id=uuid4(),
                user_id=user.id,
                type="photography",
                status=WorkStatus.COMPLETED,
                images=[{"url": generated, "width": 1024, "height": 1024}],
                original_images=["uploads/shirt.png", generated],
                scene_id="studio",
            )
        )

    result = await dispatcher.create_task(
        user.id,
        CreateTaskRequest(
            type=TaskType.PHOTOGRAPHY,
            mode=TaskMode.POSE_VARIATION,
            reference_work_id=reference.id,
            pose_description="arms crossed, looking left",
            count=2,
        ),
    )

    # floor((1 + 2 * 2) * 0.8)
    assert result.credits_used == 4
    async with await services.uow_factory() as uow:
        task = await uow.tasks.get_by_id(result.task_id)
        work = await uow.works.get_by_id(result.work_id)

    assert task.mode == TaskMode.POSE_VARIATION
    assert task.params["images"] == [generated, "uploads/shirt.png"]
    assert task.params["scene_id"] == "studio"
    assert work.reference_work_id == reference.id
    assert work.variation_type == "pose"


@pytest.mark.asyncio
async def test_pose_variation_requires_completed_reference(dispatcher, services, user):
    async with await services.uow_factory() as uow:
        reference = await uow.works.add(
            Work(task_id=uuid4(), user_id=user.id, type="photography", status=WorkStatus.PROCESSING)
        )

    with pytest.raises(TaskValidationError, match="not completed"):
        await dispatcher.create_task(
            user.id,
            CreateTaskRequest(
                type=TaskType.PHOTOGRAPHY,
                mode=TaskMode.POSE_VARIATION,
                reference_work_id=reference.id,
                pose_description="sitting",
            ),
        )


@pytest.mark.parametrize(
    "request_kwargs, message",
    [
        ({"type": TaskType.PHOTOGRAPHY, "images": []}, "clothing images"),
        ({"type": TaskType.FITTING, "images": ["uploads/a.png"], "count": 4}, "count"),
        ({"type": TaskType.TRAVEL, "user_photo": "uploads/me.png"}, "destination"),
        ({"type": TaskType.PERSONAL_FITTING, "images": ["uploads/a.png"]}, "user photo"),
        (
            {
                "type": TaskType.TRAVEL,
                "mode": TaskMode.POSE_VARIATION,
                "reference_work_id": uuid4(),
                "pose_description": "jump",
            },
            "not available",
        ),
        (
            {"type": TaskType.PHOTOGRAPHY, "mode": TaskMode.POSE_VARIATION, "reference_work_id": uuid4()},
            "pose description",
        ),
    ],
)
@pytest.mark.asyncio
async def test_invalid_requests_write_nothing(dispatcher, services, user, request_kwargs, message):
    with pytest.raises(TaskValidationError, match=message):
        await dispatcher.create_task(user.id, CreateTaskRequest(**request_kwargs))

    assert await _count_tasks(services, user.id) == 0


@pytest.mark.asyncio
async def test_unknown_scene_rejected(dispatcher, user):
    with pytest.raises(TaskValidationError, match="Unknown scene"):
        await dispatcher.create_task(user.id, photography_request(scene_id="moon"))


@pytest.mark.asyncio
async def test_unknown_user_rejected(dispatcher):
    with pytest.raises(TaskValidationError, match="Unknown user"):
        await dispatcher.create_task(uuid4(), photography_request())


@pytest.mark.asyncio
async def test_insufficient_credits_writes_nothing(dispatcher, services):
    async with await services.uow_factory() as uow:
        poor = await uow.users.add(User(credits=1))

    with pytest.raises(InsufficientCreditsError) as exc_info:
        await dispatcher.create_task(poor.id, photography_request())

    assert (exc_info.value.required, exc_info.value.available) == (2, 1)
    assert await _count_tasks(services, poor.id) == 0
    async with await services.uow_factory() as uow:
        assert await uow.users.get_balance(poor.id) == 1


@pytest.mark.asyncio
async def test_active_task_cap(dispatcher, services, user):
    for _ in range(3):
        await dispatcher.create_task(user.id, photography_request())

    with pytest.raises(TooManyActiveTasksError):
        await dispatcher.create_task(user.id, photography_request())

    assert await _count_tasks(services, user.id) == 3
    async with await services.uow_factory() as uow:
        assert await uow.users.get_balance(user.id) == 14


@pytest.mark.asyncio
async def test_finished_tasks_do_not_count_toward_cap(dispatcher, services, user, make_task):
    for _ in range(3):
        await make_task(user, state=TaskState.COMPLETED)

    result = await dispatcher.create_task(user.id, photography_request())

    assert result.task_id


@pytest.mark.asyncio
async def test_progress_of_pending_task(dispatcher, user):
    created = await dispatcher.create_task(user.id, photography_request())

    progress = await dispatcher.get_progress(created.task_id, user.id)

    assert progress.state == TaskState.PENDING
    assert progress.progress_percent == 10
    assert progress.message == "Queued, waiting to start..."
    assert progress.work_id == created.work_id
    assert progress.images is None
    assert progress.error is None


@pytest.mark.asyncio
async def test_progress_of_completed_and_failed_tasks(dispatcher, services, user, make_task):
    done = await make_task(user, state=TaskState.COMPLETED)
    image = {"url": "https://cdn.test/generated/photography/x/1.png", "width": 1024, "height": 1024}
    async with await services.uow_factory() as uow:
        await uow.works.mark_completed(done.id, [image])
    failed = await make_task(user, state=TaskState.FAILED, error_message="AI generation failed: nsfw")

    done_progress = await dispatcher.get_progress(done.id, user.id)
    failed_progress = await dispatcher.get_progress(failed.id, user.id)

    assert done_progress.progress_percent == 100
    assert done_progress.images == [image]
    assert failed_progress.status == TaskStatus.FAILED
    assert failed_progress.error == "AI generation failed: nsfw"


@pytest.mark.asyncio
async def test_progress_hidden_from_other_users(dispatcher, services, user):
    created = await dispatcher.create_task(user.id, photography_request())

    with pytest.raises(TaskNotFoundError):
        await dispatcher.get_progress(created.task_id, uuid4())


@pytest.mark.asyncio
async def test_cancel_refunds_once(dispatcher, services, user):
    created = await dispatcher.create_task(user.id, photography_request())

    first = await dispatcher.cancel_task(created.task_id, user.id)
    second = await dispatcher.cancel_task(created.task_id, user.id)

    assert first == CancelOutcome.OK
    assert second == CancelOutcome.NOT_CANCELABLE
    async with await services.uow_factory() as uow:
        task = await uow.tasks.get_by_id(created.task_id)
        work = await uow.works.get_by_id(created.work_id)
        balance = await uow.users.get_balance(user.id)

    assert task.state == TaskState.CANCELLED
    assert task.cancelled_at is not None
    assert task.credits_refunded is True
    assert work.status == WorkStatus.CANCELLED
    assert balance == 20


@pytest.mark.asyncio
async def test_cancel_unknown_or_foreign_task(dispatcher, user):
    created = await dispatcher.create_task(user.id, photography_request())

    assert await dispatcher.cancel_task(uuid4(), user.id) == CancelOutcome.NOT_FOUND
    assert await dispatcher.cancel_task(created.task_id, uuid4()) == CancelOutcome.NOT_FOUND


@pytest.mark.asyncio
async def test_cancel_completed_task_refused(dispatcher, user, make_task):
    task = await make_task(user, state=TaskState.COMPLETED)

    assert await dispatcher.cancel_task(task.id, user.id) == CancelOutcome.NOT_CANCELABLE


def test_compute_cost_without_scene_ignores_discount():
    request = CreateTaskRequest(
        type=TaskType.FITTING,
        mode=TaskMode.POSE_VARIATION,
        reference_work_id=uuid4(),
        pose_description="walking",
        count=3,
    )

    assert compute_cost(request, None, {"fitting": 2}, 0.8) == 6


def test_pose_variation_inputs_drop_generated_originals():
    work = Work(
        task_id=uuid4(),
        user_id=uuid4(),
        type="fitting",
        images=[{"url": "https://cdn.test/generated/fitting/t/1.png"}],
        original_images=[
            "https://cdn.test/generated/fitting/old/1.png",
            "uploads/dress.png",
        ],
    )

    assert pose_variation_inputs(work) == [
        "https://cdn.test/generated/fitting/t/1.png",
        "uploads/dress.png",
    ]
