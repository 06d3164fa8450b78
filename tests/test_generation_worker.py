"""Isolated generation worker tests.

Tests focus on:
- One run per task (duplicate launches exit after the claim)
- Terminal writes: completed with images, failed with message and refund
- The hard deadline
- The worker's result winning over a concurrent cancellation
"""

import pytest

from pixelforge.models.credit_transaction import CreditReason
from pixelforge.models.task import TaskState, TaskType
from pixelforge.models.work import WorkStatus
from pixelforge.services.exceptions import ContentPolicyError
from pixelforge.workers.generation_worker import run_generation_worker


async def _load(services, task_id):
    async with await services.uow_factory() as uow:
        task = await uow.tasks.get_by_id(task_id)
        work = await uow.works.get_by_task_id(task_id)
        balance = await uow.users.get_balance(task.user_id)
    return task, work, balance


@pytest.mark.asyncio
async def test_worker_completes_task(services, user, make_task):
    task = await make_task(user, state=TaskState.HANDED_OFF)

    outcome = await run_generation_worker(task.id, "photography-worker", services)

    assert outcome == "completed"
    stored, work, balance = await _load(services, task.id)
    assert stored.state == TaskState.COMPLETED
    assert stored.worker_started_at is not None
    assert len(stored.state_data["final_images"]) == 2
    assert work.status == WorkStatus.COMPLETED
    assert work.images[1]["url"] == f"https://cdn.test/generated/photography/{task.id}/2.png"
    assert work.ai_prompt
    assert services.ai.generate_calls[0]["count"] == 2
    assert balance == 18


@pytest.mark.asyncio
async def test_worker_reuses_scheduler_outputs(services, user, make_task):
    inline = {"ref": "uploads/a.png", "base64_data": "AAAA", "mime_type": "image/png", "size": 4}
    task = await make_task(
        user,
        state=TaskState.HANDED_OFF,
        state_data={"prompt": "precomputed prompt", "downloaded_images": [inline]},
    )

    await run_generation_worker(task.id, "photography-worker", services)

    assert services.storage.downloads == []
    assert services.ai.generate_calls[0]["prompt"] == "precomputed prompt"
    assert services.ai.generate_calls[0]["images"] == [inline]


@pytest.mark.asyncio
async def test_duplicate_launch_runs_once(services, user, make_task):
    task = await make_task(user, state=TaskState.HANDED_OFF, task_type=TaskType.TRAVEL)

    first = await run_generation_worker(task.id, "personal-worker", services)
    second = await run_generation_worker(task.id, "personal-worker", services)

    assert (first, second) == ("completed", "skipped")
    assert len(services.ai.generate_calls) == 1


@pytest.mark.asyncio
async def test_worker_failure_writes_failed_and_refunds(services, user, make_task):
    task = await make_task(user, state=TaskState.HANDED_OFF, credits_cost=3)
    services.ai.error = ContentPolicyError("Content policy violation: nsfw")

    outcome = await run_generation_worker(task.id, "photography-worker", services)

    assert outcome == "failed"
    stored, work, balance = await _load(services, task.id)
    assert stored.state == TaskState.FAILED
    assert stored.error_message == "Content policy violation: nsfw"
    assert work.status == WorkStatus.FAILED
    assert balance == 20

    async with await services.uow_factory() as uow:
        refunds = await uow.credit_transactions.list_by_task(task.id, reason=CreditReason.TASK_REFUND)
    assert len(refunds) == 1


@pytest.mark.asyncio
async def test_worker_deadline(services, user, make_task):
    task = await make_task(user, state=TaskState.HANDED_OFF)
    services.settings.worker_deadline_seconds = 0.05
    services.ai.delay = 1

    outcome = await run_generation_worker(task.id, "photography-worker", services)

    assert outcome == "failed"
    stored, _, balance = await _load(services, task.id)
    assert stored.state == TaskState.FAILED
    assert stored.error_message.startswith("Task processing timed out after")
    assert balance == 20


@pytest.mark.asyncio
async def test_worker_result_wins_over_cancellation(services, user, make_task, monkeypatch):
    task = await make_task(user, state=TaskState.HANDED_OFF)
    generate = services.ai.generate

    async def cancel_then_generate(*args, **kwargs):
        async with await services.uow_factory() as uow:
            await uow.tasks.compare_and_set_state(task.id, TaskState.HANDED_OFF, TaskState.CANCELLED)
        return await generate(*args, **kwargs)

    monkeypatch.setattr(services.ai, "generate", cancel_then_generate)

    outcome = await run_generation_worker(task.id, "photography-worker", services)

    assert outcome == "completed"
    stored, work, _ = await _load(services, task.id)
    assert stored.state == TaskState.COMPLETED
    assert work.status == WorkStatus.COMPLETED


@pytest.mark.asyncio
async def test_worker_skips_finished_task(services, user, make_task):
    task = await make_task(user, state=TaskState.COMPLETED)

    assert await run_generation_worker(task.id, "photography-worker", services) == "skipped"
    assert services.ai.generate_calls == []
