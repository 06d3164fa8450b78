"""Credit ledger and reconciler tests.

Tests focus on:
- Debits never drive a balance negative and are logged
- Refunds happen exactly once per task, whoever asks
- Failing a task fails its work and refunds in one step
"""

import pytest

from pixelforge.models.credit_transaction import CreditReason
from pixelforge.models.task import TaskState
from pixelforge.models.work import WorkStatus
from pixelforge.services.exceptions import InsufficientCreditsError


@pytest.mark.asyncio
async def test_debit_logs_transaction(services, user):
    async with await services.uow_factory() as uow:
        balance = await services.ledger.debit(uow, user.id, 7, description="photography (2 images)")

    assert balance == 13
    async with await services.uow_factory() as uow:
        transactions = await uow.credit_transactions.list_by_user(user.id)
        stored = await uow.users.get_by_id(user.id)

    assert len(transactions) == 1
    assert transactions[0].amount == -7
    assert transactions[0].reason == CreditReason.TASK_DEBIT
    assert transactions[0].balance_after == 13
    assert stored.total_consumed_credits == 7


@pytest.mark.asyncio
async def test_debit_insufficient_balance_raises(services, user):
    with pytest.raises(InsufficientCreditsError) as exc_info:
        async with await services.uow_factory() as uow:
            await services.ledger.debit(uow, user.id, 21)

    assert exc_info.value.required == 21
    assert exc_info.value.available == 20
    async with await services.uow_factory() as uow:
        assert await uow.users.get_balance(user.id) == 20


@pytest.mark.asyncio
async def test_refund_happens_once(services, user, make_task):
    task = await make_task(user, state=TaskState.FAILED, credits_cost=4)

    first = await services.reconciler.refund(task.id, "AI generation failed")
    second = await services.reconciler.refund(task.id, "AI generation failed")

    assert (first, second) == (True, False)
    async with await services.uow_factory() as uow:
        assert await uow.users.get_balance(user.id) == 20
        refunds = await uow.credit_transactions.list_by_task(task.id, reason=CreditReason.TASK_REFUND)
        stored = await uow.tasks.get_by_id(task.id)

    assert len(refunds) == 1
    assert refunds[0].amount == 4
    assert stored.credits_refunded is True


@pytest.mark.asyncio
async def test_cancel_refund_then_worker_failure_credits_once(services, user, make_task):
    """A worker failing after the user cancelled does not refund a second time."""
    task = await make_task(user, state=TaskState.CANCELLED, credits_cost=5)

    assert await services.reconciler.refund(task.id, "Task cancelled") is True

    async with await services.uow_factory() as uow:
        assert await uow.tasks.write_worker_result(task.id, TaskState.FAILED, error_message="boom")
    assert await services.reconciler.refund(task.id, "boom") is False

    async with await services.uow_factory() as uow:
        assert await uow.users.get_balance(user.id) == 20


@pytest.mark.asyncio
async def test_refund_skips_task_never_charged(services, user, make_task):
    task = await make_task(user, state=TaskState.FAILED, credits_cost=4, credits_deducted=False)

    assert await services.reconciler.refund(task.id, "failed") is False

    async with await services.uow_factory() as uow:
        stored = await uow.tasks.get_by_id(task.id)
        assert await uow.users.get_balance(user.id) == 20
    assert stored.credits_refunded is False


@pytest.mark.asyncio
async def test_refund_errors_are_swallowed(services, user, make_task, monkeypatch):
    task = await make_task(user, state=TaskState.FAILED)

    async def broken_credit(*args, **kwargs):
        raise RuntimeError("ledger unavailable")

    monkeypatch.setattr(services.ledger, "credit", broken_credit)

    assert await services.reconciler.refund(task.id, "failed") is False
    # The flip rolled back with the failed credit, so a later refund can still succeed
    async with await services.uow_factory() as uow:
        stored = await uow.tasks.get_by_id(task.id)
    assert stored.credits_refunded is False


@pytest.mark.asyncio
async def test_fail_task_fails_work_and_refunds(services, user, make_task):
    task = await make_task(user, state=TaskState.DOWNLOADING, credits_cost=3)

    moved = await services.reconciler.fail_task(task.id, "Unsupported image")

    assert moved is True
    async with await services.uow_factory() as uow:
        stored = await uow.tasks.get_by_id(task.id)
        work = await uow.works.get_by_task_id(task.id)
        balance = await uow.users.get_balance(user.id)

    assert stored.state == TaskState.FAILED
    assert stored.error_message == "Unsupported image"
    assert work.status == WorkStatus.FAILED
    assert work.error_message == "Unsupported image"
    assert balance == 20


@pytest.mark.asyncio
async def test_fail_task_leaves_terminal_task_alone(services, user, make_task):
    task = await make_task(user, state=TaskState.COMPLETED)

    assert await services.reconciler.fail_task(task.id, "late failure") is False
    async with await services.uow_factory() as uow:
        stored = await uow.tasks.get_by_id(task.id)
        balance = await uow.users.get_balance(user.id)

    assert stored.state == TaskState.COMPLETED
    assert balance == 18
