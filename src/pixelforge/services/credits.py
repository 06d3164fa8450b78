"""Credit ledger and reconciler.

The ledger is the only writer of user balances. The reconciler returns the
credits of a failed or cancelled task exactly once, keyed on the task's
credits_refunded flag.
"""

from collections.abc import Collection
from typing import Optional
from uuid import UUID

import structlog

from pixelforge.models.credit_transaction import CreditReason, CreditTransaction
from pixelforge.models.task import ACTIVE_STATES, TaskState
from pixelforge.models.work import WorkStatus
from pixelforge.services.exceptions import InsufficientCreditsError
from pixelforge.uow import UnitOfWork, UoWFactory

logger = structlog.get_logger()


class CreditLedger:
    """Balance changes plus their append-only transaction log.

    Both operations run inside the caller's unit of work so the balance change,
    the log row and whatever task write motivated them commit together.
    """

    async def debit(
        self,
        uow: UnitOfWork,
        user_id: UUID,
        amount: int,
        reason: CreditReason = CreditReason.TASK_DEBIT,
        task_id: Optional[UUID] = None,
        description: Optional[str] = None,
    ) -> int:
        """Charge a user.

        Returns:
            Balance after the debit

        Raises:
            InsufficientCreditsError: Balance is lower than amount
        """
        if not await uow.users.debit(user_id, amount):
            available = await uow.users.get_balance(user_id)
            raise InsufficientCreditsError(required=amount, available=available)

        balance = await uow.users.get_balance(user_id)
        await uow.credit_transactions.add(
            CreditTransaction(
                user_id=user_id,
                amount=-amount,
                reason=reason,
                description=description,
                related_task_id=task_id,
                balance_after=balance,
            )
        )
        logger.info(
            "credits.debited",
            user_id=str(user_id),
            amount=amount,
            task_id=str(task_id) if task_id else None,
            balance=balance,
        )
        return balance

    async def credit(
        self,
        uow: UnitOfWork,
        user_id: UUID,
        amount: int,
        reason: CreditReason,
        task_id: Optional[UUID] = None,
        description: Optional[str] = None,
    ) -> int:
        """Add credits to a user.

        Refunds also roll back total_consumed_credits.

        Returns:
            Balance after the credit
        """
        consumed_delta = -amount if reason == CreditReason.TASK_REFUND else 0
        await uow.users.credit(user_id, amount, consumed_delta=consumed_delta)

        balance = await uow.users.get_balance(user_id)
        await uow.credit_transactions.add(
            CreditTransaction(
                user_id=user_id,
                amount=amount,
                reason=reason,
                description=description,
                related_task_id=task_id,
                balance_after=balance,
            )
        )
        logger.info(
            "credits.credited",
            user_id=str(user_id),
            amount=amount,
            reason=reason.value,
            balance=balance,
        )
        return balance


class Reconciler:
    """Brings credits back in line with terminal task outcomes."""

    def __init__(self, uow_factory: UoWFactory, ledger: CreditLedger):
        self.uow_factory = uow_factory
        self.ledger = ledger

    async def refund(self, task_id: UUID, reason: str) -> bool:
        """Refund a task's credits once.

        The credits_refunded flag flips with a conditional UPDATE, and the user
        is credited only by the call that flipped it. Errors are logged and
        swallowed so a refund problem never hides the task failure.

        Args:
            task_id: Failed or cancelled task
            reason: Human-readable reason stored on the transaction

        Returns:
            True if this call refunded the task
        """
        try:
            async with await self.uow_factory() as uow:
                task = await uow.tasks.get_by_id(task_id)
                if task is None:
                    logger.warning("credits.refund_skipped", task_id=str(task_id), reason="not_found")
                    return False

                if not await uow.tasks.mark_refunded(task_id):
                    logger.debug(
                        "credits.refund_skipped",
                        task_id=str(task_id),
                        reason="already_refunded_or_not_deducted",
                    )
                    return False

                if task.credits_cost > 0:
                    await self.ledger.credit(
                        uow,
                        task.user_id,
                        task.credits_cost,
                        CreditReason.TASK_REFUND,
                        task_id=task_id,
                        description=reason[:255],
                    )

            logger.info(
                "credits.refunded",
                task_id=str(task_id),
                user_id=str(task.user_id),
                amount=task.credits_cost,
                reason=reason,
            )
            return True

        except Exception as e:
            logger.error(
                "credits.refund_failed",
                task_id=str(task_id),
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            return False

    async def fail_task(
        self,
        task_id: UUID,
        error_message: str,
        expected: Collection[TaskState] = ACTIVE_STATES,
    ) -> bool:
        """Fail a task and its work, then refund.

        The failure commits before the refund starts, so a refund error leaves
        the task failed.

        Args:
            task_id: Task to fail
            error_message: Message shown to the user
            expected: States the task may be failed from

        Returns:
            True if this call moved the task to failed
        """
        async with await self.uow_factory() as uow:
            moved = await uow.tasks.mark_failed(task_id, error_message, expected=expected)
            if moved:
                await uow.works.set_status(task_id, WorkStatus.FAILED, error_message=error_message)

        if moved:
            logger.warning("task.failed", task_id=str(task_id), error=error_message)
            await self.refund(task_id, error_message)
        else:
            logger.info("task.fail_skipped", task_id=str(task_id), reason="state_changed")
        return moved

    async def settle_failed(self, task_id: UUID, error_message: str) -> None:
        """Finish a task that already reached failed: mark its work and refund."""
        async with await self.uow_factory() as uow:
            await uow.works.set_status(task_id, WorkStatus.FAILED, error_message=error_message)
        logger.warning("task.failed", task_id=str(task_id), error=error_message)
        await self.refund(task_id, error_message)
