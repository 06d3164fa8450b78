"""Task repository for PixelForge backend.

Provides data access methods for Task entities. Every state change is a single
conditional UPDATE (compare-and-swap on the current state) so that overlapping
sweeps, workers and cancellations cannot both advance the same task.
"""

from collections.abc import Collection
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pixelforge.core.timezone import utc_now
from pixelforge.models.task import (
    ACTIVE_STATES,
    InvalidStateTransition,
    Task,
    TaskState,
    TaskStatus,
    can_transition,
    status_for_state,
)


@dataclass
class RetryOutcome:
    """Result of recording a step failure."""

    retry_count: int
    failed: bool
    error_message: str


def _as_states(expected: TaskState | Collection[TaskState]) -> list[TaskState]:
    if isinstance(expected, TaskState):
        return [expected]
    return list(expected)


class TaskRepository:
    """Repository for Task entities.

    Selection queries use FOR UPDATE SKIP LOCKED on PostgreSQL so concurrent
    schedulers receive non-overlapping batches.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_id(self, task_id: UUID) -> Task | None:
        """Retrieve task by UUID, always reloading from the database.

        Args:
            task_id: Task's unique identifier

        Returns:
            Task if found, None otherwise
        """
        result = await self.session.execute(
            select(Task)
            .where(Task.id == task_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_for_user(self, task_id: UUID, user_id: UUID) -> Task | None:
        """Retrieve task only if it belongs to the given user."""
        result = await self.session.execute(
            select(Task)
            .where(Task.id == task_id, Task.user_id == user_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def add(self, task: Task) -> Task:
        """Persist new task to database.

        Args:
            task: Task entity to persist

        Returns:
            Persisted task
        """
        self.session.add(task)
        await self.session.flush()
        return task

    async def list_by_state(
        self, state: TaskState, limit: int = 10, max_retries: int = 3
    ) -> list[Task]:
        """Retrieve tasks in a state that are still below the retry ceiling.

        Query explanation:
        - WHERE state = :state AND retry_count < :max_retries
        - ORDER BY created_at ASC: Process oldest first
        - LIMIT: Batch size for one sweep
        - FOR UPDATE SKIP LOCKED: Skip rows another sweep is holding

        Args:
            state: State to select
            limit: Maximum number of tasks to retrieve (default: 10)
            max_retries: Retry ceiling (default: 3)

        Returns:
            List of tasks, oldest first
        """
        result = await self.session.execute(
            select(Task)
            .where(Task.state == state, Task.retry_count < max_retries)  # type: ignore[arg-type]
            .order_by(Task.created_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def list_stale_handoffs(self, older_than: datetime, limit: int = 50) -> list[Task]:
        """Retrieve handed-off tasks whose worker has not written for too long.

        Args:
            older_than: Tasks last updated before this instant are stale
            limit: Maximum number of tasks to retrieve

        Returns:
            List of stale tasks, oldest first
        """
        result = await self.session.execute(
            select(Task)
            .where(
                Task.state == TaskState.HANDED_OFF,  # type: ignore[arg-type]
                Task.updated_at < older_than,  # type: ignore[arg-type]
            )
            .order_by(Task.updated_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())

    async def count_active_by_user(self, user_id: UUID) -> int:
        """Count the user's tasks that have not reached a terminal state."""
        result = await self.session.execute(
            select(func.count(Task.id)).where(  # type: ignore[arg-type]
                Task.user_id == user_id,  # type: ignore[arg-type]
                Task.state.in_(list(ACTIVE_STATES)),  # type: ignore[attr-defined]
            )
        )
        return result.scalar() or 0

    async def list_by_user(self, user_id: UUID, limit: int = 20, offset: int = 0) -> list[Task]:
        """Retrieve the user's tasks, newest first."""
        result = await self.session.execute(
            select(Task)
            .where(Task.user_id == user_id)  # type: ignore[arg-type]
            .order_by(Task.created_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def compare_and_set_state(
        self,
        task_id: UUID,
        expected: TaskState | Collection[TaskState],
        target: TaskState,
        state_data: dict | None = None,
        **fields: Any,
    ) -> bool:
        """Move a task to target only if it is still in one of the expected states.

        state, status, state_data and timestamps are written by one UPDATE.
        state_data, when given, replaces the stored object as a whole.

        Args:
            task_id: Task to update
            expected: Current state(s) the task must be in
            target: New state
            state_data: Full replacement state_data (None keeps the stored value)
            **fields: Additional columns to set in the same UPDATE

        Returns:
            True if the task was updated, False if it had already moved

        Raises:
            InvalidStateTransition: If no expected state may move to target
        """
        expected_states = _as_states(expected)
        allowed = [s for s in expected_states if can_transition(s, target)]
        if not allowed:
            raise InvalidStateTransition(
                f"Cannot move task to {target.value} from "
                f"{', '.join(s.value for s in expected_states)}."
            )
        return await self._write_state(task_id, allowed, target, state_data, fields)

    async def write_worker_result(
        self, task_id: UUID, target: TaskState, state_data: dict | None = None, **fields: Any
    ) -> bool:
        """Terminal write of an isolated worker.

        The worker owns the task once handed off: its write wins over a
        concurrent cancellation, but never over another completed/failed write.

        Args:
            task_id: Task the worker ran
            target: COMPLETED or FAILED
            state_data: Full replacement state_data
            **fields: Additional columns to set in the same UPDATE

        Returns:
            True if the task was updated
        """
        if target == TaskState.COMPLETED:
            expected = [TaskState.HANDED_OFF, TaskState.CANCELLED]
        elif target == TaskState.FAILED:
            expected = [*ACTIVE_STATES, TaskState.CANCELLED]
        else:
            raise InvalidStateTransition(f"Workers cannot write {target.value}.")
        return await self._write_state(task_id, expected, target, state_data, fields)

    async def _write_state(
        self,
        task_id: UUID,
        expected: list[TaskState],
        target: TaskState,
        state_data: dict | None,
        fields: dict[str, Any],
    ) -> bool:
        now = utc_now()
        values: dict[str, Any] = {
            "state": target,
            "status": status_for_state(target),
            "state_started_at": now,
            "updated_at": now,
            "started_at": func.coalesce(Task.started_at, now),
            **fields,
        }
        if state_data is not None:
            values["state_data"] = dict(state_data)
        if target == TaskState.COMPLETED and "completed_at" not in values:
            values["completed_at"] = now
        if target == TaskState.CANCELLED and "cancelled_at" not in values:
            values["cancelled_at"] = now

        result = await self.session.execute(
            update(Task)
            .where(Task.id == task_id, Task.state.in_(expected))  # type: ignore[arg-type,attr-defined]
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def mark_failed(
        self,
        task_id: UUID,
        error_message: str,
        expected: TaskState | Collection[TaskState] = ACTIVE_STATES,
    ) -> bool:
        """Mark task as permanently failed with error message.

        Args:
            task_id: Task to update
            error_message: Error description (truncated to 1000 characters)
            expected: States the task may be failed from (default: any non-terminal)

        Returns:
            True if the task was moved to failed
        """
        return await self.compare_and_set_state(
            task_id,
            expected,
            TaskState.FAILED,
            error_message=error_message[:1000],
        )

    async def record_failure(
        self,
        task_id: UUID,
        expected: TaskState,
        error_message: str,
        max_retries: int,
    ) -> RetryOutcome | None:
        """Increment the retry counter and fail the task once it reaches the ceiling.

        Both UPDATEs run in the caller's transaction: the increment is evaluated
        by the database (no read-modify-write in Python) and the ceiling check
        reads the incremented value under the same row lock.

        Args:
            task_id: Task whose step failed
            expected: State the step ran in
            error_message: Error description (truncated to 1000 characters)
            max_retries: Retry ceiling

        Returns:
            RetryOutcome with the new count, or None if the task had already moved
        """
        now = utc_now()
        result = await self.session.execute(
            update(Task)
            .where(Task.id == task_id, Task.state == expected)  # type: ignore[arg-type]
            .values(
                retry_count=Task.retry_count + 1,
                last_error=error_message[:1000],
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:  # type: ignore[attr-defined]
            return None

        final_message = f"Failed after {max_retries} attempts: {error_message}"
        result = await self.session.execute(
            update(Task)
            .where(
                Task.id == task_id,  # type: ignore[arg-type]
                Task.state == expected,  # type: ignore[arg-type]
                Task.retry_count >= max_retries,  # type: ignore[arg-type]
            )
            .values(
                state=TaskState.FAILED,
                status=TaskStatus.FAILED,
                error_message=final_message[:1000],
                state_started_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        failed = result.rowcount == 1  # type: ignore[attr-defined]

        count_result = await self.session.execute(
            select(Task.retry_count).where(Task.id == task_id)  # type: ignore[arg-type]
        )
        return RetryOutcome(
            retry_count=count_result.scalar_one(),
            failed=failed,
            error_message=final_message if failed else error_message,
        )

    async def claim_for_worker(self, task_id: UUID, worker_name: str) -> bool:
        """Claim a task for one isolated worker run.

        Returns:
            True for the first claimant, False if a worker already started
        """
        now = utc_now()
        result = await self.session.execute(
            update(Task)
            .where(
                Task.id == task_id,  # type: ignore[arg-type]
                Task.worker_started_at.is_(None),  # type: ignore[union-attr]
                Task.state.in_(list(ACTIVE_STATES)),  # type: ignore[attr-defined]
            )
            .values(worker_started_at=now, worker_name=worker_name, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def update_state_data(self, task_id: UUID, expected: TaskState, state_data: dict) -> bool:
        """Replace state_data without changing state, only while the task is still in expected.

        Returns:
            True if the task was updated
        """
        result = await self.session.execute(
            update(Task)
            .where(Task.id == task_id, Task.state == expected)  # type: ignore[arg-type]
            .values(state_data=dict(state_data), updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def mark_refunded(self, task_id: UUID) -> bool:
        """Flip credits_refunded exactly once.

        Returns:
            True only for the call that performed the flip
        """
        result = await self.session.execute(
            update(Task)
            .where(
                Task.id == task_id,  # type: ignore[arg-type]
                Task.credits_deducted.is_(True),  # type: ignore[attr-defined]
                Task.credits_refunded.is_(False),  # type: ignore[attr-defined]
            )
            .values(credits_refunded=True, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]
