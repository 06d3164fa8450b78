"""Task entity - one generation request driven through the pipeline state machine.

The state machine lives here in one place: the state/status enums, the
transition table, the state -> status projection and the progress table.
Every caller (scheduler, worker, dispatcher, API) reads these tables instead
of keeping its own copy.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from pixelforge.core.timezone import utc_now


class TaskType(str, Enum):
    """Kind of generation request. Selects handler set and worker."""

    PHOTOGRAPHY = "photography"
    FITTING = "fitting"
    PERSONAL_FITTING = "personal-fitting"
    TRAVEL = "travel"


class TaskMode(str, Enum):
    """Generation mode within a task type."""

    NORMAL = "normal"
    POSE_VARIATION = "pose_variation"


class TaskState(str, Enum):
    """Pipeline state. Drives scheduling."""

    PENDING = "pending"
    DOWNLOADING = "downloading"
    DOWNLOADED = "downloaded"
    AI_CALLING = "ai_calling"
    HANDED_OFF = "handed_off"
    AI_PROCESSING = "ai_processing"
    AI_COMPLETED = "ai_completed"
    WATERMARKING = "watermarking"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskStatus(str, Enum):
    """Coarse user-facing projection of TaskState."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class InvalidStateTransition(Exception):
    """Raised when attempting a transition outside the transition table."""

    pass


TERMINAL_STATES = frozenset({TaskState.COMPLETED, TaskState.FAILED, TaskState.CANCELLED})

ACTIVE_STATES = frozenset(set(TaskState) - TERMINAL_STATES)

# Forward edges only. FAILED and CANCELLED are reachable from every non-terminal state.
TRANSITIONS: dict[TaskState, frozenset[TaskState]] = {
    TaskState.PENDING: frozenset({TaskState.DOWNLOADING, TaskState.HANDED_OFF}),
    TaskState.DOWNLOADING: frozenset({TaskState.DOWNLOADED}),
    TaskState.DOWNLOADED: frozenset({TaskState.AI_CALLING}),
    TaskState.AI_CALLING: frozenset({TaskState.HANDED_OFF, TaskState.AI_PROCESSING}),
    TaskState.HANDED_OFF: frozenset({TaskState.COMPLETED}),
    TaskState.AI_PROCESSING: frozenset({TaskState.AI_COMPLETED}),
    TaskState.AI_COMPLETED: frozenset({TaskState.WATERMARKING, TaskState.UPLOADING}),
    TaskState.WATERMARKING: frozenset({TaskState.UPLOADING}),
    TaskState.UPLOADING: frozenset({TaskState.COMPLETED}),
    TaskState.COMPLETED: frozenset(),
    TaskState.FAILED: frozenset(),
    TaskState.CANCELLED: frozenset(),
}

# States the scheduler sweeps, in sweep order. HANDED_OFF belongs to the worker.
SCHEDULED_STATES: tuple[TaskState, ...] = (
    TaskState.PENDING,
    TaskState.DOWNLOADING,
    TaskState.DOWNLOADED,
    TaskState.AI_CALLING,
    TaskState.AI_PROCESSING,
    TaskState.AI_COMPLETED,
    TaskState.WATERMARKING,
    TaskState.UPLOADING,
)

PROGRESS_PERCENT: dict[TaskState, int] = {
    TaskState.PENDING: 10,
    TaskState.DOWNLOADING: 20,
    TaskState.DOWNLOADED: 25,
    TaskState.AI_CALLING: 30,
    TaskState.HANDED_OFF: 50,
    TaskState.AI_PROCESSING: 70,
    TaskState.AI_COMPLETED: 85,
    TaskState.WATERMARKING: 90,
    TaskState.UPLOADING: 95,
    TaskState.COMPLETED: 100,
    TaskState.FAILED: 0,
    TaskState.CANCELLED: 0,
}

STATE_MESSAGES: dict[TaskState, str] = {
    TaskState.PENDING: "Queued, waiting to start...",
    TaskState.DOWNLOADING: "Downloading your images...",
    TaskState.DOWNLOADED: "Images downloaded",
    TaskState.AI_CALLING: "Starting the AI model...",
    TaskState.HANDED_OFF: "Generating...",
    TaskState.AI_PROCESSING: "Generating...",
    TaskState.AI_COMPLETED: "Generation finished",
    TaskState.WATERMARKING: "Adding watermark...",
    TaskState.UPLOADING: "Saving images...",
    TaskState.COMPLETED: "Done!",
    TaskState.FAILED: "Generation failed",
    TaskState.CANCELLED: "Cancelled",
}

WORKER_BY_TYPE: dict[TaskType, str] = {
    TaskType.PHOTOGRAPHY: "photography-worker",
    TaskType.FITTING: "fitting-worker",
    TaskType.PERSONAL_FITTING: "personal-worker",
    TaskType.TRAVEL: "personal-worker",
}

# Types whose worker is launched by the dispatcher itself instead of the ai_calling step.
DIRECT_DISPATCH_TYPES = frozenset({TaskType.PERSONAL_FITTING, TaskType.TRAVEL})


def status_for_state(state: TaskState) -> TaskStatus:
    """Project a pipeline state onto the user-facing status."""
    if state == TaskState.PENDING:
        return TaskStatus.PENDING
    if state == TaskState.COMPLETED:
        return TaskStatus.COMPLETED
    if state == TaskState.FAILED:
        return TaskStatus.FAILED
    if state == TaskState.CANCELLED:
        return TaskStatus.CANCELLED
    return TaskStatus.PROCESSING


def progress_for_state(state: TaskState) -> int:
    """Progress percentage shown in the UI. Display only, never used for control flow."""
    return PROGRESS_PERCENT[state]


def can_transition(current: TaskState, target: TaskState) -> bool:
    """Check an edge against the transition table."""
    if current in TERMINAL_STATES:
        return False
    if target in (TaskState.FAILED, TaskState.CANCELLED):
        return True
    return target in TRANSITIONS[current]


def empty_state_data() -> dict:
    """State data skeleton written when a task leaves pending."""
    return {
        "downloaded_images": [],
        "prompt": None,
        "ai_task_id": None,
        "ai_result": None,
        "watermarked_images": [],
        "final_images": [],
    }


class Task(SQLModel, table=True):
    """Task represents one user-initiated generation request."""

    __tablename__ = "tasks"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: UUID = Field(foreign_key="users.id", index=True)
    type: TaskType = Field(index=True)
    mode: TaskMode = Field(default=TaskMode.NORMAL)
    state: TaskState = Field(default=TaskState.PENDING, index=True)
    status: TaskStatus = Field(default=TaskStatus.PENDING)
    params: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    state_data: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))

    retry_count: int = Field(default=0, ge=0)
    last_error: Optional[str] = Field(default=None, max_length=1000)
    error_message: Optional[str] = Field(default=None, max_length=1000)

    credits_cost: int = Field(default=0, ge=0)
    credits_deducted: bool = Field(default=False)
    credits_refunded: bool = Field(default=False)

    worker_name: Optional[str] = Field(default=None, max_length=100)
    worker_started_at: Optional[datetime] = Field(default=None)

    created_at: datetime = Field(default_factory=utc_now, index=True)
    updated_at: datetime = Field(default_factory=utc_now)
    state_started_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)
    cancelled_at: Optional[datetime] = Field(default=None)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def progress_percent(self) -> int:
        return progress_for_state(self.state)

    def transition_to(self, target: TaskState, state_data: Optional[dict] = None) -> None:
        """Move to target state in memory, replacing state_data when given.

        Raises:
            InvalidStateTransition: If the edge is not in the transition table
        """
        if not can_transition(self.state, target):
            raise InvalidStateTransition(
                f"Cannot move task from {self.state.value} to {target.value}."
            )
        now = utc_now()
        if self.state == TaskState.PENDING and self.started_at is None:
            self.started_at = now
        self.state = target
        self.status = status_for_state(target)
        if state_data is not None:
            self.state_data = dict(state_data)
        self.state_started_at = now
        self.updated_at = now
        if target == TaskState.COMPLETED:
            self.completed_at = now

    def hand_off(self, worker_name: str) -> None:
        """Give the task to an isolated worker before it is launched.

        Raises:
            InvalidStateTransition: If the task cannot be handed off from its current state
        """
        state_data = {
            **self.state_data,
            "worker_started": True,
            "worker_name": worker_name,
            "worker_launch_at": utc_now().isoformat(),
        }
        self.transition_to(TaskState.HANDED_OFF, state_data)
        self.worker_name = worker_name
