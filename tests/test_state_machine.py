"""State machine tests for the Task model.

Tests focus on the transition table and its projections:
- Forward edges follow the pipeline order
- Failed and cancelled are reachable from every non-terminal state
- Terminal states have no outgoing edges
- Status and progress are derived from state only
"""

from uuid import uuid4

import pytest

from pixelforge.models.task import (
    ACTIVE_STATES,
    PROGRESS_PERCENT,
    SCHEDULED_STATES,
    TERMINAL_STATES,
    TRANSITIONS,
    InvalidStateTransition,
    Task,
    TaskState,
    TaskStatus,
    TaskType,
    can_transition,
    status_for_state,
)


def test_polled_pipeline_path_is_allowed():
    """pending → downloading → ... → uploading → completed is a valid walk."""
    path = [
        TaskState.PENDING,
        TaskState.DOWNLOADING,
        TaskState.DOWNLOADED,
        TaskState.AI_CALLING,
        TaskState.AI_PROCESSING,
        TaskState.AI_COMPLETED,
        TaskState.WATERMARKING,
        TaskState.UPLOADING,
        TaskState.COMPLETED,
    ]
    for current, target in zip(path, path[1:]):
        assert can_transition(current, target), f"{current} -> {target}"


def test_hand_off_edges():
    assert can_transition(TaskState.AI_CALLING, TaskState.HANDED_OFF)
    assert can_transition(TaskState.PENDING, TaskState.HANDED_OFF)
    assert can_transition(TaskState.HANDED_OFF, TaskState.COMPLETED)
    assert not can_transition(TaskState.HANDED_OFF, TaskState.UPLOADING)


def test_watermarking_can_be_skipped():
    assert can_transition(TaskState.AI_COMPLETED, TaskState.UPLOADING)


@pytest.mark.parametrize("state", sorted(ACTIVE_STATES, key=lambda s: s.value))
def test_failed_and_cancelled_reachable_from_active_states(state):
    assert can_transition(state, TaskState.FAILED)
    assert can_transition(state, TaskState.CANCELLED)


@pytest.mark.parametrize("state", sorted(TERMINAL_STATES, key=lambda s: s.value))
def test_terminal_states_have_no_edges(state):
    for target in TaskState:
        assert not can_transition(state, target)


def test_backward_and_skipping_edges_rejected():
    assert not can_transition(TaskState.DOWNLOADED, TaskState.PENDING)
    assert not can_transition(TaskState.PENDING, TaskState.AI_CALLING)
    assert not can_transition(TaskState.DOWNLOADING, TaskState.COMPLETED)


def test_status_projection():
    assert status_for_state(TaskState.PENDING) == TaskStatus.PENDING
    assert status_for_state(TaskState.COMPLETED) == TaskStatus.COMPLETED
    assert status_for_state(TaskState.FAILED) == TaskStatus.FAILED
    assert status_for_state(TaskState.CANCELLED) == TaskStatus.CANCELLED
    for state in ACTIVE_STATES - {TaskState.PENDING}:
        assert status_for_state(state) == TaskStatus.PROCESSING


def test_progress_table_covers_every_state():
    assert set(PROGRESS_PERCENT) == set(TaskState)
    assert PROGRESS_PERCENT[TaskState.COMPLETED] == 100
    assert PROGRESS_PERCENT[TaskState.FAILED] == 0


def test_progress_never_decreases_along_forward_edges():
    for source, targets in TRANSITIONS.items():
        for target in targets - {TaskState.FAILED, TaskState.CANCELLED}:
            assert PROGRESS_PERCENT[target] >= PROGRESS_PERCENT[source], f"{source} -> {target}"


def test_handed_off_is_not_swept():
    assert TaskState.HANDED_OFF not in SCHEDULED_STATES
    assert not TERMINAL_STATES & set(SCHEDULED_STATES)


def test_transition_to_updates_status_and_timestamps():
    task = Task(user_id=uuid4(), type=TaskType.PHOTOGRAPHY)
    assert task.started_at is None

    task.transition_to(TaskState.DOWNLOADING, {"downloaded_images": []})

    assert task.state == TaskState.DOWNLOADING
    assert task.status == TaskStatus.PROCESSING
    assert task.started_at is not None
    assert task.state_data == {"downloaded_images": []}
    assert task.progress_percent == 20


def test_transition_to_rejects_invalid_edge():
    task = Task(user_id=uuid4(), type=TaskType.PHOTOGRAPHY)

    with pytest.raises(InvalidStateTransition, match="pending to uploading"):
        task.transition_to(TaskState.UPLOADING)

    assert task.state == TaskState.PENDING


def test_hand_off_records_worker():
    task = Task(user_id=uuid4(), type=TaskType.TRAVEL)

    task.hand_off("personal-worker")

    assert task.state == TaskState.HANDED_OFF
    assert task.worker_name == "personal-worker"
    assert task.state_data["worker_started"] is True
    assert task.state_data["worker_name"] == "personal-worker"
