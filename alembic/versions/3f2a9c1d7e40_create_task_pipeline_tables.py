"""create_task_pipeline_tables

Revision ID: 3f2a9c1d7e40
Revises:
Create Date: 2026-10-17 09:12:41.118204

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f2a9c1d7e40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Enum columns store member names, matching SQLModel's default mapping
TASK_TYPES = ("PHOTOGRAPHY", "FITTING", "PERSONAL_FITTING", "TRAVEL")
TASK_MODES = ("NORMAL", "POSE_VARIATION")
TASK_STATES = (
    "PENDING",
    "DOWNLOADING",
    "DOWNLOADED",
    "AI_CALLING",
    "HANDED_OFF",
    "AI_PROCESSING",
    "AI_COMPLETED",
    "WATERMARKING",
    "UPLOADING",
    "COMPLETED",
    "FAILED",
    "CANCELLED",
)
STATUSES = ("PENDING", "PROCESSING", "COMPLETED", "FAILED", "CANCELLED")
CREDIT_REASONS = ("TASK_DEBIT", "TASK_REFUND", "TOP_UP")


def upgrade() -> None:
    """Create users, scenes, ai_models, tasks, works and credit_transactions."""
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_consumed_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("credits >= 0", name="ck_users_credits_non_negative"),
    )

    op.create_table(
        "scenes",
        sa.Column("id", sa.String(length=100), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("category", sa.String(length=100), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("prompt_template", sa.Text(), nullable=True),
        sa.Column("base_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("credits_per_image", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "ai_models",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("model_ref", sa.String(length=255), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("weight", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cost_per_image", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_ai_models_is_active", "ai_models", ["is_active"])

    op.create_table(
        "tasks",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("type", sa.Enum(*TASK_TYPES, name="tasktype"), nullable=False),
        sa.Column("mode", sa.Enum(*TASK_MODES, name="taskmode"), nullable=False),
        sa.Column("state", sa.Enum(*TASK_STATES, name="taskstate"), nullable=False),
        sa.Column("status", sa.Enum(*STATUSES, name="taskstatus"), nullable=False),
        sa.Column("params", sa.JSON(), nullable=False),
        sa.Column("state_data", sa.JSON(), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.String(length=1000), nullable=True),
        sa.Column("error_message", sa.String(length=1000), nullable=True),
        sa.Column("credits_cost", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("credits_deducted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("credits_refunded", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("worker_name", sa.String(length=100), nullable=True),
        sa.Column("worker_started_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("state_started_at", sa.DateTime(), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_tasks_user_id", "tasks", ["user_id"])
    op.create_index("ix_tasks_type", "tasks", ["type"])
    op.create_index("ix_tasks_state", "tasks", ["state"])
    op.create_index("ix_tasks_created_at", "tasks", ["created_at"])
    # Scheduler sweep: oldest tasks first within one state
    op.create_index("ix_tasks_state_created_at", "tasks", ["state", "created_at"])

    op.create_table(
        "works",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("task_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("type", sa.String(length=50), nullable=False),
        sa.Column("status", sa.Enum(*STATUSES, name="workstatus"), nullable=False),
        sa.Column("images", sa.JSON(), nullable=False),
        sa.Column("parameters", sa.JSON(), nullable=False),
        sa.Column("original_images", sa.JSON(), nullable=False),
        sa.Column("scene_id", sa.String(length=100), nullable=True),
        sa.Column("reference_work_id", sa.Uuid(), nullable=True),
        sa.Column("variation_type", sa.String(length=50), nullable=True),
        sa.Column("pose_description", sa.String(length=1000), nullable=True),
        sa.Column("ai_model", sa.String(length=255), nullable=True),
        sa.Column("ai_prompt", sa.Text(), nullable=True),
        sa.Column("ai_description", sa.Text(), nullable=True),
        sa.Column("error_message", sa.String(length=1000), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_works_task_id", "works", ["task_id"], unique=True)
    op.create_index("ix_works_user_id", "works", ["user_id"])
    op.create_index("ix_works_status", "works", ["status"])
    op.create_index("ix_works_created_at", "works", ["created_at"])

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("reason", sa.Enum(*CREDIT_REASONS, name="creditreason"), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=True),
        sa.Column("related_task_id", sa.Uuid(), nullable=True),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_credit_transactions_user_id", "credit_transactions", ["user_id"])
    op.create_index(
        "ix_credit_transactions_related_task_id", "credit_transactions", ["related_task_id"]
    )


def downgrade() -> None:
    """Drop all pipeline tables and their enum types."""
    op.drop_table("credit_transactions")
    op.drop_table("works")
    op.drop_table("tasks")
    op.drop_table("ai_models")
    op.drop_table("scenes")
    op.drop_table("users")

    bind = op.get_bind()
    for name in ("creditreason", "workstatus", "taskstatus", "taskstate", "taskmode", "tasktype"):
        sa.Enum(name=name).drop(bind, checkfirst=True)
