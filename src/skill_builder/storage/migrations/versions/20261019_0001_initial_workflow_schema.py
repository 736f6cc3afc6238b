"""Initial workflow store schema."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "settings",
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )

    op.create_table(
        "workflow_runs",
        sa.Column("skill_name", sa.String(), nullable=False),
        sa.Column("domain", sa.String(), nullable=False, server_default=""),
        sa.Column("current_step", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("skill_source", sa.String(), nullable=False, server_default="builder"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("skill_name"),
    )
    op.create_index("ix_workflow_runs_status", "workflow_runs", ["status"])

    op.create_table(
        "workflow_steps",
        sa.Column("skill_name", sa.String(), nullable=False),
        sa.Column("step_id", sa.Integer(), nullable=False),
        sa.Column("variant", sa.String(), nullable=False, server_default=""),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("skill_name", "step_id", "variant"),
    )
    op.create_index("ix_workflow_steps_skill_name", "workflow_steps", ["skill_name"])

    op.create_table(
        "workflow_sessions",
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("skill_name", sa.String(), nullable=False),
        sa.Column("pid", sa.Integer(), nullable=False),
        sa.Column("is_open", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("session_id"),
    )
    op.create_index("ix_workflow_sessions_skill_name", "workflow_sessions", ["skill_name"])
    op.create_index("ix_workflow_sessions_is_open", "workflow_sessions", ["is_open"])


def downgrade() -> None:
    op.drop_index("ix_workflow_sessions_is_open", table_name="workflow_sessions")
    op.drop_index("ix_workflow_sessions_skill_name", table_name="workflow_sessions")
    op.drop_table("workflow_sessions")
    op.drop_index("ix_workflow_steps_skill_name", table_name="workflow_steps")
    op.drop_table("workflow_steps")
    op.drop_index("ix_workflow_runs_status", table_name="workflow_runs")
    op.drop_table("workflow_runs")
    op.drop_table("settings")
