"""Initial task/issue graph schema with append-only issue events."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "agent_tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("persona_id", sa.String(), server_default="default", nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("query", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index("ix_agent_tasks_persona_id", "agent_tasks", ["persona_id"], unique=False)
    op.create_index("ix_agent_tasks_status", "agent_tasks", ["status"], unique=False)
    op.create_index(
        "idx_agent_tasks_persona_updated",
        "agent_tasks",
        ["persona_id", "updated_at"],
        unique=False,
    )

    op.create_table(
        "agent_issues",
        sa.Column("issue_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("parent_issue_id", sa.String(), nullable=True),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("result", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["agent_tasks.task_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(
            ["parent_issue_id"],
            ["agent_issues.issue_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("issue_id"),
        sa.UniqueConstraint("task_id", "position", name="uq_agent_issues_task_position"),
    )
    op.create_index("ix_agent_issues_task_id", "agent_issues", ["task_id"], unique=False)
    op.create_index(
        "ix_agent_issues_parent_issue_id",
        "agent_issues",
        ["parent_issue_id"],
        unique=False,
    )
    op.create_index("ix_agent_issues_status", "agent_issues", ["status"], unique=False)
    op.create_index(
        "idx_agent_issues_task_status",
        "agent_issues",
        ["task_id", "status"],
        unique=False,
    )

    op.create_table(
        "issue_dependencies",
        sa.Column("issue_id", sa.String(), nullable=False),
        sa.Column("depends_on_issue_id", sa.String(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(["issue_id"], ["agent_issues.issue_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(
            ["depends_on_issue_id"],
            ["agent_issues.issue_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("issue_id", "depends_on_issue_id"),
    )
    op.create_index(
        "ix_issue_dependencies_depends_on_issue_id",
        "issue_dependencies",
        ["depends_on_issue_id"],
        unique=False,
    )

    op.create_table(
        "issue_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("issue_id", sa.String(), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["issue_id"], ["agent_issues.issue_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("issue_id", "sequence", name="uq_issue_events_issue_sequence"),
    )
    op.create_index("ix_issue_events_issue_id", "issue_events", ["issue_id"], unique=False)
    op.create_index("ix_issue_events_event_type", "issue_events", ["event_type"], unique=False)


def downgrade() -> None:
    op.drop_table("issue_events")
    op.drop_table("issue_dependencies")
    op.drop_table("agent_issues")
    op.drop_table("agent_tasks")
