"""SQLModel ORM tables for the task/issue graph and its event log."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel

DEFAULT_PERSONA_ID = "default"


class AgentTaskRow(SQLModel, table=True):
    __tablename__ = "agent_tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_agent_tasks_persona_updated", "persona_id", "updated_at"),)

    task_id: str = Field(primary_key=True)
    persona_id: str = Field(default=DEFAULT_PERSONA_ID, index=True)
    title: str
    query: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AgentIssueRow(SQLModel, table=True):
    __tablename__ = "agent_issues"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("task_id", "position", name="uq_agent_issues_task_position"),
        Index("idx_agent_issues_task_status", "task_id", "status"),
    )

    issue_id: str = Field(primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("agent_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    parent_issue_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("agent_issues.issue_id", ondelete="CASCADE"),
            nullable=True,
            index=True,
        ),
    )
    position: int
    title: str
    description: str | None = Field(default=None, sa_column=Column(Text))
    status: str = Field(index=True)
    result: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class IssueDependencyRow(SQLModel, table=True):
    __tablename__ = "issue_dependencies"  # type: ignore[bad-override]

    issue_id: str = Field(
        sa_column=Column(
            ForeignKey("agent_issues.issue_id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    depends_on_issue_id: str = Field(
        sa_column=Column(
            ForeignKey("agent_issues.issue_id", ondelete="CASCADE"),
            primary_key=True,
            index=True,
        ),
    )
    position: int = Field(default=0)


class IssueEventRow(SQLModel, table=True):
    __tablename__ = "issue_events"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("issue_id", "sequence", name="uq_issue_events_issue_sequence"),
    )

    id: int | None = Field(default=None, primary_key=True)
    issue_id: str = Field(
        sa_column=Column(
            ForeignKey("agent_issues.issue_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    sequence: int
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
