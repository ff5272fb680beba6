"""Domain models for tasks, issues and their persisted event history."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4


class TaskStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class IssueStatus(str, Enum):
    """Issue lifecycle states."""

    OPEN = "open"
    BLOCKED = "blocked"
    IN_PROGRESS = "in_progress"
    CLOSED = "closed"


class EventType(str, Enum):
    """Tags of the append-only per-issue event log.

    The first group is written by the graph manager itself, the second group is
    published by the execution engine and applied by the manager.
    """

    CREATED = "created"
    STATUS_CHANGED = "status_changed"
    DEPENDENCY_ADDED = "dependency_added"
    CLOSED = "closed"

    EXECUTION_STARTED = "execution_started"
    PLAN_CREATED = "plan_created"
    STEP_STARTED = "step_started"
    STREAMING_DELTA = "streaming_delta"
    STEP_COMPLETED = "step_completed"
    ERROR_ENCOUNTERED = "error_encountered"
    VERIFICATION_COMPLETED = "verification_completed"
    RETRY_SCHEDULED = "retry_scheduled"
    DECOMPOSED = "decomposed"
    EXECUTION_COMPLETED = "execution_completed"


ALLOWED_TRANSITIONS: dict[IssueStatus, frozenset[IssueStatus]] = {
    IssueStatus.OPEN: frozenset({IssueStatus.IN_PROGRESS, IssueStatus.BLOCKED, IssueStatus.CLOSED}),
    IssueStatus.IN_PROGRESS: frozenset({IssueStatus.CLOSED, IssueStatus.OPEN, IssueStatus.BLOCKED}),
    IssueStatus.BLOCKED: frozenset({IssueStatus.OPEN}),
    IssueStatus.CLOSED: frozenset(),
}


def is_valid_transition(status_from: IssueStatus, status_to: IssueStatus) -> bool:
    if status_from == status_to:
        return True
    return status_to in ALLOWED_TRANSITIONS[status_from]


def new_issue_id() -> str:
    """Short hash id in the form ``os-xxxxxxxx``."""

    return f"os-{uuid4().hex[:8]}"


def generate_task_title(query: str) -> str:
    trimmed = query.strip()
    if not trimmed:
        return "New Task"
    first_line = trimmed.splitlines()[0].strip()
    if len(first_line) <= 50:
        return first_line
    return first_line[:47] + "..."


@dataclass(slots=True)
class TaskView:
    """User-submitted goal."""

    task_id: str
    persona_id: str
    title: str
    query: str
    status: TaskStatus
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class IssueView:
    """Schedulable unit of work within a task."""

    issue_id: str
    task_id: str
    parent_issue_id: str | None
    position: int
    title: str
    description: str | None
    status: IssueStatus
    result: str | None
    dependencies: tuple[str, ...]
    created_at: datetime
    updated_at: datetime

    @property
    def is_closed(self) -> bool:
        return self.status == IssueStatus.CLOSED


@dataclass(slots=True)
class ChildIssueSpec:
    """Child issue proposed by a decomposition.

    ``depends_on`` holds indices of earlier siblings in the same decomposition.
    ``issue_id`` may be pre-assigned by the proposer so events can reference it.
    """

    title: str
    description: str | None = None
    depends_on: tuple[int, ...] = ()
    issue_id: str | None = None

    def to_details(self) -> dict[str, object]:
        return {
            "issue_id": self.issue_id,
            "title": self.title,
            "description": self.description,
            "depends_on": list(self.depends_on),
        }

    @classmethod
    def from_details(cls, details: dict[str, Any]) -> ChildIssueSpec:
        return cls(
            title=str(details["title"]),
            description=details.get("description"),
            depends_on=tuple(int(index) for index in details.get("depends_on", ())),
            issue_id=details.get("issue_id"),
        )


@dataclass(slots=True)
class IssueEvent:
    """Immutable, ordered record of one transition for one issue.

    ``sequence`` and ``created_at`` are assigned by the store when the event is
    appended; events published live by the engine carry ``None`` until then.
    """

    issue_id: str
    event_type: EventType
    details: dict[str, Any] = field(default_factory=dict)
    sequence: int | None = None
    status_from: IssueStatus | None = None
    status_to: IssueStatus | None = None
    created_at: datetime | None = None
