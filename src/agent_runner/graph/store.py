"""Durable store facade for tasks, issues, dependencies and issue events."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from agent_runner.errors import IssueNotFoundError, StorageError, TaskNotFoundError
from agent_runner.graph.models import (
    EventType,
    IssueEvent,
    IssueStatus,
    IssueView,
    TaskStatus,
    TaskView,
)
from agent_runner.storage.alembic_runner import current_revision, upgrade_head
from agent_runner.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_runner.storage.sqlmodel_models import (
    AgentIssueRow,
    AgentTaskRow,
    IssueDependencyRow,
    IssueEventRow,
)

logger = logging.getLogger(__name__)


class IssueStore:
    """Persistence facade backed by SQLModel + SQLite.

    Mutating helpers take an explicit ``session`` so the graph manager can group
    several writes into one transaction via :meth:`session`. Read helpers open
    their own short-lived session.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        try:
            upgrade_head(self.db_path)
        except SQLAlchemyError as error:
            raise StorageError(f"Schema migration failed: {error}") from error
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("Store %s at revision %s", self.db_path, current_revision(self.engine))

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Unit of work: commit on success, roll back and raise StorageError on DB failure."""

        with Session(self.engine) as session:
            try:
                yield session
                session.commit()
            except SQLAlchemyError as error:
                session.rollback()
                raise StorageError(str(error)) from error

    def insert_task(
        self,
        session: Session,
        *,
        task_id: str,
        persona_id: str,
        title: str,
        query: str,
    ) -> AgentTaskRow:
        now = utc_now()
        row = AgentTaskRow(
            task_id=task_id,
            persona_id=persona_id,
            title=title,
            query=query,
            status=TaskStatus.ACTIVE.value,
            created_at=now,
            updated_at=now,
        )
        session.add(row)
        session.flush()
        return row

    def insert_issue(  # noqa: PLR0913
        self,
        session: Session,
        *,
        issue_id: str,
        task_id: str,
        title: str,
        description: str | None,
        status: IssueStatus,
        parent_issue_id: str | None = None,
    ) -> AgentIssueRow:
        now = utc_now()
        max_position = session.exec(
            select(func.max(AgentIssueRow.position)).where(AgentIssueRow.task_id == task_id),
        ).one()
        row = AgentIssueRow(
            issue_id=issue_id,
            task_id=task_id,
            parent_issue_id=parent_issue_id,
            position=0 if max_position is None else max_position + 1,
            title=title,
            description=description,
            status=status.value,
            created_at=now,
            updated_at=now,
        )
        session.add(row)
        session.flush()
        return row

    def insert_dependency(
        self,
        session: Session,
        *,
        issue_id: str,
        depends_on_issue_id: str,
    ) -> None:
        max_position = session.exec(
            select(func.max(IssueDependencyRow.position)).where(
                IssueDependencyRow.issue_id == issue_id,
            ),
        ).one()
        session.add(
            IssueDependencyRow(
                issue_id=issue_id,
                depends_on_issue_id=depends_on_issue_id,
                position=0 if max_position is None else max_position + 1,
            ),
        )
        session.flush()

    def task_row(self, session: Session, task_id: str) -> AgentTaskRow:
        row = session.exec(
            select(AgentTaskRow).where(AgentTaskRow.task_id == task_id),
        ).one_or_none()
        if row is None:
            raise TaskNotFoundError(task_id)
        return row

    def issue_row(self, session: Session, issue_id: str) -> AgentIssueRow:
        row = session.exec(
            select(AgentIssueRow).where(AgentIssueRow.issue_id == issue_id),
        ).one_or_none()
        if row is None:
            raise IssueNotFoundError(issue_id)
        return row

    def issue_views(self, session: Session, task_id: str) -> list[IssueView]:
        """All issues of a task in creation order, with their dependency lists."""

        rows = session.exec(
            select(AgentIssueRow)
            .where(AgentIssueRow.task_id == task_id)
            .order_by(col(AgentIssueRow.position).asc()),
        ).all()
        dependencies = self._dependency_map(session, [row.issue_id for row in rows])
        return [_to_issue_view(row, dependencies.get(row.issue_id, ())) for row in rows]

    def issue_view(self, session: Session, issue_id: str) -> IssueView:
        row = self.issue_row(session, issue_id)
        dependencies = self._dependency_map(session, [issue_id])
        return _to_issue_view(row, dependencies.get(issue_id, ()))

    def update_issue_status(
        self,
        session: Session,
        *,
        issue_id: str,
        status_from: IssueStatus,
        status_to: IssueStatus,
        result: str | None = None,
    ) -> None:
        """Guarded status update; fails if the stored status is no longer ``status_from``."""

        values: dict[str, object] = {
            "status": status_to.value,
            "updated_at": to_db_datetime(utc_now()),
        }
        if result is not None:
            values["result"] = result
        outcome = session.exec(
            sa_update(AgentIssueRow)
            .where(
                col(AgentIssueRow.issue_id) == issue_id,
                col(AgentIssueRow.status) == status_from.value,
            )
            .values(**values),
        )
        if outcome.rowcount != 1:
            raise StorageError(
                "Issue state changed concurrently; "
                f"please retry (issue_id={issue_id}, expected={status_from.value}).",
            )
        session.expire_all()

    def update_task_status(self, session: Session, *, task_id: str, status: TaskStatus) -> None:
        row = self.task_row(session, task_id)
        row.status = status.value
        row.updated_at = utc_now()
        session.add(row)
        session.flush()

    def delete_task(self, session: Session, *, task_id: str) -> None:
        self.task_row(session, task_id)
        session.exec(sa_delete(AgentTaskRow).where(col(AgentTaskRow.task_id) == task_id))
        session.expire_all()

    def append_event(  # noqa: PLR0913
        self,
        session: Session,
        *,
        issue_id: str,
        event_type: EventType,
        status_from: IssueStatus | None = None,
        status_to: IssueStatus | None = None,
        details: dict[str, object] | None = None,
    ) -> IssueEvent:
        """Append one event with the next per-issue sequence number."""

        max_sequence = session.exec(
            select(func.max(IssueEventRow.sequence)).where(IssueEventRow.issue_id == issue_id),
        ).one()
        row = IssueEventRow(
            issue_id=issue_id,
            sequence=1 if max_sequence is None else max_sequence + 1,
            event_type=event_type.value,
            status_from=status_from.value if status_from is not None else None,
            status_to=status_to.value if status_to is not None else None,
            details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
            if details
            else None,
            created_at=utc_now(),
        )
        session.add(row)
        session.flush()
        return _to_event(row)

    def get_task(self, task_id: str) -> TaskView | None:
        with self.session() as session:
            row = session.exec(
                select(AgentTaskRow).where(AgentTaskRow.task_id == task_id),
            ).one_or_none()
            return to_task_view(row) if row is not None else None

    def list_tasks(self, *, persona_id: str | None = None, limit: int = 50) -> list[TaskView]:
        """List recent tasks, newest first, optionally filtered by persona."""

        with self.session() as session:
            statement = (
                select(AgentTaskRow)
                .order_by(col(AgentTaskRow.created_at).desc(), col(AgentTaskRow.task_id).asc())
                .limit(limit)
            )
            if persona_id is not None:
                statement = statement.where(AgentTaskRow.persona_id == persona_id)
            return [to_task_view(row) for row in session.exec(statement).all()]

    def list_events(self, issue_id: str) -> list[IssueEvent]:
        with self.session() as session:
            self.issue_row(session, issue_id)
            rows = session.exec(
                select(IssueEventRow)
                .where(IssueEventRow.issue_id == issue_id)
                .order_by(col(IssueEventRow.sequence).asc()),
            ).all()
            return [_to_event(row) for row in rows]

    def _dependency_map(self, session: Session, issue_ids: list[str]) -> dict[str, tuple[str, ...]]:
        if not issue_ids:
            return {}
        rows = session.exec(
            select(IssueDependencyRow)
            .where(col(IssueDependencyRow.issue_id).in_(issue_ids))
            .order_by(col(IssueDependencyRow.issue_id), col(IssueDependencyRow.position)),
        ).all()
        grouped: dict[str, list[str]] = {}
        for row in rows:
            grouped.setdefault(row.issue_id, []).append(row.depends_on_issue_id)
        return {issue_id: tuple(values) for issue_id, values in grouped.items()}


def to_task_view(row: AgentTaskRow) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        persona_id=row.persona_id,
        title=row.title,
        query=row.query,
        status=TaskStatus(row.status),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_issue_view(row: AgentIssueRow, dependencies: tuple[str, ...]) -> IssueView:
    return IssueView(
        issue_id=row.issue_id,
        task_id=row.task_id,
        parent_issue_id=row.parent_issue_id,
        position=row.position,
        title=row.title,
        description=row.description,
        status=IssueStatus(row.status),
        result=row.result,
        dependencies=dependencies,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_event(row: IssueEventRow) -> IssueEvent:
    details = {}
    if row.details_json:
        parsed = json.loads(row.details_json)
        if isinstance(parsed, dict):
            details = parsed
    return IssueEvent(
        issue_id=row.issue_id,
        event_type=EventType(row.event_type),
        details=details,
        sequence=row.sequence,
        status_from=IssueStatus(row.status_from) if row.status_from is not None else None,
        status_to=IssueStatus(row.status_to) if row.status_to is not None else None,
        created_at=to_utc_aware_datetime(row.created_at),
    )
