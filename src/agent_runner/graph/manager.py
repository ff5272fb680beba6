"""Issue Graph Manager: task/issue lifecycle, dependency resolution and readiness."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from sqlmodel import Session

from agent_runner.errors import DependencyCycleError, InvariantViolationError
from agent_runner.graph.models import (
    ChildIssueSpec,
    EventType,
    IssueEvent,
    IssueStatus,
    IssueView,
    TaskStatus,
    TaskView,
    generate_task_title,
    is_valid_transition,
    new_issue_id,
)
from agent_runner.graph.readiness import (
    children_by_parent,
    ready_frontier,
    resting_status,
    would_create_cycle,
)
from agent_runner.graph.store import IssueStore, to_task_view
from agent_runner.storage.sqlmodel_models import DEFAULT_PERSONA_ID

logger = logging.getLogger(__name__)


class IssueGraphManager:
    """Owns every issue status transition.

    Each public mutating method is one transaction against the store. The
    execution engine never writes issue records; it publishes events that
    :meth:`apply_event` persists and turns into transitions.
    """

    def __init__(self, store: IssueStore) -> None:
        self.store = store

    def create_task(self, query: str, persona_id: str = DEFAULT_PERSONA_ID) -> TaskView:
        """Create a task with its single root issue."""

        task_id = new_issue_id()
        root_id = new_issue_id()
        title = generate_task_title(query)
        with self.store.session() as session:
            task_row = self.store.insert_task(
                session,
                task_id=task_id,
                persona_id=persona_id,
                title=title,
                query=query,
            )
            self.store.insert_issue(
                session,
                issue_id=root_id,
                task_id=task_id,
                title=title,
                description=query,
                status=IssueStatus.OPEN,
            )
            self.store.append_event(
                session,
                issue_id=root_id,
                event_type=EventType.CREATED,
                status_to=IssueStatus.OPEN,
                details={"task_id": task_id, "title": title},
            )
            task = to_task_view(task_row)
        logger.info("Created task %s with root issue %s", task_id, root_id)
        return task

    def get_task(self, task_id: str) -> TaskView | None:
        return self.store.get_task(task_id)

    def list_tasks(self, *, persona_id: str | None = None, limit: int = 50) -> list[TaskView]:
        return self.store.list_tasks(persona_id=persona_id, limit=limit)

    def load_issues(self, task_id: str) -> list[IssueView]:
        """All issues for a task in creation order."""

        with self.store.session() as session:
            self.store.task_row(session, task_id)
            return self.store.issue_views(session, task_id)

    def get_issue(self, issue_id: str) -> IssueView:
        with self.store.session() as session:
            return self.store.issue_view(session, issue_id)

    def child_issues(self, issue_id: str) -> list[IssueView]:
        """Direct decomposition children of an issue in creation order."""

        with self.store.session() as session:
            issue = self.store.issue_view(session, issue_id)
            return [
                item
                for item in self.store.issue_views(session, issue.task_id)
                if item.parent_issue_id == issue_id
            ]

    def next_ready_issue(self, task_id: str) -> IssueView | None:
        """Earliest-created open issue whose blockers are all closed.

        ``None`` when nothing is ready: the task is complete, fully blocked,
        cancelled, or one of its issues is already in progress.
        """

        with self.store.session() as session:
            task_row = self.store.task_row(session, task_id)
            if task_row.status != TaskStatus.ACTIVE.value:
                return None
            frontier = ready_frontier(self.store.issue_views(session, task_id))
        return frontier[0] if frontier else None

    def is_task_complete(self, task_id: str) -> bool:
        issues = self.load_issues(task_id)
        return bool(issues) and all(issue.is_closed for issue in issues)

    def close_issue(self, issue_id: str, result: str | None = None) -> IssueView:
        """Close an issue and reopen dependents whose last blocker it was.

        Closing an already-closed issue returns it unchanged with its prior result.
        """

        with self.store.session() as session:
            closed = self._close_in_session(session, issue_id=issue_id, result=result)
        return closed

    def add_dependency(self, issue_id: str, depends_on: str) -> IssueView:
        """Make ``issue_id`` wait for ``depends_on``; both must belong to one task."""

        with self.store.session() as session:
            issue = self.store.issue_view(session, issue_id)
            target = self.store.issue_view(session, depends_on)
            if issue.task_id != target.task_id:
                raise InvariantViolationError(
                    f"Dependencies must stay within one task: {issue_id} -> {depends_on}",
                )
            if depends_on in issue.dependencies:
                return issue
            issues = self.store.issue_views(session, issue.task_id)
            edges = {item.issue_id: item.dependencies for item in issues}
            if would_create_cycle(issue_id=issue_id, depends_on=depends_on, dependencies=edges):
                raise DependencyCycleError(issue_id, depends_on)
            self.store.insert_dependency(
                session,
                issue_id=issue_id,
                depends_on_issue_id=depends_on,
            )
            self.store.append_event(
                session,
                issue_id=issue_id,
                event_type=EventType.DEPENDENCY_ADDED,
                details={"depends_on": depends_on},
            )
            self._recompute_resting_statuses(session, issue.task_id)
            return self.store.issue_view(session, issue_id)

    def record_decomposition(
        self,
        parent_id: str,
        children: Sequence[ChildIssueSpec],
    ) -> list[IssueView]:
        """Insert child issues and block the parent on all of them, atomically."""

        with self.store.session() as session:
            created = self._decompose_in_session(session, parent_id=parent_id, children=children)
        return created

    def get_history(self, issue_id: str) -> list[IssueEvent]:
        """Ordered replay of persisted events for one issue."""

        return self.store.list_events(issue_id)

    def cancel_task(self, task_id: str) -> TaskView:
        with self.store.session() as session:
            task_row = self.store.task_row(session, task_id)
            if task_row.status == TaskStatus.COMPLETED.value:
                raise InvariantViolationError(f"Task is already completed: {task_id}")
            self.store.update_task_status(session, task_id=task_id, status=TaskStatus.CANCELLED)
            task = to_task_view(task_row)
        logger.info("Cancelled task %s", task_id)
        return task

    def delete_task(self, task_id: str) -> None:
        """Delete a task together with its issues, dependencies and events."""

        with self.store.session() as session:
            self.store.delete_task(session, task_id=task_id)
        logger.info("Deleted task %s", task_id)

    def apply_event(self, event: IssueEvent) -> IssueEvent:
        """Persist one engine event and apply the transition it implies.

        Used as the persistence subscriber of the engine's event bus. The append
        and the transition share one transaction.
        """

        with self.store.session() as session:
            if event.event_type == EventType.EXECUTION_STARTED:
                return self._start_execution(session, event)
            if event.event_type == EventType.DECOMPOSED:
                stored = self._append(session, event)
                children = [
                    ChildIssueSpec.from_details(item) for item in event.details.get("children", ())
                ]
                self._decompose_in_session(session, parent_id=event.issue_id, children=children)
                return stored
            if event.event_type == EventType.EXECUTION_COMPLETED:
                stored = self._append(session, event)
                self._finish_execution(session, event)
                return stored
            return self._append(session, event)

    def _append(self, session: Session, event: IssueEvent) -> IssueEvent:
        return self.store.append_event(
            session,
            issue_id=event.issue_id,
            event_type=event.event_type,
            status_from=event.status_from,
            status_to=event.status_to,
            details=event.details,
        )

    def _start_execution(self, session: Session, event: IssueEvent) -> IssueEvent:
        issue = self.store.issue_view(session, event.issue_id)
        if issue.status not in {IssueStatus.OPEN, IssueStatus.IN_PROGRESS}:
            raise InvariantViolationError(
                f"Issue {issue.issue_id} cannot start execution from status={issue.status.value}",
            )
        running = [
            other
            for other in self.store.issue_views(session, issue.task_id)
            if other.status == IssueStatus.IN_PROGRESS and other.issue_id != issue.issue_id
        ]
        if running:
            raise InvariantViolationError(
                f"Task {issue.task_id} already has an issue in progress: {running[0].issue_id}",
            )
        self._transition(session, issue, IssueStatus.IN_PROGRESS)
        return self.store.append_event(
            session,
            issue_id=issue.issue_id,
            event_type=event.event_type,
            status_from=issue.status,
            status_to=IssueStatus.IN_PROGRESS,
            details=event.details,
        )

    def _finish_execution(self, session: Session, event: IssueEvent) -> None:
        if event.details.get("success"):
            self._close_in_session(
                session,
                issue_id=event.issue_id,
                result=str(event.details.get("message") or ""),
            )
            return
        issue = self.store.issue_view(session, event.issue_id)
        if issue.status != IssueStatus.IN_PROGRESS:
            return
        issues = self.store.issue_views(session, issue.task_id)
        by_id = {item.issue_id: item for item in issues}
        target = resting_status(
            issue,
            by_id=by_id,
            children=children_by_parent(issues).get(issue.issue_id, ()),
        )
        self._transition(session, issue, target)
        self.store.append_event(
            session,
            issue_id=issue.issue_id,
            event_type=EventType.STATUS_CHANGED,
            status_from=IssueStatus.IN_PROGRESS,
            status_to=target,
            details={"reason": "execution_failed"},
        )

    def _close_in_session(
        self,
        session: Session,
        *,
        issue_id: str,
        result: str | None,
    ) -> IssueView:
        issue = self.store.issue_view(session, issue_id)
        if issue.status == IssueStatus.CLOSED:
            return issue
        if issue.status == IssueStatus.BLOCKED:
            raise InvariantViolationError(f"Cannot close blocked issue: {issue_id}")
        self._transition(session, issue, IssueStatus.CLOSED, result=result)
        self.store.append_event(
            session,
            issue_id=issue_id,
            event_type=EventType.CLOSED,
            status_from=issue.status,
            status_to=IssueStatus.CLOSED,
            details={"result": result} if result else None,
        )
        logger.info("Closed issue %s", issue_id)
        self._recompute_resting_statuses(session, issue.task_id)
        issues = self.store.issue_views(session, issue.task_id)
        if all(item.is_closed for item in issues):
            task_row = self.store.task_row(session, issue.task_id)
            if task_row.status == TaskStatus.ACTIVE.value:
                self.store.update_task_status(
                    session,
                    task_id=issue.task_id,
                    status=TaskStatus.COMPLETED,
                )
                logger.info("Task %s completed", issue.task_id)
        return self.store.issue_view(session, issue_id)

    def _decompose_in_session(
        self,
        session: Session,
        *,
        parent_id: str,
        children: Sequence[ChildIssueSpec],
    ) -> list[IssueView]:
        if not children:
            raise InvariantViolationError(f"Decomposition of {parent_id} has no children")
        parent = self.store.issue_view(session, parent_id)
        if parent.status == IssueStatus.CLOSED:
            raise InvariantViolationError(f"Cannot decompose closed issue: {parent_id}")

        child_ids: list[str] = []
        for index, child in enumerate(children):
            invalid = [dep for dep in child.depends_on if dep < 0 or dep >= index]
            if invalid:
                raise InvariantViolationError(
                    f"Child {index} of {parent_id} may only depend on earlier siblings: {invalid}",
                )
            child_id = child.issue_id or new_issue_id()
            status = IssueStatus.BLOCKED if child.depends_on else IssueStatus.OPEN
            self.store.insert_issue(
                session,
                issue_id=child_id,
                task_id=parent.task_id,
                title=child.title,
                description=child.description,
                status=status,
                parent_issue_id=parent_id,
            )
            for dependency_index in child.depends_on:
                self.store.insert_dependency(
                    session,
                    issue_id=child_id,
                    depends_on_issue_id=child_ids[dependency_index],
                )
            self.store.append_event(
                session,
                issue_id=child_id,
                event_type=EventType.CREATED,
                status_to=status,
                details={"task_id": parent.task_id, "title": child.title, "parent": parent_id},
            )
            child_ids.append(child_id)

        if parent.status != IssueStatus.BLOCKED:
            self._transition(session, parent, IssueStatus.BLOCKED)
            self.store.append_event(
                session,
                issue_id=parent_id,
                event_type=EventType.STATUS_CHANGED,
                status_from=parent.status,
                status_to=IssueStatus.BLOCKED,
                details={"reason": "decomposed", "children": child_ids},
            )
        logger.info("Decomposed issue %s into %d children", parent_id, len(child_ids))
        return [self.store.issue_view(session, child_id) for child_id in child_ids]

    def _recompute_resting_statuses(self, session: Session, task_id: str) -> None:
        """Bring every open/blocked issue of a task in line with its blockers."""

        issues = self.store.issue_views(session, task_id)
        by_id = {issue.issue_id: issue for issue in issues}
        children = children_by_parent(issues)
        for issue in issues:
            if issue.status not in {IssueStatus.OPEN, IssueStatus.BLOCKED}:
                continue
            target = resting_status(
                issue,
                by_id=by_id,
                children=children.get(issue.issue_id, ()),
            )
            if target == issue.status:
                continue
            self._transition(session, issue, target)
            self.store.append_event(
                session,
                issue_id=issue.issue_id,
                event_type=EventType.STATUS_CHANGED,
                status_from=issue.status,
                status_to=target,
                details={"reason": "blockers_changed"},
            )

    def _transition(
        self,
        session: Session,
        issue: IssueView,
        status_to: IssueStatus,
        *,
        result: str | None = None,
    ) -> None:
        if not is_valid_transition(issue.status, status_to):
            raise InvariantViolationError(
                f"Invalid transition for {issue.issue_id}: "
                f"{issue.status.value} -> {status_to.value}",
            )
        self.store.update_issue_status(
            session,
            issue_id=issue.issue_id,
            status_from=issue.status,
            status_to=status_to,
            result=result,
        )

