from __future__ import annotations

import re

import allure
import pytest

from agent_runner.errors import (
    DependencyCycleError,
    InvariantViolationError,
    IssueNotFoundError,
    TaskNotFoundError,
)
from agent_runner.graph.manager import IssueGraphManager
from agent_runner.graph.models import (
    ChildIssueSpec,
    EventType,
    IssueEvent,
    IssueStatus,
    IssueView,
    TaskStatus,
    generate_task_title,
    new_issue_id,
)
from agent_runner.graph.readiness import children_by_parent

pytestmark = [
    allure.epic("Issue Graph"),
    allure.feature("Lifecycle & Readiness"),
]


def _assert_readiness_invariant(issues: list[IssueView]) -> None:
    by_id = {issue.issue_id: issue for issue in issues}
    children = children_by_parent(issues)
    for issue in issues:
        if issue.status not in {IssueStatus.OPEN, IssueStatus.BLOCKED}:
            continue
        blockers_closed = all(
            by_id[dependency].status == IssueStatus.CLOSED for dependency in issue.dependencies
        ) and all(child.status == IssueStatus.CLOSED for child in children.get(issue.issue_id, ()))
        assert (issue.status == IssueStatus.OPEN) == blockers_closed, issue


def _root(manager: IssueGraphManager, task_id: str) -> IssueView:
    return manager.load_issues(task_id)[0]


def test_generate_task_title_rules() -> None:
    assert generate_task_title("   ") == "New Task"
    assert generate_task_title("  Write report\nwith details") == "Write report"
    long_query = "x" * 60
    assert generate_task_title(long_query) == "x" * 47 + "..."
    assert generate_task_title("y" * 50) == "y" * 50


def test_new_issue_id_is_short_hash() -> None:
    assert re.fullmatch(r"os-[0-9a-f]{8}", new_issue_id())


def test_create_task_creates_single_open_root_issue(manager: IssueGraphManager) -> None:
    task = manager.create_task("Summarize the quarterly report", persona_id="analyst")

    assert task.status == TaskStatus.ACTIVE
    assert task.persona_id == "analyst"
    assert task.title == "Summarize the quarterly report"
    issues = manager.load_issues(task.task_id)
    assert len(issues) == 1
    root = issues[0]
    assert root.status == IssueStatus.OPEN
    assert root.parent_issue_id is None
    assert root.dependencies == ()
    history = manager.get_history(root.issue_id)
    assert [event.event_type for event in history] == [EventType.CREATED]
    assert history[0].sequence == 1


def test_scenario_a_single_issue_closes_and_task_completes(manager: IssueGraphManager) -> None:
    task = manager.create_task("Do one thing")
    root = manager.next_ready_issue(task.task_id)
    assert root is not None
    assert root.issue_id == _root(manager, task.task_id).issue_id

    manager.close_issue(root.issue_id, "done")

    assert manager.get_issue(root.issue_id).status == IssueStatus.CLOSED
    assert manager.next_ready_issue(task.task_id) is None
    assert manager.is_task_complete(task.task_id)
    completed = manager.get_task(task.task_id)
    assert completed is not None
    assert completed.status == TaskStatus.COMPLETED


def test_scenario_b_dependency_orders_readiness(manager: IssueGraphManager) -> None:
    task = manager.create_task("Ship feature")
    root = _root(manager, task.task_id)
    issue_a, issue_b = manager.record_decomposition(
        root.issue_id,
        [ChildIssueSpec(title="A"), ChildIssueSpec(title="B")],
    )

    updated_a = manager.add_dependency(issue_a.issue_id, issue_b.issue_id)
    assert updated_a.status == IssueStatus.BLOCKED
    assert updated_a.dependencies == (issue_b.issue_id,)

    first = manager.next_ready_issue(task.task_id)
    assert first is not None
    assert first.issue_id == issue_b.issue_id

    manager.close_issue(issue_b.issue_id, "b done")
    second = manager.next_ready_issue(task.task_id)
    assert second is not None
    assert second.issue_id == issue_a.issue_id
    _assert_readiness_invariant(manager.load_issues(task.task_id))


def test_scenario_c_decomposition_blocks_parent_until_children_close(
    manager: IssueGraphManager,
) -> None:
    task = manager.create_task("Plan the trip")
    parent = _root(manager, task.task_id)
    child_1, child_2 = manager.record_decomposition(
        parent.issue_id,
        [ChildIssueSpec(title="Book flights"), ChildIssueSpec(title="Book hotel")],
    )

    assert manager.get_issue(parent.issue_id).status == IssueStatus.BLOCKED
    assert child_1.parent_issue_id == parent.issue_id
    assert child_1.dependencies == ()

    ready = manager.next_ready_issue(task.task_id)
    assert ready is not None
    assert ready.issue_id == child_1.issue_id
    manager.close_issue(child_1.issue_id, "flights booked")

    ready = manager.next_ready_issue(task.task_id)
    assert ready is not None
    assert ready.issue_id == child_2.issue_id
    assert manager.get_issue(parent.issue_id).status == IssueStatus.BLOCKED
    manager.close_issue(child_2.issue_id, "hotel booked")

    assert manager.get_issue(parent.issue_id).status == IssueStatus.OPEN
    ready = manager.next_ready_issue(task.task_id)
    assert ready is not None
    assert ready.issue_id == parent.issue_id
    _assert_readiness_invariant(manager.load_issues(task.task_id))


def test_decomposition_with_sibling_dependencies_starts_blocked(manager: IssueGraphManager) -> None:
    task = manager.create_task("Chain")
    parent = _root(manager, task.task_id)
    first, second = manager.record_decomposition(
        parent.issue_id,
        [ChildIssueSpec(title="first"), ChildIssueSpec(title="second", depends_on=(0,))],
    )

    assert first.status == IssueStatus.OPEN
    assert second.status == IssueStatus.BLOCKED
    assert second.dependencies == (first.issue_id,)
    _assert_readiness_invariant(manager.load_issues(task.task_id))


def test_invalid_decomposition_leaves_graph_untouched(manager: IssueGraphManager) -> None:
    task = manager.create_task("Atomic")
    parent = _root(manager, task.task_id)

    with pytest.raises(InvariantViolationError):
        manager.record_decomposition(
            parent.issue_id,
            [ChildIssueSpec(title="ok"), ChildIssueSpec(title="bad", depends_on=(5,))],
        )

    issues = manager.load_issues(task.task_id)
    assert [issue.issue_id for issue in issues] == [parent.issue_id]
    assert issues[0].status == IssueStatus.OPEN


def test_close_is_idempotent(manager: IssueGraphManager) -> None:
    task = manager.create_task("Close twice")
    root = _root(manager, task.task_id)

    first = manager.close_issue(root.issue_id, "first result")
    second = manager.close_issue(root.issue_id, "second result")

    assert first.result == "first result"
    assert second.result == "first result"
    closed_events = [
        event
        for event in manager.get_history(root.issue_id)
        if event.event_type == EventType.CLOSED
    ]
    assert len(closed_events) == 1


def test_closing_blocked_issue_is_rejected(manager: IssueGraphManager) -> None:
    task = manager.create_task("Blocked")
    parent = _root(manager, task.task_id)
    manager.record_decomposition(parent.issue_id, [ChildIssueSpec(title="child")])

    with pytest.raises(InvariantViolationError, match="blocked"):
        manager.close_issue(parent.issue_id, "too early")


def test_dependency_cycles_are_rejected(manager: IssueGraphManager) -> None:
    task = manager.create_task("Cycles")
    parent = _root(manager, task.task_id)
    issue_a, issue_b, issue_c = manager.record_decomposition(
        parent.issue_id,
        [ChildIssueSpec(title="A"), ChildIssueSpec(title="B"), ChildIssueSpec(title="C")],
    )
    manager.add_dependency(issue_a.issue_id, issue_b.issue_id)
    manager.add_dependency(issue_b.issue_id, issue_c.issue_id)

    with pytest.raises(DependencyCycleError):
        manager.add_dependency(issue_c.issue_id, issue_a.issue_id)
    with pytest.raises(DependencyCycleError):
        manager.add_dependency(issue_a.issue_id, issue_a.issue_id)

    assert manager.get_issue(issue_c.issue_id).dependencies == ()


def test_dependencies_cannot_cross_tasks(manager: IssueGraphManager) -> None:
    first = manager.create_task("First")
    second = manager.create_task("Second")

    with pytest.raises(InvariantViolationError):
        manager.add_dependency(
            _root(manager, first.task_id).issue_id,
            _root(manager, second.task_id).issue_id,
        )


def test_single_flight_per_task(manager: IssueGraphManager) -> None:
    task = manager.create_task("Parallel")
    parent = _root(manager, task.task_id)
    child_1, child_2 = manager.record_decomposition(
        parent.issue_id,
        [ChildIssueSpec(title="one"), ChildIssueSpec(title="two")],
    )

    manager.apply_event(IssueEvent(child_1.issue_id, EventType.EXECUTION_STARTED))
    assert manager.get_issue(child_1.issue_id).status == IssueStatus.IN_PROGRESS
    assert manager.next_ready_issue(task.task_id) is None

    with pytest.raises(InvariantViolationError, match="already has an issue in progress"):
        manager.apply_event(IssueEvent(child_2.issue_id, EventType.EXECUTION_STARTED))

    in_progress = [
        issue
        for issue in manager.load_issues(task.task_id)
        if issue.status == IssueStatus.IN_PROGRESS
    ]
    assert len(in_progress) == 1


def test_failed_execution_returns_issue_to_open(manager: IssueGraphManager) -> None:
    task = manager.create_task("Fail once")
    root = _root(manager, task.task_id)

    manager.apply_event(IssueEvent(root.issue_id, EventType.EXECUTION_STARTED))
    manager.apply_event(
        IssueEvent(
            root.issue_id,
            EventType.EXECUTION_COMPLETED,
            {"success": False, "message": "backend down"},
        ),
    )

    assert manager.get_issue(root.issue_id).status == IssueStatus.OPEN
    history = manager.get_history(root.issue_id)
    assert [event.sequence for event in history] == list(range(1, len(history) + 1))
    assert history[-1].event_type == EventType.STATUS_CHANGED
    assert history[-1].status_to == IssueStatus.OPEN


def test_execution_cannot_start_on_blocked_issue(manager: IssueGraphManager) -> None:
    task = manager.create_task("Blocked start")
    parent = _root(manager, task.task_id)
    manager.record_decomposition(parent.issue_id, [ChildIssueSpec(title="child")])

    with pytest.raises(InvariantViolationError):
        manager.apply_event(IssueEvent(parent.issue_id, EventType.EXECUTION_STARTED))
    assert [event.event_type for event in manager.get_history(parent.issue_id)] == [
        EventType.CREATED,
        EventType.STATUS_CHANGED,
    ]


def test_cancelled_task_offers_no_ready_issue(manager: IssueGraphManager) -> None:
    task = manager.create_task("Cancel me")

    cancelled = manager.cancel_task(task.task_id)

    assert cancelled.status == TaskStatus.CANCELLED
    assert manager.next_ready_issue(task.task_id) is None


def test_delete_task_cascades(manager: IssueGraphManager) -> None:
    task = manager.create_task("Delete me")
    parent = _root(manager, task.task_id)
    (child,) = manager.record_decomposition(parent.issue_id, [ChildIssueSpec(title="child")])

    manager.delete_task(task.task_id)

    assert manager.get_task(task.task_id) is None
    with pytest.raises(TaskNotFoundError):
        manager.load_issues(task.task_id)
    with pytest.raises(IssueNotFoundError):
        manager.get_history(child.issue_id)


def test_list_tasks_newest_first_and_filtered(manager: IssueGraphManager) -> None:
    older = manager.create_task("older", persona_id="p1")
    newer = manager.create_task("newer", persona_id="p2")

    assert [task.task_id for task in manager.list_tasks()] == [newer.task_id, older.task_id]
    assert [task.task_id for task in manager.list_tasks(persona_id="p1")] == [older.task_id]


def test_unknown_ids_raise_typed_errors(manager: IssueGraphManager) -> None:
    with pytest.raises(TaskNotFoundError):
        manager.next_ready_issue("os-missing0")
    with pytest.raises(IssueNotFoundError):
        manager.close_issue("os-missing0", "nothing")
