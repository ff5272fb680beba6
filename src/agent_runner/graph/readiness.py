"""Pure readiness computations over one task's issue graph.

Readiness is recomputed on demand from the full issue list of a task instead of
being maintained incrementally. Two independent relations gate an issue:
its ``dependencies`` (an adjacency list) and its decomposition children (issues
whose ``parent_issue_id`` points at it).
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence

from agent_runner.graph.models import IssueStatus, IssueView


def unclosed_blockers(
    issue: IssueView,
    *,
    by_id: Mapping[str, IssueView],
    children: Sequence[IssueView] = (),
) -> list[str]:
    """Ids of dependencies and decomposition children that are not closed yet."""

    blockers = [
        dependency_id
        for dependency_id in issue.dependencies
        if dependency_id not in by_id or by_id[dependency_id].status != IssueStatus.CLOSED
    ]
    blockers.extend(child.issue_id for child in children if child.status != IssueStatus.CLOSED)
    return blockers


def children_by_parent(issues: Iterable[IssueView]) -> dict[str, list[IssueView]]:
    grouped: dict[str, list[IssueView]] = {}
    for issue in issues:
        if issue.parent_issue_id is not None:
            grouped.setdefault(issue.parent_issue_id, []).append(issue)
    return grouped


def resting_status(
    issue: IssueView,
    *,
    by_id: Mapping[str, IssueView],
    children: Sequence[IssueView] = (),
) -> IssueStatus:
    """Status a non-running, non-closed issue should have: open or blocked."""

    if unclosed_blockers(issue, by_id=by_id, children=children):
        return IssueStatus.BLOCKED
    return IssueStatus.OPEN


def ready_frontier(issues: Sequence[IssueView]) -> list[IssueView]:
    """Open issues with every blocker closed, in creation order.

    Empty whenever some issue of the task is in progress (single-flight per task).
    """

    if any(issue.status == IssueStatus.IN_PROGRESS for issue in issues):
        return []
    by_id = {issue.issue_id: issue for issue in issues}
    children = children_by_parent(issues)
    frontier = [
        issue
        for issue in issues
        if issue.status == IssueStatus.OPEN
        and not unclosed_blockers(issue, by_id=by_id, children=children.get(issue.issue_id, ()))
    ]
    return sorted(frontier, key=lambda issue: issue.position)


def would_create_cycle(
    *,
    issue_id: str,
    depends_on: str,
    dependencies: Mapping[str, Sequence[str]],
) -> bool:
    """True when ``depends_on`` already (transitively) depends on ``issue_id``."""

    if issue_id == depends_on:
        return True
    visited: set[str] = set()
    queue = [depends_on]
    while queue:
        current = queue.pop(0)
        if current == issue_id:
            return True
        if current in visited:
            continue
        visited.add(current)
        queue.extend(dependencies.get(current, ()))
    return False
