"""Controllers for agent-runner CLI commands."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from agent_runner.config import Settings
from agent_runner.engine.backend import EchoBackend
from agent_runner.graph.manager import IssueGraphManager
from agent_runner.graph.models import IssueEvent, IssueView
from agent_runner.graph.store import IssueStore
from agent_runner.history.blocks import ContentBlock
from agent_runner.history.projector import build_from_history
from agent_runner.services import AgentSession, open_runtime


@dataclass(slots=True)
class TaskCreateCommand:
    """CLI input for task creation."""

    db_path: Path | None
    query: str
    persona_id: str | None


@dataclass(slots=True)
class TaskListCommand:
    db_path: Path | None
    persona_id: str | None
    limit: int


@dataclass(slots=True)
class TaskMutateCommand:
    """CLI input for cancel/delete operations."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class TaskRunCommand:
    """CLI input for running a task with the local echo backend."""

    db_path: Path | None
    task_id: str
    max_issues: int | None
    model: str | None


@dataclass(slots=True)
class IssueListCommand:
    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class IssueCloseCommand:
    db_path: Path | None
    issue_id: str
    reason: str | None


@dataclass(slots=True)
class IssueDependCommand:
    db_path: Path | None
    issue_id: str
    depends_on: str


@dataclass(slots=True)
class IssueHistoryCommand:
    db_path: Path | None
    issue_id: str
    blocks: bool


class AgentRunnerCliController:
    """Coordinates task, issue and history CLI operations."""

    def create_task(self, command: TaskCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _manager(settings) as manager:
            task = manager.create_task(
                command.query,
                persona_id=command.persona_id or settings.persona.persona_id,
            )
            issues = manager.load_issues(task.task_id)
        return [
            f"Task created: task_id={task.task_id} title={task.title!r} status={task.status.value}",
            f"Root issue: {issues[0].issue_id}",
        ]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _manager(settings) as manager:
            tasks = manager.list_tasks(persona_id=command.persona_id, limit=command.limit)

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} status={task.status.value} persona={task.persona_id} "
                f"created_at={task.created_at.isoformat()} title={task.title!r}",
            )
        return lines

    def cancel_task(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _manager(settings) as manager:
            manager.cancel_task(command.task_id)
        return [f"Task cancelled: {command.task_id}"]

    def delete_task(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _manager(settings) as manager:
            manager.delete_task(command.task_id)
        return [f"Task deleted: {command.task_id}"]

    def run_task(self, command: TaskRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings, EchoBackend()) as runtime:
            session = AgentSession(
                manager=runtime.manager,
                engine=runtime.engine,
                bus=runtime.bus,
                model=command.model,
            )
            summary = asyncio.run(session.run_task(command.task_id, max_issues=command.max_issues))

        if summary.task_complete:
            state = "complete"
        elif summary.task_blocked:
            state = "blocked"
        else:
            state = "pending"
        lines = [
            "Session summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} decomposed={summary.decomposed} "
            f"retried={summary.retried} cancelled={summary.cancelled}",
            f"Task {command.task_id}: {state}",
        ]
        if summary.last_result is not None and not summary.last_result.success:
            lines.append(f"Last result: {summary.last_result.message}")
        return lines

    def list_issues(self, command: IssueListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _manager(settings) as manager:
            issues = manager.load_issues(command.task_id)

        lines = [f"Issues: {len(issues)}"]
        lines.extend(f"  {_issue_line(issue)}" for issue in issues)
        return lines

    def next_issue(self, command: IssueListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _manager(settings) as manager:
            issue = manager.next_ready_issue(command.task_id)
            complete = manager.is_task_complete(command.task_id)
        if issue is not None:
            return [f"Next issue: {_issue_line(issue)}"]
        if complete:
            return [f"No ready issue: task {command.task_id} is complete"]
        return [f"No ready issue: task {command.task_id} is blocked"]

    def close_issue(self, command: IssueCloseCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _manager(settings) as manager:
            issue = manager.close_issue(command.issue_id, command.reason)
        return [f"Issue closed: {issue.issue_id} result={issue.result or '-'}"]

    def add_dependency(self, command: IssueDependCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _manager(settings) as manager:
            issue = manager.add_dependency(command.issue_id, command.depends_on)
        return [f"Dependency added: {_issue_line(issue)}"]

    def history(self, command: IssueHistoryCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _manager(settings) as manager:
            events = manager.get_history(command.issue_id)

        if command.blocks:
            blocks = build_from_history(events)
            lines = [f"Blocks: {len(blocks)}"]
            lines.extend(f"  {_block_line(block)}" for block in blocks)
            return lines
        lines = [f"Events: {len(events)}"]
        lines.extend(f"  {_event_line(event)}" for event in events)
        return lines


def _issue_line(issue: IssueView) -> str:
    depends = ",".join(issue.dependencies) or "-"
    return (
        f"{issue.issue_id} status={issue.status.value} parent={issue.parent_issue_id or '-'} "
        f"depends_on={depends} title={issue.title!r}"
    )


def _event_line(event: IssueEvent) -> str:
    created = event.created_at.isoformat() if event.created_at is not None else "-"
    transition = ""
    if event.status_from is not None or event.status_to is not None:
        transition = (
            f" {event.status_from.value if event.status_from else '-'} -> "
            f"{event.status_to.value if event.status_to else '-'}"
        )
    details = json.dumps(event.details, ensure_ascii=False, sort_keys=True) if event.details else ""
    return f"#{event.sequence} {created} {event.event_type.value}{transition} {details}".rstrip()


def _block_line(block: ContentBlock) -> str:
    flags = []
    if block.is_open:
        flags.append("open")
    if block.transient:
        flags.append("transient")
    suffix = f" ({', '.join(flags)})" if flags else ""
    text = block.text.replace("\n", " | ")
    return f"[{block.turn_index}] {block.kind.value}{suffix}: {text}"


@contextmanager
def _manager(settings: Settings) -> Iterator[IssueGraphManager]:
    settings.validate()
    store = IssueStore(settings.db_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    store.init_schema()
    try:
        yield IssueGraphManager(store)
    finally:
        store.close()
