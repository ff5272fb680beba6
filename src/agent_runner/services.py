"""Runtime wiring and the session loop that drives a task to completion."""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass

from agent_runner.config import Settings
from agent_runner.engine.backend.base import ModelBackend
from agent_runner.engine.events import EventBus
from agent_runner.engine.executor import ExecutionEngine
from agent_runner.engine.models import ExecutionResult, ToolSpec
from agent_runner.errors import TaskNotFoundError
from agent_runner.graph.manager import IssueGraphManager
from agent_runner.graph.models import EventType, IssueEvent, IssueStatus, IssueView, TaskStatus
from agent_runner.graph.store import IssueStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    """Explicitly constructed services for one process or test."""

    settings: Settings
    store: IssueStore
    manager: IssueGraphManager
    bus: EventBus
    engine: ExecutionEngine


@contextmanager
def open_runtime(settings: Settings, backend: ModelBackend) -> Iterator[Runtime]:
    """Open the store, wire manager/bus/engine, and close the store on exit.

    The manager is subscribed first so every event is persisted before any
    other subscriber observes it.
    """

    settings.validate()
    store = IssueStore(settings.db_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    try:
        store.init_schema()
        manager = IssueGraphManager(store)
        bus = EventBus()
        bus.subscribe(manager.apply_event)
        bus.subscribe(_log_event)
        engine = ExecutionEngine(backend, bus, issues=manager, settings=settings)
        yield Runtime(settings=settings, store=store, manager=manager, bus=bus, engine=engine)
    finally:
        store.close()


@dataclass(slots=True)
class SessionRunSummary:
    task_id: str
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    decomposed: int = 0
    retried: int = 0
    cancelled: bool = False
    task_complete: bool = False
    task_blocked: bool = False
    last_result: ExecutionResult | None = None


class AgentSession:
    """Repeats next-ready-issue -> execute-with-retry for one task.

    Queuing lives here rather than in the engine: the engine rejects
    concurrent calls and the manager offers one issue per task at a time.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        manager: IssueGraphManager,
        engine: ExecutionEngine,
        bus: EventBus,
        model: str | None = None,
        system_prompt: str = "",
        tools: Sequence[ToolSpec] = (),
        tool_overrides: dict[str, bool] | None = None,
    ) -> None:
        self.manager = manager
        self.engine = engine
        self.bus = bus
        self.model = model
        self.system_prompt = system_prompt
        self.tools = tuple(tools)
        self.tool_overrides = dict(tool_overrides or {})

    async def run_task(
        self,
        task_id: str,
        *,
        max_issues: int | None = None,
        timeout_seconds: float | None = None,
    ) -> SessionRunSummary:
        """Run ready issues until none is ready, one fails, or ``max_issues`` is reached.

        An issue left in progress by an interrupted run is resumed first.
        """

        summary = SessionRunSummary(task_id=task_id)

        def count_retries(event: IssueEvent) -> None:
            if event.event_type == EventType.RETRY_SCHEDULED:
                summary.retried += 1

        unsubscribe = self.bus.subscribe(count_retries)
        try:
            interrupted = self._interrupted_issue(task_id)
            while max_issues is None or summary.processed < max_issues:
                if interrupted is not None:
                    logger.info("Resuming interrupted issue %s", interrupted.issue_id)
                    result = await self.engine.resume(
                        interrupted.issue_id,
                        model=self.model,
                        system_prompt=self.system_prompt,
                        tools=self.tools,
                        tool_overrides=self.tool_overrides,
                        timeout_seconds=timeout_seconds,
                    )
                    interrupted = None
                else:
                    issue = self.manager.next_ready_issue(task_id)
                    if issue is None:
                        break
                    result = await self.engine.execute_with_retry(
                        issue,
                        model=self.model,
                        system_prompt=self.system_prompt,
                        tools=self.tools,
                        tool_overrides=self.tool_overrides,
                        timeout_seconds=timeout_seconds,
                    )
                summary.processed += 1
                summary.last_result = result
                if result.cancelled:
                    summary.cancelled = True
                    break
                if result.success:
                    summary.succeeded += 1
                elif result.decomposed:
                    summary.decomposed += 1
                else:
                    summary.failed += 1
                    break
        finally:
            unsubscribe()

        summary.task_complete = self.manager.is_task_complete(task_id)
        summary.task_blocked = (
            not summary.task_complete and self.manager.next_ready_issue(task_id) is None
        )
        logger.info(
            "Session for task %s: processed=%d succeeded=%d failed=%d decomposed=%d",
            task_id,
            summary.processed,
            summary.succeeded,
            summary.failed,
            summary.decomposed,
        )
        return summary

    def _interrupted_issue(self, task_id: str) -> IssueView | None:
        task = self.manager.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        if task.status != TaskStatus.ACTIVE:
            return None
        for issue in self.manager.load_issues(task_id):
            if issue.status == IssueStatus.IN_PROGRESS:
                return issue
        return None


def _log_event(event: IssueEvent) -> None:
    logger.debug("Event %s for issue %s", event.event_type.value, event.issue_id)
