"""Execution engine: plan, step, verify and retry one issue at a time."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Sequence
from contextlib import suppress
from typing import Protocol, TypeVar

from agent_runner.config import Settings
from agent_runner.engine.backend.base import ModelBackend
from agent_runner.engine.events import EventBus
from agent_runner.engine.failure_classifier import FailureClassification, classify_failure
from agent_runner.engine.models import (
    DecompositionProposal,
    ExecutionContext,
    ExecutionPlan,
    ExecutionResult,
    IssueErrorState,
    PlanStep,
    RetryPolicy,
    StepResult,
    ToolSpec,
    VerificationStatus,
)
from agent_runner.errors import (
    RETRIABLE_FAILURE_CLASSES,
    AgentEngineError,
    AgentExecutionError,
    EngineErrorKind,
    FailureClass,
    GraphError,
    IssueNotFoundError,
)
from agent_runner.graph.models import (
    ChildIssueSpec,
    EventType,
    IssueEvent,
    IssueStatus,
    IssueView,
    new_issue_id,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class IssueReader(Protocol):
    def get_issue(self, issue_id: str) -> IssueView: ...

    def child_issues(self, issue_id: str) -> list[IssueView]: ...


class _Interrupted(Exception):
    def __init__(self, *, timed_out: bool) -> None:
        super().__init__("timed out" if timed_out else "cancelled")
        self.timed_out = timed_out


class ExecutionEngine:
    """Drives one issue from in-progress to a terminal outcome.

    Every transition is published on the event bus; the engine never writes
    to the store. At most one execution is in flight per engine instance.
    """

    def __init__(
        self,
        backend: ModelBackend,
        bus: EventBus,
        *,
        issues: IssueReader | None = None,
        settings: Settings | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.backend = backend
        self.bus = bus
        self.issues = issues
        self.settings = settings or Settings()
        self.retry_policy = retry_policy or RetryPolicy(self.settings.retry)
        self._active_issue_id: str | None = None
        self._cancel_requested = False
        self._cancel_event: asyncio.Event | None = None
        self._error_states: dict[str, IssueErrorState] = {}

    @property
    def is_executing(self) -> bool:
        return self._active_issue_id is not None

    @property
    def active_issue_id(self) -> str | None:
        return self._active_issue_id

    async def execute_issue(  # noqa: PLR0913
        self,
        issue: IssueView,
        *,
        model: str | None = None,
        system_prompt: str = "",
        tools: Sequence[ToolSpec] = (),
        tool_overrides: dict[str, bool] | None = None,
        timeout_seconds: float | None = None,
    ) -> ExecutionResult:
        """Run a single attempt without retries."""

        return await self._execute(
            issue,
            self._context(model, system_prompt, tools, tool_overrides),
            policy=RetryPolicy.none(),
            timeout_seconds=timeout_seconds,
            resumed=False,
        )

    async def execute_with_retry(  # noqa: PLR0913
        self,
        issue: IssueView,
        *,
        model: str | None = None,
        system_prompt: str = "",
        tools: Sequence[ToolSpec] = (),
        tool_overrides: dict[str, bool] | None = None,
        timeout_seconds: float | None = None,
    ) -> ExecutionResult:
        """Run attempts until success, a non-retriable failure or an exhausted retry budget."""

        return await self._execute(
            issue,
            self._context(model, system_prompt, tools, tool_overrides),
            policy=self.retry_policy,
            timeout_seconds=timeout_seconds,
            resumed=False,
        )

    async def resume(  # noqa: PLR0913
        self,
        issue_id: str,
        *,
        model: str | None = None,
        system_prompt: str = "",
        tools: Sequence[ToolSpec] = (),
        tool_overrides: dict[str, bool] | None = None,
        timeout_seconds: float | None = None,
    ) -> ExecutionResult:
        """Restart an interrupted issue from planning with caller-supplied context."""

        if self.issues is None:
            raise AgentEngineError(
                EngineErrorKind.NOT_CONFIGURED,
                "resume requires an issue reader",
            )
        try:
            issue = self.issues.get_issue(issue_id)
        except IssueNotFoundError as error:
            raise AgentEngineError(EngineErrorKind.ISSUE_NOT_FOUND, issue_id) from error
        if issue.status not in {IssueStatus.OPEN, IssueStatus.IN_PROGRESS}:
            raise AgentEngineError(
                EngineErrorKind.INVALID_STATE,
                f"cannot resume {issue_id} from status={issue.status.value}",
            )
        return await self._execute(
            issue,
            self._context(model, system_prompt, tools, tool_overrides),
            policy=self.retry_policy,
            timeout_seconds=timeout_seconds,
            resumed=True,
        )

    def cancel(self) -> None:
        """Request cooperative cancellation of the in-flight execution."""

        if self._active_issue_id is None:
            return
        self._cancel_requested = True
        if self._cancel_event is not None:
            self._cancel_event.set()

    def error_state(self, issue_id: str) -> IssueErrorState | None:
        return self._error_states.get(issue_id)

    def clear_error_state(self, issue_id: str) -> None:
        self._error_states.pop(issue_id, None)

    def _context(
        self,
        model: str | None,
        system_prompt: str,
        tools: Sequence[ToolSpec],
        tool_overrides: dict[str, bool] | None,
    ) -> ExecutionContext:
        return ExecutionContext(
            model=model or self.settings.engine.default_model,
            system_prompt=system_prompt,
            tools=tuple(tools),
            tool_overrides=dict(tool_overrides or {}),
        )

    async def _execute(
        self,
        issue: IssueView,
        context: ExecutionContext,
        *,
        policy: RetryPolicy,
        timeout_seconds: float | None,
        resumed: bool,
    ) -> ExecutionResult:
        if self._active_issue_id is not None:
            raise AgentEngineError(EngineErrorKind.ALREADY_EXECUTING, self._active_issue_id)
        if not self.bus.has_subscribers:
            raise AgentEngineError(EngineErrorKind.NO_SUBSCRIBERS)

        if timeout_seconds is None and self.settings.engine.step_timeout_seconds > 0:
            timeout_seconds = self.settings.engine.step_timeout_seconds
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds if timeout_seconds is not None else None

        self._prune_error_states(issue.issue_id)
        self._active_issue_id = issue.issue_id
        self._cancel_requested = False
        self._cancel_event = asyncio.Event()
        try:
            return await self._run_attempts(
                issue,
                context,
                policy=policy,
                deadline=deadline,
                resumed=resumed,
            )
        finally:
            self._active_issue_id = None
            self._cancel_event = None

    async def _run_attempts(
        self,
        issue: IssueView,
        context: ExecutionContext,
        *,
        policy: RetryPolicy,
        deadline: float | None,
        resumed: bool,
    ) -> ExecutionResult:
        self._emit(
            issue,
            EventType.EXECUTION_STARTED,
            {
                "model": context.model,
                "resumed": resumed,
                "max_retries": policy.max_retries,
                "tools": [tool.name for tool in context.enabled_tools],
            },
        )
        attempt = 0
        retries = 0
        unclassified_retries = 0
        while True:
            attempt += 1
            context.transcript.clear()
            try:
                return await self._attempt(issue, context, attempt=attempt, deadline=deadline)
            except _Interrupted as interrupted:
                return self._interrupted(issue, attempt=attempt, timed_out=interrupted.timed_out)
            except (GraphError, AgentEngineError):
                raise
            except Exception as error:  # noqa: BLE001
                classification = classify_failure(error)
                retriable = _is_retriable(
                    error,
                    classification,
                    unclassified_retries=unclassified_retries,
                    unclassified_limit=policy.settings.unclassified_retry_limit,
                )
                will_retry = retriable and retries < policy.max_retries
                self._emit(
                    issue,
                    EventType.ERROR_ENCOUNTERED,
                    {
                        "attempt": attempt,
                        "message": _error_message(error),
                        "retriable": retriable,
                        "will_retry": will_retry,
                        **classification.to_event_details(),
                    },
                )
                if not will_retry:
                    return self._fail(
                        issue,
                        error,
                        classification,
                        attempt=attempt,
                        can_retry=classification.failure_class in RETRIABLE_FAILURE_CLASSES,
                    )

                retries += 1
                if classification.failure_class == FailureClass.UNCLASSIFIED:
                    unclassified_retries += 1
                delay = policy.delay_for(attempt, retry_after=getattr(error, "retry_after", None))
                self._emit(
                    issue,
                    EventType.RETRY_SCHEDULED,
                    {
                        "attempt": attempt,
                        "delay_seconds": delay,
                        "failure_class": classification.failure_class.value,
                    },
                )
                logger.warning(
                    "Attempt %d for issue %s failed (%s); retrying in %.2fs",
                    attempt,
                    issue.issue_id,
                    classification.failure_class.value,
                    delay,
                )
                try:
                    await self._wait(delay, deadline)
                except _Interrupted as interrupted:
                    return self._interrupted(
                        issue,
                        attempt=attempt,
                        timed_out=interrupted.timed_out,
                    )

    async def _attempt(
        self,
        issue: IssueView,
        context: ExecutionContext,
        *,
        attempt: int,
        deadline: float | None,
    ) -> ExecutionResult:
        self._checkpoint(deadline)
        children = self._completed_children(issue)
        if children:
            # Reopened after decomposition: the children did the work.
            logger.info(
                "Issue %s reopened with %d closed children; verifying their results",
                issue.issue_id,
                len(children),
            )
            context.transcript.extend(
                f"{child.title}: {child.result or ''}".rstrip() for child in children
            )
            return await self._verify_and_complete(
                issue,
                context,
                attempt=attempt,
                deadline=deadline,
            )

        proposal = await self._call(self.backend.generate_plan(issue, context), deadline)
        if isinstance(proposal, DecompositionProposal):
            return self._decompose(
                issue,
                proposal.children,
                attempt=attempt,
                reason=proposal.reason,
            )
        if not proposal.steps:
            raise AgentExecutionError(
                "Backend returned an empty plan",
                failure_class=FailureClass.PLAN_GENERATION_FAILED,
            )
        limit = self.settings.engine.max_steps_per_issue
        if len(proposal.steps) > limit:
            return self._decompose(
                issue,
                chunk_plan(issue, proposal, limit),
                attempt=attempt,
                reason="step_limit",
            )

        self._emit(
            issue,
            EventType.PLAN_CREATED,
            {"attempt": attempt, "steps": proposal.to_details()},
        )
        for step in proposal.steps:
            self._checkpoint(deadline)
            result = await self._run_step(issue, step, context, deadline)
            context.transcript.append(result.content)
            if not result.success:
                raise AgentExecutionError(
                    f"Step {step.index} reported failure",
                    failure_class=FailureClass.TOOL_FAILURE,
                )
        return await self._verify_and_complete(issue, context, attempt=attempt, deadline=deadline)

    async def _verify_and_complete(
        self,
        issue: IssueView,
        context: ExecutionContext,
        *,
        attempt: int,
        deadline: float | None,
    ) -> ExecutionResult:
        self._checkpoint(deadline)
        verification = await self._call(
            self.backend.verify(issue, list(context.transcript)),
            deadline,
        )
        self._emit(issue, EventType.VERIFICATION_COMPLETED, verification.to_details())
        if verification.status == VerificationStatus.NOT_ACHIEVED:
            raise AgentExecutionError(
                f"Verification failed: {verification.summary}",
                failure_class=FailureClass.VERIFICATION_FAILED,
            )
        message = verification.summary
        if verification.status == VerificationStatus.INCONCLUSIVE:
            message = f"Partially verified: {verification.summary}"

        self._emit(
            issue,
            EventType.EXECUTION_COMPLETED,
            {"success": True, "message": message, "attempt": attempt},
        )
        self._error_states.pop(issue.issue_id, None)
        logger.info("Issue %s completed on attempt %d", issue.issue_id, attempt)
        return ExecutionResult(
            success=True,
            message=message,
            issue=self._refresh(issue),
            attempts=attempt,
            verification=verification,
        )

    async def _run_step(
        self,
        issue: IssueView,
        step: PlanStep,
        context: ExecutionContext,
        deadline: float | None,
    ) -> StepResult:
        self._emit(
            issue,
            EventType.STEP_STARTED,
            {"index": step.index, "description": step.description, "tool": step.tool},
        )
        result: StepResult | None = None
        stream = aiter(self.backend.run_step(step, context))
        try:
            while True:
                try:
                    chunk = await self._call(anext(stream), deadline)
                except StopAsyncIteration:
                    break
                if isinstance(chunk, StepResult):
                    result = chunk
                    break
                logger.debug("Delta for %s step %d: %r", issue.issue_id, step.index, chunk.text)
                self._emit(
                    issue,
                    EventType.STREAMING_DELTA,
                    {"index": step.index, "text": chunk.text},
                )
                self._checkpoint(deadline)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        if result is None:
            raise AgentExecutionError(
                f"Step {step.index} stream ended without a result",
                failure_class=FailureClass.MALFORMED_OUTPUT,
            )
        self._emit(
            issue,
            EventType.STEP_COMPLETED,
            {
                "index": step.index,
                "content": result.content,
                "success": result.success,
                "tool_invocations": [item.to_details() for item in result.tool_invocations],
            },
        )
        return result

    def _decompose(
        self,
        issue: IssueView,
        children: Sequence[ChildIssueSpec],
        *,
        attempt: int,
        reason: str,
    ) -> ExecutionResult:
        specs = [
            ChildIssueSpec(
                title=child.title,
                description=child.description,
                depends_on=child.depends_on,
                issue_id=child.issue_id or new_issue_id(),
            )
            for child in children
        ]
        child_ids = [spec.issue_id for spec in specs if spec.issue_id is not None]
        self._emit(
            issue,
            EventType.DECOMPOSED,
            {
                "attempt": attempt,
                "reason": reason,
                "children": [spec.to_details() for spec in specs],
            },
        )
        message = f"Decomposed into {len(specs)} child issues ({reason})"
        self._emit(
            issue,
            EventType.EXECUTION_COMPLETED,
            {"success": False, "decomposed": True, "message": message, "attempt": attempt},
        )
        logger.info("Issue %s decomposed into %d children", issue.issue_id, len(specs))
        return ExecutionResult(
            success=False,
            message=message,
            issue=self._refresh(issue),
            attempts=attempt,
            decomposed=True,
            child_issue_ids=child_ids,
        )

    def _fail(
        self,
        issue: IssueView,
        error: Exception,
        classification: FailureClassification,
        *,
        attempt: int,
        can_retry: bool,
    ) -> ExecutionResult:
        message = _error_message(error)
        self._error_states[issue.issue_id] = IssueErrorState(
            issue_id=issue.issue_id,
            message=message,
            failure_class=classification.failure_class,
            attempts=attempt,
            can_retry=can_retry,
        )
        self._emit(
            issue,
            EventType.EXECUTION_COMPLETED,
            {
                "success": False,
                "message": message,
                "attempt": attempt,
                "failure_class": classification.failure_class.value,
            },
        )
        logger.warning(
            "Issue %s failed after %d attempt(s): %s",
            issue.issue_id,
            attempt,
            message,
        )
        return ExecutionResult(
            success=False,
            message=message,
            issue=self._refresh(issue),
            attempts=attempt,
            failure_class=classification.failure_class,
            error=error,
        )

    def _interrupted(self, issue: IssueView, *, attempt: int, timed_out: bool) -> ExecutionResult:
        message = "Execution timed out" if timed_out else "Execution cancelled"
        logger.warning("%s for issue %s during attempt %d", message, issue.issue_id, attempt)
        return ExecutionResult(
            success=False,
            message=message,
            issue=self._refresh(issue),
            attempts=attempt,
            cancelled=True,
            timed_out=timed_out,
            failure_class=FailureClass.TIMEOUT if timed_out else None,
        )

    def _emit(self, issue: IssueView, event_type: EventType, details: dict[str, object]) -> None:
        """Publish one event; a subscriber failure ends the call and is never retried."""

        try:
            self.bus.publish(
                IssueEvent(issue_id=issue.issue_id, event_type=event_type, details=details),
            )
        except (GraphError, AgentEngineError):
            raise
        except Exception as error:  # noqa: BLE001
            raise AgentEngineError(
                EngineErrorKind.SUBSCRIBER_FAILED,
                f"{event_type.value} for {issue.issue_id}: {_error_message(error)}",
            ) from error

    def _refresh(self, issue: IssueView) -> IssueView:
        if self.issues is None:
            return issue
        return self.issues.get_issue(issue.issue_id)

    def _completed_children(self, issue: IssueView) -> list[IssueView]:
        if self.issues is None:
            return []
        children = self.issues.child_issues(issue.issue_id)
        if children and all(child.is_closed for child in children):
            return children
        return []

    def _prune_error_states(self, issue_id: str) -> None:
        """Drop the state of the issue about to run and of closed or deleted issues."""

        self._error_states.pop(issue_id, None)
        if self.issues is None:
            return
        for known_id in list(self._error_states):
            try:
                closed = self.issues.get_issue(known_id).is_closed
            except IssueNotFoundError:
                closed = True
            if closed:
                del self._error_states[known_id]

    def _checkpoint(self, deadline: float | None) -> None:
        if self._cancel_requested:
            raise _Interrupted(timed_out=False)
        if deadline is not None and asyncio.get_running_loop().time() >= deadline:
            raise _Interrupted(timed_out=True)

    async def _call(self, awaitable: Awaitable[T], deadline: float | None) -> T:
        timeout = asyncio.timeout_at(deadline)
        try:
            async with timeout:
                return await awaitable
        except TimeoutError:
            if timeout.expired():
                raise _Interrupted(timed_out=True) from None
            raise

    async def _wait(self, delay: float, deadline: float | None) -> None:
        """Backoff sleep that wakes early on cancel and never outlives the deadline."""

        if delay > 0 and self._cancel_event is not None:
            wait_for = delay
            if deadline is not None:
                wait_for = min(delay, max(0.0, deadline - asyncio.get_running_loop().time()))
            with suppress(TimeoutError):
                await asyncio.wait_for(self._cancel_event.wait(), timeout=wait_for)
        self._checkpoint(deadline)


def chunk_plan(issue: IssueView, plan: ExecutionPlan, limit: int) -> list[ChildIssueSpec]:
    """Split an oversized plan into chained child issues of at most ``limit`` steps."""

    chunks = [plan.steps[start : start + limit] for start in range(0, len(plan.steps), limit)]
    total = len(chunks)
    return [
        ChildIssueSpec(
            title=f"{issue.title} (part {number}/{total})",
            description="\n".join(step.description for step in chunk),
            depends_on=(number - 2,) if number > 1 else (),
        )
        for number, chunk in enumerate(chunks, start=1)
    ]


def _is_retriable(
    error: Exception,
    classification: FailureClassification,
    *,
    unclassified_retries: int,
    unclassified_limit: int,
) -> bool:
    if isinstance(error, AgentExecutionError) and error.retriable_override is not None:
        return error.retriable_override
    if classification.failure_class == FailureClass.UNCLASSIFIED:
        return unclassified_retries < unclassified_limit
    return classification.failure_class in RETRIABLE_FAILURE_CLASSES


def _error_message(error: BaseException) -> str:
    return str(error) or type(error).__name__
