"""Typed error taxonomy shared by the graph manager and the execution engine."""

from __future__ import annotations

from enum import Enum


class FailureClass(str, Enum):
    """Normalized attempt failure classes used by retry policy."""

    TIMEOUT = "timeout"
    BACKEND_TRANSIENT = "backend_transient"
    RATE_LIMITED = "rate_limited"
    PLAN_GENERATION_FAILED = "plan_generation_failed"
    MALFORMED_OUTPUT = "malformed_output"
    TOOL_FAILURE = "tool_failure"
    VERIFICATION_FAILED = "verification_failed"
    ACCESS_OR_AUTH = "access_or_auth"
    BILLING_OR_QUOTA = "billing_or_quota"
    MODEL_NOT_AVAILABLE = "model_not_available"
    BACKEND_NON_RETRYABLE = "backend_non_retryable"
    UNCLASSIFIED = "unclassified"


RETRIABLE_FAILURE_CLASSES: frozenset[FailureClass] = frozenset(
    {
        FailureClass.TIMEOUT,
        FailureClass.BACKEND_TRANSIENT,
        FailureClass.RATE_LIMITED,
        FailureClass.PLAN_GENERATION_FAILED,
        FailureClass.UNCLASSIFIED,
    },
)


class GraphError(Exception):
    """Base class for issue graph failures. Always surfaced to the caller."""


class StorageError(GraphError):
    """The durable store rejected or failed an operation."""


class TaskNotFoundError(GraphError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class IssueNotFoundError(GraphError):
    def __init__(self, issue_id: str) -> None:
        super().__init__(f"Issue not found: {issue_id}")
        self.issue_id = issue_id


class InvariantViolationError(GraphError):
    """A mutation would break a graph invariant (transition table, single-flight)."""


class DependencyCycleError(GraphError):
    def __init__(self, issue_id: str, depends_on: str) -> None:
        super().__init__(f"Adding dependency would create a cycle: {issue_id} -> {depends_on}")
        self.issue_id = issue_id
        self.depends_on = depends_on


class EngineErrorKind(str, Enum):
    ALREADY_EXECUTING = "already_executing"
    NO_SUBSCRIBERS = "no_subscribers"
    NOT_CONFIGURED = "not_configured"
    ISSUE_NOT_FOUND = "issue_not_found"
    INVALID_STATE = "invalid_state"
    SUBSCRIBER_FAILED = "subscriber_failed"


_ENGINE_ERROR_MESSAGES = {
    EngineErrorKind.ALREADY_EXECUTING: "Engine is already executing an issue",
    EngineErrorKind.NO_SUBSCRIBERS: "No event subscribers are attached to the engine",
    EngineErrorKind.NOT_CONFIGURED: "Engine is missing a required collaborator",
    EngineErrorKind.ISSUE_NOT_FOUND: "Issue not found",
    EngineErrorKind.INVALID_STATE: "Invalid state for this operation",
    EngineErrorKind.SUBSCRIBER_FAILED: "Event subscriber failed",
}


class AgentEngineError(Exception):
    """Engine-level misuse or misconfiguration. Fatal to the current call."""

    def __init__(self, kind: EngineErrorKind, detail: str | None = None) -> None:
        message = _ENGINE_ERROR_MESSAGES[kind]
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.kind = kind

    @property
    def retriable(self) -> bool:
        return False


class AgentExecutionError(Exception):
    """Attempt-level failure: backend error, malformed output, tool failure."""

    def __init__(
        self,
        message: str,
        *,
        failure_class: FailureClass = FailureClass.UNCLASSIFIED,
        retriable: bool | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.failure_class = failure_class
        self.retriable_override = retriable
        self.retry_after = retry_after

    @property
    def retriable(self) -> bool:
        if self.retriable_override is not None:
            return self.retriable_override
        return self.failure_class in RETRIABLE_FAILURE_CLASSES
