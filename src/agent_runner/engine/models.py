"""Plan, step, verification and result models for the execution engine."""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from agent_runner.config import RetrySettings
from agent_runner.errors import FailureClass
from agent_runner.graph.models import ChildIssueSpec, IssueView


@dataclass(slots=True)
class ToolSpec:
    """Opaque tool description handed through to the model backend."""

    name: str
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ExecutionContext:
    """Caller-supplied context for one logical execution.

    The engine holds no durable state, so ``resume`` rebuilds this from the
    same parameters the original call used. ``transcript`` accumulates step
    output within one attempt and is reset when a new attempt starts.
    """

    model: str
    system_prompt: str = ""
    tools: tuple[ToolSpec, ...] = ()
    tool_overrides: dict[str, bool] = field(default_factory=dict)
    transcript: list[str] = field(default_factory=list)

    @property
    def enabled_tools(self) -> tuple[ToolSpec, ...]:
        return tuple(tool for tool in self.tools if self.tool_overrides.get(tool.name, True))


@dataclass(slots=True)
class PlanStep:
    index: int
    description: str
    tool: str | None = None

    def to_details(self) -> dict[str, object]:
        return {"index": self.index, "description": self.description, "tool": self.tool}


@dataclass(slots=True)
class ExecutionPlan:
    steps: list[PlanStep]

    def to_details(self) -> list[dict[str, object]]:
        return [step.to_details() for step in self.steps]


@dataclass(slots=True)
class DecompositionProposal:
    """Backend verdict that an issue is too broad to plan directly."""

    children: list[ChildIssueSpec]
    reason: str = "too_broad"


@dataclass(slots=True)
class StepDelta:
    text: str


@dataclass(slots=True)
class ToolInvocation:
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    output: str | None = None

    def to_details(self) -> dict[str, object]:
        return {"name": self.name, "arguments": self.arguments, "output": self.output}


@dataclass(slots=True)
class StepResult:
    content: str
    success: bool = True
    tool_invocations: list[ToolInvocation] = field(default_factory=list)


class VerificationStatus(str, Enum):
    ACHIEVED = "achieved"
    NOT_ACHIEVED = "not_achieved"
    INCONCLUSIVE = "inconclusive"


@dataclass(slots=True)
class VerificationResult:
    status: VerificationStatus
    summary: str
    remaining_work: str | None = None

    def to_details(self) -> dict[str, object]:
        return {
            "status": self.status.value,
            "summary": self.summary,
            "remaining_work": self.remaining_work,
        }


def parse_verification_result(text: str) -> VerificationResult:
    """Parse ``STATUS:`` / ``SUMMARY:`` / ``REMAINING:`` lines of a verifier reply."""

    status = VerificationStatus.INCONCLUSIVE
    summary: str | None = None
    remaining: str | None = None
    for raw_line in text.splitlines():
        line = raw_line.strip()
        upper = line.upper()
        if upper.startswith("STATUS:"):
            value = line[len("STATUS:") :].strip().upper()
            if value == "YES":
                status = VerificationStatus.ACHIEVED
            elif value == "NO":
                status = VerificationStatus.NOT_ACHIEVED
            else:
                status = VerificationStatus.INCONCLUSIVE
        elif upper.startswith("SUMMARY:"):
            summary = line[len("SUMMARY:") :].strip()
        elif upper.startswith("REMAINING:"):
            remaining = line[len("REMAINING:") :].strip() or None
    return VerificationResult(
        status=status,
        summary=summary if summary else text.strip(),
        remaining_work=remaining,
    )


@dataclass(slots=True)
class ExecutionResult:
    """Terminal outcome of one execute call."""

    success: bool
    message: str
    issue: IssueView
    attempts: int = 1
    cancelled: bool = False
    timed_out: bool = False
    decomposed: bool = False
    child_issue_ids: list[str] = field(default_factory=list)
    failure_class: FailureClass | None = None
    error: Exception | None = None
    verification: VerificationResult | None = None


@dataclass(slots=True)
class IssueErrorState:
    """Last failure the engine saw for an issue; in memory only."""

    issue_id: str
    message: str
    failure_class: FailureClass
    attempts: int
    can_retry: bool


class RetryPolicy:
    """Exponential backoff capped at ``max_delay_seconds``, optionally jittered."""

    def __init__(self, settings: RetrySettings, *, rng: random.Random | None = None) -> None:
        self.settings = settings
        self._random = rng or random.Random()  # noqa: S311

    @classmethod
    def none(cls) -> RetryPolicy:
        return cls(RetrySettings(max_retries=0, unclassified_retry_limit=0))

    @property
    def max_retries(self) -> int:
        return self.settings.max_retries

    def delay_for(self, attempt: int, *, retry_after: float | None = None) -> float:
        """Delay before the retry that follows failed ``attempt`` (1-based)."""

        capped = min(
            self.settings.max_delay_seconds,
            self.settings.base_delay_seconds
            * (self.settings.backoff_multiplier ** max(attempt - 1, 0)),
        )
        if retry_after is not None:
            capped = min(self.settings.max_delay_seconds, max(capped, retry_after))
        if self.settings.jitter:
            return self._random.uniform(0, capped)
        return capped
