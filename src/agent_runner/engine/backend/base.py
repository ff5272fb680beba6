"""Model backend interface consumed by the execution engine."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Protocol

from agent_runner.engine.models import (
    DecompositionProposal,
    ExecutionContext,
    ExecutionPlan,
    PlanStep,
    StepDelta,
    StepResult,
    VerificationResult,
)
from agent_runner.graph.models import IssueView


class ModelBackend(Protocol):
    """Protocol implemented by language-model backends.

    Failures should surface as :class:`agent_runner.errors.AgentExecutionError`;
    any other exception is classified by message and type.
    """

    async def generate_plan(
        self,
        issue: IssueView,
        context: ExecutionContext,
    ) -> ExecutionPlan | DecompositionProposal:
        """Plan the issue, or propose splitting it into child issues."""

    def run_step(
        self,
        step: PlanStep,
        context: ExecutionContext,
    ) -> AsyncIterator[StepDelta | StepResult]:
        """Stream text deltas for one step, ending with exactly one StepResult."""

    async def verify(self, issue: IssueView, transcript: list[str]) -> VerificationResult:
        """Check whether the issue's goal was achieved."""
