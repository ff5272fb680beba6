"""Local deterministic backend for demos and integration tests."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

from agent_runner.engine.models import (
    ExecutionContext,
    ExecutionPlan,
    PlanStep,
    StepDelta,
    StepResult,
    VerificationResult,
    VerificationStatus,
)
from agent_runner.graph.models import IssueView


class EchoBackend:
    """Plans one step per non-empty description line and echoes it back word by word."""

    def __init__(self, *, delta_delay_seconds: float = 0.0) -> None:
        self.delta_delay_seconds = delta_delay_seconds

    async def generate_plan(self, issue: IssueView, context: ExecutionContext) -> ExecutionPlan:
        lines = [line.strip() for line in (issue.description or issue.title).splitlines()]
        steps = [
            PlanStep(index=index, description=line)
            for index, line in enumerate(line for line in lines if line)
        ]
        if not steps:
            steps = [PlanStep(index=0, description=issue.title)]
        return ExecutionPlan(steps=steps)

    async def run_step(
        self,
        step: PlanStep,
        context: ExecutionContext,
    ) -> AsyncIterator[StepDelta | StepResult]:
        words = step.description.split()
        for position, word in enumerate(words):
            if self.delta_delay_seconds:
                await asyncio.sleep(self.delta_delay_seconds)
            yield StepDelta(text=word if position == 0 else f" {word}")
        yield StepResult(content=" ".join(words))

    async def verify(self, issue: IssueView, transcript: list[str]) -> VerificationResult:
        return VerificationResult(
            status=VerificationStatus.ACHIEVED,
            summary=f"Completed {len(transcript)} step(s) for {issue.title}",
        )
