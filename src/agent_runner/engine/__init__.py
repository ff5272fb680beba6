"""Execution engine: turns one ready issue into a plan, runs it and verifies it.

The engine publishes a single stream of :class:`agent_runner.graph.models.IssueEvent`
values on an :class:`EventBus`; persistence, projection and logging are
independent subscribers.
"""

from agent_runner.engine.events import EventBus
from agent_runner.engine.executor import ExecutionEngine

__all__ = [
    "EventBus",
    "ExecutionEngine",
]
