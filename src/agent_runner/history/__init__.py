"""History projection of issue events into content blocks."""

from agent_runner.history.blocks import BlockKind, ContentBlock
from agent_runner.history.projector import HistoryProjector, build_from_history, fold

__all__ = [
    "BlockKind",
    "ContentBlock",
    "HistoryProjector",
    "build_from_history",
    "fold",
]
