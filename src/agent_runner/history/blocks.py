"""Display-ready content blocks produced by the history projector."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class BlockKind(str, Enum):
    TURN = "turn"
    PLAN = "plan"
    TEXT = "text"
    VERIFICATION = "verification"
    NOTICE = "notice"
    DECOMPOSITION = "decomposition"
    RESULT = "result"


@dataclass(frozen=True, slots=True)
class ContentBlock:
    """One semantic unit of a run's history.

    ``transient`` marks notices (retries, errors) that some render modes hide.
    Styling is left to whoever renders the block.
    """

    kind: BlockKind
    turn_index: int
    text: str
    issue_id: str
    is_open: bool = False
    step_index: int | None = None
    transient: bool = False
