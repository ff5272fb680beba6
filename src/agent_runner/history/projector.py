"""Deterministic fold of issue events into content blocks.

Live observation and replay from storage go through the same :func:`fold`,
so any event prefix yields the same block prefix in both modes.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, replace

from agent_runner.graph.models import EventType, IssueEvent
from agent_runner.history.blocks import BlockKind, ContentBlock


@dataclass(frozen=True, slots=True)
class ProjectionState:
    blocks: tuple[ContentBlock, ...] = ()
    turn_index: int = -1
    turn_open: bool = False
    open_text_index: int | None = None


def fold(state: ProjectionState, event: IssueEvent) -> ProjectionState:
    """Apply one event; events that carry no display content leave the state unchanged."""

    handler = _HANDLERS.get(event.event_type)
    if handler is None:
        return state
    return handler(state, event)


def build_from_history(events: Iterable[IssueEvent]) -> list[ContentBlock]:
    state = ProjectionState()
    for event in events:
        state = fold(state, event)
    return list(state.blocks)


class HistoryProjector:
    """Incremental projector for a live run, optionally scoped to one issue.

    Subscribe :meth:`apply` to the engine's event bus, or call the helpers
    below; both end up in :func:`fold`.
    """

    def __init__(self, issue_id: str | None = None) -> None:
        self.issue_id = issue_id
        self._state = ProjectionState()

    @property
    def blocks(self) -> list[ContentBlock]:
        return list(self._state.blocks)

    @property
    def state(self) -> ProjectionState:
        return self._state

    def reset(self) -> None:
        self._state = ProjectionState()

    def apply(self, event: IssueEvent) -> None:
        if self.issue_id is not None and event.issue_id != self.issue_id:
            return
        self._state = fold(self._state, event)

    def build_from_history(self, events: Iterable[IssueEvent]) -> list[ContentBlock]:
        """Replace the current state with a one-pass replay of ``events``."""

        self.reset()
        for event in events:
            self.apply(event)
        return self.blocks

    def start_turn(self, issue_id: str, *, model: str = "") -> None:
        self.apply(IssueEvent(issue_id, EventType.EXECUTION_STARTED, {"model": model}))

    def append_delta(self, issue_id: str, text: str, *, step_index: int | None = None) -> None:
        self.apply(
            IssueEvent(issue_id, EventType.STREAMING_DELTA, {"index": step_index, "text": text}),
        )

    def handle_step_completed(
        self,
        issue_id: str,
        content: str,
        *,
        step_index: int | None = None,
    ) -> None:
        self.apply(
            IssueEvent(
                issue_id,
                EventType.STEP_COMPLETED,
                {"index": step_index, "content": content, "success": True},
            ),
        )

    def handle_retry_scheduled(self, issue_id: str, *, attempt: int, delay_seconds: float) -> None:
        self.apply(
            IssueEvent(
                issue_id,
                EventType.RETRY_SCHEDULED,
                {"attempt": attempt, "delay_seconds": delay_seconds},
            ),
        )

    def finish_turn(self, issue_id: str, *, success: bool, message: str) -> None:
        self.apply(
            IssueEvent(
                issue_id,
                EventType.EXECUTION_COMPLETED,
                {"success": success, "message": message},
            ),
        )


def _append(state: ProjectionState, block: ContentBlock) -> tuple[ContentBlock, ...]:
    return (*state.blocks, block)


def _close_open_text(state: ProjectionState, final_text: str | None = None) -> ProjectionState:
    if state.open_text_index is None:
        return state
    blocks = list(state.blocks)
    current = blocks[state.open_text_index]
    blocks[state.open_text_index] = replace(
        current,
        text=current.text if final_text is None else final_text,
        is_open=False,
    )
    return replace(state, blocks=tuple(blocks), open_text_index=None)


def _block(  # noqa: PLR0913
    state: ProjectionState,
    event: IssueEvent,
    kind: BlockKind,
    text: str,
    *,
    is_open: bool = False,
    step_index: int | None = None,
    transient: bool = False,
) -> ContentBlock:
    return ContentBlock(
        kind=kind,
        turn_index=state.turn_index,
        text=text,
        issue_id=event.issue_id,
        is_open=is_open,
        step_index=step_index,
        transient=transient,
    )


def _on_started(state: ProjectionState, event: IssueEvent) -> ProjectionState:
    state = _close_open_text(state)
    turn_index = state.turn_index + 1
    state = replace(state, turn_index=turn_index, turn_open=True)
    label = "Resumed" if event.details.get("resumed") else "Started"
    model = event.details.get("model")
    text = f"{label} {event.issue_id}" + (f" with {model}" if model else "")
    return replace(state, blocks=_append(state, _block(state, event, BlockKind.TURN, text)))


def _on_plan(state: ProjectionState, event: IssueEvent) -> ProjectionState:
    if not state.turn_open:
        return state
    steps = event.details.get("steps", [])
    lines = [f"{index + 1}. {step.get('description', '')}" for index, step in enumerate(steps)]
    block = _block(state, event, BlockKind.PLAN, "\n".join(lines))
    return replace(state, blocks=_append(state, block))


def _on_delta(state: ProjectionState, event: IssueEvent) -> ProjectionState:
    if not state.turn_open:
        return state
    text = str(event.details.get("text", ""))
    if state.open_text_index is not None:
        blocks = list(state.blocks)
        current = blocks[state.open_text_index]
        blocks[state.open_text_index] = replace(current, text=current.text + text)
        return replace(state, blocks=tuple(blocks))
    block = _block(
        state,
        event,
        BlockKind.TEXT,
        text,
        is_open=True,
        step_index=event.details.get("index"),
    )
    return replace(state, blocks=_append(state, block), open_text_index=len(state.blocks))


def _on_step_completed(state: ProjectionState, event: IssueEvent) -> ProjectionState:
    if not state.turn_open:
        return state
    content = str(event.details.get("content", ""))
    if state.open_text_index is not None:
        return _close_open_text(state, final_text=content)
    if not content:
        return state
    block = _block(state, event, BlockKind.TEXT, content, step_index=event.details.get("index"))
    return replace(state, blocks=_append(state, block))


def _on_verification(state: ProjectionState, event: IssueEvent) -> ProjectionState:
    if not state.turn_open:
        return state
    state = _close_open_text(state)
    text = str(event.details.get("summary", ""))
    remaining = event.details.get("remaining_work")
    if remaining:
        text = f"{text}\nRemaining: {remaining}"
    block = _block(state, event, BlockKind.VERIFICATION, text)
    return replace(state, blocks=_append(state, block))


def _on_error(state: ProjectionState, event: IssueEvent) -> ProjectionState:
    if not state.turn_open:
        return state
    state = _close_open_text(state)
    text = f"Error on attempt {event.details.get('attempt')}: {event.details.get('message', '')}"
    block = _block(state, event, BlockKind.NOTICE, text, transient=True)
    return replace(state, blocks=_append(state, block))


def _on_retry(state: ProjectionState, event: IssueEvent) -> ProjectionState:
    if not state.turn_open:
        return state
    state = _close_open_text(state)
    delay = float(event.details.get("delay_seconds", 0.0))
    text = f"Retrying after attempt {event.details.get('attempt')} in {delay:.2f}s"
    block = _block(state, event, BlockKind.NOTICE, text, transient=True)
    return replace(state, blocks=_append(state, block))


def _on_decomposed(state: ProjectionState, event: IssueEvent) -> ProjectionState:
    if not state.turn_open:
        return state
    state = _close_open_text(state)
    titles = [str(child.get("title", "")) for child in event.details.get("children", [])]
    text = "\n".join(f"- {title}" for title in titles)
    block = _block(state, event, BlockKind.DECOMPOSITION, text)
    return replace(state, blocks=_append(state, block))


def _on_completed(state: ProjectionState, event: IssueEvent) -> ProjectionState:
    if not state.turn_open:
        return state
    state = _close_open_text(state)
    text = str(event.details.get("message", ""))
    state = replace(state, blocks=_append(state, _block(state, event, BlockKind.RESULT, text)))
    return replace(state, turn_open=False)


_HANDLERS = {
    EventType.EXECUTION_STARTED: _on_started,
    EventType.PLAN_CREATED: _on_plan,
    EventType.STREAMING_DELTA: _on_delta,
    EventType.STEP_COMPLETED: _on_step_completed,
    EventType.VERIFICATION_COMPLETED: _on_verification,
    EventType.ERROR_ENCOUNTERED: _on_error,
    EventType.RETRY_SCHEDULED: _on_retry,
    EventType.DECOMPOSED: _on_decomposed,
    EventType.EXECUTION_COMPLETED: _on_completed,
}
