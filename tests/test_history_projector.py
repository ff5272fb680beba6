from __future__ import annotations

import asyncio
from dataclasses import replace

import allure

from agent_runner.config import Settings
from agent_runner.engine.backend import EchoBackend
from agent_runner.graph.models import EventType, IssueEvent
from agent_runner.history import BlockKind, ContentBlock, HistoryProjector, build_from_history
from agent_runner.services import open_runtime

pytestmark = [
    allure.epic("History"),
    allure.feature("Content Block Projection"),
]

ISSUE_ID = "os-0000abcd"

MANAGER_EVENT_TYPES = {
    EventType.CREATED,
    EventType.STATUS_CHANGED,
    EventType.DEPENDENCY_ADDED,
    EventType.CLOSED,
}


def _event(event_type: EventType, **details: object) -> IssueEvent:
    return IssueEvent(ISSUE_ID, event_type, dict(details))


def test_scenario_e_deltas_coalesce_into_one_open_block() -> None:
    events = [_event(EventType.EXECUTION_STARTED, model="m1")]
    events += [_event(EventType.STREAMING_DELTA, index=0, text=part) for part in "Hello"]

    blocks = build_from_history(events)

    assert blocks[0] == ContentBlock(
        kind=BlockKind.TURN,
        turn_index=0,
        text=f"Started {ISSUE_ID} with m1",
        issue_id=ISSUE_ID,
    )
    assert len(blocks) == 2
    assert blocks[1].kind == BlockKind.TEXT
    assert blocks[1].text == "Hello"
    assert blocks[1].is_open
    assert blocks[1].step_index == 0

    closed = build_from_history(
        [*events, _event(EventType.STEP_COMPLETED, index=0, content="Hello!", success=True)],
    )
    assert len(closed) == 2
    assert closed[1].text == "Hello!"
    assert not closed[1].is_open


def test_deltas_outside_an_open_turn_are_ignored() -> None:
    events = [
        _event(EventType.EXECUTION_STARTED),
        _event(EventType.STREAMING_DELTA, index=0, text="before"),
        _event(EventType.EXECUTION_COMPLETED, success=True, message="done"),
        _event(EventType.STREAMING_DELTA, index=0, text="late"),
    ]

    blocks = build_from_history(events)

    assert [block.kind for block in blocks] == [BlockKind.TURN, BlockKind.TEXT, BlockKind.RESULT]
    assert blocks[1].text == "before"
    assert not blocks[1].is_open
    assert build_from_history([_event(EventType.STREAMING_DELTA, text="orphan")]) == []


def test_retry_closes_open_text_and_adds_transient_notices() -> None:
    events = [
        _event(EventType.EXECUTION_STARTED),
        _event(EventType.STREAMING_DELTA, index=0, text="partial"),
        _event(EventType.ERROR_ENCOUNTERED, attempt=1, message="connection reset"),
        _event(EventType.RETRY_SCHEDULED, attempt=1, delay_seconds=2.0),
        _event(EventType.STREAMING_DELTA, index=0, text="fresh"),
    ]

    blocks = build_from_history(events)

    assert [block.kind for block in blocks] == [
        BlockKind.TURN,
        BlockKind.TEXT,
        BlockKind.NOTICE,
        BlockKind.NOTICE,
        BlockKind.TEXT,
    ]
    assert not blocks[1].is_open
    assert blocks[2].text == "Error on attempt 1: connection reset"
    assert blocks[3].text == "Retrying after attempt 1 in 2.00s"
    assert all(block.transient for block in blocks[2:4])
    assert blocks[4].text == "fresh"
    assert blocks[4].is_open


def test_each_execution_starts_a_new_turn() -> None:
    events = [
        _event(EventType.EXECUTION_STARTED),
        _event(EventType.STREAMING_DELTA, text="first"),
        _event(EventType.EXECUTION_STARTED, resumed=True),
        _event(EventType.STREAMING_DELTA, text="second"),
    ]

    blocks = build_from_history(events)

    assert [(block.kind, block.turn_index) for block in blocks] == [
        (BlockKind.TURN, 0),
        (BlockKind.TEXT, 0),
        (BlockKind.TURN, 1),
        (BlockKind.TEXT, 1),
    ]
    assert not blocks[1].is_open
    assert blocks[2].text == f"Resumed {ISSUE_ID}"


def test_manager_events_do_not_produce_blocks() -> None:
    events = [IssueEvent(ISSUE_ID, event_type) for event_type in MANAGER_EVENT_TYPES]

    assert build_from_history(events) == []


def test_live_helpers_match_replayed_fold() -> None:
    projector = HistoryProjector(issue_id=ISSUE_ID)
    projector.start_turn(ISSUE_ID, model="m1")
    projector.append_delta(ISSUE_ID, "Hel", step_index=0)
    projector.append_delta(ISSUE_ID, "lo", step_index=0)
    projector.handle_step_completed(ISSUE_ID, "Hello", step_index=0)
    projector.handle_retry_scheduled(ISSUE_ID, attempt=1, delay_seconds=0.5)
    projector.finish_turn(ISSUE_ID, success=True, message="done")
    projector.append_delta("os-other000", "ignored")

    replayed = build_from_history(
        [
            _event(EventType.EXECUTION_STARTED, model="m1"),
            _event(EventType.STREAMING_DELTA, index=0, text="Hel"),
            _event(EventType.STREAMING_DELTA, index=0, text="lo"),
            _event(EventType.STEP_COMPLETED, index=0, content="Hello", success=True),
            _event(EventType.RETRY_SCHEDULED, attempt=1, delay_seconds=0.5),
            _event(EventType.EXECUTION_COMPLETED, success=True, message="done"),
        ],
    )
    assert projector.blocks == replayed
    assert not projector.state.turn_open

    projector.reset()
    assert projector.blocks == []

    replay_events = [
        _event(EventType.EXECUTION_STARTED, model="m1"),
        IssueEvent("os-other000", EventType.EXECUTION_STARTED),
        _event(EventType.STREAMING_DELTA, index=0, text="Hel"),
    ]
    partial_text = replace(replayed[1], text="Hel", is_open=True)
    assert projector.build_from_history(replay_events) == [replayed[0], partial_text]


def test_live_projection_equals_replay_for_every_prefix(settings: Settings) -> None:
    with open_runtime(settings, EchoBackend()) as runtime:
        task = runtime.manager.create_task("Draft outline\nWrite the intro paragraph")
        issue = runtime.manager.load_issues(task.task_id)[0]
        projector = HistoryProjector(issue_id=issue.issue_id)
        snapshots: list[list[ContentBlock]] = []

        def observe(event: IssueEvent) -> None:
            projector.apply(event)
            snapshots.append(projector.blocks)

        unsubscribe = runtime.bus.subscribe(observe)
        result = asyncio.run(runtime.engine.execute_with_retry(issue, model="echo"))
        unsubscribe()

        assert result.success
        history = runtime.manager.get_history(issue.issue_id)

    assert build_from_history(history) == projector.blocks
    engine_events = [event for event in history if event.event_type not in MANAGER_EVENT_TYPES]
    assert len(engine_events) == len(snapshots)
    for size, snapshot in enumerate(snapshots, start=1):
        assert build_from_history(engine_events[:size]) == snapshot

    kinds = [block.kind for block in projector.blocks]
    assert kinds == [
        BlockKind.TURN,
        BlockKind.PLAN,
        BlockKind.TEXT,
        BlockKind.TEXT,
        BlockKind.VERIFICATION,
        BlockKind.RESULT,
    ]
    assert projector.blocks[1].text == "1. Draft outline\n2. Write the intro paragraph"
    assert projector.blocks[3].text == "Write the intro paragraph"
    assert not any(block.is_open for block in projector.blocks)
