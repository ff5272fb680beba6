from __future__ import annotations

import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from agent_runner.main import agent_runner

pytestmark = [
    allure.epic("Agent Runner CLI"),
    allure.feature("Task & Issue Commands"),
]


def _invoke(db_path: Path, *args: str):
    runner = CliRunner()
    return runner.invoke(agent_runner, [*args, "--db-path", str(db_path)])


def _create(db_path: Path, query: str) -> tuple[str, str]:
    result = _invoke(db_path, "task", "create", query)
    assert result.exit_code == 0, result.output
    task_id = re.search(r"task_id=(os-[0-9a-f]{8})", result.output)
    root_id = re.search(r"Root issue: (os-[0-9a-f]{8})", result.output)
    assert task_id is not None
    assert root_id is not None
    return task_id.group(1), root_id.group(1)


def _issue_ids(db_path: Path, task_id: str) -> list[str]:
    result = _invoke(db_path, "issue", "list", task_id)
    assert result.exit_code == 0, result.output
    return re.findall(r"^\s+(os-[0-9a-f]{8}) ", result.output, flags=re.MULTILINE)


def test_run_task_to_completion_and_show_blocks(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    task_id, root_id = _create(db_path, "Outline the report\nDraft the summary")

    run = _invoke(db_path, "task", "run", task_id, "--model", "echo")
    assert run.exit_code == 0, run.output
    assert "processed=1 succeeded=1 failed=0" in run.output
    assert f"Task {task_id}: complete" in run.output

    listed = _invoke(db_path, "task", "list")
    assert listed.exit_code == 0, listed.output
    assert "Tasks: 1" in listed.output
    assert f"{task_id} status=completed" in listed.output

    events = _invoke(db_path, "issue", "history", root_id)
    assert events.exit_code == 0, events.output
    assert "created" in events.output
    assert "execution_completed" in events.output
    assert "closed" in events.output

    blocks = _invoke(db_path, "issue", "history", root_id, "--blocks")
    assert blocks.exit_code == 0, blocks.output
    assert "Blocks: 6" in blocks.output
    assert f"[0] turn: Started {root_id} with echo" in blocks.output
    assert "[0] plan: 1. Outline the report | 2. Draft the summary" in blocks.output

    next_issue = _invoke(db_path, "issue", "next", task_id)
    assert f"No ready issue: task {task_id} is complete" in next_issue.output


def test_step_limit_split_then_manual_dependency_flow(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("AGENT_RUNNER_MAX_STEPS_PER_ISSUE", "1")
    db_path = tmp_path / "cli.db"
    task_id, root_id = _create(db_path, "Research\nWrite")

    run = _invoke(db_path, "task", "run", task_id, "--max-issues", "1")
    assert run.exit_code == 0, run.output
    assert "decomposed=1" in run.output
    assert f"Task {task_id}: pending" in run.output

    issue_ids = _issue_ids(db_path, task_id)
    assert issue_ids[0] == root_id
    part_1, part_2 = issue_ids[1:]

    cycle = _invoke(db_path, "issue", "depend", part_1, part_2)
    assert cycle.exit_code != 0
    assert "cycle" in cycle.output

    next_issue = _invoke(db_path, "issue", "next", task_id)
    assert f"Next issue: {part_1} status=open" in next_issue.output

    closed = _invoke(db_path, "issue", "close", part_1, "--reason", "done by hand")
    assert closed.exit_code == 0, closed.output
    assert f"Issue closed: {part_1} result=done by hand" in closed.output

    next_issue = _invoke(db_path, "issue", "next", task_id)
    assert f"Next issue: {part_2} status=open" in next_issue.output


def test_step_limited_task_run_finishes_without_issue_cap(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("AGENT_RUNNER_MAX_STEPS_PER_ISSUE", "1")
    db_path = tmp_path / "cli.db"
    task_id, root_id = _create(db_path, "Research\nWrite")

    run = _invoke(db_path, "task", "run", task_id)
    assert run.exit_code == 0, run.output
    assert "processed=4 succeeded=3 failed=0" in run.output
    assert "decomposed=1" in run.output
    assert f"Task {task_id}: complete" in run.output
    assert len(_issue_ids(db_path, task_id)) == 3

    events = _invoke(db_path, "issue", "history", root_id)
    assert len(re.findall(r"^#\d+ \S+ decomposed ", events.output, flags=re.MULTILINE)) == 1


def test_cancel_and_delete_task(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    task_id, _ = _create(db_path, "Throwaway")

    cancelled = _invoke(db_path, "task", "cancel", task_id)
    assert cancelled.exit_code == 0, cancelled.output
    assert f"Task cancelled: {task_id}" in cancelled.output
    next_issue = _invoke(db_path, "issue", "next", task_id)
    assert f"No ready issue: task {task_id} is blocked" in next_issue.output

    deleted = _invoke(db_path, "task", "delete", task_id)
    assert deleted.exit_code == 0, deleted.output

    missing = _invoke(db_path, "issue", "list", task_id)
    assert missing.exit_code != 0
    assert f"Task not found: {task_id}" in missing.output


def test_closing_blocked_issue_fails_cleanly(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("AGENT_RUNNER_MAX_STEPS_PER_ISSUE", "1")
    db_path = tmp_path / "cli.db"
    task_id, root_id = _create(db_path, "First\nSecond")
    _invoke(db_path, "task", "run", task_id, "--max-issues", "1")

    result = _invoke(db_path, "issue", "close", root_id)

    assert result.exit_code != 0
    assert "Cannot close blocked issue" in result.output
