"""CLI entrypoint for agent-runner."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from agent_runner import __version__
from agent_runner.controllers import (
    AgentRunnerCliController,
    IssueCloseCommand,
    IssueDependCommand,
    IssueHistoryCommand,
    IssueListCommand,
    TaskCreateCommand,
    TaskListCommand,
    TaskMutateCommand,
    TaskRunCommand,
)
from agent_runner.errors import AgentEngineError, GraphError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = AgentRunnerCliController()


@click.group()
@click.version_option(version=__version__, prog_name="agent-runner")
@click.option("--verbose", is_flag=True, default=False, help="Log lifecycle details to stderr.")
def agent_runner(verbose: bool) -> None:
    """Autonomous task runner: tasks, issue graphs and replayable execution history."""

    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


@agent_runner.group()
def task() -> None:
    """Task commands."""


@task.command("create")
@click.argument("query")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--persona", "persona_id", default=None, help="Owning persona id.")
def task_create(query: str, db_path: Path | None, persona_id: str | None) -> None:
    """Create a task and its root issue from a user goal."""

    _run(
        lambda: CONTROLLER.create_task(
            TaskCreateCommand(db_path=db_path, query=query, persona_id=persona_id),
        ),
    )


@task.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--persona", "persona_id", default=None, help="Only tasks of this persona.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Maximum number of tasks.",
)
def task_list(db_path: Path | None, persona_id: str | None, limit: int) -> None:
    """List tasks, newest first."""

    _run(
        lambda: CONTROLLER.list_tasks(
            TaskListCommand(db_path=db_path, persona_id=persona_id, limit=limit),
        ),
    )


@task.command("cancel")
@click.argument("task_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def task_cancel(task_id: str, db_path: Path | None) -> None:
    """Cancel a task; its issues are no longer offered for execution."""

    _run(lambda: CONTROLLER.cancel_task(TaskMutateCommand(db_path=db_path, task_id=task_id)))


@task.command("delete")
@click.argument("task_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def task_delete(task_id: str, db_path: Path | None) -> None:
    """Delete a task with all its issues and history."""

    _run(lambda: CONTROLLER.delete_task(TaskMutateCommand(db_path=db_path, task_id=task_id)))


@task.command("run")
@click.argument("task_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--max-issues",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many issue executions.",
)
@click.option("--model", default=None, help="Model name passed to the backend.")
def task_run(task_id: str, db_path: Path | None, max_issues: int | None, model: str | None) -> None:
    """Run ready issues of a task with the local echo backend.

    Each non-empty line of an issue description becomes one plan step.
    """

    _run(
        lambda: CONTROLLER.run_task(
            TaskRunCommand(db_path=db_path, task_id=task_id, max_issues=max_issues, model=model),
        ),
    )


@agent_runner.group()
def issue() -> None:
    """Issue commands."""


@issue.command("list")
@click.argument("task_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def issue_list(task_id: str, db_path: Path | None) -> None:
    """List issues of a task in creation order."""

    _run(lambda: CONTROLLER.list_issues(IssueListCommand(db_path=db_path, task_id=task_id)))


@issue.command("next")
@click.argument("task_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def issue_next(task_id: str, db_path: Path | None) -> None:
    """Show the next issue ready for execution."""

    _run(lambda: CONTROLLER.next_issue(IssueListCommand(db_path=db_path, task_id=task_id)))


@issue.command("close")
@click.argument("issue_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--reason", default=None, help="Result summary recorded on the issue.")
def issue_close(issue_id: str, db_path: Path | None, reason: str | None) -> None:
    """Close an issue manually."""

    _run(
        lambda: CONTROLLER.close_issue(
            IssueCloseCommand(db_path=db_path, issue_id=issue_id, reason=reason),
        ),
    )


@issue.command("depend")
@click.argument("issue_id")
@click.argument("depends_on")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def issue_depend(issue_id: str, depends_on: str, db_path: Path | None) -> None:
    """Make ISSUE_ID wait until DEPENDS_ON is closed."""

    _run(
        lambda: CONTROLLER.add_dependency(
            IssueDependCommand(db_path=db_path, issue_id=issue_id, depends_on=depends_on),
        ),
    )


@issue.command("history")
@click.argument("issue_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--blocks", is_flag=True, default=False, help="Show projected content blocks.")
def issue_history(issue_id: str, db_path: Path | None, blocks: bool) -> None:
    """Show the persisted event history of an issue."""

    _run(
        lambda: CONTROLLER.history(
            IssueHistoryCommand(db_path=db_path, issue_id=issue_id, blocks=blocks),
        ),
    )


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (GraphError, AgentEngineError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_runner()
