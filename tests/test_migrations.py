from pathlib import Path

import allure
from sqlalchemy import text

from agent_runner.graph.store import IssueStore
from agent_runner.storage.alembic_runner import current_revision

pytestmark = [
    allure.epic("Issue Graph"),
    allure.feature("Durable Store"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    store = IssueStore(tmp_path / "migrations.db")
    store.init_schema()

    with store.engine.connect() as connection:
        version = connection.execute(
            text("SELECT version_num FROM alembic_version LIMIT 1"),
        ).scalar_one()
        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table'
                  AND name IN ('agent_tasks', 'agent_issues', 'issue_dependencies',
                               'issue_events')
                ORDER BY name
                """,
            ),
        ).scalars().all()
    assert version == "20261018_0001"
    assert tables == ["agent_issues", "agent_tasks", "issue_dependencies", "issue_events"]
    store.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "twice.db"
    first = IssueStore(db_path)
    first.init_schema()
    first.close()

    second = IssueStore(db_path)
    second.init_schema()
    with second.engine.connect() as connection:
        versions = connection.execute(text("SELECT version_num FROM alembic_version")).all()
    assert len(versions) == 1
    assert current_revision(second.engine) == "20261018_0001"
    second.close()
