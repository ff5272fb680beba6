"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from agent_runner.config import EngineSettings, RetrySettings, Settings
from agent_runner.graph.manager import IssueGraphManager
from agent_runner.graph.store import IssueStore


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """Settings pointing at a per-test database with instant retries."""

    return Settings(
        db_path=tmp_path / "agent_runner.db",
        retry=RetrySettings(
            max_retries=2,
            base_delay_seconds=0.0,
            max_delay_seconds=0.0,
            unclassified_retry_limit=1,
        ),
        engine=EngineSettings(max_steps_per_issue=10),
    )


@pytest.fixture()
def store(settings: Settings):
    store = IssueStore(settings.db_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    store.init_schema()
    yield store
    store.close()


@pytest.fixture()
def manager(store: IssueStore) -> IssueGraphManager:
    return IssueGraphManager(store)
