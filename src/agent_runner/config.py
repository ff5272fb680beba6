"""Runtime configuration for the issue graph and execution engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class RetrySettings:
    """Backoff policy for retriable attempt failures."""

    max_retries: int = 2
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    backoff_multiplier: float = 2.0
    jitter: bool = False
    unclassified_retry_limit: int = 1


@dataclass(slots=True)
class EngineSettings:
    """Execution engine settings."""

    max_steps_per_issue: int = 10
    default_model: str = "default"
    step_timeout_seconds: float = 0.0


@dataclass(slots=True)
class PersonaSettings:
    """Owner context applied to newly created tasks."""

    persona_id: str = "default"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".agent_runner.db")
    sqlite_busy_timeout_ms: int = 5_000
    retry: RetrySettings = field(default_factory=RetrySettings)
    engine: EngineSettings = field(default_factory=EngineSettings)
    persona: PersonaSettings = field(default_factory=PersonaSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("AGENT_RUNNER_DB_PATH", ".agent_runner.db")),
            sqlite_busy_timeout_ms=int(os.getenv("AGENT_RUNNER_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            retry=RetrySettings(
                max_retries=int(os.getenv("AGENT_RUNNER_MAX_RETRIES", "2")),
                base_delay_seconds=float(os.getenv("AGENT_RUNNER_RETRY_BASE_SECONDS", "1.0")),
                max_delay_seconds=float(os.getenv("AGENT_RUNNER_RETRY_MAX_SECONDS", "30.0")),
                backoff_multiplier=float(
                    os.getenv("AGENT_RUNNER_RETRY_BACKOFF_MULTIPLIER", "2.0"),
                ),
                jitter=_env_bool("AGENT_RUNNER_RETRY_JITTER", default=False),
                unclassified_retry_limit=int(
                    os.getenv("AGENT_RUNNER_UNCLASSIFIED_RETRY_LIMIT", "1"),
                ),
            ),
            engine=EngineSettings(
                max_steps_per_issue=int(os.getenv("AGENT_RUNNER_MAX_STEPS_PER_ISSUE", "10")),
                default_model=os.getenv("AGENT_RUNNER_DEFAULT_MODEL", "default"),
                step_timeout_seconds=float(os.getenv("AGENT_RUNNER_STEP_TIMEOUT_SECONDS", "0")),
            ),
            persona=PersonaSettings(
                persona_id=os.getenv("AGENT_RUNNER_PERSONA_ID", "default"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any value is out of range."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("AGENT_RUNNER_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.retry.max_retries < 0:
            raise ValueError("AGENT_RUNNER_MAX_RETRIES must be >= 0.")
        if self.retry.base_delay_seconds < 0:
            raise ValueError("AGENT_RUNNER_RETRY_BASE_SECONDS must be >= 0.")
        if self.retry.max_delay_seconds < self.retry.base_delay_seconds:
            raise ValueError(
                "AGENT_RUNNER_RETRY_MAX_SECONDS must be >= AGENT_RUNNER_RETRY_BASE_SECONDS.",
            )
        if self.retry.backoff_multiplier < 1.0:
            raise ValueError("AGENT_RUNNER_RETRY_BACKOFF_MULTIPLIER must be >= 1.0.")
        if self.retry.unclassified_retry_limit < 0:
            raise ValueError("AGENT_RUNNER_UNCLASSIFIED_RETRY_LIMIT must be >= 0.")
        if self.engine.max_steps_per_issue <= 0:
            raise ValueError("AGENT_RUNNER_MAX_STEPS_PER_ISSUE must be a positive integer.")
        if self.engine.step_timeout_seconds < 0:
            raise ValueError("AGENT_RUNNER_STEP_TIMEOUT_SECONDS must be >= 0.")
        if not self.persona.persona_id.strip():
            raise ValueError("AGENT_RUNNER_PERSONA_ID must not be empty.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
