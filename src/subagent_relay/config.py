"""Runtime configuration for subagent delegation."""

from __future__ import annotations

import os
import shlex
import tempfile
from dataclasses import dataclass, field
from pathlib import Path


def _default_session_dir() -> Path:
    return Path(tempfile.gettempdir()) / "subagent-relay-sessions"


def _default_user_agents_dir() -> Path:
    return Path.home() / ".pi" / "agent" / "agents"


@dataclass(slots=True)
class SchedulerSettings:
    """Fan-out limits for parallel delegation."""

    max_parallel_tasks: int = 8
    max_concurrency: int = 4


@dataclass(slots=True)
class SessionSettings:
    """Resumable session retention."""

    session_dir: Path = field(default_factory=_default_session_dir)
    max_age_seconds: int = 2 * 60 * 60
    max_count: int = 50


@dataclass(slots=True)
class JobSettings:
    """Background job retention."""

    max_age_seconds: int = 60 * 60
    max_count: int = 50


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    agent_command: tuple[str, ...] = ("pi",)
    user_agents_dir: Path = field(default_factory=_default_user_agents_dir)
    project_agents_subdir: str = ".pi/agents"
    graceful_shutdown_seconds: float = 5.0
    cli_poll_interval_seconds: float = 2.0
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    sessions: SessionSettings = field(default_factory=SessionSettings)
    jobs: JobSettings = field(default_factory=JobSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            agent_command=_parse_command(os.getenv("SUBAGENT_RELAY_AGENT_COMMAND", "pi")),
            user_agents_dir=Path(
                os.getenv("SUBAGENT_RELAY_USER_AGENTS_DIR", str(_default_user_agents_dir())),
            ).expanduser(),
            project_agents_subdir=os.getenv("SUBAGENT_RELAY_PROJECT_AGENTS_SUBDIR", ".pi/agents"),
            graceful_shutdown_seconds=float(
                os.getenv("SUBAGENT_RELAY_GRACEFUL_SHUTDOWN_SECONDS", "5"),
            ),
            cli_poll_interval_seconds=float(
                os.getenv("SUBAGENT_RELAY_CLI_POLL_INTERVAL_SECONDS", "2"),
            ),
            scheduler=SchedulerSettings(
                max_parallel_tasks=int(os.getenv("SUBAGENT_RELAY_MAX_PARALLEL_TASKS", "8")),
                max_concurrency=int(os.getenv("SUBAGENT_RELAY_MAX_CONCURRENCY", "4")),
            ),
            sessions=SessionSettings(
                session_dir=Path(
                    os.getenv("SUBAGENT_RELAY_SESSION_DIR", str(_default_session_dir())),
                ).expanduser(),
                max_age_seconds=int(os.getenv("SUBAGENT_RELAY_SESSION_MAX_AGE_SECONDS", "7200")),
                max_count=int(os.getenv("SUBAGENT_RELAY_SESSION_MAX_COUNT", "50")),
            ),
            jobs=JobSettings(
                max_age_seconds=int(os.getenv("SUBAGENT_RELAY_JOB_MAX_AGE_SECONDS", "3600")),
                max_count=int(os.getenv("SUBAGENT_RELAY_JOB_MAX_COUNT", "50")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if limits or the agent command are unusable."""

        if not self.agent_command:
            raise ValueError("SUBAGENT_RELAY_AGENT_COMMAND must not be empty.")
        if self.scheduler.max_parallel_tasks <= 0:
            raise ValueError("SUBAGENT_RELAY_MAX_PARALLEL_TASKS must be > 0.")
        if self.scheduler.max_concurrency <= 0:
            raise ValueError("SUBAGENT_RELAY_MAX_CONCURRENCY must be > 0.")
        if self.graceful_shutdown_seconds < 0:
            raise ValueError("SUBAGENT_RELAY_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if self.cli_poll_interval_seconds <= 0:
            raise ValueError("SUBAGENT_RELAY_CLI_POLL_INTERVAL_SECONDS must be > 0.")
        if self.sessions.max_age_seconds <= 0:
            raise ValueError("SUBAGENT_RELAY_SESSION_MAX_AGE_SECONDS must be > 0.")
        if self.sessions.max_count <= 0:
            raise ValueError("SUBAGENT_RELAY_SESSION_MAX_COUNT must be > 0.")
        if self.jobs.max_age_seconds <= 0:
            raise ValueError("SUBAGENT_RELAY_JOB_MAX_AGE_SECONDS must be > 0.")
        if self.jobs.max_count <= 0:
            raise ValueError("SUBAGENT_RELAY_JOB_MAX_COUNT must be > 0.")


def _parse_command(raw: str) -> tuple[str, ...]:
    stripped = raw.strip()
    if not stripped:
        return ()
    return tuple(shlex.split(stripped))
