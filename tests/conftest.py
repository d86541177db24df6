"""Shared test fixtures."""

from __future__ import annotations

import shlex
import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from subagent_relay.config import JobSettings, SessionSettings, Settings
from subagent_relay.orchestrator.models import AgentScope
from subagent_relay.orchestrator.profiles import DirectoryProfileResolver, ProfileDiscovery

ECHO_AGENT_COMMAND = (sys.executable, "-m", "subagent_relay.orchestrator.backend.echo_agent")


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self) -> None:
        self.now = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def write_agent(  # noqa: PLR0913
    directory: Path,
    name: str,
    *,
    prompt: str = "",
    model: str | None = None,
    tools: str | None = None,
    description: str = "",
) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    header = [f"name: {name}"]
    if description:
        header.append(f"description: {description}")
    if model:
        header.append(f"model: {model}")
    if tools:
        header.append(f"tools: {tools}")
    path = directory / f"{name}.md"
    path.write_text("---\n" + "\n".join(header) + "\n---\n" + prompt + "\n", "utf-8")
    return path


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def user_agents_dir(tmp_path: Path) -> Path:
    """User profile dir with ``scout`` (prompt, model, tools) and ``writer`` (bare)."""

    directory = tmp_path / "user-agents"
    write_agent(
        directory,
        "scout",
        prompt="Be brief.",
        model="echo-model-x",
        tools="read, grep",
        description="Fast reconnaissance",
    )
    write_agent(directory, "writer")
    return directory


@pytest.fixture()
def workspace(tmp_path: Path) -> Path:
    directory = tmp_path / "workspace"
    directory.mkdir()
    return directory


@pytest.fixture()
def settings(tmp_path: Path, user_agents_dir: Path) -> Settings:
    """Settings that run the echo agent instead of the real agent CLI."""

    return Settings(
        agent_command=ECHO_AGENT_COMMAND,
        user_agents_dir=user_agents_dir,
        graceful_shutdown_seconds=1.0,
        cli_poll_interval_seconds=0.05,
        sessions=SessionSettings(session_dir=tmp_path / "sessions"),
        jobs=JobSettings(),
    )


@pytest.fixture()
def discovery(user_agents_dir: Path, workspace: Path) -> ProfileDiscovery:
    return DirectoryProfileResolver(user_dir=user_agents_dir).discover(workspace, AgentScope.USER)


@pytest.fixture()
def echo_env(monkeypatch, tmp_path: Path, user_agents_dir: Path) -> None:
    """Point ``Settings.from_env`` at the echo agent and temporary dirs."""

    monkeypatch.setenv("SUBAGENT_RELAY_AGENT_COMMAND", shlex.join(ECHO_AGENT_COMMAND))
    monkeypatch.setenv("SUBAGENT_RELAY_USER_AGENTS_DIR", str(user_agents_dir))
    monkeypatch.setenv("SUBAGENT_RELAY_SESSION_DIR", str(tmp_path / "sessions"))
    monkeypatch.setenv("SUBAGENT_RELAY_GRACEFUL_SHUTDOWN_SECONDS", "1")
    monkeypatch.setenv("SUBAGENT_RELAY_CLI_POLL_INTERVAL_SECONDS", "0.05")
