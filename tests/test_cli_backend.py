from __future__ import annotations

import asyncio
import signal
import time
from datetime import timedelta
from pathlib import Path

import allure
import pytest
from conftest import ECHO_AGENT_COMMAND

from subagent_relay.orchestrator.backend import cli_backend
from subagent_relay.orchestrator.backend.base import BackendRunRequest, CancellationToken
from subagent_relay.orchestrator.backend.cli_backend import CliAgentBackend, build_run_args
from subagent_relay.orchestrator.errors import AbortedError
from subagent_relay.orchestrator.models import (
    AgentSource,
    FailureClass,
    InvocationResult,
    TextPart,
    ToolCallPart,
    WorkerProfile,
)
from subagent_relay.orchestrator.presenter import get_final_output
from subagent_relay.orchestrator.profiles import ProfileDiscovery
from subagent_relay.orchestrator.sessions import SessionStore

pytestmark = [
    allure.epic("Delegation Runtime"),
    allure.feature("Worker Process Driver"),
]


@pytest.fixture()
def sessions(tmp_path: Path) -> SessionStore:
    return SessionStore(
        session_dir=tmp_path / "sessions",
        max_age=timedelta(hours=2),
        max_count=50,
    )


@pytest.fixture()
def backend(sessions: SessionStore) -> CliAgentBackend:
    return CliAgentBackend(
        command=ECHO_AGENT_COMMAND,
        sessions=sessions,
        graceful_shutdown_seconds=1.0,
    )


def _record_processes(monkeypatch) -> list[asyncio.subprocess.Process]:
    processes: list[asyncio.subprocess.Process] = []
    original = cli_backend.asyncio.create_subprocess_exec

    async def _recording(*args, **kwargs) -> asyncio.subprocess.Process:
        process = await original(*args, **kwargs)
        processes.append(process)
        return process

    monkeypatch.setattr(cli_backend.asyncio, "create_subprocess_exec", _recording)
    return processes


def _request(
    discovery: ProfileDiscovery,
    cwd: Path,
    agent: str,
    task: str,
    **kwargs,
) -> BackendRunRequest:
    return BackendRunRequest(agent=agent, task=task, discovery=discovery, cwd=cwd, **kwargs)


def test_build_run_args_one_shot_with_prompt_and_profile_options() -> None:
    profile = WorkerProfile(name="scout", model="m1", thinking="high", tools=("read", "grep"))

    args = build_run_args(
        command=("pi",),
        profile=profile,
        task="look around",
        prompt_file=Path("/tmp/p/prompt-scout.md"),
        session_file=None,
        resume=False,
    )

    assert args == [
        "pi",
        "--mode",
        "json",
        "-p",
        "--model",
        "m1",
        "--thinking",
        "high",
        "--tools",
        "read,grep",
        "--append-system-prompt",
        "/tmp/p/prompt-scout.md",
        "--no-session",
        "Task: look around",
    ]


def test_build_run_args_new_session_and_resume() -> None:
    profile = WorkerProfile(name="writer")
    session_file = Path("/tmp/s/sa-1-1-writer.jsonl")

    created = build_run_args(
        command=("pi",),
        profile=profile,
        task="draft",
        prompt_file=None,
        session_file=session_file,
        resume=False,
    )
    resumed = build_run_args(
        command=("pi",),
        profile=profile,
        task="revise",
        prompt_file=Path("/ignored.md"),
        session_file=session_file,
        resume=True,
    )

    assert created == ["pi", "--mode", "json", "-p", "--session", str(session_file), "Task: draft"]
    assert resumed == [
        "pi",
        "--mode",
        "json",
        "-p",
        "--continue",
        "--session",
        str(session_file),
        "Task: revise",
    ]


def test_build_run_args_keeps_task_as_single_token() -> None:
    args = build_run_args(
        command=("pi",),
        profile=WorkerProfile(name="writer"),
        task='rm -rf / "; echo $HOME',
        prompt_file=None,
        session_file=None,
        resume=False,
    )

    assert args[-1] == 'Task: rm -rf / "; echo $HOME'


@pytest.mark.asyncio
async def test_run_streams_events_into_result(
    backend: CliAgentBackend,
    discovery: ProfileDiscovery,
    workspace: Path,
) -> None:
    updates: list[int] = []

    result = await backend.run(
        _request(
            discovery,
            workspace,
            "scout",
            "hello [tool]",
            enable_session=False,
            on_update=lambda partial: updates.append(len(partial.messages)),
        ),
    )

    assert result.completed
    assert result.exit_code == 0
    assert not result.is_error
    assert result.agent_source is AgentSource.USER
    assert [message.role for message in result.messages] == [
        "user",
        "assistant",
        "toolResult",
        "assistant",
    ]
    assert isinstance(result.messages[1].content[0], ToolCallPart)
    assert isinstance(result.messages[3].content[0], TextPart)
    assert result.usage.turns == 2
    assert result.usage.input == 14
    assert result.usage.output == 7
    assert result.usage.context_tokens == 15
    assert result.usage.cost == pytest.approx(0.002)
    assert result.model == "echo-model-x"
    assert result.stop_reason == "stop"
    assert result.session_id is None
    assert updates == [1, 2, 3, 4]
    assert get_final_output(result.messages) == (
        "echo: hello [tool] | instructions: Be brief. | tools: read,grep"
    )


@pytest.mark.asyncio
async def test_run_ignores_malformed_lines(
    backend: CliAgentBackend,
    discovery: ProfileDiscovery,
    workspace: Path,
) -> None:
    result = await backend.run(
        _request(discovery, workspace, "writer", "noisy [garbage] [tool]", enable_session=False),
    )

    assert not result.is_error
    assert len(result.messages) == 4
    assert result.model == "echo-model"


@pytest.mark.asyncio
async def test_run_records_stderr_and_classifies_nonzero_exit(
    backend: CliAgentBackend,
    discovery: ProfileDiscovery,
    workspace: Path,
) -> None:
    result = await backend.run(
        _request(discovery, workspace, "writer", "boom [fail]", enable_session=False),
    )

    assert result.completed
    assert result.exit_code == 3
    assert result.is_error
    assert "echo agent failure" in result.stderr
    assert result.failure_class is FailureClass.BACKEND_NON_RETRYABLE


@pytest.mark.asyncio
async def test_run_error_stop_reason_is_an_error(
    backend: CliAgentBackend,
    discovery: ProfileDiscovery,
    workspace: Path,
) -> None:
    result = await backend.run(
        _request(discovery, workspace, "writer", "bad [error]", enable_session=False),
    )

    assert result.exit_code == 0
    assert result.stop_reason == "error"
    assert result.error_message == "echo agent reported an error"
    assert result.is_error


@pytest.mark.asyncio
async def test_unknown_profile_never_spawns(
    backend: CliAgentBackend,
    sessions: SessionStore,
    discovery: ProfileDiscovery,
    workspace: Path,
    monkeypatch,
) -> None:
    async def _no_spawn(*args, **kwargs):
        raise AssertionError("subprocess must not be spawned")

    monkeypatch.setattr(cli_backend.asyncio, "create_subprocess_exec", _no_spawn)

    result = await backend.run(_request(discovery, workspace, "ghost", "anything"))

    assert result.completed
    assert result.exit_code == 1
    assert result.agent_source is AgentSource.UNKNOWN
    assert result.stderr == 'Unknown agent: "ghost". Available agents: "scout", "writer".'
    assert len(sessions) == 0


@pytest.mark.asyncio
async def test_missing_command_is_reported_as_spawn_failure(
    sessions: SessionStore,
    discovery: ProfileDiscovery,
    workspace: Path,
) -> None:
    backend = CliAgentBackend(command=("/nonexistent/agent-binary",), sessions=sessions)

    result = await backend.run(_request(discovery, workspace, "writer", "hi", enable_session=False))

    assert result.completed
    assert result.exit_code == 1
    assert result.failure_class is FailureClass.SPAWN_FAILED
    assert "Agent command not found" in result.stderr


@pytest.mark.asyncio
async def test_session_resume_continues_history(
    backend: CliAgentBackend,
    sessions: SessionStore,
    discovery: ProfileDiscovery,
    workspace: Path,
) -> None:
    first = await backend.run(_request(discovery, workspace, "scout", "first task"))

    assert first.session_id is not None
    assert first.session_id.startswith("sa-")
    session = sessions.get(first.session_id)
    assert session is not None
    assert session.session_file.exists()
    assert not session.in_use

    second = await backend.run(
        _request(discovery, workspace, "scout", "second task", session_id=first.session_id),
    )

    assert not second.is_error
    assert second.session_id == first.session_id
    assert "history: first task" in get_final_output(second.messages)
    assert not session.in_use


@pytest.mark.asyncio
async def test_session_preconditions_become_failed_results(
    backend: CliAgentBackend,
    sessions: SessionStore,
    discovery: ProfileDiscovery,
    workspace: Path,
) -> None:
    first = await backend.run(_request(discovery, workspace, "scout", "first task"))
    assert first.session_id is not None

    missing = await backend.run(_request(discovery, workspace, "scout", "x", session_id="sa-0-0"))
    wrong_agent = await backend.run(
        _request(discovery, workspace, "writer", "x", session_id=first.session_id),
    )

    assert missing.exit_code == 1
    assert missing.stderr.startswith('Session not found: "sa-0-0"')
    assert wrong_agent.exit_code == 1
    assert 'belongs to agent "scout", not "writer"' in wrong_agent.stderr

    session = sessions.get(first.session_id)
    assert session is not None
    session.session_file.unlink()
    gone = await backend.run(
        _request(discovery, workspace, "scout", "x", session_id=first.session_id),
    )

    assert "no longer exists on disk" in gone.stderr
    assert first.session_id not in sessions


@pytest.mark.asyncio
async def test_one_shot_prompt_dir_removed_and_session_prompt_dir_retained(
    backend: CliAgentBackend,
    sessions: SessionStore,
    discovery: ProfileDiscovery,
    workspace: Path,
    monkeypatch,
) -> None:
    created: list[Path] = []
    original = cli_backend.write_prompt_to_temp_file

    def _recording(agent: str, prompt: str) -> tuple[Path, Path]:
        tmp_dir, prompt_file = original(agent, prompt)
        created.append(tmp_dir)
        return tmp_dir, prompt_file

    monkeypatch.setattr(cli_backend, "write_prompt_to_temp_file", _recording)

    await backend.run(_request(discovery, workspace, "scout", "one shot", enable_session=False))
    with_session = await backend.run(_request(discovery, workspace, "scout", "kept"))

    one_shot_dir, session_dir = created
    assert not one_shot_dir.exists()
    assert session_dir.exists()
    assert with_session.session_id is not None

    sessions.discard(with_session.session_id)

    assert not session_dir.exists()


@pytest.mark.asyncio
async def test_cancellation_terminates_process_and_discards_session(
    backend: CliAgentBackend,
    sessions: SessionStore,
    discovery: ProfileDiscovery,
    workspace: Path,
) -> None:
    token = CancellationToken()
    seen: list[InvocationResult] = []

    def _cancel_on_first_event(partial: InvocationResult) -> None:
        seen.append(partial)
        token.cancel()

    started = time.monotonic()
    with pytest.raises(AbortedError, match="Subagent was aborted"):
        await backend.run(
            _request(
                discovery,
                workspace,
                "writer",
                "slow [sleep:30]",
                cancel_token=token,
                on_update=_cancel_on_first_event,
            ),
        )

    assert time.monotonic() - started < 10
    assert seen
    assert len(sessions) == 0


@pytest.mark.asyncio
async def test_task_cancellation_kills_the_subprocess(
    backend: CliAgentBackend,
    discovery: ProfileDiscovery,
    workspace: Path,
    monkeypatch,
) -> None:
    processes = _record_processes(monkeypatch)
    task = asyncio.create_task(
        backend.run(_request(discovery, workspace, "writer", "[sleep:30]", enable_session=False)),
    )
    await asyncio.sleep(0.5)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await asyncio.wait_for(task, timeout=10)

    assert len(processes) == 1
    assert processes[0].returncode is not None


@pytest.mark.asyncio
async def test_task_cancellation_during_abort_still_kills_stubborn_process(
    backend: CliAgentBackend,
    discovery: ProfileDiscovery,
    workspace: Path,
    monkeypatch,
) -> None:
    processes = _record_processes(monkeypatch)
    token = CancellationToken()
    first_event = asyncio.Event()

    task = asyncio.create_task(
        backend.run(
            _request(
                discovery,
                workspace,
                "writer",
                "[ignore-term] [sleep:30]",
                enable_session=False,
                cancel_token=token,
                on_update=lambda partial: first_event.set(),
            ),
        ),
    )
    await asyncio.wait_for(first_event.wait(), timeout=10)
    token.cancel()
    await asyncio.sleep(0.2)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await asyncio.wait_for(task, timeout=10)

    assert len(processes) == 1
    assert processes[0].returncode == -signal.SIGKILL


@pytest.mark.asyncio
async def test_failing_update_callback_does_not_orphan_the_process(
    backend: CliAgentBackend,
    discovery: ProfileDiscovery,
    workspace: Path,
    monkeypatch,
) -> None:
    processes = _record_processes(monkeypatch)

    def _broken_renderer(partial: InvocationResult) -> None:
        raise RuntimeError("renderer broke")

    started = time.monotonic()
    with pytest.raises(RuntimeError, match="renderer broke"):
        await backend.run(
            _request(
                discovery,
                workspace,
                "writer",
                "slow [sleep:30]",
                enable_session=False,
                on_update=_broken_renderer,
            ),
        )

    assert time.monotonic() - started < 10
    assert len(processes) == 1
    assert processes[0].returncode is not None


@pytest.mark.asyncio
async def test_missing_working_directory_is_reported_as_such(
    backend: CliAgentBackend,
    discovery: ProfileDiscovery,
    tmp_path: Path,
) -> None:
    result = await backend.run(
        _request(discovery, tmp_path / "missing", "writer", "hi", enable_session=False),
    )

    assert result.completed
    assert result.exit_code == 1
    assert result.failure_class is FailureClass.SPAWN_FAILED
    assert result.stderr == f"Working directory not found: {tmp_path / 'missing'}"
    assert "Agent command not found" not in result.stderr
