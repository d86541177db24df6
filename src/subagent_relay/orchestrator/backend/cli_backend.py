"""Subprocess-based backend that runs one agent CLI process per invocation."""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import shutil
import tempfile
from collections.abc import Callable
from pathlib import Path

from subagent_relay.common import safe_file_stem
from subagent_relay.orchestrator.backend.base import BackendRunRequest, CancellationToken
from subagent_relay.orchestrator.errors import (
    AbortedError,
    DelegationError,
    ProcessError,
    SessionError,
    UnknownProfileError,
)
from subagent_relay.orchestrator.events import LineBuffer, MessageEndEvent, decode_event
from subagent_relay.orchestrator.failure_classifier import classify_failure
from subagent_relay.orchestrator.models import (
    AgentSource,
    FailureClass,
    InvocationResult,
    WorkerProfile,
)
from subagent_relay.orchestrator.sessions import Session, SessionStore
from subagent_relay.orchestrator.usage import accumulate_usage

logger = logging.getLogger(__name__)

_READ_CHUNK_BYTES = 64 * 1024


class CliAgentBackend:
    """Spawn the agent CLI in JSON mode and fold its event stream into a result."""

    def __init__(
        self,
        *,
        command: tuple[str, ...],
        sessions: SessionStore,
        graceful_shutdown_seconds: float = 5.0,
    ) -> None:
        if not command:
            raise ValueError("Agent command must not be empty.")
        self.command = command
        self.sessions = sessions
        self.graceful_shutdown_seconds = graceful_shutdown_seconds

    async def run(self, request: BackendRunRequest) -> InvocationResult:  # noqa: C901
        profile = request.discovery.find(request.agent)
        if profile is None:
            error = UnknownProfileError(request.agent, request.discovery.names())
            return _synthetic_failure(request, AgentSource.UNKNOWN, error)

        existing: Session | None = None
        if request.session_id:
            try:
                existing = self.sessions.resume(request.session_id, request.agent)
            except SessionError as error:
                logger.info("Session %s rejected: %s", error.session_id, error.reason.value)
                return _synthetic_failure(request, profile.source, error)

        result = InvocationResult(
            agent=request.agent,
            agent_source=profile.source,
            task=request.task,
            model=profile.model,
            step=request.step,
        )
        tmp_prompt_dir: Path | None = None
        prompt_file: Path | None = None
        session: Session | None = None

        try:
            if existing is not None:
                session = existing
            else:
                if profile.system_prompt.strip():
                    tmp_prompt_dir, prompt_file = write_prompt_to_temp_file(
                        profile.name,
                        profile.system_prompt,
                    )
                if request.enable_session:
                    session = self.sessions.create(profile.name, tmp_prompt_dir)
                    # the session now owns the prompt dir
                    tmp_prompt_dir = None

            args = build_run_args(
                command=self.command,
                profile=profile,
                task=request.task,
                prompt_file=prompt_file,
                session_file=session.session_file if session is not None else None,
                resume=existing is not None,
            )

            session_scope = (
                self.sessions.acquire(session) if session is not None else contextlib.nullcontext()
            )
            with session_scope:
                try:
                    aborted = await self._run_subprocess(
                        args=args,
                        cwd=request.cwd,
                        result=result,
                        cancel_token=request.cancel_token,
                        on_update=request.on_update,
                    )
                except ProcessError as error:
                    logger.warning("Agent %s failed to start: %s", request.agent, error)
                    result.exit_code = 1
                    result.stderr += str(error)
                    result.failure_class = FailureClass.SPAWN_FAILED
                    aborted = False

            result.completed = True
            if aborted:
                if session is not None:
                    self.sessions.discard(session.id)
                result.session_id = None
                logger.info("Agent %s aborted", request.agent)
                raise AbortedError("Subagent was aborted")

            result.session_id = session.id if session is not None else None
            if result.is_error and result.failure_class is None:
                classified = classify_failure(
                    exit_code=result.exit_code,
                    stderr=result.stderr,
                    error_message=result.error_message,
                )
                result.failure_class = classified.failure_class
                logger.warning(
                    "Agent %s finished with exit_code=%s stop_reason=%s failure_class=%s "
                    "rule=%s pattern=%s",
                    request.agent,
                    result.exit_code,
                    result.stop_reason,
                    classified.failure_class.value,
                    classified.matched_rule,
                    classified.matched_pattern,
                )
            return result
        finally:
            if tmp_prompt_dir is not None:
                shutil.rmtree(tmp_prompt_dir, ignore_errors=True)

    async def _run_subprocess(
        self,
        *,
        args: list[str],
        cwd: Path,
        result: InvocationResult,
        cancel_token: CancellationToken | None,
        on_update: Callable[[InvocationResult], None] | None,
    ) -> bool:
        """Run the process to exit; return ``True`` when it was cancelled."""

        if not cwd.is_dir():
            raise ProcessError(f"Working directory not found: {cwd}")
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                cwd=str(cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as error:
            raise ProcessError(f"Agent command not found: {args[0]}") from error
        except OSError as error:
            raise ProcessError(f"Agent command failed to start: {error}") from error

        aborted = False

        async def watch_cancel(token: CancellationToken) -> None:
            nonlocal aborted
            await token.wait()
            aborted = True
            await terminate_process(process, self.graceful_shutdown_seconds)

        async def pump_stdout() -> None:
            assert process.stdout is not None
            buffer = LineBuffer()
            while chunk := await process.stdout.read(_READ_CHUNK_BYTES):
                for line in buffer.feed(chunk):
                    _apply_line(line, result, on_update)
            tail = buffer.flush()
            if tail is not None:
                _apply_line(tail, result, on_update)

        async def pump_stderr() -> None:
            assert process.stderr is not None
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            while chunk := await process.stderr.read(_READ_CHUNK_BYTES):
                result.stderr += decoder.decode(chunk)
            result.stderr += decoder.decode(b"", final=True)

        watcher = (
            asyncio.create_task(watch_cancel(cancel_token)) if cancel_token is not None else None
        )
        pumps = [asyncio.create_task(pump_stdout()), asyncio.create_task(pump_stderr())]
        try:
            await asyncio.gather(*pumps)
            result.exit_code = await process.wait()
        finally:
            if watcher is not None and not aborted:
                watcher.cancel()
            # the reaper outlives a cancellation of this task so SIGKILL is still sent
            reaper = asyncio.create_task(self._reap(process, pumps, watcher))
            try:
                await asyncio.shield(reaper)
            except asyncio.CancelledError:
                await reaper
                raise
        return aborted

    async def _reap(
        self,
        process: asyncio.subprocess.Process,
        pumps: list[asyncio.Task[None]],
        watcher: asyncio.Task[None] | None,
    ) -> None:
        """Wait for the cancel watcher, make sure the child exited, stop the readers."""

        if watcher is not None:
            await asyncio.wait({watcher})
        await terminate_process(process, self.graceful_shutdown_seconds)
        await process.wait()
        for pump in pumps:
            pump.cancel()
        await asyncio.gather(*pumps, return_exceptions=True)


def _apply_line(
    line: str,
    result: InvocationResult,
    on_update: Callable[[InvocationResult], None] | None,
) -> None:
    event = decode_event(line)
    if event is None:
        return

    message = event.message
    result.messages.append(message)
    if isinstance(event, MessageEndEvent) and message.role == "assistant":
        accumulate_usage(result.usage, message)
        if result.model is None and message.model:
            result.model = message.model
        if message.stop_reason:
            result.stop_reason = message.stop_reason
        if message.error_message:
            result.error_message = message.error_message
    if on_update is not None:
        on_update(result)


def _synthetic_failure(
    request: BackendRunRequest,
    source: AgentSource,
    error: DelegationError,
) -> InvocationResult:
    return InvocationResult(
        agent=request.agent,
        agent_source=source,
        task=request.task,
        exit_code=1,
        completed=True,
        stderr=str(error),
        step=request.step,
    )


def build_run_args(  # noqa: PLR0913
    *,
    command: tuple[str, ...],
    profile: WorkerProfile,
    task: str,
    prompt_file: Path | None,
    session_file: Path | None,
    resume: bool,
) -> list[str]:
    """Build discrete argv tokens; the task is never shell-interpreted."""

    args = [*command, "--mode", "json", "-p"]
    if profile.model:
        args.extend(["--model", profile.model])
    if profile.thinking:
        args.extend(["--thinking", profile.thinking])
    if profile.tools:
        args.extend(["--tools", ",".join(profile.tools)])

    if resume:
        if session_file is None:
            raise ValueError("Resuming requires a session file.")
        args.extend(["--continue", "--session", str(session_file)])
    else:
        if prompt_file is not None:
            args.extend(["--append-system-prompt", str(prompt_file)])
        if session_file is not None:
            args.extend(["--session", str(session_file)])
        else:
            args.append("--no-session")

    args.append(f"Task: {task}")
    return args


def write_prompt_to_temp_file(agent: str, prompt: str) -> tuple[Path, Path]:
    """Write instruction text to a private temp dir; return ``(dir, file)``."""

    tmp_dir = Path(tempfile.mkdtemp(prefix="subagent-relay-"))
    prompt_file = tmp_dir / f"prompt-{safe_file_stem(agent)}.md"
    prompt_file.write_text(prompt, "utf-8")
    prompt_file.chmod(0o600)
    return tmp_dir, prompt_file


async def terminate_process(process: asyncio.subprocess.Process, grace_seconds: float) -> None:
    """Ask the process to stop, then kill it once the grace window has passed."""

    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=grace_seconds)
    except TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()
