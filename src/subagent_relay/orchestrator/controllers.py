"""Controllers for delegation CLI commands."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from subagent_relay.common import utc_now
from subagent_relay.config import Settings
from subagent_relay.orchestrator.backend.base import AgentBackend
from subagent_relay.orchestrator.errors import DelegationError, RequestValidationError
from subagent_relay.orchestrator.jobs import BackgroundJob
from subagent_relay.orchestrator.models import (
    AgentScope,
    DelegationOutcome,
    JobsAction,
    JobStatus,
    ProgressUpdate,
)
from subagent_relay.orchestrator.presenter import (
    JOB_WIDGET_PREVIEW_LIMIT,
    format_job_notification,
    format_preview_text,
    format_running_jobs,
    render_outcome_lines,
    summarize_progress,
)
from subagent_relay.orchestrator.profiles import DirectoryProfileResolver
from subagent_relay.orchestrator.requests import (
    ChainItem,
    TaskItem,
    WorkRequest,
    parse_assignment,
)
from subagent_relay.orchestrator.service import DelegationOrchestrator, ProjectAgentConfirm


@dataclass(slots=True)
class DelegateOptions:
    """CLI options shared by every delegation command."""

    cwd: Path | None = None
    agent_scope: AgentScope = AgentScope.USER
    confirm_project_agents: bool = True
    background: bool = False


@dataclass(slots=True)
class RunCommand:
    """CLI input for a single delegation."""

    agent: str
    task: str
    session_id: str | None = None
    options: DelegateOptions = field(default_factory=DelegateOptions)


@dataclass(slots=True)
class ParallelCommand:
    """CLI input for a parallel batch of ``agent=task`` items."""

    items: tuple[str, ...]
    options: DelegateOptions = field(default_factory=DelegateOptions)


@dataclass(slots=True)
class ChainCommand:
    """CLI input for a chain of ``agent=task`` steps."""

    steps: tuple[str, ...]
    options: DelegateOptions = field(default_factory=DelegateOptions)


@dataclass(slots=True)
class RequestFileCommand:
    """CLI input for a JSON request file."""

    path: Path
    cwd: Path | None = None


@dataclass(slots=True)
class AgentsCommand:
    """CLI input for profile listing."""

    cwd: Path | None
    agent_scope: AgentScope


@dataclass(slots=True)
class DelegationCliResult:
    """Rendered command output plus overall success."""

    lines: list[str]
    success: bool


class DelegationCliController:
    """Builds requests from CLI input and renders orchestrator outcomes."""

    def __init__(
        self,
        *,
        progress: Callable[[str], None] | None = None,
        confirm: ProjectAgentConfirm | None = None,
        backend_factory: Callable[[Settings], AgentBackend | None] | None = None,
    ) -> None:
        self.progress = progress
        self.confirm = confirm
        self.backend_factory = backend_factory

    def run(self, command: RunCommand) -> DelegationCliResult:
        return self._delegate(
            lambda: WorkRequest(
                agent=command.agent,
                task=command.task,
                session_id=command.session_id,
                cwd=command.options.cwd,
                **_request_flags(command.options),
            ),
            cwd=command.options.cwd,
        )

    def parallel(self, command: ParallelCommand) -> DelegationCliResult:
        def build() -> WorkRequest:
            items = [TaskItem(*parse_assignment(raw)) for raw in command.items]
            return WorkRequest(tasks=items, **_request_flags(command.options))

        return self._delegate(build, cwd=command.options.cwd)

    def chain(self, command: ChainCommand) -> DelegationCliResult:
        def build() -> WorkRequest:
            steps = [ChainItem(*parse_assignment(raw)) for raw in command.steps]
            return WorkRequest(chain=steps, **_request_flags(command.options))

        return self._delegate(build, cwd=command.options.cwd)

    def request_file(self, command: RequestFileCommand) -> DelegationCliResult:
        def build() -> WorkRequest:
            try:
                payload = json.loads(command.path.read_text("utf-8"))
            except (OSError, json.JSONDecodeError) as error:
                raise RequestValidationError(f"Cannot read request {command.path}: {error}") from error
            return WorkRequest.from_mapping(payload)

        return self._delegate(build, cwd=command.cwd)

    def agents(self, command: AgentsCommand) -> list[str]:
        settings = _load_settings()
        resolver = _resolver(settings)
        discovery = resolver.discover(command.cwd or Path.cwd(), command.agent_scope)
        if not discovery.agents:
            return [f"No agents found for scope {command.agent_scope.value}."]

        lines = []
        for profile in discovery.agents:
            details = [profile.source.value]
            if profile.model:
                details.append(f"model={profile.model}")
            if profile.tools:
                details.append(f"tools={','.join(profile.tools)}")
            line = f"{profile.name} ({' '.join(details)})"
            if profile.description:
                line += f": {profile.description}"
            lines.append(line)
        if discovery.project_agents_dir is not None:
            lines.append(f"Project agents dir: {discovery.project_agents_dir}")
        return lines

    def _delegate(
        self,
        build: Callable[[], WorkRequest],
        *,
        cwd: Path | None,
    ) -> DelegationCliResult:
        try:
            request = build()
            settings = _load_settings()
        except (DelegationError, ValueError) as error:
            return DelegationCliResult(lines=[f"Error: {error}"], success=False)
        return asyncio.run(self._execute(settings, request, cwd=cwd))

    async def _execute(
        self,
        settings: Settings,
        request: WorkRequest,
        *,
        cwd: Path | None,
    ) -> DelegationCliResult:
        backend = self.backend_factory(settings) if self.backend_factory is not None else None
        async with DelegationOrchestrator(
            settings,
            _resolver(settings),
            backend=backend,
            notifier=self._notify,
            confirm=self.confirm,
        ) as orchestrator:
            try:
                outcome = await orchestrator.execute(
                    request,
                    on_update=self._progress_printer(),
                    cwd=cwd,
                )
            except DelegationError as error:
                return DelegationCliResult(lines=[f"Error: {error}"], success=False)

            if outcome.job_id is None:
                return DelegationCliResult(
                    lines=render_outcome_lines(outcome),
                    success=not outcome.is_error,
                )

            self._emit(outcome.text)
            job = await self._poll_job(orchestrator, outcome.job_id)
            reply = orchestrator.jobs_action(JobsAction.GET, job.id)
            final = DelegationOutcome(
                text=reply.text,
                details=reply.details or outcome.details,
                is_error=reply.is_error,
            )
            return DelegationCliResult(
                lines=render_outcome_lines(final),
                success=job.status is JobStatus.COMPLETED,
            )

    async def _poll_job(self, orchestrator: DelegationOrchestrator, job_id: str) -> BackgroundJob:
        interval = orchestrator.settings.cli_poll_interval_seconds
        while True:
            job = orchestrator.jobs.get(job_id)
            if job is None:
                raise DelegationError(f"Job not found: {job_id}")
            if job.status is not JobStatus.RUNNING:
                return job
            for line in format_running_jobs(orchestrator.jobs.running(), utc_now()):
                self._emit(line)
            await asyncio.sleep(interval)

    def _progress_printer(self) -> Callable[[ProgressUpdate], None]:
        last_line: str | None = None

        def on_update(update: ProgressUpdate) -> None:
            nonlocal last_line
            summary = summarize_progress(update.details, is_running=True)
            line = format_preview_text(summary, JOB_WIDGET_PREVIEW_LIMIT)
            if line != last_line:
                last_line = line
                self._emit(line)

        return on_update

    def _notify(self, job: BackgroundJob) -> None:
        self._emit(format_job_notification(job, utc_now()))

    def _emit(self, line: str) -> None:
        if self.progress is not None:
            self.progress(line)


def _load_settings() -> Settings:
    settings = Settings.from_env()
    settings.validate()
    return settings


def _resolver(settings: Settings) -> DirectoryProfileResolver:
    return DirectoryProfileResolver(
        user_dir=settings.user_agents_dir,
        project_subdir=settings.project_agents_subdir,
    )


def _request_flags(options: DelegateOptions) -> dict[str, object]:
    return {
        "background": options.background,
        "agent_scope": options.agent_scope,
        "confirm_project_agents": options.confirm_project_agents,
    }


def describe_project_agents(names: Sequence[str], directory: Path | None) -> str:
    """Confirmation prompt text for repo-controlled agents."""

    return (
        f"Agents: {', '.join(names)}\n"
        f"Source: {directory or '(unknown)'}\n\n"
        "Project agents are repo-controlled. Only continue for trusted repositories."
    )
