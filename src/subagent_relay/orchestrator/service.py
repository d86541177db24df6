"""Delegation orchestrator: owns sessions, jobs and the worker backend."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from datetime import timedelta
from pathlib import Path
from types import TracebackType

from subagent_relay.common import utc_now
from subagent_relay.config import Settings
from subagent_relay.orchestrator.backend.base import AgentBackend, CancellationToken
from subagent_relay.orchestrator.backend.cli_backend import CliAgentBackend
from subagent_relay.orchestrator.jobs import BackgroundJob, BackgroundJobRegistry, JobsReply
from subagent_relay.orchestrator.models import (
    AgentScope,
    AgentSource,
    DelegationMode,
    DelegationOutcome,
    JobsAction,
    ProgressCallback,
    WorkerProfile,
)
from subagent_relay.orchestrator.presenter import format_job_notification, format_job_summary
from subagent_relay.orchestrator.profiles import ProfileDiscovery, ProfileResolver
from subagent_relay.orchestrator.requests import WorkRequest
from subagent_relay.orchestrator.scheduler import DelegationScheduler, RunContext
from subagent_relay.orchestrator.sessions import SessionStore

logger = logging.getLogger(__name__)

ProjectAgentConfirm = Callable[[Sequence[WorkerProfile], Path | None], bool]


class DelegationOrchestrator:
    """Entry point for delegation requests and the background job surface.

    One instance holds all long-lived state; ``shutdown`` aborts running jobs
    and deletes every session.
    """

    def __init__(  # noqa: PLR0913
        self,
        settings: Settings,
        resolver: ProfileResolver,
        backend: AgentBackend | None = None,
        notifier: Callable[[BackgroundJob], None] | None = None,
        confirm: ProjectAgentConfirm | None = None,
    ) -> None:
        self.settings = settings
        self.resolver = resolver
        self.confirm = confirm
        self.sessions = SessionStore(
            session_dir=settings.sessions.session_dir,
            max_age=timedelta(seconds=settings.sessions.max_age_seconds),
            max_count=settings.sessions.max_count,
        )
        self.backend = backend or CliAgentBackend(
            command=settings.agent_command,
            sessions=self.sessions,
            graceful_shutdown_seconds=settings.graceful_shutdown_seconds,
        )
        self.scheduler = DelegationScheduler(
            backend=self.backend,
            max_parallel_tasks=settings.scheduler.max_parallel_tasks,
            max_concurrency=settings.scheduler.max_concurrency,
        )
        self.jobs = BackgroundJobRegistry(
            max_age=timedelta(seconds=settings.jobs.max_age_seconds),
            max_count=settings.jobs.max_count,
            notifier=notifier or _log_notification,
        )

    async def __aenter__(self) -> DelegationOrchestrator:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        await self.shutdown()

    def discover(self, cwd: Path, scope: AgentScope = AgentScope.USER) -> ProfileDiscovery:
        return self.resolver.discover(cwd, scope)

    async def execute(
        self,
        request: WorkRequest,
        cancel_token: CancellationToken | None = None,
        on_update: ProgressCallback | None = None,
        *,
        cwd: Path | None = None,
    ) -> DelegationOutcome:
        """Validate and run ``request``, or start it as a background job.

        Raises ``RequestValidationError`` before anything is spawned. A
        foreground run that is cancelled raises ``AbortedError``.
        """

        base_cwd = cwd or Path.cwd()
        discovery = self.resolver.discover(base_cwd, request.agent_scope)
        request.validate(
            max_parallel_tasks=self.settings.scheduler.max_parallel_tasks,
            available=discovery.agents,
        )
        mode = request.mode
        context = RunContext(
            discovery=discovery,
            cwd=base_cwd,
            agent_scope=request.agent_scope,
        )

        if not await self._project_agents_approved(request, discovery):
            return DelegationOutcome(
                text="Canceled: project-local agents not approved.",
                details=context.details(mode),
            )

        if request.background:
            return self._start_background(request, context)

        context.cancel_token = cancel_token
        context.on_update = on_update
        return await self._run(request, context)

    def jobs_action(self, action: JobsAction | str, job_id: str | None = None) -> JobsReply:
        """List, get or clear background jobs."""

        try:
            resolved = JobsAction(action)
        except ValueError:
            return JobsReply(text=f"Unknown action: {action}", is_error=True)

        if resolved is JobsAction.LIST:
            jobs = self.jobs.list_jobs()
            if not jobs:
                return JobsReply(text="No background jobs.")
            now = utc_now()
            return JobsReply(text="\n".join(format_job_summary(job, now) for job in jobs))
        if resolved is JobsAction.GET:
            if not job_id:
                return JobsReply(text="Missing jobId parameter.", is_error=True)
            return self.jobs.describe(job_id)
        cleared = self.jobs.clear()
        return JobsReply(text=f"Cleared {cleared} finished job(s).")

    async def shutdown(self) -> None:
        """Abort running jobs, wait for them, and delete every session."""

        self.jobs.abort_all()
        await self.jobs.wait_all()
        self.sessions.close()
        logger.debug("Orchestrator shut down")

    async def _run(self, request: WorkRequest, context: RunContext) -> DelegationOutcome:
        mode = request.mode
        if mode is DelegationMode.CHAIN:
            return await self.scheduler.run_chain(context, request.chain)
        if mode is DelegationMode.PARALLEL:
            return await self.scheduler.run_parallel(context, request.tasks)
        return await self.scheduler.run_single(
            context,
            agent=request.agent or "",
            task=request.task or "",
            cwd=request.cwd,
            session_id=request.session_id,
        )

    def _start_background(self, request: WorkRequest, context: RunContext) -> DelegationOutcome:
        mode = request.mode
        agent = (
            request.agent
            or (request.chain[0].agent if request.chain else None)
            or (request.tasks[0].agent if request.tasks else None)
            or "unknown"
        )
        task = (
            request.task
            or (request.chain[0].task if request.chain else None)
            or ", ".join(item.agent for item in request.tasks)
            or "unknown"
        )

        async def runner(
            token: CancellationToken,
            progress: ProgressCallback,
        ) -> DelegationOutcome:
            job_context = RunContext(
                discovery=context.discovery,
                cwd=context.cwd,
                agent_scope=context.agent_scope,
                cancel_token=token,
                on_update=progress,
            )
            return await self._run(request, job_context)

        job_id = self.jobs.submit(
            mode,
            agent,
            task,
            runner,
            fallback_details=context.details(mode),
        )
        return DelegationOutcome(
            text=(
                f"Background job started: {job_id}\n"
                f"Agent: {agent}, Mode: {mode.value}\n"
                "A notification will appear when the job finishes. "
                "Continue with other work and retrieve results after the notification."
            ),
            details=context.details(mode),
            job_id=job_id,
        )

    async def _project_agents_approved(
        self,
        request: WorkRequest,
        discovery: ProfileDiscovery,
    ) -> bool:
        if request.agent_scope is AgentScope.USER or not request.confirm_project_agents:
            return True
        if self.confirm is None:
            return True

        requested = [discovery.find(name) for name in request.requested_agents()]
        project_profiles = [
            profile
            for profile in requested
            if profile is not None and profile.source is AgentSource.PROJECT
        ]
        if not project_profiles:
            return True
        # may block on a terminal prompt
        approved = await asyncio.to_thread(
            self.confirm,
            project_profiles,
            discovery.project_agents_dir,
        )
        if not approved:
            logger.info(
                "Project agents not approved: %s",
                ", ".join(profile.name for profile in project_profiles),
            )
        return approved


def _log_notification(job: BackgroundJob) -> None:
    level = logging.INFO if job.result is not None and not job.result.is_error else logging.WARNING
    logger.log(level, "%s", format_job_notification(job, utc_now()))
