"""Registry of delegation requests running in the background."""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from subagent_relay.common import utc_now
from subagent_relay.orchestrator.backend.base import CancellationToken
from subagent_relay.orchestrator.models import (
    AgentScope,
    DelegationDetails,
    DelegationMode,
    DelegationOutcome,
    JobStatus,
    ProgressCallback,
    ProgressUpdate,
)
from subagent_relay.orchestrator.presenter import (
    NO_OUTPUT_YET,
    format_preview_text,
    summarize_progress,
)

logger = logging.getLogger(__name__)

JobRunner = Callable[[CancellationToken, ProgressCallback], Awaitable[DelegationOutcome]]
JobNotifier = Callable[["BackgroundJob"], None]


@dataclass(slots=True)
class BackgroundJob:
    """One asynchronously executed request. Status only moves away from running."""

    id: str
    mode: DelegationMode
    agent: str
    task: str
    started_at: datetime
    cancel_token: CancellationToken
    fallback_details: DelegationDetails
    status: JobStatus = JobStatus.RUNNING
    finished_at: datetime | None = None
    last_update_at: datetime | None = None
    last_summary: str | None = None
    result: DelegationOutcome | None = None
    notified: bool = False
    handle: asyncio.Task[None] | None = field(default=None, repr=False)

    def elapsed_seconds(self, now: datetime) -> float:
        end = self.finished_at or now
        return (end - self.started_at).total_seconds()


@dataclass(slots=True)
class JobsReply:
    """Answer of the job query surface."""

    text: str
    is_error: bool = False
    details: DelegationDetails | None = None


class BackgroundJobRegistry:
    """Starts jobs as asyncio tasks and keeps them pollable until evicted."""

    def __init__(
        self,
        *,
        max_age: timedelta,
        max_count: int,
        notifier: JobNotifier | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.max_age = max_age
        self.max_count = max_count
        self.notifier = notifier
        self._clock = clock
        self._jobs: dict[str, BackgroundJob] = {}
        self._counter = itertools.count(1)

    def __len__(self) -> int:
        return len(self._jobs)

    def submit(  # noqa: PLR0913
        self,
        mode: DelegationMode,
        agent: str,
        task: str,
        runner: JobRunner,
        *,
        fallback_details: DelegationDetails | None = None,
    ) -> str:
        """Register a job and start ``runner`` without waiting for it."""

        job_id = f"job-{next(self._counter)}"
        self.evict_stale()
        job = BackgroundJob(
            id=job_id,
            mode=mode,
            agent=agent,
            task=task,
            started_at=self._clock(),
            cancel_token=CancellationToken(),
            fallback_details=fallback_details
            or DelegationDetails(mode=mode, agent_scope=AgentScope.USER, project_agents_dir=None),
        )
        self._jobs[job_id] = job
        job.handle = asyncio.create_task(self._run(job, runner), name=job_id)
        logger.info("Started background job %s [%s] agent=%s", job_id, mode.value, agent)
        return job_id

    def record_progress(self, job: BackgroundJob, update: ProgressUpdate) -> None:
        """Keep only the latest compressed snapshot of a running job."""

        summary = summarize_progress(update.details, is_running=True)
        if summary == NO_OUTPUT_YET and update.text:
            summary = format_preview_text(update.text)
        job.last_summary = summary
        job.last_update_at = self._clock()

    def get(self, job_id: str) -> BackgroundJob | None:
        return self._jobs.get(job_id)

    def list_jobs(self) -> list[BackgroundJob]:
        return list(self._jobs.values())

    def running(self) -> list[BackgroundJob]:
        return [job for job in self._jobs.values() if job.status is JobStatus.RUNNING]

    def describe(self, job_id: str) -> JobsReply:
        """Final result of a finished job, or a progress note; never waits."""

        job = self._jobs.get(job_id)
        if job is None:
            return JobsReply(text=f"Job not found: {job_id}", is_error=True)

        if job.status is JobStatus.RUNNING:
            now = self._clock()
            text = (
                f"Job {job.id} is still running ({job.elapsed_seconds(now):.1f}s elapsed). "
                f"Agent: {job.agent}, Task: {job.task}"
            )
            if job.last_summary:
                age = ""
                if job.last_update_at is not None:
                    age = f" ({(now - job.last_update_at).total_seconds():.1f}s ago)"
                text += f"\n\nLatest update{age}:\n{job.last_summary}"
            else:
                text += f"\n\n{NO_OUTPUT_YET}"
            text += "\n\nA notification will appear when the job finishes. Continue with other work."
            return JobsReply(text=text)

        if job.result is not None:
            return JobsReply(
                text=job.result.text,
                is_error=job.result.is_error,
                details=job.result.details,
            )
        return JobsReply(text=f"Job {job.id}: {job.status.value} (no result data)")

    def clear(self) -> int:
        """Forget finished jobs; running ones stay."""

        finished = [job_id for job_id, job in self._jobs.items() if job.status is not JobStatus.RUNNING]
        for job_id in finished:
            del self._jobs[job_id]
        return len(finished)

    def evict_stale(self) -> list[str]:
        """Drop finished jobs past the age limit, then the oldest over the count limit."""

        now = self._clock()
        finished = sorted(
            (job for job in self._jobs.values() if job.status is not JobStatus.RUNNING),
            key=lambda job: job.finished_at or job.started_at,
        )
        evicted: list[str] = []
        for job in finished:
            if now - (job.finished_at or job.started_at) > self.max_age:
                evicted.append(job.id)
        remaining = [job for job in finished if job.id not in evicted]
        while len(remaining) > self.max_count:
            evicted.append(remaining.pop(0).id)

        for job_id in evicted:
            del self._jobs[job_id]
        if evicted:
            logger.info("Evicted %d background job(s)", len(evicted))
        return evicted

    def abort_all(self) -> int:
        """Signal cancellation to every running job."""

        running = self.running()
        for job in running:
            job.cancel_token.cancel()
        if running:
            logger.info("Aborting %d running background job(s)", len(running))
        return len(running)

    async def wait(self, job_id: str) -> BackgroundJob:
        """Await a job's completion; meant for tests and the CLI."""

        job = self._jobs.get(job_id)
        if job is None:
            raise KeyError(job_id)
        if job.handle is not None:
            await asyncio.shield(job.handle)
        return job

    async def wait_all(self) -> None:
        handles = [job.handle for job in self.running() if job.handle is not None]
        if handles:
            await asyncio.gather(*handles, return_exceptions=True)

    async def _run(self, job: BackgroundJob, runner: JobRunner) -> None:
        try:
            outcome = await runner(job.cancel_token, lambda update: self.record_progress(job, update))
        except asyncio.CancelledError:
            self._finish(job, self._failure_outcome(job, "cancelled"))
            raise
        except Exception as error:  # noqa: BLE001
            logger.warning("Background job %s failed: %s", job.id, error)
            self._finish(job, self._failure_outcome(job, str(error)))
        else:
            self._finish(job, outcome)

    def _failure_outcome(self, job: BackgroundJob, message: str) -> DelegationOutcome:
        return DelegationOutcome(
            text=f"Background job error: {message}",
            details=job.fallback_details,
            is_error=True,
        )

    def _finish(self, job: BackgroundJob, outcome: DelegationOutcome) -> None:
        if job.status is not JobStatus.RUNNING:
            return
        job.status = JobStatus.FAILED if outcome.is_error else JobStatus.COMPLETED
        job.finished_at = self._clock()
        job.result = outcome
        logger.info(
            "Background job %s %s after %.1fs",
            job.id,
            job.status.value,
            job.elapsed_seconds(job.finished_at),
        )
        self.evict_stale()
        if job.notified:
            return
        job.notified = True
        if self.notifier is not None:
            try:
                self.notifier(job)
            except Exception:
                logger.exception("Notifier failed for background job %s", job.id)
