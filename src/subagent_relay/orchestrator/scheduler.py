"""Expands a request into worker invocations and combines their results."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TypeVar

from subagent_relay.orchestrator.backend.base import (
    AgentBackend,
    BackendRunRequest,
    CancellationToken,
)
from subagent_relay.orchestrator.errors import ChainStepFailure
from subagent_relay.orchestrator.models import (
    AgentScope,
    AgentSource,
    DelegationDetails,
    DelegationMode,
    DelegationOutcome,
    InvocationResult,
    ProgressCallback,
    ProgressUpdate,
)
from subagent_relay.orchestrator.presenter import NO_OUTPUT, get_final_output
from subagent_relay.orchestrator.profiles import ProfileDiscovery
from subagent_relay.orchestrator.requests import ChainItem, TaskItem, check_parallel_limit

logger = logging.getLogger(__name__)

PREVIOUS_PLACEHOLDER = "{previous}"
_RUNNING_TEXT = "(running...)"
_PARALLEL_PREVIEW_LIMIT = 100

ItemT = TypeVar("ItemT")
ResultT = TypeVar("ResultT")


@dataclass(slots=True)
class RunContext:
    """Everything one top-level request shares across its invocations."""

    discovery: ProfileDiscovery
    cwd: Path
    agent_scope: AgentScope
    cancel_token: CancellationToken | None = None
    on_update: ProgressCallback | None = None

    def details(
        self,
        mode: DelegationMode,
        results: Sequence[InvocationResult] = (),
    ) -> DelegationDetails:
        return DelegationDetails(
            mode=mode,
            agent_scope=self.agent_scope,
            project_agents_dir=self.discovery.project_agents_dir,
            results=list(results),
        )

    def emit(self, text: str, mode: DelegationMode, results: Sequence[InvocationResult]) -> None:
        if self.on_update is not None:
            self.on_update(ProgressUpdate(text=text, details=self.details(mode, results)))


async def map_with_concurrency_limit(
    items: Sequence[ItemT],
    concurrency: int,
    fn: Callable[[ItemT, int], Awaitable[ResultT]],
) -> list[ResultT]:
    """Run ``fn`` over ``items`` with at most ``concurrency`` in flight.

    Workers pull the next index from a shared cursor, so a fast worker takes
    over more of the queue. Results keep the input order.
    """

    if not items:
        return []
    limit = max(1, min(concurrency, len(items)))
    results: list[ResultT | None] = [None] * len(items)
    cursor = iter(enumerate(items))

    async def worker() -> None:
        for index, item in cursor:
            results[index] = await fn(item, index)

    workers = [asyncio.create_task(worker()) for _ in range(limit)]
    try:
        await asyncio.gather(*workers)
    except BaseException:
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        raise
    return results  # type: ignore[return-value]


class DelegationScheduler:
    """Runs single, parallel and chain requests against one backend."""

    def __init__(
        self,
        *,
        backend: AgentBackend,
        max_parallel_tasks: int = 8,
        max_concurrency: int = 4,
    ) -> None:
        self.backend = backend
        self.max_parallel_tasks = max_parallel_tasks
        self.max_concurrency = max_concurrency

    async def run_single(
        self,
        context: RunContext,
        *,
        agent: str,
        task: str,
        cwd: Path | None = None,
        session_id: str | None = None,
    ) -> DelegationOutcome:
        mode = DelegationMode.SINGLE

        def on_result(partial: InvocationResult) -> None:
            context.emit(get_final_output(partial.messages) or _RUNNING_TEXT, mode, [partial])

        result = await self.backend.run(
            BackendRunRequest(
                agent=agent,
                task=task,
                discovery=context.discovery,
                cwd=cwd or context.cwd,
                session_id=session_id,
                enable_session=True,
                cancel_token=context.cancel_token,
                on_update=on_result,
            ),
        )

        session_info = f"\n\n[sessionId: {result.session_id}]" if result.session_id else ""
        details = context.details(mode, [result])
        if result.is_error:
            return DelegationOutcome(
                text=f"Agent {result.stop_reason or 'failed'}: {_error_text(result)}{session_info}",
                details=details,
                is_error=True,
            )
        return DelegationOutcome(
            text=(get_final_output(result.messages) or NO_OUTPUT) + session_info,
            details=details,
        )

    async def run_parallel(
        self,
        context: RunContext,
        items: Sequence[TaskItem],
    ) -> DelegationOutcome:
        check_parallel_limit(len(items), self.max_parallel_tasks)
        mode = DelegationMode.PARALLEL
        snapshot = [
            InvocationResult(
                agent=item.agent,
                agent_source=AgentSource.UNKNOWN,
                task=item.task,
                exit_code=-1,
            )
            for item in items
        ]

        def emit_aggregate() -> None:
            done = sum(1 for result in snapshot if result.completed)
            running = len(snapshot) - done
            context.emit(
                f"Parallel: {done}/{len(snapshot)} done, {running} running...",
                mode,
                snapshot,
            )

        async def run_item(item: TaskItem, index: int) -> InvocationResult:
            def on_result(partial: InvocationResult) -> None:
                snapshot[index] = partial
                emit_aggregate()

            result = await self.backend.run(
                BackendRunRequest(
                    agent=item.agent,
                    task=item.task,
                    discovery=context.discovery,
                    cwd=item.cwd or context.cwd,
                    enable_session=False,
                    cancel_token=context.cancel_token,
                    on_update=on_result,
                ),
            )
            snapshot[index] = result
            emit_aggregate()
            return result

        results = await map_with_concurrency_limit(items, self.max_concurrency, run_item)
        succeeded = sum(1 for result in results if not result.is_error)
        logger.info("Parallel batch finished: %d/%d succeeded", succeeded, len(results))

        summaries = []
        for result in results:
            output = get_final_output(result.messages)
            preview = output[:_PARALLEL_PREVIEW_LIMIT]
            if len(output) > _PARALLEL_PREVIEW_LIMIT:
                preview += "..."
            status = "failed" if result.is_error else "completed"
            summaries.append(f"[{result.agent}] {status}: {preview or NO_OUTPUT}")
        return DelegationOutcome(
            text=f"Parallel: {succeeded}/{len(results)} succeeded\n\n" + "\n\n".join(summaries),
            details=context.details(mode, results),
        )

    async def run_chain(
        self,
        context: RunContext,
        steps: Sequence[ChainItem],
    ) -> DelegationOutcome:
        mode = DelegationMode.CHAIN
        results: list[InvocationResult] = []
        previous_output = ""

        for step_number, step in enumerate(steps, start=1):
            task = step.task.replace(PREVIOUS_PLACEHOLDER, previous_output)

            def on_result(partial: InvocationResult) -> None:
                context.emit(
                    get_final_output(partial.messages) or _RUNNING_TEXT,
                    mode,
                    [*results, partial],
                )

            result = await self.backend.run(
                BackendRunRequest(
                    agent=step.agent,
                    task=task,
                    discovery=context.discovery,
                    cwd=step.cwd or context.cwd,
                    step=step_number,
                    enable_session=False,
                    cancel_token=context.cancel_token,
                    on_update=on_result,
                ),
            )
            results.append(result)

            if result.is_error:
                failure = ChainStepFailure(
                    step=step_number,
                    agent=step.agent,
                    message=_error_text(result),
                )
                logger.info("%s", failure)
                return DelegationOutcome(
                    text=str(failure),
                    details=context.details(mode, results),
                    is_error=True,
                    error=failure,
                )
            previous_output = get_final_output(result.messages)

        final_output = get_final_output(results[-1].messages) if results else ""
        return DelegationOutcome(
            text=final_output or NO_OUTPUT,
            details=context.details(mode, results),
        )


def _error_text(result: InvocationResult) -> str:
    return (
        result.error_message
        or result.stderr
        or get_final_output(result.messages)
        or NO_OUTPUT
    )
