"""Backend interface for worker invocations."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from subagent_relay.orchestrator.models import InvocationResult
from subagent_relay.orchestrator.profiles import ProfileDiscovery


class CancellationToken:
    """Cooperative cancellation signal shared by every invocation of one request."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass(slots=True)
class BackendRunRequest:
    """Inputs required to execute one worker invocation."""

    agent: str
    task: str
    discovery: ProfileDiscovery
    cwd: Path
    step: int | None = None
    session_id: str | None = None
    enable_session: bool = True
    cancel_token: CancellationToken | None = None
    on_update: Callable[[InvocationResult], None] | None = None


class AgentBackend(Protocol):
    """Protocol implemented by backend runners."""

    async def run(self, request: BackendRunRequest) -> InvocationResult:
        """Run one invocation and return its result; raise ``AbortedError`` on cancel."""
