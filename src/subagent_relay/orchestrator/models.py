"""Domain models for delegated agent invocations."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


class AgentSource(str, Enum):
    """Where a worker profile was discovered."""

    USER = "user"
    PROJECT = "project"
    UNKNOWN = "unknown"


class AgentScope(str, Enum):
    """Which profile directories are consulted for a request."""

    USER = "user"
    PROJECT = "project"
    BOTH = "both"


class DelegationMode(str, Enum):
    """Request shapes accepted by the orchestrator."""

    SINGLE = "single"
    PARALLEL = "parallel"
    CHAIN = "chain"


class TerminalState(str, Enum):
    """Normalized outcome of one finished invocation."""

    OK = "ok"
    ERROR = "error"
    ABORTED = "aborted"


class FailureClass(str, Enum):
    """Normalized diagnosis attached to failed invocations."""

    SPAWN_FAILED = "spawn_failed"
    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    MODEL_NOT_AVAILABLE = "model_not_available"
    BACKEND_TRANSIENT = "backend_transient"
    BACKEND_NON_RETRYABLE = "backend_non_retryable"


class JobStatus(str, Enum):
    """Background job lifecycle states."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class JobsAction(str, Enum):
    """Operations of the job query surface."""

    LIST = "list"
    GET = "get"
    CLEAR = "clear"


@dataclass(frozen=True, slots=True)
class WorkerProfile:
    """Resolved worker configuration. Read-only once discovered."""

    name: str
    description: str = ""
    tools: tuple[str, ...] = ()
    model: str | None = None
    thinking: str | None = None
    system_prompt: str = ""
    source: AgentSource = AgentSource.USER
    file_path: Path | None = None


@dataclass(slots=True)
class TextPart:
    text: str


@dataclass(slots=True)
class ToolCallPart:
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class OtherPart:
    """Content part kinds the orchestrator does not interpret (images, thinking)."""

    type: str
    payload: dict[str, Any] = field(default_factory=dict)


ContentPart = TextPart | ToolCallPart | OtherPart


@dataclass(slots=True)
class AgentMessage:
    """One completed message from the agent transcript."""

    role: str
    content: list[ContentPart] = field(default_factory=list)
    model: str | None = None
    stop_reason: str | None = None
    error_message: str | None = None
    usage: dict[str, Any] | None = None
    tool_name: str | None = None


@dataclass(slots=True)
class UsageStats:
    """Token and cost counters accumulated over assistant turns."""

    input: int = 0
    output: int = 0
    cache_read: int = 0
    cache_write: int = 0
    cost: float = 0.0
    context_tokens: int = 0
    turns: int = 0


@dataclass(slots=True)
class InvocationResult:
    """Result of one worker subprocess run, built incrementally from its stream."""

    agent: str
    agent_source: AgentSource
    task: str
    exit_code: int = 0
    completed: bool = False
    messages: list[AgentMessage] = field(default_factory=list)
    stderr: str = ""
    usage: UsageStats = field(default_factory=UsageStats)
    model: str | None = None
    stop_reason: str | None = None
    error_message: str | None = None
    step: int | None = None
    session_id: str | None = None
    failure_class: FailureClass | None = None

    @property
    def terminal_state(self) -> TerminalState:
        if self.stop_reason == TerminalState.ABORTED.value:
            return TerminalState.ABORTED
        if self.exit_code != 0 or self.stop_reason == TerminalState.ERROR.value:
            return TerminalState.ERROR
        return TerminalState.OK

    @property
    def is_error(self) -> bool:
        return self.terminal_state is not TerminalState.OK


@dataclass(slots=True)
class DelegationDetails:
    """Structured payload describing every invocation of one request."""

    mode: DelegationMode
    agent_scope: AgentScope
    project_agents_dir: Path | None
    results: list[InvocationResult] = field(default_factory=list)


@dataclass(slots=True)
class ProgressUpdate:
    """Live snapshot emitted while a request is still running."""

    text: str
    details: DelegationDetails


@dataclass(slots=True)
class DelegationOutcome:
    """Final answer of a delegation request."""

    text: str
    details: DelegationDetails
    is_error: bool = False
    error: Exception | None = None
    job_id: str | None = None


ProgressCallback = Callable[[ProgressUpdate], None]
