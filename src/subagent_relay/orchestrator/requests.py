"""Caller-facing delegation request and its validation."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from subagent_relay.orchestrator.errors import RequestValidationError
from subagent_relay.orchestrator.models import AgentScope, DelegationMode, WorkerProfile


@dataclass(slots=True)
class TaskItem:
    """One (agent, task) pair of a parallel batch."""

    agent: str
    task: str
    cwd: Path | None = None


@dataclass(slots=True)
class ChainItem:
    """One chain step; ``{previous}`` in ``task`` receives the prior step's output."""

    agent: str
    task: str
    cwd: Path | None = None


@dataclass(slots=True)
class WorkRequest:
    """Exactly one of single (``agent`` + ``task``), ``tasks`` or ``chain``."""

    agent: str | None = None
    task: str | None = None
    tasks: list[TaskItem] = field(default_factory=list)
    chain: list[ChainItem] = field(default_factory=list)
    session_id: str | None = None
    cwd: Path | None = None
    background: bool = False
    agent_scope: AgentScope = AgentScope.USER
    confirm_project_agents: bool = True

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> WorkRequest:
        """Build a request from decoded JSON; camelCase keys are accepted."""

        if not isinstance(data, Mapping):
            raise RequestValidationError("Request must be an object.")

        raw_scope = _pick(data, "agent_scope", "agentScope")
        try:
            agent_scope = AgentScope(raw_scope) if raw_scope is not None else AgentScope.USER
        except ValueError as error:
            allowed = ", ".join(scope.value for scope in AgentScope)
            raise RequestValidationError(
                f"Invalid agentScope: {raw_scope!r}. Expected one of: {allowed}.",
            ) from error

        confirm = _pick(data, "confirm_project_agents", "confirmProjectAgents")
        return cls(
            agent=_optional_str(data, "agent"),
            task=_optional_str(data, "task"),
            tasks=[
                TaskItem(agent=agent, task=task, cwd=cwd)
                for agent, task, cwd in _parse_items(data.get("tasks"), "tasks")
            ],
            chain=[
                ChainItem(agent=agent, task=task, cwd=cwd)
                for agent, task, cwd in _parse_items(data.get("chain"), "chain")
            ],
            session_id=_optional_str(data, "session_id", "sessionId"),
            cwd=_optional_path(data.get("cwd")),
            background=bool(data.get("background", False)),
            agent_scope=agent_scope,
            confirm_project_agents=True if confirm is None else bool(confirm),
        )

    @property
    def has_single(self) -> bool:
        return bool(self.agent and self.task)

    @property
    def mode(self) -> DelegationMode:
        """Request shape; chain wins over parallel over single when ambiguous."""

        if self.chain:
            return DelegationMode.CHAIN
        if self.tasks:
            return DelegationMode.PARALLEL
        return DelegationMode.SINGLE

    def requested_agents(self) -> list[str]:
        names: list[str] = []
        for name in (
            *(step.agent for step in self.chain),
            *(item.agent for item in self.tasks),
            *([self.agent] if self.agent else []),
        ):
            if name not in names:
                names.append(name)
        return names

    def validate(
        self,
        *,
        max_parallel_tasks: int,
        available: Sequence[WorkerProfile] = (),
    ) -> None:
        """Raise ``RequestValidationError`` for ambiguous or oversized requests."""

        mode_count = sum((bool(self.chain), bool(self.tasks), self.has_single))
        if mode_count != 1:
            listed = ", ".join(f"{agent.name} ({agent.source.value})" for agent in available)
            raise RequestValidationError(
                "Invalid parameters. Provide exactly one mode.\n"
                f"Available agents: {listed or 'none'}",
            )
        if self.session_id and not self.has_single:
            raise RequestValidationError(
                "sessionId can only be used with single mode (agent + task). "
                "It is not supported for chain or parallel.",
            )
        if self.has_single:
            if not (self.agent or "").strip():
                raise RequestValidationError("Field agent must not be blank.")
            if not (self.task or "").strip():
                raise RequestValidationError(f"Task for agent {self.agent} must not be blank.")
        if self.tasks:
            check_parallel_limit(len(self.tasks), max_parallel_tasks)
        for index, item in enumerate((*self.tasks, *self.chain), start=1):
            if not item.agent.strip():
                raise RequestValidationError(f"Item {index} has an empty agent name.")
            if not item.task.strip():
                raise RequestValidationError(f"Item {index} ({item.agent}) has an empty task.")


def check_parallel_limit(count: int, max_parallel_tasks: int) -> None:
    if count > max_parallel_tasks:
        raise RequestValidationError(
            f"Too many parallel tasks ({count}). Max is {max_parallel_tasks}.",
        )


def parse_assignment(raw: str) -> tuple[str, str]:
    """Split an ``agent=task`` command-line item."""

    agent, separator, task = raw.partition("=")
    if not separator or not agent.strip() or not task.strip():
        raise RequestValidationError(f"Expected agent=task, got: {raw!r}")
    return agent.strip(), task.strip()


def _pick(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def _optional_str(data: Mapping[str, Any], *keys: str) -> str | None:
    value = _pick(data, *keys)
    if value is None:
        return None
    if not isinstance(value, str):
        raise RequestValidationError(f"Field {keys[-1]} must be a string.")
    return value


def _optional_path(raw: Any) -> Path | None:
    if raw is None or raw == "":
        return None
    if not isinstance(raw, str):
        raise RequestValidationError("Field cwd must be a string.")
    return Path(raw).expanduser()


def _parse_items(raw: Any, field_name: str) -> list[tuple[str, str, Path | None]]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise RequestValidationError(f"Field {field_name} must be a list.")

    items: list[tuple[str, str, Path | None]] = []
    for index, entry in enumerate(raw, start=1):
        if not isinstance(entry, Mapping):
            raise RequestValidationError(f"{field_name}[{index}] must be an object.")
        agent = entry.get("agent")
        task = entry.get("task")
        if not isinstance(agent, str) or not isinstance(task, str):
            raise RequestValidationError(
                f"{field_name}[{index}] needs string fields agent and task.",
            )
        items.append((agent, task, _optional_path(entry.get("cwd"))))
    return items
