"""Orchestrator backend implementations."""

from subagent_relay.orchestrator.backend.base import (
    AgentBackend,
    BackendRunRequest,
    CancellationToken,
)
from subagent_relay.orchestrator.backend.cli_backend import CliAgentBackend

__all__ = [
    "AgentBackend",
    "BackendRunRequest",
    "CancellationToken",
    "CliAgentBackend",
]
