"""Error kinds raised or recorded by the delegation orchestrator."""

from __future__ import annotations

from enum import Enum


class DelegationError(RuntimeError):
    """Base class for delegation failures with a user-facing message."""


class RequestValidationError(DelegationError, ValueError):
    """Malformed or ambiguous request; raised before anything is spawned."""


class UnknownProfileError(DelegationError):
    """Requested worker profile is not among the discovered agents."""

    def __init__(self, agent: str, available: list[str]) -> None:
        listed = ", ".join(f'"{name}"' for name in available) or "none"
        super().__init__(f'Unknown agent: "{agent}". Available agents: {listed}.')
        self.agent = agent
        self.available = available


class SessionRejection(str, Enum):
    """Why a session could not be resumed."""

    NOT_FOUND = "not_found"
    OWNER_MISMATCH = "owner_mismatch"
    IN_USE = "in_use"
    MISSING_FILE = "missing_file"


class SessionError(DelegationError):
    """Session precondition failed."""

    def __init__(self, message: str, *, session_id: str, reason: SessionRejection) -> None:
        super().__init__(message)
        self.session_id = session_id
        self.reason = reason


class ProcessError(DelegationError):
    """Worker subprocess could not be started."""


class AbortedError(DelegationError):
    """Cancellation was observed while the worker was running."""


class ChainStepFailure(DelegationError):
    """A chain step finished unsuccessfully; earlier steps are kept."""

    def __init__(self, *, step: int, agent: str, message: str) -> None:
        super().__init__(f"Chain stopped at step {step} ({agent}): {message}")
        self.step = step
        self.agent = agent
