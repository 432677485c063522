"""Shared exceptions, reason codes and agent result types."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class ErrorKind(StrEnum):
    """Failure categories the engine distinguishes."""

    CAPABILITY_MISMATCH = "capability_mismatch"
    AGENT_EXECUTION = "agent_execution"
    SESSION_EXHAUSTED = "session_exhausted"
    CHAIN_STRUCTURAL = "chain_structural"
    CONFIGURATION = "configuration"
    REGISTRY = "registry"


class FailureReason(StrEnum):
    """Reason codes recorded on failed tasks and chains."""

    NO_CAPABLE_AGENT = "no_capable_agent"
    MAX_REASSIGNMENT = "max_reassignment_attempts_reached"
    SESSION_TIMEOUT = "session_timeout"
    CANCELLED = "cancelled"
    TOO_MANY_FAILURES = "too_many_failures"
    CHAIN_STALLED = "chain_stalled"
    NO_VIABLE_PATH = "no_viable_path"
    REMAP_LIMIT_REACHED = "remap_limit_reached"
    DEPENDENCY_FAILED = "dependency_failed"


class ConcordError(Exception):
    """Base exception for all Concord errors."""

    kind: ErrorKind = ErrorKind.CONFIGURATION


class ConfigurationError(ConcordError):
    """Raised at submission time for invalid input (cycles, unknown ids, bad config)."""

    kind = ErrorKind.CONFIGURATION


class RegistryError(ConcordError):
    """Raised on duplicate or unknown agent ids."""

    kind = ErrorKind.REGISTRY


class CapabilityMismatchError(ConcordError):
    """No registered agent satisfies a task's capability requirements."""

    kind = ErrorKind.CAPABILITY_MISMATCH

    def __init__(self, task_id: str, required: list[str]) -> None:
        super().__init__(f"No registered agent covers {required!r} for task {task_id!r}")
        self.task_id = task_id
        self.required = required


class AgentExecutionError(ConcordError):
    """One participant's ``process_task`` call rejected or returned garbage."""

    kind = ErrorKind.AGENT_EXECUTION

    def __init__(self, agent_id: str, task_id: str, message: str) -> None:
        super().__init__(f"Agent {agent_id!r} failed task {task_id!r}: {message}")
        self.agent_id = agent_id
        self.task_id = task_id
        self.message = message


class SessionExhaustedError(ConcordError):
    """Every participant of a collaboration session failed."""

    kind = ErrorKind.SESSION_EXHAUSTED

    def __init__(self, task_id: str, session_id: str) -> None:
        super().__init__(f"All participants failed task {task_id!r} (session {session_id})")
        self.task_id = task_id
        self.session_id = session_id


class ChainStructuralFailure(ConcordError):
    """A chain can no longer make progress and no viable remap exists."""

    kind = ErrorKind.CHAIN_STRUCTURAL

    def __init__(self, chain_id: str, reason: FailureReason, detail: str = "") -> None:
        message = f"Chain {chain_id!r} failed: {reason}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.chain_id = chain_id
        self.reason = reason


class AgentResult(BaseModel):
    """What one agent returns for one task.

    Args:
        content: The answer payload; text or any JSON-compatible value.
        confidence: Self-reported confidence in ``[0, 1]``.
        reasoning: Optional reasoning steps.
    """

    model_config = {"frozen": True}

    content: Any = None
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    reasoning: list[str] = Field(default_factory=list)
