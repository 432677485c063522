"""Collaboration sessions: one per executing task, collecting agent results."""

from __future__ import annotations

from enum import StrEnum
from uuid import uuid4

from pydantic import BaseModel, Field

from concord.config import EngineConfig
from concord.convergence import consensus_score, converge, resolve_strategy
from concord.log import get_logger
from concord.models import CollaborationType, ConvergedResult, ConvergenceStrategy
from concord.types import AgentResult

_log = get_logger(__name__)


class SessionStatus(StrEnum):
    ACTIVE = "active"
    COMPLETED = "completed"
    TIMEOUT = "timeout"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"


class ConvergenceTracker(BaseModel):
    """Running consensus of a session; ``history`` has one score per arrival."""

    iterations: int = 0
    consensus_score: float = 0.0
    history: list[float] = Field(default_factory=list)


class CollaborationSession(BaseModel):
    """Result store and convergence state for one task.

    ``participants`` keeps selection order; the first entry is the primary.
    """

    id: str = Field(default_factory=lambda: f"session-{uuid4().hex[:12]}")
    task_id: str
    participants: list[str]
    failed: list[str] = Field(default_factory=list)
    errors: dict[str, str] = Field(default_factory=dict)
    results: dict[str, AgentResult] = Field(default_factory=dict)
    tracker: ConvergenceTracker = Field(default_factory=ConvergenceTracker)
    strategy: ConvergenceStrategy = ConvergenceStrategy.SOLO
    status: SessionStatus = SessionStatus.ACTIVE
    created_at: float = 0.0
    deadline: float = 0.0
    result: ConvergedResult | None = None

    @classmethod
    def open(
        cls,
        task_id: str,
        participants: list[str],
        collaboration_type: CollaborationType,
        *,
        now: float,
        timeout: float,
    ) -> CollaborationSession:
        """Create an active session whose strategy follows the participant count."""
        return cls(
            task_id=task_id,
            participants=list(participants),
            strategy=resolve_strategy(len(participants), collaboration_type),
            created_at=now,
            deadline=now + timeout,
        )

    @property
    def primary(self) -> str:
        return self.participants[0]

    @property
    def is_active(self) -> bool:
        return self.status is SessionStatus.ACTIVE

    @property
    def expected(self) -> list[str]:
        """Participants that have not failed."""
        return [p for p in self.participants if p not in self.failed]

    @property
    def outstanding(self) -> list[str]:
        """Participants still expected to answer."""
        return [p for p in self.expected if p not in self.results]

    @property
    def exhausted(self) -> bool:
        return not self.expected

    @property
    def ready(self) -> bool:
        return bool(self.expected) and len(self.results) == len(self.expected)

    def add_result(self, agent_id: str, result: AgentResult) -> bool:
        """Store *result*; returns whether it was accepted.

        Results from non-participants, failed participants, duplicates or
        after the session closed are ignored.
        """
        if not self.is_active or agent_id not in self.expected or agent_id in self.results:
            return False
        self.results[agent_id] = result
        score = consensus_score(self.results)
        self.tracker.consensus_score = score
        self.tracker.history.append(score)
        return True

    def add_failure(self, agent_id: str, error: str) -> bool:
        """Drop *agent_id* from the expected set; returns whether it was accepted."""
        if not self.is_active or agent_id not in self.expected or agent_id in self.results:
            return False
        self.failed.append(agent_id)
        self.errors[agent_id] = error
        return True

    def converge(self, config: EngineConfig) -> ConvergedResult:
        """Merge the stored results and close the session as completed."""
        merged = converge(
            self.results,
            self.strategy,
            primary=self.primary,
            threshold=config.convergence_threshold,
            max_iterations=config.max_iterations,
        )
        self.tracker.iterations = merged.iterations
        self.tracker.consensus_score = merged.consensus_score
        self.result = merged
        self.status = SessionStatus.COMPLETED
        _log.debug(
            "session %s converged strategy=%s score=%.3f iterations=%d",
            self.id, self.strategy, merged.consensus_score, merged.iterations,
        )
        return merged

    def is_expired(self, now: float) -> bool:
        return self.is_active and now >= self.deadline

    def close(self, status: SessionStatus) -> None:
        self.status = status
