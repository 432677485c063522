"""Data models for agents, tasks, chains and recovery bookkeeping."""

from __future__ import annotations

import math
from enum import StrEnum
from typing import Any, Self
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator

from concord.types import AgentResult, FailureReason


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex[:12]}"


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class TaskStatus(StrEnum):
    """Lifecycle of a task."""

    PENDING = "pending"
    ASSIGNED = "assigned"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


class CollaborationType(StrEnum):
    """How many agents a task wants and how they relate."""

    SOLO = "solo"
    PARALLEL = "parallel"
    HIERARCHICAL = "hierarchical"


class ChainStrategy(StrEnum):
    """How many ready tasks of a chain are released at once."""

    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    ADAPTIVE = "adaptive"


class ChainStatus(StrEnum):
    """Lifecycle of a task chain."""

    PENDING = "pending"
    RUNNING = "running"
    REMAPPING = "remapping"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (ChainStatus.COMPLETED, ChainStatus.FAILED, ChainStatus.CANCELLED)


class ConvergenceStrategy(StrEnum):
    """How a session merges participant results."""

    SOLO = "solo"
    CONSENSUS = "consensus"
    HIERARCHICAL = "hierarchical"


class FailurePattern(StrEnum):
    """Classification of a chain's failure points."""

    AGENT_SPECIFIC = "agent-specific"
    TASK_SPECIFIC = "task-specific"
    DISTRIBUTED = "distributed"
    UNKNOWN = "unknown"


class RemapStrategy(StrEnum):
    """Kind of alternative path proposed for a failing chain."""

    AGENT_SUBSTITUTION = "agent-substitution"
    TASK_ISOLATION = "task-isolation"
    LOAD_REDISTRIBUTION = "load-redistribution"


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------


class AgentState(BaseModel):
    """Registry-side state of one worker agent.

    Args:
        id: Unique agent id.
        name: Display name; defaults to the id.
        agent_type: Free-form role label used for hierarchical diversity.
        capabilities: Capability tags the agent can serve.
        embedding: Optional vector for the affinity model.
        availability: Self-reported availability in ``[0, 1]``.
        current_tasks: Ids of tasks the agent currently holds.
        performance_score: Rolling success weight in ``[0.1, 1.0]``.
        heat: Assignment pressure, decays toward 0 while idle.
        heat_updated_at: Clock reading at the last heat update.
    """

    id: str
    name: str = ""
    agent_type: str = "generalist"
    capabilities: list[str] = Field(default_factory=list)
    embedding: list[float] | None = None
    availability: float = Field(default=1.0, ge=0.0, le=1.0)
    current_tasks: list[str] = Field(default_factory=list)
    performance_score: float = Field(default=1.0, ge=0.1, le=1.0)
    heat: float = Field(default=0.0, ge=0.0)
    heat_updated_at: float = 0.0
    tasks_completed: int = 0
    tasks_failed: int = 0

    @model_validator(mode="after")
    def _default_name(self) -> AgentState:
        if not self.name:
            self.name = self.id
        return self

    @property
    def load(self) -> int:
        return len(self.current_tasks)

    def decayed_heat(self, now: float, rate: float) -> float:
        """Heat after decaying from ``heat_updated_at`` to *now*."""
        elapsed = max(0.0, now - self.heat_updated_at)
        return self.heat * math.exp(-rate * elapsed)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class Contribution(BaseModel):
    """One participant's result as kept in a merged answer."""

    model_config = {"frozen": True}

    agent_id: str
    content: Any = None
    confidence: float = 0.0


class ConvergedResult(BaseModel):
    """The single answer a collaboration session settles on.

    Args:
        content: Merged content.
        confidence: Confidence of the merged answer.
        strategy: Convergence strategy that produced it.
        contributors: Agent ids whose results were considered.
        supporting_evidence: Secondary results kept alongside the answer.
        consensus_score: Last weighted pairwise similarity.
        iterations: Reconciliation rounds run.
        reached_threshold: Whether the consensus score crossed the threshold.
    """

    model_config = {"frozen": True}

    content: Any = None
    confidence: float = 0.0
    strategy: ConvergenceStrategy = ConvergenceStrategy.SOLO
    contributors: list[str] = Field(default_factory=list)
    supporting_evidence: list[Contribution] = Field(default_factory=list)
    consensus_score: float = 1.0
    iterations: int = 0
    reached_threshold: bool = True


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


class _Serializable(BaseModel):
    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        return cls.model_validate(data)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw: str | bytes) -> Self:
        return cls.model_validate_json(raw)


class Task(_Serializable):
    """A unit of work executed by one or more agents.

    ``deadline`` and the timestamps are readings of the engine clock.
    """

    id: str = Field(default_factory=lambda: _new_id("task"))
    description: str = ""
    payload: Any = None
    required_capabilities: list[str] = Field(default_factory=list)
    embedding: list[float] | None = None
    priority: float = 0.0
    complexity: float = Field(default=10.0, ge=0.0)
    deadline: float | None = None
    collaboration_type: CollaborationType = CollaborationType.SOLO
    min_agents: int = Field(default=1, ge=1)
    max_agents: int = Field(default=1, ge=1)
    dependencies: list[str] = Field(default_factory=list)
    status: TaskStatus = TaskStatus.PENDING
    assigned_agents: list[str] = Field(default_factory=list)
    excluded_agents: list[str] = Field(default_factory=list)
    retry_count: int = Field(default=0, ge=0)
    capability_deferrals: int = Field(default=0, ge=0)
    result: ConvergedResult | None = None
    error: str | None = None
    failure_reason: FailureReason | None = None
    chain_id: str | None = None
    created_at: float = 0.0
    enqueued_at: float | None = None
    started_at: float | None = None
    completed_at: float | None = None

    @model_validator(mode="after")
    def _check_agent_bounds(self) -> Task:
        if self.max_agents < self.min_agents:
            raise ValueError(
                f"max_agents ({self.max_agents}) is below min_agents ({self.min_agents})"
            )
        if self.collaboration_type is CollaborationType.SOLO and self.min_agents > 1:
            raise ValueError(f"solo tasks run on one agent, got min_agents={self.min_agents}")
        return self


class DependencyNode(BaseModel):
    """Position of one task in its chain's dependency graph."""

    task_id: str
    dependencies: list[str] = Field(default_factory=list)
    dependents: list[str] = Field(default_factory=list)
    ready: bool = False


class FailurePoint(BaseModel):
    """One recorded failure inside a chain."""

    model_config = {"frozen": True}

    task_id: str
    agent_id: str | None = None
    error: str = ""
    heat: float = 0.0
    position: int = 0
    timestamp: float = 0.0


class PathStep(BaseModel):
    """One task dispatch along a chain's execution path."""

    model_config = {"frozen": True}

    task_id: str
    agent_ids: list[str] = Field(default_factory=list)
    timestamp: float = 0.0


class HeatSample(BaseModel):
    """Average heat of the agents picked for one dispatch."""

    model_config = {"frozen": True}

    timestamp: float
    heat: float


class TaskPrediction(BaseModel):
    """Candidate agents for one chain task at submission time."""

    model_config = {"frozen": True}

    task_id: str
    candidates: list[str] = Field(default_factory=list)
    risk: str | None = None


class PathPrediction(BaseModel):
    """Forecast of a chain's executability made when it is submitted."""

    model_config = {"frozen": True}

    chain_id: str
    order: list[str] = Field(default_factory=list)
    tasks: list[TaskPrediction] = Field(default_factory=list)
    risk_factors: list[str] = Field(default_factory=list)
    confidence: float = 0.0


class TaskChain(_Serializable):
    """A dependency graph of tasks executed as one unit."""

    id: str = Field(default_factory=lambda: _new_id("chain"))
    name: str = ""
    tasks: dict[str, Task] = Field(default_factory=dict)
    graph: dict[str, DependencyNode] = Field(default_factory=dict)
    strategy: ChainStrategy = ChainStrategy.SEQUENTIAL
    status: ChainStatus = ChainStatus.PENDING
    completed: list[str] = Field(default_factory=list)
    active: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    excluded_agents: list[str] = Field(default_factory=list)
    failure_points: list[FailurePoint] = Field(default_factory=list)
    execution_path: list[PathStep] = Field(default_factory=list)
    heat_trace: list[HeatSample] = Field(default_factory=list)
    remapping_count: int = 0
    results: dict[str, ConvergedResult] = Field(default_factory=dict)
    failure_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    prediction: PathPrediction | None = None
    error: str | None = None
    failure_reason: FailureReason | None = None
    created_at: float = 0.0
    started_at: float | None = None
    completed_at: float | None = None


# ---------------------------------------------------------------------------
# Recovery
# ---------------------------------------------------------------------------


class FailureAnalysis(BaseModel):
    """Classification of a chain's accumulated failure points."""

    model_config = {"frozen": True}

    pattern: FailurePattern = FailurePattern.UNKNOWN
    severity: str = "low"
    total_points: int = 0
    dominant_share: float = 0.0
    agent_failures: dict[str, int] = Field(default_factory=dict)
    task_failures: dict[str, int] = Field(default_factory=dict)
    problematic_agents: list[str] = Field(default_factory=list)
    problematic_tasks: list[str] = Field(default_factory=list)


class AlternativePath(BaseModel):
    """A proposed remap of a failing chain and how viable it looks."""

    model_config = {"frozen": True}

    strategy: RemapStrategy
    excluded_agents: list[str] = Field(default_factory=list)
    task_exclusions: dict[str, list[str]] = Field(default_factory=dict)
    performance: float = 0.0
    connectivity: float = 0.0
    coverage: float = 0.0
    viability: float = 0.0
    uncovered_tasks: list[str] = Field(default_factory=list)


class ChainMetrics(BaseModel):
    """Health summary of one chain."""

    model_config = {"frozen": True}

    chain_id: str
    success_rate: float = 0.0
    average_heat: float = 0.0
    path_stability: float = 1.0
    stable: bool = True
    remapping_count: int = 0
    elapsed: float = 0.0


class EngineStatus(BaseModel):
    """Point-in-time counters for the whole engine."""

    model_config = {"frozen": True}

    running: bool = False
    agents: int = 0
    pending_tasks: int = 0
    delayed_tasks: int = 0
    active_sessions: int = 0
    tasks_by_status: dict[str, int] = Field(default_factory=dict)
    chains_by_status: dict[str, int] = Field(default_factory=dict)
    system_load: float = 0.0


__all__ = [
    "AgentResult",
    "AgentState",
    "AlternativePath",
    "ChainMetrics",
    "ChainStatus",
    "ChainStrategy",
    "CollaborationType",
    "Contribution",
    "ConvergedResult",
    "ConvergenceStrategy",
    "DependencyNode",
    "EngineStatus",
    "FailureAnalysis",
    "FailurePattern",
    "FailurePoint",
    "HeatSample",
    "PathPrediction",
    "PathStep",
    "RemapStrategy",
    "Task",
    "TaskChain",
    "TaskPrediction",
    "TaskStatus",
]
