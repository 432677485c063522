"""Failure handling: retries, failure-point analysis and chain remapping.

Single tasks are retried a bounded number of times.  Chains additionally
accumulate :class:`FailurePoint` records; when a chain becomes
unrecoverable the points are classified, an :class:`AlternativePath` is
proposed and, if it looks viable, applied to the chain in place.
"""

from __future__ import annotations

import math
import time
from collections import Counter
from collections.abc import Callable

from concord._internal.graph import Graph, topological_sort
from concord.config import EngineConfig
from concord.log import get_logger
from concord.models import (
    AlternativePath,
    ChainMetrics,
    FailureAnalysis,
    FailurePattern,
    FailurePoint,
    HeatSample,
    PathPrediction,
    PathStep,
    RemapStrategy,
    Task,
    TaskChain,
    TaskPrediction,
    TaskStatus,
)
from concord.registry import AgentRegistry
from concord.types import FailureReason

_log = get_logger(__name__)

DOMINANCE_SHARE = 0.6
HIGH_SEVERITY_POINTS = 3
PERFORMANCE_WEIGHT = 0.4
CONNECTIVITY_WEIGHT = 0.3
COVERAGE_WEIGHT = 0.3
STABILITY_SCALE = 2.0

RISK_NO_AGENT = "no suitable agent"
RISK_SINGLE_POINT = "single point of failure"


def chain_order(chain: TaskChain) -> list[str]:
    """Topological order of the chain's task ids."""
    return topological_sort(Graph.from_dependencies({tid: t.dependencies for tid, t in chain.tasks.items()}))


def path_stability(samples: list[HeatSample]) -> float:
    """``exp(-2 * variance)`` of the heat trace; 1.0 with fewer than two samples."""
    if len(samples) < 2:
        return 1.0
    values = [s.heat for s in samples]
    mean = sum(values) / len(values)
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    return math.exp(-STABILITY_SCALE * variance)


class RecoveryManager:
    """Decides how tasks and chains recover from failures.

    Args:
        registry: Agent registry used for heat, candidates and performance.
        config: Engine configuration.
        clock: Time source, seconds.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        config: EngineConfig | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.registry = registry
        self.config = config or EngineConfig()
        self._clock = clock or time.time

    # -- single tasks -------------------------------------------------------

    def prepare_retry(self, task: Task, error: str) -> bool:
        """Bump the retry counter and clear the assignment if attempts remain.

        Returns ``False`` and marks *task* permanently failed otherwise.
        """
        task.error = error
        task.assigned_agents = []
        task.result = None
        if task.retry_count < self.config.max_retry_attempts:
            task.retry_count += 1
            task.status = TaskStatus.PENDING
            _log.info(
                "task %s retry %d/%d: %s",
                task.id, task.retry_count, self.config.max_retry_attempts, error,
            )
            return True
        task.status = TaskStatus.FAILED
        task.failure_reason = FailureReason.MAX_REASSIGNMENT
        task.completed_at = self._clock()
        _log.error("task %s failed after %d retries: %s", task.id, task.retry_count, error)
        return False

    # -- chain bookkeeping --------------------------------------------------

    def record_failure_point(
        self, chain: TaskChain, task_id: str, agent_id: str | None, error: str
    ) -> FailurePoint:
        heat = 0.0
        if agent_id is not None and agent_id in self.registry:
            heat = self.registry.current_heat(agent_id)
        point = FailurePoint(
            task_id=task_id,
            agent_id=agent_id,
            error=error,
            heat=heat,
            position=len(chain.execution_path),
            timestamp=self._clock(),
        )
        chain.failure_points.append(point)
        return point

    def record_dispatch(self, chain: TaskChain, task_id: str, agent_ids: list[str]) -> None:
        """Append a path step and a heat sample for a newly dispatched chain task."""
        now = self._clock()
        chain.execution_path.append(PathStep(task_id=task_id, agent_ids=list(agent_ids), timestamp=now))
        heats = [self.registry.current_heat(a) for a in agent_ids if a in self.registry]
        if heats:
            chain.heat_trace.append(HeatSample(timestamp=now, heat=sum(heats) / len(heats)))

    # -- analysis -----------------------------------------------------------

    def analyze(self, chain: TaskChain) -> FailureAnalysis:
        """Classify the chain's failure points."""
        points = chain.failure_points
        if not points:
            return FailureAnalysis()
        total = len(points)
        agents = Counter(p.agent_id for p in points if p.agent_id is not None)
        tasks = Counter(p.task_id for p in points)
        top_agent_share = max(agents.values()) / total if agents else 0.0
        top_task_share = max(tasks.values()) / total

        if top_agent_share > DOMINANCE_SHARE:
            pattern, share = FailurePattern.AGENT_SPECIFIC, top_agent_share
        elif top_task_share > DOMINANCE_SHARE:
            pattern, share = FailurePattern.TASK_SPECIFIC, top_task_share
        else:
            pattern, share = FailurePattern.DISTRIBUTED, max(top_agent_share, top_task_share)

        problematic_agents = sorted(a for a, n in agents.items() if n > 1)
        problematic_tasks = sorted(t for t, n in tasks.items() if n > 1)
        if pattern is FailurePattern.AGENT_SPECIFIC and not problematic_agents:
            problematic_agents = [agents.most_common(1)[0][0]]
        if pattern is FailurePattern.TASK_SPECIFIC and not problematic_tasks:
            problematic_tasks = [tasks.most_common(1)[0][0]]

        if total > HIGH_SEVERITY_POINTS:
            severity = "high"
        elif total > 1:
            severity = "medium"
        else:
            severity = "low"
        return FailureAnalysis(
            pattern=pattern,
            severity=severity,
            total_points=total,
            dominant_share=share,
            agent_failures=dict(agents),
            task_failures=dict(tasks),
            problematic_agents=problematic_agents,
            problematic_tasks=problematic_tasks,
        )

    def find_alternative_path(self, chain: TaskChain, analysis: FailureAnalysis) -> AlternativePath:
        """Propose exclusions matching the failure pattern and score their viability."""
        excluded: list[str] = []
        task_exclusions: dict[str, list[str]] = {}
        if analysis.pattern is FailurePattern.AGENT_SPECIFIC:
            strategy = RemapStrategy.AGENT_SUBSTITUTION
            excluded = list(analysis.problematic_agents)
        elif analysis.pattern is FailurePattern.TASK_SPECIFIC:
            strategy = RemapStrategy.TASK_ISOLATION
            for task_id in analysis.problematic_tasks:
                failed_on = sorted(
                    {p.agent_id for p in chain.failure_points if p.task_id == task_id and p.agent_id}
                )
                task_exclusions[task_id] = failed_on
        else:
            strategy = RemapStrategy.LOAD_REDISTRIBUTION
        return self._score_path(chain, strategy, excluded, task_exclusions)

    def _score_path(
        self,
        chain: TaskChain,
        strategy: RemapStrategy,
        excluded: list[str],
        task_exclusions: dict[str, list[str]],
    ) -> AlternativePath:
        chain_excluded = set(chain.excluded_agents) | set(excluded)
        unresolved = [t for tid, t in chain.tasks.items() if tid not in chain.completed]
        candidates: dict[str, list[str]] = {}
        for task in unresolved:
            blocked = chain_excluded | set(task.excluded_agents) | set(task_exclusions.get(task.id, []))
            candidates[task.id] = [s.id for s in self.registry.candidates(task, blocked)]

        uncovered = sorted(tid for tid, ids in candidates.items() if not ids)
        pool = {aid for ids in candidates.values() for aid in ids}
        performance = (
            sum(self.registry.get(a).performance_score for a in pool) / len(pool) if pool else 0.0
        )
        if unresolved:
            completed = set(chain.completed)
            connected = sum(
                1
                for task in unresolved
                if all(dep in completed or candidates.get(dep) for dep in task.dependencies)
            )
            connectivity = connected / len(unresolved)
            coverage = sum(
                min(1.0, len(candidates[t.id]) / t.min_agents) for t in unresolved
            ) / len(unresolved)
        else:
            connectivity = coverage = 1.0

        viability = 0.0
        if not uncovered:
            viability = (
                PERFORMANCE_WEIGHT * performance
                + CONNECTIVITY_WEIGHT * connectivity
                + COVERAGE_WEIGHT * coverage
            )
        return AlternativePath(
            strategy=strategy,
            excluded_agents=sorted(excluded),
            task_exclusions=task_exclusions,
            performance=performance,
            connectivity=connectivity,
            coverage=coverage,
            viability=viability,
            uncovered_tasks=uncovered,
        )

    def can_remap(self, chain: TaskChain, path: AlternativePath) -> bool:
        return (
            path.viability > self.config.remap_viability_threshold
            and chain.remapping_count < self.config.max_remaps
        )

    def apply_remap(self, chain: TaskChain, path: AlternativePath) -> list[str]:
        """Reset failed tasks to pending and apply the path's exclusions.

        ``retry_count`` is left untouched.  Returns the reset task ids in
        topological order.
        """
        for agent_id in path.excluded_agents:
            if agent_id not in chain.excluded_agents:
                chain.excluded_agents.append(agent_id)
        for task_id, agent_ids in path.task_exclusions.items():
            task = chain.tasks[task_id]
            task.excluded_agents.extend(a for a in agent_ids if a not in task.excluded_agents)
        for task in chain.tasks.values():
            task.excluded_agents.extend(a for a in chain.excluded_agents if a not in task.excluded_agents)

        order = chain_order(chain)
        reset = [tid for tid in order if tid in chain.failed]
        for task_id in reset:
            task = chain.tasks[task_id]
            task.status = TaskStatus.PENDING
            task.error = None
            task.failure_reason = None
            task.assigned_agents = []
            task.result = None
            task.completed_at = None
        chain.failed = [tid for tid in chain.failed if tid not in reset]
        chain.remapping_count += 1
        _log.warning(
            "chain %s remapped (%s, viability=%.2f), reset %s",
            chain.id, path.strategy, path.viability, reset,
        )
        return reset

    # -- prediction and metrics ---------------------------------------------

    def predict_path(self, chain: TaskChain) -> PathPrediction:
        """Forecast which agents could run each task of a new chain."""
        predictions: list[TaskPrediction] = []
        risks: list[str] = []
        excluded = set(chain.excluded_agents)
        for task_id in chain_order(chain):
            task = chain.tasks[task_id]
            ids = [s.id for s in self.registry.candidates(task, excluded)]
            risk: str | None = None
            if not ids:
                risk = RISK_NO_AGENT
            elif len(ids) == 1:
                risk = RISK_SINGLE_POINT
            if risk is not None:
                risks.append(f"{risk}: {task_id}")
            predictions.append(TaskPrediction(task_id=task_id, candidates=ids, risk=risk))
        confidence = 0.9 if not risks else max(0.3, 0.9 - 0.1 * len(risks))
        return PathPrediction(
            chain_id=chain.id,
            order=[p.task_id for p in predictions],
            tasks=predictions,
            risk_factors=risks,
            confidence=confidence,
        )

    def chain_metrics(self, chain: TaskChain) -> ChainMetrics:
        total = len(chain.tasks)
        stability = path_stability(chain.heat_trace)
        heats = [s.heat for s in chain.heat_trace]
        start = chain.started_at if chain.started_at is not None else chain.created_at
        end = chain.completed_at if chain.completed_at is not None else self._clock()
        return ChainMetrics(
            chain_id=chain.id,
            success_rate=len(chain.completed) / total if total else 0.0,
            average_heat=sum(heats) / len(heats) if heats else 0.0,
            path_stability=stability,
            stable=stability >= self.config.path_stability_threshold,
            remapping_count=chain.remapping_count,
            elapsed=max(0.0, end - start),
        )
