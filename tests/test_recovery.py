"""Tests for concord.recovery — retries, failure analysis and remapping."""

from __future__ import annotations

import math

import pytest

from concord.agents import StaticAgent
from concord.chain import build_chain
from concord.config import EngineConfig
from concord.models import (
    FailurePattern,
    HeatSample,
    RemapStrategy,
    Task,
    TaskChain,
    TaskStatus,
)
from concord.recovery import RISK_NO_AGENT, RISK_SINGLE_POINT, RecoveryManager, path_stability
from concord.registry import AgentRegistry
from concord.types import FailureReason


@pytest.fixture
def registry(clock) -> AgentRegistry:  # type: ignore[no-untyped-def]
    reg = AgentRegistry(EngineConfig(), clock=clock)
    reg.register(StaticAgent("a", capabilities=["x"]))
    reg.register(StaticAgent("b", capabilities=["x"]))
    reg.register(StaticAgent("c", capabilities=["y"]))
    return reg


@pytest.fixture
def recovery(registry: AgentRegistry, clock) -> RecoveryManager:  # type: ignore[no-untyped-def]
    return RecoveryManager(registry, EngineConfig(), clock=clock)


def _chain() -> TaskChain:
    return build_chain(
        [
            Task(id="t1", required_capabilities=["x"]),
            Task(id="t2", required_capabilities=["x"], dependencies=["t1"]),
            Task(id="t3", required_capabilities=["y"], dependencies=["t2"]),
        ]
    )


class TestRetry:
    def test_retries_until_limit(self, recovery: RecoveryManager) -> None:
        task = Task(id="t", assigned_agents=["a"], status=TaskStatus.EXECUTING)
        for expected in (1, 2, 3):
            assert recovery.prepare_retry(task, "boom")
            assert task.retry_count == expected
            assert task.assigned_agents == []
            assert task.status is TaskStatus.PENDING
        assert not recovery.prepare_retry(task, "boom")
        assert task.retry_count == 3
        assert task.status is TaskStatus.FAILED
        assert task.failure_reason is FailureReason.MAX_REASSIGNMENT


class TestAnalysis:
    def test_no_points(self, recovery: RecoveryManager) -> None:
        assert recovery.analyze(_chain()).pattern is FailurePattern.UNKNOWN

    def test_agent_specific(self, recovery: RecoveryManager) -> None:
        chain = _chain()
        for task_id in ("t1", "t2", "t1"):
            recovery.record_failure_point(chain, task_id, "a", "bad")
        recovery.record_failure_point(chain, "t2", "b", "bad")
        analysis = recovery.analyze(chain)
        assert analysis.pattern is FailurePattern.AGENT_SPECIFIC
        assert analysis.problematic_agents == ["a"]
        assert analysis.severity == "high"

    def test_task_specific(self, recovery: RecoveryManager) -> None:
        chain = _chain()
        recovery.record_failure_point(chain, "t1", "a", "bad")
        recovery.record_failure_point(chain, "t1", "b", "bad")
        recovery.record_failure_point(chain, "t1", None, "gave up")
        analysis = recovery.analyze(chain)
        assert analysis.pattern is FailurePattern.TASK_SPECIFIC
        assert analysis.problematic_tasks == ["t1"]
        assert analysis.severity == "medium"

    def test_distributed(self, recovery: RecoveryManager) -> None:
        chain = _chain()
        recovery.record_failure_point(chain, "t1", "a", "x")
        recovery.record_failure_point(chain, "t2", "b", "x")
        recovery.record_failure_point(chain, "t3", "c", "x")
        assert recovery.analyze(chain).pattern is FailurePattern.DISTRIBUTED

    def test_failure_point_captures_heat(self, recovery: RecoveryManager, registry: AgentRegistry) -> None:
        chain = _chain()
        registry.assign("a", "t1")
        point = recovery.record_failure_point(chain, "t1", "a", "bad")
        assert point.heat == pytest.approx(0.2)


class TestAlternativePath:
    def test_agent_substitution_viable(self, recovery: RecoveryManager) -> None:
        chain = _chain()
        for _ in range(3):
            recovery.record_failure_point(chain, "t1", "a", "bad")
        path = recovery.find_alternative_path(chain, recovery.analyze(chain))
        assert path.strategy is RemapStrategy.AGENT_SUBSTITUTION
        assert path.excluded_agents == ["a"]
        assert path.viability == pytest.approx(1.0)
        assert recovery.can_remap(chain, path)

    def test_uncovered_task_forces_zero(self, recovery: RecoveryManager) -> None:
        chain = _chain()
        for _ in range(3):
            recovery.record_failure_point(chain, "t3", "c", "bad")
        path = recovery.find_alternative_path(chain, recovery.analyze(chain))
        assert path.uncovered_tasks == ["t3"]
        assert path.viability == 0.0
        assert not recovery.can_remap(chain, path)

    def test_task_isolation(self, recovery: RecoveryManager) -> None:
        chain = _chain()
        recovery.record_failure_point(chain, "t1", "a", "bad")
        recovery.record_failure_point(chain, "t1", None, "bad")
        recovery.record_failure_point(chain, "t1", None, "bad")
        path = recovery.find_alternative_path(chain, recovery.analyze(chain))
        assert path.strategy is RemapStrategy.TASK_ISOLATION
        assert path.task_exclusions == {"t1": ["a"]}

    def test_remap_limit(self, recovery: RecoveryManager) -> None:
        chain = _chain()
        chain.remapping_count = 3
        path = recovery.find_alternative_path(chain, recovery.analyze(chain))
        assert path.viability > 0.6
        assert not recovery.can_remap(chain, path)

    def test_apply_remap_resets_failed(self, recovery: RecoveryManager) -> None:
        chain = _chain()
        task = chain.tasks["t1"]
        task.status = TaskStatus.FAILED
        task.retry_count = 3
        task.failure_reason = FailureReason.MAX_REASSIGNMENT
        chain.failed.append("t1")
        for _ in range(3):
            recovery.record_failure_point(chain, "t1", "a", "bad")
        path = recovery.find_alternative_path(chain, recovery.analyze(chain))

        reset = recovery.apply_remap(chain, path)

        assert reset == ["t1"]
        assert chain.failed == []
        assert chain.remapping_count == 1
        assert chain.excluded_agents == ["a"]
        assert task.status is TaskStatus.PENDING
        assert task.retry_count == 3
        assert task.failure_reason is None
        assert all("a" in t.excluded_agents for t in chain.tasks.values())


class TestPredictionAndMetrics:
    def test_predict_path(self, recovery: RecoveryManager) -> None:
        chain = build_chain(
            [
                Task(id="t1", required_capabilities=["x"]),
                Task(id="t2", required_capabilities=["y"], dependencies=["t1"]),
                Task(id="t3", required_capabilities=["z"], dependencies=["t2"]),
            ]
        )
        prediction = recovery.predict_path(chain)
        assert prediction.order == ["t1", "t2", "t3"]
        assert prediction.tasks[0].candidates == ["a", "b"]
        assert prediction.tasks[1].risk == RISK_SINGLE_POINT
        assert prediction.tasks[2].risk == RISK_NO_AGENT
        assert len(prediction.risk_factors) == 2
        assert prediction.confidence == pytest.approx(0.7)

    def test_clean_prediction(self, recovery: RecoveryManager) -> None:
        chain = build_chain([Task(id="t1", required_capabilities=["x"])])
        assert recovery.predict_path(chain).confidence == pytest.approx(0.9)

    def test_path_stability(self) -> None:
        assert path_stability([]) == 1.0
        flat = [HeatSample(timestamp=i, heat=0.4) for i in range(3)]
        assert path_stability(flat) == pytest.approx(1.0)
        spread = [HeatSample(timestamp=0, heat=0.0), HeatSample(timestamp=1, heat=1.0)]
        assert path_stability(spread) == pytest.approx(math.exp(-0.5))

    def test_chain_metrics(self, recovery: RecoveryManager, clock) -> None:  # type: ignore[no-untyped-def]
        chain = _chain()
        chain.started_at = clock()
        chain.completed = ["t1"]
        chain.heat_trace = [HeatSample(timestamp=0, heat=0.0), HeatSample(timestamp=1, heat=1.0)]
        clock.advance(12.0)
        metrics = recovery.chain_metrics(chain)
        assert metrics.success_rate == pytest.approx(1 / 3)
        assert metrics.average_heat == pytest.approx(0.5)
        assert not metrics.stable
        assert metrics.elapsed == pytest.approx(12.0)
