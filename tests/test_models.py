"""Tests for concord.models and concord.config — entities and serialization."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from concord.chain import build_chain
from concord.config import EngineConfig
from concord.models import (
    AgentState,
    ChainStatus,
    CollaborationType,
    ConvergedResult,
    ConvergenceStrategy,
    Task,
    TaskChain,
    TaskStatus,
)
from concord.types import AgentResult, FailureReason


class TestEngineConfig:
    def test_defaults(self) -> None:
        cfg = EngineConfig()
        assert cfg.max_concurrent_tasks == 20
        assert cfg.convergence_threshold == 0.9
        assert cfg.max_iterations == 10
        assert cfg.task_timeout == 30.0
        assert cfg.heat_decay_rate == 0.1
        assert cfg.max_retry_attempts == 3
        assert cfg.path_stability_threshold == 0.7

    def test_frozen(self) -> None:
        with pytest.raises(ValidationError):
            EngineConfig().max_retry_attempts = 5  # type: ignore[misc]

    def test_bounds(self) -> None:
        with pytest.raises(ValidationError):
            EngineConfig(convergence_threshold=1.5)
        with pytest.raises(ValidationError):
            EngineConfig(max_concurrent_tasks=0)


class TestTask:
    def test_defaults(self) -> None:
        task = Task(description="x")
        assert task.id.startswith("task-")
        assert task.status is TaskStatus.PENDING
        assert task.retry_count == 0
        assert task.complexity == 10.0

    def test_agent_bounds(self) -> None:
        with pytest.raises(ValidationError, match="max_agents"):
            Task(min_agents=3, max_agents=2)

    def test_solo_needs_single_agent(self) -> None:
        with pytest.raises(ValidationError, match="solo"):
            Task(min_agents=2, max_agents=2)
        task = Task(collaboration_type=CollaborationType.PARALLEL, min_agents=2, max_agents=2)
        assert task.min_agents == 2

    def test_status_terminal(self) -> None:
        assert TaskStatus.CANCELLED.terminal
        assert not TaskStatus.EXECUTING.terminal
        assert ChainStatus.FAILED.terminal
        assert not ChainStatus.REMAPPING.terminal

    def test_round_trip(self) -> None:
        task = Task(
            id="t1",
            description="write",
            required_capabilities=["x"],
            dependencies=["t0"],
            status=TaskStatus.FAILED,
            retry_count=2,
            failure_reason=FailureReason.MAX_REASSIGNMENT,
            result=ConvergedResult(content={"answer": 42}, confidence=0.7, contributors=["a"]),
        )
        for restored in (Task.from_dict(task.to_dict()), Task.from_json(task.to_json())):
            assert restored.id == "t1"
            assert restored.status is TaskStatus.FAILED
            assert restored.dependencies == ["t0"]
            assert restored.result == task.result
            assert restored.failure_reason is FailureReason.MAX_REASSIGNMENT


class TestTaskChainSerialization:
    def test_round_trip_preserves_structure(self) -> None:
        chain = build_chain(
            [Task(id="a"), Task(id="b", dependencies=["a"]), Task(id="c", dependencies=["a", "b"])],
            name="pipeline",
        )
        chain.completed.append("a")
        chain.tasks["a"].status = TaskStatus.COMPLETED
        chain.results["a"] = ConvergedResult(content="done", strategy=ConvergenceStrategy.SOLO)

        restored = TaskChain.from_json(chain.to_json())
        assert restored.id == chain.id
        assert restored.status == chain.status
        assert {tid: n.dependencies for tid, n in restored.graph.items()} == {
            "a": [],
            "b": ["a"],
            "c": ["a", "b"],
        }
        assert restored.graph["a"].dependents == ["b", "c"]
        assert restored.tasks["a"].status is TaskStatus.COMPLETED
        assert restored.results["a"].content == "done"
        assert TaskChain.from_dict(chain.to_dict()) == restored


class TestAgentState:
    def test_name_defaults_to_id(self) -> None:
        assert AgentState(id="a").name == "a"

    def test_heat_decays_strictly(self) -> None:
        state = AgentState(id="a", heat=0.8, heat_updated_at=0.0)
        samples = [state.decayed_heat(t, 0.1) for t in (0.0, 1.0, 5.0, 30.0)]
        assert samples[0] == pytest.approx(0.8)
        assert all(later < earlier for earlier, later in zip(samples, samples[1:]))
        assert all(value >= 0 for value in samples)


class TestAgentResult:
    def test_confidence_bounds(self) -> None:
        with pytest.raises(ValidationError):
            AgentResult(content="x", confidence=1.5)
