"""Tests for concord.chain — building and walking task chains."""

from __future__ import annotations

import pytest

from concord.chain import ChainExecutor, build_chain
from concord.config import EngineConfig
from concord.models import ChainStrategy, ConvergedResult, Task, TaskChain, TaskStatus
from concord.types import ConfigurationError, FailureReason


def _diamond(strategy: ChainStrategy = ChainStrategy.PARALLEL) -> TaskChain:
    return build_chain(
        [
            Task(id="root"),
            Task(id="left", dependencies=["root"]),
            Task(id="right", dependencies=["root"]),
            Task(id="join", dependencies=["left", "right"]),
        ],
        strategy=strategy,
    )


class TestBuildChain:
    def test_graph_nodes(self) -> None:
        chain = _diamond()
        assert chain.graph["root"].ready
        assert chain.graph["root"].dependents == ["left", "right"]
        assert not chain.graph["join"].ready
        assert all(t.chain_id == chain.id for t in chain.tasks.values())

    def test_accepts_mappings(self) -> None:
        chain = build_chain([{"id": "a"}, {"id": "b", "dependencies": ["a"]}], chain_id="c1")
        assert chain.id == "c1"
        assert list(chain.tasks) == ["a", "b"]

    def test_copies_input_tasks(self) -> None:
        task = Task(id="a")
        chain = build_chain([task])
        chain.tasks["a"].status = TaskStatus.COMPLETED
        assert task.status is TaskStatus.PENDING

    def test_empty(self) -> None:
        with pytest.raises(ConfigurationError, match="at least one task"):
            build_chain([])

    def test_duplicate_ids(self) -> None:
        with pytest.raises(ConfigurationError, match="Duplicate"):
            build_chain([Task(id="a"), Task(id="a")])

    def test_unknown_dependency(self) -> None:
        with pytest.raises(ConfigurationError, match="unknown node"):
            build_chain([Task(id="a", dependencies=["ghost"])])

    def test_cycle(self) -> None:
        with pytest.raises(ConfigurationError, match="Cycle"):
            build_chain([Task(id="a", dependencies=["b"]), Task(id="b", dependencies=["a"])])


class TestChainExecutor:
    def test_parallel_releases_all_ready(self) -> None:
        executor = ChainExecutor()
        chain = _diamond()
        assert executor.next_tasks(chain, 0.0) == ["root"]
        executor.mark_active(chain, "root")
        assert executor.next_tasks(chain, 0.0) == []
        newly = executor.mark_completed(chain, "root", ConvergedResult(content="r"))
        assert newly == ["left", "right"]
        assert executor.next_tasks(chain, 0.0) == ["left", "right"]
        assert chain.results["root"].content == "r"

    def test_sequential_one_at_a_time(self) -> None:
        executor = ChainExecutor()
        chain = _diamond(ChainStrategy.SEQUENTIAL)
        executor.mark_active(chain, "root")
        executor.mark_completed(chain, "root", None)
        assert executor.next_tasks(chain, 0.0) == ["left"]
        executor.mark_active(chain, "left")
        assert executor.next_tasks(chain, 0.0) == []

    def test_adaptive_slots_follow_load(self) -> None:
        executor = ChainExecutor(EngineConfig(adaptive_max_slots=5))
        chain = build_chain([Task(id=f"t{i}") for i in range(8)], strategy=ChainStrategy.ADAPTIVE)
        assert len(executor.next_tasks(chain, 0.0)) == 5
        assert len(executor.next_tasks(chain, 0.5)) == 2
        assert len(executor.next_tasks(chain, 1.0)) == 1
        executor.mark_active(chain, "t0")
        assert executor.next_tasks(chain, 1.0) == []

    def test_completion(self) -> None:
        executor = ChainExecutor()
        chain = build_chain([Task(id="a")])
        executor.mark_active(chain, "a")
        executor.mark_completed(chain, "a", None)
        assert executor.is_complete(chain)
        assert executor.unrecoverable(chain) is None

    def test_too_many_failures(self) -> None:
        executor = ChainExecutor()
        chain = _diamond()
        executor.mark_active(chain, "root")
        executor.mark_failed(chain, "root")
        assert executor.failure_ratio(chain) == 0.25
        assert executor.unrecoverable(chain) is FailureReason.CHAIN_STALLED
        chain.failure_threshold = 0.2
        assert executor.unrecoverable(chain) is FailureReason.TOO_MANY_FAILURES

    def test_running_chain_is_recoverable(self) -> None:
        executor = ChainExecutor()
        chain = _diamond()
        executor.mark_active(chain, "root")
        assert executor.unrecoverable(chain) is None
