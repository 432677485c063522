"""Task chains: building validated dependency graphs and walking them."""

from __future__ import annotations

import math
from collections.abc import Callable, Sequence
from typing import Any

from pydantic import ValidationError

from concord._internal.graph import Graph, GraphError, topological_sort
from concord.config import EngineConfig
from concord.models import (
    ChainStrategy,
    ConvergedResult,
    DependencyNode,
    Task,
    TaskChain,
    TaskStatus,
)
from concord.types import ConfigurationError, FailureReason


def build_chain(
    tasks: Sequence[Task | dict[str, Any]],
    *,
    name: str = "",
    strategy: ChainStrategy | str = ChainStrategy.SEQUENTIAL,
    chain_id: str | None = None,
    failure_threshold: float = 0.3,
    now: float = 0.0,
) -> TaskChain:
    """Validate *tasks* and assemble a pending :class:`TaskChain`.

    Raises:
        ConfigurationError: On an empty chain, duplicate task ids, a
            dependency outside the chain or a dependency cycle.
    """
    if not tasks:
        raise ConfigurationError("A chain needs at least one task")
    parsed: dict[str, Task] = {}
    for raw in tasks:
        try:
            task = raw.model_copy(deep=True) if isinstance(raw, Task) else Task.model_validate(raw)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid chain task: {exc}") from exc
        if task.id in parsed:
            raise ConfigurationError(f"Duplicate task id {task.id!r} in chain")
        parsed[task.id] = task

    try:
        graph = Graph.from_dependencies({tid: t.dependencies for tid, t in parsed.items()})
        topological_sort(graph)
    except GraphError as exc:
        raise ConfigurationError(f"Invalid chain {name or chain_id or ''!r}: {exc}") from exc

    extra: dict[str, Any] = {"id": chain_id} if chain_id else {}
    chain = TaskChain(
        name=name,
        strategy=ChainStrategy(strategy),
        failure_threshold=failure_threshold,
        created_at=now,
        **extra,
    )
    for task_id, task in parsed.items():
        task.chain_id = chain.id
        task.created_at = now
        task.status = TaskStatus.PENDING
        chain.tasks[task_id] = task
        chain.graph[task_id] = DependencyNode(
            task_id=task_id,
            dependencies=list(task.dependencies),
            dependents=graph.successors(task_id),
            ready=not task.dependencies,
        )
    return chain


class ChainExecutor:
    """Bookkeeping for running chains.

    The executor decides which tasks are ready and how many may start; the
    engine schedules them and reports outcomes back.
    """

    def __init__(self, config: EngineConfig | None = None) -> None:
        self.config = config or EngineConfig()

    def ready_tasks(self, chain: TaskChain) -> list[str]:
        """Tasks whose dependencies are all completed and that have not started, in declaration order."""
        completed = set(chain.completed)
        busy = completed | set(chain.active) | set(chain.failed)
        return [
            task_id
            for task_id, node in chain.graph.items()
            if task_id not in busy
            and chain.tasks[task_id].status is TaskStatus.PENDING
            and all(dep in completed for dep in node.dependencies)
        ]

    def slots(self, chain: TaskChain, ready: int, system_load: float) -> int:
        return max(0, _SLOT_POLICIES[chain.strategy](self, chain, ready, system_load))

    def _sequential_slots(self, chain: TaskChain, ready: int, system_load: float) -> int:
        return 1 - len(chain.active)

    def _parallel_slots(self, chain: TaskChain, ready: int, system_load: float) -> int:
        return ready

    def _adaptive_slots(self, chain: TaskChain, ready: int, system_load: float) -> int:
        capacity = max(1, math.floor((1.0 - system_load) * self.config.adaptive_max_slots))
        return min(ready, capacity - len(chain.active))

    def next_tasks(self, chain: TaskChain, system_load: float) -> list[str]:
        """Ready tasks the chain's strategy allows to start now."""
        ready = self.ready_tasks(chain)
        return ready[: self.slots(chain, len(ready), system_load)]

    def mark_active(self, chain: TaskChain, task_id: str) -> None:
        if task_id not in chain.active:
            chain.active.append(task_id)
        chain.graph[task_id].ready = False

    def mark_completed(self, chain: TaskChain, task_id: str, result: ConvergedResult | None) -> list[str]:
        """Record a completed task and return dependents that just became ready."""
        if task_id in chain.active:
            chain.active.remove(task_id)
        if task_id not in chain.completed:
            chain.completed.append(task_id)
        if result is not None:
            chain.results[task_id] = result
        return self.refresh(chain, chain.graph[task_id].dependents)

    def mark_failed(self, chain: TaskChain, task_id: str) -> None:
        if task_id in chain.active:
            chain.active.remove(task_id)
        if task_id not in chain.failed:
            chain.failed.append(task_id)
        chain.graph[task_id].ready = False

    def refresh(self, chain: TaskChain, task_ids: Sequence[str] | None = None) -> list[str]:
        """Recompute ``ready`` flags; returns ids that flipped to ready."""
        ready = set(self.ready_tasks(chain))
        flipped: list[str] = []
        for task_id in task_ids if task_ids is not None else list(chain.graph):
            node = chain.graph[task_id]
            now_ready = task_id in ready
            if now_ready and not node.ready:
                flipped.append(task_id)
            node.ready = now_ready
        return flipped

    @staticmethod
    def is_complete(chain: TaskChain) -> bool:
        return len(chain.completed) == len(chain.tasks)

    @staticmethod
    def failure_ratio(chain: TaskChain) -> float:
        return len(chain.failed) / len(chain.tasks) if chain.tasks else 0.0

    def unrecoverable(self, chain: TaskChain) -> FailureReason | None:
        """Why the chain cannot continue as is, or ``None``."""
        if self.is_complete(chain):
            return None
        if self.failure_ratio(chain) > chain.failure_threshold:
            return FailureReason.TOO_MANY_FAILURES
        if not chain.active and not self.ready_tasks(chain):
            return FailureReason.CHAIN_STALLED
        return None


_SLOT_POLICIES: dict[ChainStrategy, Callable[[ChainExecutor, TaskChain, int, float], int]] = {
    ChainStrategy.SEQUENTIAL: ChainExecutor._sequential_slots,
    ChainStrategy.PARALLEL: ChainExecutor._parallel_slots,
    ChainStrategy.ADAPTIVE: ChainExecutor._adaptive_slots,
}
