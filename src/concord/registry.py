"""Agent registry: worker state, scoring and per-task agent selection."""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

from concord.affinity import AffinityModel
from concord.agents import AgentProtocol, check_collaborator
from concord.config import EngineConfig
from concord.log import get_logger
from concord.models import AgentState, CollaborationType, Task
from concord.types import CapabilityMismatchError, RegistryError

_log = get_logger(__name__)

CAPABILITY_WEIGHT = 0.45
HEADROOM_WEIGHT = 0.2
PERFORMANCE_WEIGHT = 0.2
HEAT_PENALTY = 0.15

_PERFORMANCE_GAIN = 1.1
_PERFORMANCE_LOSS = 0.9
_PERFORMANCE_FLOOR = 0.1


class AgentRegistry:
    """Holds every registered agent and picks agents for tasks.

    The registry owns the mutable :class:`AgentState` records; the engine
    hands out copies.  Heat is stored with the time it was last settled and
    decayed lazily whenever it is read.

    Args:
        config: Engine configuration; defaults to ``EngineConfig()``.
        affinity: Optional affinity model blended into scores.
        clock: Time source, seconds.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        affinity: AffinityModel | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.affinity = affinity
        self._clock = clock or time.time
        self._states: dict[str, AgentState] = {}
        self._agents: dict[str, AgentProtocol] = {}

    # -- membership ---------------------------------------------------------

    def register(self, agent: Any) -> AgentState:
        """Register a collaborator and return its fresh state.

        Raises:
            ConfigurationError: If *agent* lacks an id or async ``process_task``.
            RegistryError: If the id is already registered.
        """
        check_collaborator(agent)
        if agent.id in self._states:
            raise RegistryError(f"Agent '{agent.id}' is already registered")
        state = AgentState(
            id=agent.id,
            name=getattr(agent, "name", "") or agent.id,
            agent_type=getattr(agent, "agent_type", None) or "generalist",
            capabilities=list(getattr(agent, "capabilities", None) or []),
            embedding=getattr(agent, "embedding", None),
            availability=getattr(agent, "availability", 1.0),
            heat_updated_at=self._clock(),
        )
        self._states[agent.id] = state
        self._agents[agent.id] = agent
        _log.info("registered agent %s capabilities=%s", agent.id, state.capabilities)
        return state

    def unregister(self, agent_id: str) -> list[str]:
        """Remove an agent and return the ids of tasks it still held."""
        state = self.get(agent_id)
        del self._states[agent_id]
        del self._agents[agent_id]
        _log.info("unregistered agent %s holding %d task(s)", agent_id, state.load)
        return list(state.current_tasks)

    def get(self, agent_id: str) -> AgentState:
        if agent_id not in self._states:
            raise RegistryError(f"Agent '{agent_id}' is not registered")
        return self._states[agent_id]

    def collaborator(self, agent_id: str) -> AgentProtocol:
        if agent_id not in self._agents:
            raise RegistryError(f"Agent '{agent_id}' is not registered")
        return self._agents[agent_id]

    def states(self) -> list[AgentState]:
        return list(self._states.values())

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._states

    def __len__(self) -> int:
        return len(self._states)

    # -- heat ---------------------------------------------------------------

    def current_heat(self, agent_id: str) -> float:
        state = self.get(agent_id)
        return state.decayed_heat(self._clock(), self.config.heat_decay_rate)

    def _settle_heat(self, state: AgentState, now: float) -> None:
        state.heat = max(0.0, state.decayed_heat(now, self.config.heat_decay_rate))
        state.heat_updated_at = now

    def settle_all(self) -> None:
        """Apply pending decay to every agent's stored heat."""
        now = self._clock()
        for state in self._states.values():
            self._settle_heat(state, now)

    # -- load and performance ----------------------------------------------

    def assign(self, agent_id: str, task_id: str) -> None:
        """Record that *agent_id* took *task_id* and bump its heat."""
        state = self.get(agent_id)
        self._settle_heat(state, self._clock())
        state.heat = min(1.0, state.heat + self.config.heat_increment)
        if task_id not in state.current_tasks:
            state.current_tasks.append(task_id)

    def release(self, agent_id: str, task_id: str) -> None:
        """Drop *task_id* from the agent's load; unknown agents are ignored."""
        state = self._states.get(agent_id)
        if state is not None and task_id in state.current_tasks:
            state.current_tasks.remove(task_id)

    def record_success(self, agent_id: str) -> None:
        state = self._states.get(agent_id)
        if state is None:
            return
        state.performance_score = min(1.0, state.performance_score * _PERFORMANCE_GAIN)
        state.tasks_completed += 1

    def record_failure(self, agent_id: str) -> None:
        state = self._states.get(agent_id)
        if state is None:
            return
        state.performance_score = max(_PERFORMANCE_FLOOR, state.performance_score * _PERFORMANCE_LOSS)
        state.tasks_failed += 1

    # -- scoring ------------------------------------------------------------

    @staticmethod
    def capability_overlap(agent: AgentState, task: Task) -> float:
        """Share of the task's required capabilities the agent covers."""
        if not task.required_capabilities:
            return 1.0
        required = set(task.required_capabilities)
        return len(required & set(agent.capabilities)) / len(required)

    def is_capable(self, agent: AgentState, task: Task) -> bool:
        if agent.id in task.excluded_agents:
            return False
        if not task.required_capabilities:
            return True
        overlap = self.capability_overlap(agent, task)
        return overlap > 0 and overlap >= self.config.min_capability_overlap

    def is_available(self, agent: AgentState, task: Task) -> bool:
        return (
            agent.availability > self.config.min_availability
            and agent.load < self.config.agent_max_load
            and self.is_capable(agent, task)
        )

    def score_agent_for_task(self, agent: AgentState, task: Task) -> float:
        """Deterministic suitability of *agent* for *task*.

        Capability overlap, load headroom and performance raise the score,
        current heat lowers it.  With an affinity model configured, its
        score is blended in; a failing model is logged and skipped.
        """
        headroom = agent.availability * max(0.0, 1.0 - agent.load / self.config.agent_max_load)
        heat = agent.decayed_heat(self._clock(), self.config.heat_decay_rate)
        base = (
            CAPABILITY_WEIGHT * self.capability_overlap(agent, task)
            + HEADROOM_WEIGHT * headroom
            + PERFORMANCE_WEIGHT * agent.performance_score
            - HEAT_PENALTY * heat
        )
        if self.affinity is None:
            return base
        try:
            affinity = float(self.affinity.score_affinity(agent, task))
        except Exception as exc:
            _log.warning("affinity model failed for %s/%s: %s", agent.id, task.id, exc)
            return base
        affinity = min(1.0, max(0.0, affinity))
        blend = self.config.affinity_blend
        return (1.0 - blend) * base + blend * affinity

    def rank(self, task: Task) -> list[tuple[AgentState, float]]:
        """Available agents for *task*, best first; ties go to the lower id."""
        scored = [
            (state, self.score_agent_for_task(state, task))
            for state in self._states.values()
            if self.is_available(state, task)
        ]
        scored.sort(key=lambda pair: (-pair[1], pair[0].id))
        return scored

    def candidates(self, task: Task, excluded: set[str] | None = None) -> list[AgentState]:
        """Registered agents capable of *task*, ignoring load and availability."""
        excluded = excluded or set()
        return [
            state
            for state in self._states.values()
            if state.id not in excluded and self.is_capable(state, task)
        ]

    # -- selection ----------------------------------------------------------

    def select_agents(self, task: Task) -> list[AgentState]:
        """Pick the agents that should work on *task*.

        Returns an empty list when fewer than ``task.min_agents`` agents are
        available right now.

        Raises:
            CapabilityMismatchError: If fewer than ``task.min_agents`` registered
                agents could ever take it.
        """
        if len(self.candidates(task)) < task.min_agents:
            raise CapabilityMismatchError(task.id, list(task.required_capabilities))
        ranked = [state for state, _score in self.rank(task)]
        if len(ranked) < task.min_agents:
            return []
        selected = _SELECTORS[task.collaboration_type](ranked, task)
        if len(selected) < task.min_agents:
            return []
        return selected


def _select_solo(ranked: list[AgentState], task: Task) -> list[AgentState]:
    return ranked[:1]


def _select_parallel(ranked: list[AgentState], task: Task) -> list[AgentState]:
    seen: set[str] = set()
    selected: list[AgentState] = []
    for state in ranked:
        if state.id in seen:
            continue
        seen.add(state.id)
        selected.append(state)
        if len(selected) == task.max_agents:
            break
    return selected


def _select_hierarchical(ranked: list[AgentState], task: Task) -> list[AgentState]:
    if not ranked:
        return []
    selected = [ranked[0]]
    remaining = ranked[1:]
    while remaining and len(selected) < task.max_agents:
        pick = remaining[0]
        if len(selected) >= 2:
            types = {state.agent_type for state in selected}
            pick = next((s for s in remaining if s.agent_type not in types), remaining[0])
        selected.append(pick)
        remaining.remove(pick)
    return selected


_SELECTORS: dict[CollaborationType, Callable[[list[AgentState], Task], list[AgentState]]] = {
    CollaborationType.SOLO: _select_solo,
    CollaborationType.PARALLEL: _select_parallel,
    CollaborationType.HIERARCHICAL: _select_hierarchical,
}
