"""YAML plan loader with variable substitution.

A plan file declares engine settings, scripted agents, standalone tasks
and chains.  Strings may reference ``${ENV_VAR}`` (environment) and
``${vars.KEY}`` (the file's own ``vars:`` section).

Usage::

    plan = load_plan("plan.yaml")
    engine = plan.build_engine()
    plan.submit(engine)

Example file::

    vars:
      confidence: 0.9
    engine:
      max_retry_attempts: 2
    agents:
      researcher:
        capabilities: [search]
        confidence: ${vars.confidence}
    chains:
      - id: report
        strategy: sequential
        tasks:
          - {id: gather, required_capabilities: [search]}
          - {id: write, dependencies: [gather]}
"""

from __future__ import annotations

import os
import re
from collections.abc import Callable
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from concord.agents import StaticAgent
from concord.chain import build_chain
from concord.config import EngineConfig
from concord.engine import ConcordEngine
from concord.log import get_logger
from concord.models import ChainStrategy, Task, TaskChain
from concord.types import ConfigurationError

_log = get_logger(__name__)

_VAR_RE = re.compile(r"\$\{([^}]+)\}")


class LoaderError(ConfigurationError):
    """Raised for unreadable, malformed or invalid plan files."""


# ---------------------------------------------------------------------------
# Variable substitution
# ---------------------------------------------------------------------------


def _substitute(value: Any, env: dict[str, Any], vars_: dict[str, Any]) -> Any:
    if isinstance(value, str):
        whole = _VAR_RE.fullmatch(value)
        if whole:
            # a bare reference keeps the referenced value's type
            return _resolve_ref(whole.group(1), env, vars_)
        return _VAR_RE.sub(lambda m: str(_resolve_ref(m.group(1), env, vars_)), value)
    if isinstance(value, dict):
        return {k: _substitute(v, env, vars_) for k, v in value.items()}
    if isinstance(value, list):
        return [_substitute(v, env, vars_) for v in value]
    return value


def _resolve_ref(ref: str, env: dict[str, Any], vars_: dict[str, Any]) -> Any:
    if ref.startswith("vars."):
        key = ref[len("vars.") :]
        return vars_.get(key, f"${{{ref}}}")
    value = env.get(ref)
    return value if value is not None else f"${{{ref}}}"


# ---------------------------------------------------------------------------
# Plan model
# ---------------------------------------------------------------------------


class AgentSpec(BaseModel):
    """A scripted agent declared in a plan file."""

    model_config = {"frozen": True}

    id: str
    name: str = ""
    capabilities: list[str] = Field(default_factory=list)
    agent_type: str = "generalist"
    embedding: list[float] | None = None
    availability: float = Field(default=1.0, ge=0.0, le=1.0)
    response: Any = None
    responses: dict[str, Any] = Field(default_factory=dict)
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    fail_times: int = Field(default=0, ge=0)
    fail_tasks: list[str] = Field(default_factory=list)
    delay: float = Field(default=0.0, ge=0.0)

    def build(self) -> StaticAgent:
        return StaticAgent(
            self.id,
            name=self.name,
            capabilities=self.capabilities,
            agent_type=self.agent_type,
            embedding=self.embedding,
            availability=self.availability,
            response=self.response,
            responses=self.responses,
            confidence=self.confidence,
            fail_times=self.fail_times,
            fail_tasks=self.fail_tasks,
            delay=self.delay,
        )


class ChainSpec(BaseModel):
    """A chain declared in a plan file."""

    model_config = {"frozen": True}

    id: str | None = None
    name: str = ""
    strategy: ChainStrategy = ChainStrategy.SEQUENTIAL
    tasks: list[Task] = Field(default_factory=list)


class Plan(BaseModel):
    """Everything a plan file declares."""

    config: EngineConfig = Field(default_factory=EngineConfig)
    agents: list[AgentSpec] = Field(default_factory=list)
    tasks: list[Task] = Field(default_factory=list)
    chains: list[ChainSpec] = Field(default_factory=list)

    def validate_structure(self) -> list[TaskChain]:
        """Build every chain once to surface cycles and unknown ids.

        Raises:
            ConfigurationError: On the first invalid chain or task.
        """
        seen: set[str] = set()
        for task in self.tasks:
            missing = [dep for dep in task.dependencies if dep not in seen]
            if missing:
                raise ConfigurationError(
                    f"Task {task.id!r} depends on {missing!r}, which must be declared before it"
                )
            if task.id in seen:
                raise ConfigurationError(f"Duplicate task id {task.id!r}")
            seen.add(task.id)
        chains = [
            build_chain(spec.tasks, name=spec.name, strategy=spec.strategy, chain_id=spec.id)
            for spec in self.chains
        ]
        for chain in chains:
            clashes = sorted(seen & set(chain.tasks))
            if clashes:
                raise ConfigurationError(f"Task ids reused across the plan: {clashes!r}")
            seen.update(chain.tasks)
        return chains

    def build_engine(self, *, clock: Callable[[], float] | None = None) -> ConcordEngine:
        """A fresh engine with every declared agent registered."""
        engine = ConcordEngine(self.config, clock=clock)
        for spec in self.agents:
            engine.register_agent(spec.build())
        return engine

    def submit(self, engine: ConcordEngine) -> tuple[list[str], list[str]]:
        """Submit all tasks and chains; returns ``(task_ids, chain_ids)``."""
        task_ids = [engine.submit_task(task) for task in self.tasks]
        chain_ids = [
            engine.submit_chain(spec.tasks, name=spec.name, strategy=spec.strategy, chain_id=spec.id)
            for spec in self.chains
        ]
        return task_ids, chain_ids


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_yaml(path: str | Path) -> dict[str, Any]:
    """Read *path* and apply variable substitution."""
    p = Path(path)
    if not p.exists():
        raise LoaderError(f"YAML file not found: {p}")
    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise LoaderError(f"Invalid YAML in {p}: {exc}") from exc
    if not isinstance(data, dict):
        raise LoaderError(f"Expected YAML mapping, got {type(data).__name__}")
    vars_ = data.pop("vars", {}) or {}
    return _substitute(data, dict(os.environ), vars_)  # type: ignore[no-any-return]


def parse_plan(data: dict[str, Any]) -> Plan:
    """Validate an already-loaded mapping into a :class:`Plan`."""
    agents = data.get("agents") or {}
    if isinstance(agents, dict):
        agents = [{"id": agent_id, **(spec or {})} for agent_id, spec in agents.items()]
    try:
        plan = Plan(
            config=EngineConfig.model_validate(data.get("engine") or {}),
            agents=agents,
            tasks=data.get("tasks") or [],
            chains=data.get("chains") or [],
        )
    except ValidationError as exc:
        raise LoaderError(f"Invalid plan: {exc}") from exc
    if not plan.agents:
        raise LoaderError("No 'agents' section in plan")
    if not plan.tasks and not plan.chains:
        raise LoaderError("Plan declares no tasks or chains")
    return plan


def load_plan(path: str | Path) -> Plan:
    """Load, substitute and validate a plan file.

    Raises:
        LoaderError: If the file is missing, malformed or structurally invalid.
    """
    plan = parse_plan(load_yaml(path))
    try:
        plan.validate_structure()
    except LoaderError:
        raise
    except ConfigurationError as exc:
        raise LoaderError(str(exc)) from exc
    _log.info(
        "loaded plan %s: %d agent(s), %d task(s), %d chain(s)",
        path, len(plan.agents), len(plan.tasks), len(plan.chains),
    )
    return plan
