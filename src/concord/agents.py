"""Agent collaborators: the protocol the engine calls and two ready-made agents."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Protocol, runtime_checkable

from pydantic import ValidationError

from concord.models import Task
from concord.types import AgentExecutionError, AgentResult, ConfigurationError


@runtime_checkable
class AgentProtocol(Protocol):
    """What the engine needs from a worker agent.

    Only ``id`` and an async ``process_task`` are required.  ``capabilities``,
    ``agent_type``, ``embedding`` and ``availability`` are read when present,
    and ``cancel_task(task_id)`` is called on cancellation when defined.
    """

    id: str

    async def process_task(self, task: Task) -> AgentResult | Mapping[str, Any]: ...


def check_collaborator(agent: Any) -> None:
    """Raise ``ConfigurationError`` unless *agent* can be registered."""
    agent_id = getattr(agent, "id", None)
    if not isinstance(agent_id, str) or not agent_id:
        raise ConfigurationError(f"Agent {agent!r} has no string 'id'")
    method = getattr(agent, "process_task", None)
    if method is None or not inspect.iscoroutinefunction(method):
        raise ConfigurationError(f"Agent {agent_id!r} must define 'async def process_task(task)'")


def to_agent_result(raw: Any, agent_id: str, task_id: str) -> AgentResult:
    """Normalise what ``process_task`` returned.

    Accepts an :class:`AgentResult` or a mapping with ``content`` and
    optional ``confidence`` / ``reasoning``.

    Raises:
        AgentExecutionError: If *raw* is neither or fails validation.
    """
    if isinstance(raw, AgentResult):
        return raw
    if isinstance(raw, Mapping):
        try:
            return AgentResult.model_validate(dict(raw))
        except ValidationError as exc:
            raise AgentExecutionError(agent_id, task_id, f"invalid result: {exc}") from exc
    raise AgentExecutionError(agent_id, task_id, f"unsupported result type {type(raw).__name__}")


class _AgentBase:
    def __init__(
        self,
        id: str,
        *,
        name: str = "",
        capabilities: list[str] | None = None,
        agent_type: str = "generalist",
        embedding: list[float] | None = None,
        availability: float = 1.0,
    ) -> None:
        self.id = id
        self.name = name or id
        self.capabilities = list(capabilities or [])
        self.agent_type = agent_type
        self.embedding = embedding
        self.availability = availability
        self.calls: list[str] = []
        self.cancelled: list[str] = []

    def cancel_task(self, task_id: str) -> None:
        self.cancelled.append(task_id)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id!r}, capabilities={self.capabilities!r})"


class StaticAgent(_AgentBase):
    """Answers every task with scripted content.

    Args:
        id: Agent id.
        response: Default content; ``None`` echoes ``"<id>: <description>"``.
        responses: Per-task-id content overriding *response*.
        confidence: Confidence attached to every answer.
        fail_times: Number of initial calls that raise.
        fail_tasks: Task ids this agent always fails.
        delay: Seconds to sleep before answering.
    """

    def __init__(
        self,
        id: str,
        *,
        response: Any = None,
        responses: Mapping[str, Any] | None = None,
        confidence: float = 0.8,
        fail_times: int = 0,
        fail_tasks: list[str] | None = None,
        delay: float = 0.0,
        **kwargs: Any,
    ) -> None:
        super().__init__(id, **kwargs)
        self.response = response
        self.responses = dict(responses or {})
        self.confidence = confidence
        self.fail_times = fail_times
        self.fail_tasks = set(fail_tasks or [])
        self.delay = delay

    async def process_task(self, task: Task) -> AgentResult:
        self.calls.append(task.id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_times > 0:
            self.fail_times -= 1
            raise RuntimeError(f"{self.id} scripted failure")
        if task.id in self.fail_tasks:
            raise RuntimeError(f"{self.id} refuses {task.id}")
        if task.id in self.responses:
            content = self.responses[task.id]
        elif self.response is not None:
            content = self.response
        else:
            content = f"{self.id}: {task.description}"
        return AgentResult(content=content, confidence=self.confidence)


class FunctionAgent(_AgentBase):
    """Delegates to an async callable ``fn(task)``."""

    def __init__(
        self,
        id: str,
        fn: Callable[[Task], Awaitable[AgentResult | Mapping[str, Any]]],
        **kwargs: Any,
    ) -> None:
        if not inspect.iscoroutinefunction(fn):
            raise ConfigurationError(f"FunctionAgent {id!r} needs an async callable")
        super().__init__(id, **kwargs)
        self._fn = fn

    async def process_task(self, task: Task) -> AgentResult | Mapping[str, Any]:
        self.calls.append(task.id)
        return await self._fn(task)
