"""Tests for concord.agents — collaborator checks and scripted agents."""

from __future__ import annotations

import pytest

from concord.agents import (
    AgentProtocol,
    FunctionAgent,
    StaticAgent,
    check_collaborator,
    to_agent_result,
)
from concord.models import Task
from concord.types import AgentExecutionError, AgentResult, ConfigurationError


class TestCheckCollaborator:
    def test_accepts_static_agent(self) -> None:
        agent = StaticAgent("a")
        check_collaborator(agent)
        assert isinstance(agent, AgentProtocol)

    def test_missing_id(self) -> None:
        class NoId:
            async def process_task(self, task: Task) -> AgentResult:
                return AgentResult(content=None)

        with pytest.raises(ConfigurationError, match="no string 'id'"):
            check_collaborator(NoId())

    def test_sync_process_task(self) -> None:
        class Sync:
            id = "sync"

            def process_task(self, task: Task) -> AgentResult:
                return AgentResult(content=None)

        with pytest.raises(ConfigurationError, match="async def process_task"):
            check_collaborator(Sync())


class TestToAgentResult:
    def test_passthrough(self) -> None:
        result = AgentResult(content="x", confidence=0.4)
        assert to_agent_result(result, "a", "t") is result

    def test_mapping(self) -> None:
        result = to_agent_result({"content": [1], "reasoning": ["because"]}, "a", "t")
        assert result.content == [1]
        assert result.confidence == 0.8
        assert result.reasoning == ["because"]

    def test_invalid_mapping(self) -> None:
        with pytest.raises(AgentExecutionError, match="invalid result") as exc_info:
            to_agent_result({"content": "x", "confidence": 3}, "a", "t")
        assert exc_info.value.agent_id == "a"

    def test_unsupported_type(self) -> None:
        with pytest.raises(AgentExecutionError, match="unsupported result type int"):
            to_agent_result(7, "a", "t")


class TestStaticAgent:
    async def test_echoes_description(self) -> None:
        agent = StaticAgent("echo")
        result = await agent.process_task(Task(id="t1", description="ping"))
        assert result.content == "echo: ping"
        assert agent.calls == ["t1"]

    async def test_per_task_responses(self) -> None:
        agent = StaticAgent("a", response="default", responses={"special": "custom"}, confidence=0.3)
        assert (await agent.process_task(Task(id="special"))).content == "custom"
        other = await agent.process_task(Task(id="other"))
        assert other.content == "default"
        assert other.confidence == 0.3

    async def test_fail_times(self) -> None:
        agent = StaticAgent("a", fail_times=2)
        for _ in range(2):
            with pytest.raises(RuntimeError, match="scripted failure"):
                await agent.process_task(Task(id="t"))
        assert (await agent.process_task(Task(id="t"))).content == "a: "

    async def test_fail_tasks(self) -> None:
        agent = StaticAgent("a", fail_tasks=["bad"])
        with pytest.raises(RuntimeError, match="refuses bad"):
            await agent.process_task(Task(id="bad"))
        assert (await agent.process_task(Task(id="good"))).content == "a: "

    def test_attributes(self) -> None:
        agent = StaticAgent("a", capabilities=["x"], agent_type="critic", availability=0.5)
        assert agent.name == "a"
        assert agent.capabilities == ["x"]
        assert agent.agent_type == "critic"
        agent.cancel_task("t1")
        assert agent.cancelled == ["t1"]


class TestFunctionAgent:
    async def test_delegates(self) -> None:
        async def shout(task: Task) -> AgentResult:
            return AgentResult(content=task.description.upper(), confidence=1.0)

        agent = FunctionAgent("f", shout, capabilities=["caps"])
        result = await agent.process_task(Task(id="t", description="hi"))
        assert result.content == "HI"
        assert agent.calls == ["t"]

    def test_rejects_sync_callable(self) -> None:
        with pytest.raises(ConfigurationError, match="async callable"):
            FunctionAgent("f", lambda task: AgentResult(content=None))  # type: ignore[arg-type,return-value]
