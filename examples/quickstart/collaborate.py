"""Collaborative tasks — several agents answer one task and converge.

Registers three scripted agents, submits a parallel task that two of them
share, and prints the merged answer plus the event stream.

Usage:
    uv run python examples/quickstart/collaborate.py
"""

import asyncio

from concord import ConcordEngine, EngineConfig, StaticAgent, Task, configure
from concord.models import CollaborationType


async def main() -> None:
    configure(level="INFO")
    engine = ConcordEngine(EngineConfig(tick_interval=0.05))
    engine.register_agent(StaticAgent("alpha", response="42", confidence=0.7))
    engine.register_agent(StaticAgent("beta", response="42", confidence=0.9))
    engine.register_agent(StaticAgent("gamma", response="forty-two", confidence=0.4))
    events = engine.subscribe()

    task_id = engine.submit_task(
        Task(
            description="What is six times seven?",
            collaboration_type=CollaborationType.PARALLEL,
            max_agents=2,
        )
    )
    await engine.run_until_idle(timeout=10)

    task = engine.get_task(task_id)
    print(f"{task_id}: {task.result.content} via {task.result.strategy}")
    print(f"contributors: {task.result.contributors}")
    for event in events.drain():
        print(f"  {event.type}")


if __name__ == "__main__":
    asyncio.run(main())
