"""Config-driven plans — load agents, tasks and chains from YAML.

Demonstrates ``load_plan()``, which reads a plan file with variable
substitution, then runs it on an engine until every chain has finished.

Usage:
    uv run python examples/quickstart/config_driven.py
    uv run concord run examples/quickstart/plan.yaml
"""

import asyncio
from pathlib import Path

from concord.loader import load_plan

YAML_PATH = Path(__file__).parent / "plan.yaml"

# --- Load and validate the plan ---------------------------------------------

plan = load_plan(YAML_PATH)
print(f"Loaded agents: {[a.id for a in plan.agents]}")
print(f"Chains: {[c.id for c in plan.chains]}")


async def main() -> None:
    engine = plan.build_engine()
    task_ids, chain_ids = plan.submit(engine)
    finished = await engine.run_until_idle(timeout=30)
    print(f"Finished: {finished}")
    for chain_id in chain_ids:
        chain = engine.get_chain(chain_id)
        print(f"{chain_id}: {chain.status} remaps={chain.remapping_count}")
        for task_id, result in chain.results.items():
            print(f"  {task_id}: {result.content} ({result.confidence:.2f})")


if __name__ == "__main__":
    asyncio.run(main())
