"""Tests for concord.loader — plan files and variable substitution."""

from __future__ import annotations

from pathlib import Path

import pytest

from concord.loader import (
    LoaderError,
    _substitute,
    load_plan,
    load_yaml,
    parse_plan,
)
from concord.models import ChainStatus, ChainStrategy, TaskStatus
from concord.types import ConfigurationError

PLAN = """\
vars:
  confidence: 0.9
engine:
  max_retry_attempts: 2
  task_timeout: 10
agents:
  researcher:
    capabilities: [search]
    confidence: ${vars.confidence}
    response: "${CONCORD_TEST_GREETING} from research"
  writer:
    capabilities: [write]
tasks:
  - id: warmup
    description: say hello
chains:
  - id: report
    name: Weekly report
    strategy: sequential
    tasks:
      - {id: gather, required_capabilities: [search]}
      - {id: draft, required_capabilities: [write], dependencies: [gather]}
"""


def _write(path: Path, content: str) -> Path:
    path.write_text(content, encoding="utf-8")
    return path


# ---------------------------------------------------------------------------
# Substitution
# ---------------------------------------------------------------------------


class TestSubstitute:
    def test_bare_reference_keeps_type(self) -> None:
        assert _substitute("${vars.n}", {}, {"n": 3}) == 3

    def test_embedded_references(self) -> None:
        out = _substitute({"k": ["${HOME_DIR}/x-${vars.n}"]}, {"HOME_DIR": "/h"}, {"n": 3})
        assert out == {"k": ["/h/x-3"]}

    def test_unresolved_left_alone(self) -> None:
        assert _substitute("${MISSING}", {}, {}) == "${MISSING}"
        assert _substitute("${vars.nope}", {}, {}) == "${vars.nope}"

    def test_non_strings_untouched(self) -> None:
        assert _substitute(1.5, {}, {}) == 1.5


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


class TestLoadPlan:
    def test_full_plan(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CONCORD_TEST_GREETING", "hello")
        plan = load_plan(_write(tmp_path / "plan.yaml", PLAN))

        assert plan.config.max_retry_attempts == 2
        assert plan.config.task_timeout == 10
        assert [a.id for a in plan.agents] == ["researcher", "writer"]
        researcher = plan.agents[0]
        assert researcher.confidence == 0.9
        assert researcher.response == "hello from research"
        assert [t.id for t in plan.tasks] == ["warmup"]
        assert plan.chains[0].strategy is ChainStrategy.SEQUENTIAL
        assert [t.id for t in plan.chains[0].tasks] == ["gather", "draft"]

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(LoaderError, match="not found"):
            load_plan(tmp_path / "absent.yaml")

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        with pytest.raises(LoaderError, match="Invalid YAML"):
            load_yaml(_write(tmp_path / "bad.yaml", "agents: [unclosed"))

    def test_not_a_mapping(self, tmp_path: Path) -> None:
        with pytest.raises(LoaderError, match="Expected YAML mapping"):
            load_yaml(_write(tmp_path / "list.yaml", "- a\n- b\n"))

    def test_cycle_reported_as_loader_error(self, tmp_path: Path) -> None:
        content = """\
agents:
  a: {}
chains:
  - tasks:
      - {id: x, dependencies: [y]}
      - {id: y, dependencies: [x]}
"""
        with pytest.raises(LoaderError, match="Cycle"):
            load_plan(_write(tmp_path / "cycle.yaml", content))

    def test_loader_error_is_configuration_error(self) -> None:
        assert issubclass(LoaderError, ConfigurationError)


class TestParsePlan:
    def test_agents_as_list(self) -> None:
        plan = parse_plan({"agents": [{"id": "a"}], "tasks": [{"id": "t"}]})
        assert plan.agents[0].id == "a"

    def test_no_agents(self) -> None:
        with pytest.raises(LoaderError, match="No 'agents'"):
            parse_plan({"tasks": [{"id": "t"}]})

    def test_no_work(self) -> None:
        with pytest.raises(LoaderError, match="no tasks or chains"):
            parse_plan({"agents": {"a": {}}})

    def test_invalid_engine_setting(self) -> None:
        with pytest.raises(LoaderError, match="Invalid plan"):
            parse_plan({"engine": {"max_retry_attempts": -1}, "agents": {"a": {}}, "tasks": [{"id": "t"}]})

    def test_forward_dependency_rejected(self) -> None:
        plan = parse_plan(
            {"agents": {"a": {}}, "tasks": [{"id": "b", "dependencies": ["a1"]}, {"id": "a1"}]}
        )
        with pytest.raises(ConfigurationError, match="declared before"):
            plan.validate_structure()

    def test_ids_reused_across_plan(self) -> None:
        plan = parse_plan(
            {"agents": {"a": {}}, "tasks": [{"id": "t"}], "chains": [{"tasks": [{"id": "t"}]}]}
        )
        with pytest.raises(ConfigurationError, match="reused"):
            plan.validate_structure()


class TestPlanExecution:
    async def test_build_and_submit(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch, clock) -> None:  # type: ignore[no-untyped-def]
        monkeypatch.setenv("CONCORD_TEST_GREETING", "hi")
        plan = load_plan(_write(tmp_path / "plan.yaml", PLAN))
        engine = plan.build_engine(clock=clock)
        task_ids, chain_ids = plan.submit(engine)
        assert task_ids == ["warmup"]
        assert chain_ids == ["report"]

        engine.tick()
        await engine.drain()

        assert engine.get_task("warmup").status is TaskStatus.COMPLETED  # type: ignore[union-attr]
        chain = engine.get_chain("report")
        assert chain.status is ChainStatus.COMPLETED  # type: ignore[union-attr]
        assert chain.results["gather"].content == "hi from research"  # type: ignore[union-attr]
        assert chain.results["draft"].content == "writer: "  # type: ignore[union-attr]
