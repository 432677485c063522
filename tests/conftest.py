"""Shared fixtures for the Concord test suite."""

from __future__ import annotations

import pytest

from concord.config import EngineConfig
from concord.engine import ConcordEngine
from concord.log import reset_logging


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> EngineConfig:
    return EngineConfig()


@pytest.fixture
def engine(config: EngineConfig, clock: FakeClock) -> ConcordEngine:
    return ConcordEngine(config, clock=clock)


@pytest.fixture(autouse=True)
def _clean_logging() -> None:
    reset_logging()
