"""Concord: collaborative scheduling and convergence for agent pools."""

__version__ = "0.1.0"

from concord.affinity import AffinityModel, EmbeddingAffinityModel
from concord.agents import AgentProtocol, FunctionAgent, StaticAgent
from concord.config import EngineConfig
from concord.engine import ConcordEngine
from concord.events import EngineEvent, EventChannel, EventType, Subscription
from concord.log import configure_logging as configure
from concord.log import get_logger
from concord.models import (
    AgentState,
    ChainStatus,
    ChainStrategy,
    CollaborationType,
    ConvergedResult,
    Task,
    TaskChain,
    TaskStatus,
)
from concord.types import (
    AgentExecutionError,
    AgentResult,
    CapabilityMismatchError,
    ChainStructuralFailure,
    ConcordError,
    ConfigurationError,
    FailureReason,
    RegistryError,
    SessionExhaustedError,
)

__all__ = [
    "AffinityModel",
    "AgentExecutionError",
    "AgentProtocol",
    "AgentResult",
    "AgentState",
    "CapabilityMismatchError",
    "ChainStatus",
    "ChainStrategy",
    "ChainStructuralFailure",
    "CollaborationType",
    "ConcordEngine",
    "ConcordError",
    "ConfigurationError",
    "ConvergedResult",
    "EmbeddingAffinityModel",
    "EngineConfig",
    "EngineEvent",
    "EventChannel",
    "EventType",
    "FailureReason",
    "FunctionAgent",
    "RegistryError",
    "SessionExhaustedError",
    "StaticAgent",
    "Subscription",
    "Task",
    "TaskChain",
    "TaskStatus",
    "configure",
    "get_logger",
]
