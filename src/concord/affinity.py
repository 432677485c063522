"""Agent/task compatibility scoring.

The registry only depends on the :class:`AffinityModel` protocol: a
synchronous ``score_affinity`` returning a value in ``[0, 1]``.  The
default :class:`EmbeddingAffinityModel` compares embeddings by cosine
similarity and capability sets by Jaccard overlap.
"""

from __future__ import annotations

import math
from typing import Protocol, runtime_checkable

from concord.models import AgentState, Task


@runtime_checkable
class AffinityModel(Protocol):
    """Scores how well an agent fits a task or another agent."""

    def score_affinity(self, agent: AgentState, target: Task | AgentState) -> float: ...


def _cosine_similarity(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b, strict=False))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(x * x for x in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (norm_a * norm_b)


def _jaccard(a: set[str], b: set[str]) -> float:
    if not a and not b:
        return 1.0
    union = a | b
    return len(a & b) / len(union)


def _target_profile(target: Task | AgentState) -> tuple[set[str], list[float] | None]:
    if isinstance(target, Task):
        return set(target.required_capabilities), target.embedding
    return set(target.capabilities), target.embedding


class EmbeddingAffinityModel:
    """Cosine-of-embeddings blended with capability proximity.

    Cosine similarity is mapped from ``[-1, 1]`` to ``[0, 1]``.  When either
    side lacks an embedding, only capability proximity is used.

    Args:
        embedding_weight: Share of the score taken by the embedding term.
    """

    def __init__(self, embedding_weight: float = 0.6) -> None:
        if not 0.0 <= embedding_weight <= 1.0:
            raise ValueError("embedding_weight must be within [0, 1]")
        self.embedding_weight = embedding_weight

    def score_affinity(self, agent: AgentState, target: Task | AgentState) -> float:
        capabilities, embedding = _target_profile(target)
        proximity = _jaccard(set(agent.capabilities), capabilities)
        if not agent.embedding or not embedding:
            return proximity
        cosine = (_cosine_similarity(agent.embedding, embedding) + 1.0) / 2.0
        score = self.embedding_weight * cosine + (1.0 - self.embedding_weight) * proximity
        return min(1.0, max(0.0, score))
