"""Merging several agents' results into one answer.

All functions are pure.  Results are keyed by agent id and always
processed in agent-id order, so the merge does not depend on the order in
which results arrived.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from difflib import SequenceMatcher

from concord.models import CollaborationType, Contribution, ConvergedResult, ConvergenceStrategy
from concord.types import AgentResult

PRIMARY_WEIGHT = 0.7
SECONDARY_WEIGHT = 0.3
MIXED_SIMILARITY = 0.5


def resolve_strategy(participants: int, collaboration_type: CollaborationType) -> ConvergenceStrategy:
    """1 agent is solo, 2-3 reach consensus, more (or a hierarchical task) defer to a primary."""
    if participants <= 1:
        return ConvergenceStrategy.SOLO
    if collaboration_type is CollaborationType.HIERARCHICAL or participants > 3:
        return ConvergenceStrategy.HIERARCHICAL
    return ConvergenceStrategy.CONSENSUS


def similarity(a: AgentResult, b: AgentResult) -> float:
    """Text ratio for two strings, confidence proximity for two non-strings, 0.5 when mixed."""
    a_text = isinstance(a.content, str)
    b_text = isinstance(b.content, str)
    if a_text and b_text:
        return SequenceMatcher(None, a.content, b.content).ratio()
    if not a_text and not b_text:
        return 1.0 - abs(a.confidence - b.confidence)
    return MIXED_SIMILARITY


def weighted_consensus(ordered: list[tuple[str, AgentResult]], weights: list[float]) -> float:
    """Weighted mean of pairwise similarity; 1.0 for fewer than two results."""
    if len(ordered) < 2:
        return 1.0
    total = 0.0
    norm = 0.0
    for i in range(len(ordered)):
        for j in range(i + 1, len(ordered)):
            pair_weight = weights[i] * weights[j]
            total += pair_weight * similarity(ordered[i][1], ordered[j][1])
            norm += pair_weight
    if norm == 0.0:
        return 0.0
    return total / norm


def consensus_score(results: Mapping[str, AgentResult]) -> float:
    """Unweighted consensus over the results stored so far."""
    ordered = sorted(results.items())
    return weighted_consensus(ordered, [1.0] * len(ordered))


def _best(ordered: list[tuple[str, AgentResult]], key: Callable[[int], float]) -> int:
    # highest key, then highest confidence, then lowest agent id (ordered is id-sorted)
    best = 0
    for idx in range(1, len(ordered)):
        candidate = (key(idx), ordered[idx][1].confidence)
        current = (key(best), ordered[best][1].confidence)
        if candidate > current:
            best = idx
    return best


def _evidence(ordered: list[tuple[str, AgentResult]], skip: str) -> list[Contribution]:
    return [
        Contribution(agent_id=agent_id, content=result.content, confidence=result.confidence)
        for agent_id, result in ordered
        if agent_id != skip
    ]


def _merge_solo(
    ordered: list[tuple[str, AgentResult]], primary: str | None, threshold: float, max_iterations: int
) -> ConvergedResult:
    idx = _best(ordered, lambda i: ordered[i][1].confidence)
    agent_id, result = ordered[idx]
    return ConvergedResult(
        content=result.content,
        confidence=result.confidence,
        strategy=ConvergenceStrategy.SOLO,
        contributors=[agent_id],
    )


def _merge_consensus(
    ordered: list[tuple[str, AgentResult]], primary: str | None, threshold: float, max_iterations: int
) -> ConvergedResult:
    contributors = [agent_id for agent_id, _ in ordered]
    if len(ordered) == 1:
        agent_id, result = ordered[0]
        return ConvergedResult(
            content=result.content,
            confidence=result.confidence,
            strategy=ConvergenceStrategy.CONSENSUS,
            contributors=contributors,
        )

    weights = [1.0 / len(ordered)] * len(ordered)
    score = 0.0
    for iteration in range(1, max_iterations + 1):
        score = weighted_consensus(ordered, weights)
        if score > threshold:
            idx = _best(ordered, lambda i: weights[i] * ordered[i][1].confidence)
            agent_id, result = ordered[idx]
            return ConvergedResult(
                content=result.content,
                confidence=result.confidence,
                strategy=ConvergenceStrategy.CONSENSUS,
                contributors=contributors,
                supporting_evidence=_evidence(ordered, agent_id),
                consensus_score=score,
                iterations=iteration,
                reached_threshold=True,
            )
        scaled = [w * r.confidence for w, (_, r) in zip(weights, ordered, strict=True)]
        norm = sum(scaled)
        if norm > 0.0:
            weights = [w / norm for w in scaled]

    idx = _best(ordered, lambda i: ordered[i][1].confidence)
    agent_id, result = ordered[idx]
    return ConvergedResult(
        content=result.content,
        confidence=result.confidence,
        strategy=ConvergenceStrategy.CONSENSUS,
        contributors=contributors,
        supporting_evidence=_evidence(ordered, agent_id),
        consensus_score=score,
        iterations=max_iterations,
        reached_threshold=False,
    )


def _merge_hierarchical(
    ordered: list[tuple[str, AgentResult]], primary: str | None, threshold: float, max_iterations: int
) -> ConvergedResult:
    ids = [agent_id for agent_id, _ in ordered]
    if primary not in ids:
        primary = ordered[_best(ordered, lambda i: ordered[i][1].confidence)][0]
    base = dict(ordered)[primary]
    secondary = [result for agent_id, result in ordered if agent_id != primary]
    confidence = base.confidence
    if secondary:
        mean = sum(r.confidence for r in secondary) / len(secondary)
        confidence = PRIMARY_WEIGHT * base.confidence + SECONDARY_WEIGHT * mean
    return ConvergedResult(
        content=base.content,
        confidence=confidence,
        strategy=ConvergenceStrategy.HIERARCHICAL,
        contributors=[primary, *(agent_id for agent_id in ids if agent_id != primary)],
        supporting_evidence=_evidence(ordered, primary),
        consensus_score=consensus_score(dict(ordered)),
    )


_MERGERS: dict[
    ConvergenceStrategy,
    Callable[[list[tuple[str, AgentResult]], str | None, float, int], ConvergedResult],
] = {
    ConvergenceStrategy.SOLO: _merge_solo,
    ConvergenceStrategy.CONSENSUS: _merge_consensus,
    ConvergenceStrategy.HIERARCHICAL: _merge_hierarchical,
}


def converge(
    results: Mapping[str, AgentResult],
    strategy: ConvergenceStrategy,
    *,
    primary: str | None = None,
    threshold: float = 0.9,
    max_iterations: int = 10,
) -> ConvergedResult:
    """Merge *results* (agent id to result) with *strategy*.

    Args:
        results: Non-empty mapping of stored results.
        strategy: Merge strategy.
        primary: The first-selected participant, used by hierarchical merges.
        threshold: Consensus score that ends reconciliation.
        max_iterations: Reconciliation rounds before falling back.

    Raises:
        ValueError: If *results* is empty.
    """
    if not results:
        raise ValueError("converge() needs at least one result")
    ordered = sorted(results.items())
    return _MERGERS[strategy](ordered, primary, threshold, max_iterations)
