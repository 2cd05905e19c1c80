"""Candidate scoring and ranking."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from ...config import ScoringWeights
from ..domain.models import Candidate


@dataclass(frozen=True)
class ScoredCandidate:
    """A candidate paired with its priority score."""
    candidate: Candidate
    score: float

    @property
    def task_id(self) -> str:
        return self.candidate.task_id

    @property
    def conflict_domain(self) -> Optional[str]:
        return self.candidate.conflict_domain


def score_candidate(candidate: Candidate, weights: Optional[ScoringWeights] = None) -> float:
    """Compute the priority score of one candidate; higher is more urgent.

    The score is a sum of independent terms: a floor, a tier bonus (tier 1 is
    the most urgent, tier 0 means "no priority" and earns nothing), flat bonuses
    for fully specified and foundational work, a bonus per task this one blocks,
    a bonus for being unblocked, a heavier penalty per blocker, and a penalty
    proportional to the size estimate.

    Args:
        candidate (Candidate): Candidate to score.
        weights (Optional[ScoringWeights]): Term weights; defaults when omitted.

    Returns:
        float: Priority score. Pure function of its inputs.
    """
    w = weights or ScoringWeights()
    score = w.floor
    if candidate.priority > 0:
        score += (w.tier_span - candidate.priority) * w.tier_step
    if candidate.fully_specified:
        score += w.fully_specified
    if candidate.foundational:
        score += w.foundational
    score += candidate.blocks_count * w.per_blocked_task
    if candidate.blocked_by_count == 0:
        score += w.unblocked
    score -= candidate.blocked_by_count * w.per_blocker
    estimate = candidate.estimate if candidate.estimate is not None else w.default_estimate
    score -= estimate * w.per_estimate_point
    return score


def rank_candidates(
    candidates: Iterable[Candidate],
    weights: Optional[ScoringWeights] = None,
    *,
    limit: Optional[int] = None,
) -> list[ScoredCandidate]:
    """Score candidates and sort them by descending score.

    ``sorted`` is stable, so equal scores keep the tracker's order.
    """
    scored = [ScoredCandidate(candidate=c, score=score_candidate(c, weights)) for c in candidates]
    ranked = sorted(scored, key=lambda item: -item.score)
    if limit is not None:
        ranked = ranked[: max(limit, 0)]
    return ranked
