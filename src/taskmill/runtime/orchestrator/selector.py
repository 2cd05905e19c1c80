"""Conflict-aware batch selection."""

from __future__ import annotations

import logging
from typing import AbstractSet, Iterable, Sequence

from .scoring import ScoredCandidate

logger = logging.getLogger(__name__)


def select_batch(
    ranked: Sequence[ScoredCandidate],
    *,
    cap: int,
    active_domains: AbstractSet[str] = frozenset(),
    tracked_ids: AbstractSet[str] = frozenset(),
) -> list[ScoredCandidate]:
    """Greedily pick up to ``cap`` candidates without conflict-domain overlap.

    Args:
        ranked (Sequence[ScoredCandidate]): Candidates sorted by descending score.
        cap (int): Number of free slots.
        active_domains (AbstractSet[str]): Domains already claimed by running tasks.
        tracked_ids (AbstractSet[str]): Task ids already in the ledger or finished this run.

    Returns:
        list[ScoredCandidate]: Picks in selection order.
    """
    claimed = set(active_domains)
    picked: list[ScoredCandidate] = []
    for item in ranked:
        if len(picked) >= cap:
            break
        if item.task_id in tracked_ids:
            continue
        domain = item.conflict_domain
        if domain and domain in claimed:
            logger.debug("Skipping %s: conflict domain %s already claimed", item.task_id, domain)
            continue
        picked.append(item)
        if domain:
            claimed.add(domain)
    return picked


def validate_manual_selection(
    ranked: Sequence[ScoredCandidate],
    picks: Iterable[int],
    *,
    cap: int,
    active_domains: AbstractSet[str] = frozenset(),
    tracked_ids: AbstractSet[str] = frozenset(),
) -> list[ScoredCandidate]:
    """Validate an explicit 1-based selection against slots, the ledger, and domains.

    Invalid indices, duplicates, already tracked tasks, and domain conflicts are
    logged and dropped; selections beyond ``cap`` are ignored.
    """
    claimed = set(active_domains)
    seen: set[str] = set()
    accepted: list[ScoredCandidate] = []
    for number in picks:
        if len(accepted) >= cap:
            logger.warning("No more free slots, skipping remaining selections")
            break
        if number < 1 or number > len(ranked):
            logger.warning("Invalid selection: %s", number)
            continue
        item = ranked[number - 1]
        if item.task_id in seen:
            continue
        if item.task_id in tracked_ids:
            logger.warning("Selection %s (%s) is already tracked", number, item.task_id)
            continue
        domain = item.conflict_domain
        if domain and domain in claimed:
            logger.warning("Selection %s (%s) conflicts with active domain %s", number, item.task_id, domain)
            continue
        seen.add(item.task_id)
        accepted.append(item)
        if domain:
            claimed.add(domain)
    return accepted
