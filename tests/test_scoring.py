from __future__ import annotations

import random

from taskmill.config import ScoringWeights
from taskmill.runtime.domain.models import Candidate
from taskmill.runtime.orchestrator.scoring import rank_candidates, score_candidate
from taskmill.runtime.orchestrator.selector import select_batch

from conftest import make_candidate


def test_score_terms_add_up() -> None:
    urgent = Candidate(task_id="1", priority=1)
    # floor 20 + tier (5-1)*20 + unblocked 15 - default estimate 3*2
    assert score_candidate(urgent) == 20 + 80 + 15 - 6

    loaded = Candidate(
        task_id="2",
        priority=2,
        estimate=5,
        fully_specified=True,
        foundational=True,
        blocks_count=3,
        blocked_by_count=1,
    )
    assert score_candidate(loaded) == 20 + 60 + 30 + 25 + 30 - 20 - 10


def test_no_priority_earns_no_tier_bonus() -> None:
    assert score_candidate(Candidate(task_id="x", priority=0, estimate=0)) == 35


def test_weights_are_tunable() -> None:
    weights = ScoringWeights(floor=0, unblocked=0, per_estimate_point=0, tier_step=1)

    assert score_candidate(Candidate(task_id="1", priority=4), weights) == 1


def test_scoring_is_pure_and_order_independent() -> None:
    candidates = [make_candidate(str(i), priority=i % 5, blocks_count=i % 3, blocked_by_count=i % 2) for i in range(20)]
    expected = {c.task_id: score_candidate(c) for c in candidates}

    shuffled = list(candidates)
    random.Random(7).shuffle(shuffled)
    for candidate in shuffled:
        assert score_candidate(candidate) == expected[candidate.task_id]
    assert {item.task_id: item.score for item in rank_candidates(shuffled)} == expected


def test_rank_is_descending_and_stable_on_ties() -> None:
    candidates = [
        make_candidate("first", priority=3),
        make_candidate("top", priority=1),
        make_candidate("second", priority=3),
    ]

    ranked = rank_candidates(candidates)

    assert [item.task_id for item in ranked] == ["top", "first", "second"]


def test_rank_limit_truncates() -> None:
    candidates = [make_candidate(str(i), priority=1) for i in range(12)]

    assert len(rank_candidates(candidates, limit=9)) == 9


def test_urgent_unblocked_beats_low_blocked() -> None:
    ranked = rank_candidates(
        [
            Candidate(task_id="1", priority=1, blocked_by_count=0),
            Candidate(task_id="2", priority=4, blocked_by_count=2),
        ]
    )

    assert [item.task_id for item in select_batch(ranked, cap=1)] == ["1"]
