"""Per-task phase transitions and the merge validation gate."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from ...errors import InvalidTransitionError
from ..domain.models import Phase, ReviewStatus, TaskRecord
from .interfaces import REVIEW_MERGED

PHASE_TRANSITIONS: dict[str, frozenset[str]] = {
    "selected": frozenset({"planning", "executing", "reverted"}),
    "planning": frozenset({"executing", "reverted"}),
    "executing": frozenset({"awaiting_review", "reverted"}),
    "awaiting_review": frozenset({"merged", "abandoned", "reverted"}),
    "merged": frozenset({"cleaned"}),
    "cleaned": frozenset(),
    "abandoned": frozenset(),
    "reverted": frozenset(),
}

PASSING_CONCLUSIONS = frozenset({"SUCCESS", "NEUTRAL", "SKIPPED"})
FAILING_CONCLUSIONS = frozenset({"FAILURE", "ERROR", "CANCELLED", "TIMED_OUT", "ACTION_REQUIRED", "STARTUP_FAILURE"})
PENDING_CONCLUSIONS = frozenset({"", "PENDING", "QUEUED", "IN_PROGRESS", "WAITING", "EXPECTED"})

PLAN_APPROVED_MARKER = ".plan-approved"


def can_transition(current: Phase | str, target: Phase | str) -> bool:
    return target in PHASE_TRANSITIONS.get(str(current), frozenset())


def ensure_transition(current: Phase | str, target: Phase | str) -> None:
    """Raise when ``current -> target`` is not a legal edge."""
    if not can_transition(current, target):
        raise InvalidTransitionError(f"Illegal phase transition {current} -> {target}")


def initial_phase(planning_mode: str) -> Phase:
    """First working phase after selection."""
    return "planning" if planning_mode == "interactive" else "executing"


def plan_marker_path(record: TaskRecord) -> Path:
    return Path(record.worktree) / "features" / record.slug / PLAN_APPROVED_MARKER


def plan_approved(record: TaskRecord) -> bool:
    """Return whether the worker's plan has been approved for a planning task."""
    return plan_marker_path(record).exists()


@dataclass(frozen=True)
class GateResult:
    """Outcome of the merge gate; ``reason`` explains a refusal."""
    passed: bool
    reason: str = ""


def evaluate_merge_gate(status: ReviewStatus, *, base_branch: str, allow_missing_checks: bool = True) -> GateResult:
    """Decide whether a review request counts as merged for the mill.

    All of the following must hold: the request is merged, it targets
    ``base_branch``, and when checks exist none failed and none is pending.
    A conclusion that is neither passing nor pending counts as failing, so
    unfamiliar values such as ``ERROR`` or ``STALE`` hold the task.
    Requests without any checks pass only if ``allow_missing_checks`` is set.

    Args:
        status (ReviewStatus): Current review request status.
        base_branch (str): Branch merges are expected to land on.
        allow_missing_checks (bool): Whether a request with no checks may pass.

    Returns:
        GateResult: ``passed`` plus a reason when it did not.
    """
    state = str(status.state or "").upper()
    if state != REVIEW_MERGED:
        return GateResult(False, f"state is {state or 'unknown'} (not {REVIEW_MERGED})")
    if status.target_ref != base_branch:
        return GateResult(False, f"merged to wrong base: {status.target_ref} (expected: {base_branch})")
    if not status.checks:
        if allow_missing_checks:
            return GateResult(True)
        return GateResult(False, "no checks reported")
    conclusions = [str(check.conclusion or "").upper() for check in status.checks]
    if any(_is_failing(conclusion) for conclusion in conclusions):
        return GateResult(False, "failing checks")
    if any(conclusion in PENDING_CONCLUSIONS for conclusion in conclusions):
        return GateResult(False, "checks still pending")
    return GateResult(True)


def _is_failing(conclusion: str) -> bool:
    if conclusion in FAILING_CONCLUSIONS:
        return True
    return conclusion not in PASSING_CONCLUSIONS and conclusion not in PENDING_CONCLUSIONS
