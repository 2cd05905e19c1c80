"""Collaborator contracts consumed by the reconciliation loop."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Literal, Optional, Protocol, Sequence

from ..domain.models import OFFERABLE_TRACKER_STATES, Candidate, ReviewStatus, TaskDetail, TaskRecord
from .scoring import ScoredCandidate

# Tracker workflow states the mill writes.
STATUS_IN_PROGRESS = "In Progress"
STATUS_IN_REVIEW = "In Review"
STATUS_DONE = "Done"
STATUS_BACKLOG = "Backlog"

# Review request states reported by the review system.
REVIEW_OPEN = "OPEN"
REVIEW_MERGED = "MERGED"
REVIEW_CLOSED = "CLOSED"


@dataclass(frozen=True)
class CandidateFilter:
    """Narrows the tracker query to one project and the offerable workflow states."""
    project: str = ""
    states: tuple[str, ...] = tuple(sorted(OFFERABLE_TRACKER_STATES))


class TaskSource(Protocol):
    """Task tracker the mill pulls work from and reports progress to."""
    def list_candidates(self, filter: CandidateFilter) -> list[Candidate]:
        """Return candidates in tracker order."""
        ...

    def get_task(self, task_id: str) -> TaskDetail:
        """Fetch full detail for one task."""
        ...

    def set_task_status(self, task_id: str, status: str) -> None:
        """Move a task to a tracker workflow status."""
        ...


class ReviewSystem(Protocol):
    """Code-review system holding the review requests workers open."""
    def find_open_request_for_branch(self, branch: str) -> Optional[str]:
        """Return the reference of the review request opened from ``branch``, if any."""
        ...

    def get_request_status(self, ref: str) -> ReviewStatus:
        """Return state, merge target, and checks for a review request."""
        ...


class VersionControl(Protocol):
    """Workspace and branch operations on the repository."""
    def create_workspace(self, branch: str, path: Path, from_ref: str) -> Path:
        """Create (or resume) the workspace for ``branch`` at ``path``."""
        ...

    def remove_workspace(self, path: Path) -> None:
        """Remove a workspace directory and its VCS metadata."""
        ...

    def branch_exists(self, name: str) -> bool:
        """Return whether a local branch exists."""
        ...

    def delete_branch(self, name: str) -> None:
        """Delete a local branch."""
        ...

    def fetch(self, ref: str) -> None:
        """Refresh ``ref`` from the remote."""
        ...

    def prune_worktrees(self) -> None:
        """Drop metadata for workspaces whose directories are gone."""
        ...


@dataclass(frozen=True)
class SelectionReply:
    """Answer from a selection prompt: 1-based picks, a quit request, or nothing."""
    kind: Literal["picks", "quit", "none"] = "none"
    picks: tuple[int, ...] = field(default_factory=tuple)


class SelectionPrompt(Protocol):
    """Interactive chooser used when selection is manual."""
    def ask(self, ranked: Sequence[ScoredCandidate], free_slots: int, timeout: float) -> SelectionReply:
        """Present ``ranked`` candidates and wait up to ``timeout`` seconds for a reply."""
        ...


PostMergeHook = Callable[[TaskRecord, str], None]
