from __future__ import annotations

from pathlib import Path

import pytest

from taskmill.errors import ExternalCallError
from taskmill.runtime.domain.models import ReviewStatus, TaskRecord
from taskmill.runtime.events.bus import EventBus
from taskmill.runtime.orchestrator.recovery import StalePruner
from taskmill.runtime.orchestrator.retry import RetryPolicy
from taskmill.runtime.storage.container import Container

from conftest import FakeLauncher, FakeReviewSystem, FakeVersionControl


@pytest.fixture
def env(tmp_path: Path, repo_dir: Path):  # noqa: ANN201
    container = Container(repo_dir)
    vcs = FakeVersionControl()
    review = FakeReviewSystem()
    launcher = FakeLauncher()
    pruner = StalePruner(
        container.ledger,
        vcs,
        review,
        launcher,
        retry=RetryPolicy(attempts=1, delay=0),
        bus=EventBus(container.events, container.session),
    )

    def add(task_id: str, *, branch_exists: bool = True, review_ref: str | None = None) -> TaskRecord:
        worktree = tmp_path / "worktrees" / task_id
        worktree.mkdir(parents=True)
        record = TaskRecord(
            task_id=task_id,
            slug=task_id.lower(),
            branch=f"task/{task_id.lower()}",
            worktree=str(worktree),
            phase="awaiting_review" if review_ref else "executing",
            review_ref=review_ref,
        )
        if branch_exists:
            vcs.branches.add(record.branch)
        container.ledger.put(record)
        return record

    return container, vcs, review, launcher, pruner, add


def test_deleted_branch_triggers_full_cleanup(env) -> None:  # noqa: ANN001
    container, vcs, _review, _launcher, pruner, add = env
    record = add("A", branch_exists=False)

    report = pruner.prune()

    assert report.full == {"A": "branch deleted"}
    assert not Path(record.worktree).exists()
    assert container.ledger.get("A") is None
    assert vcs.prunes == 1


@pytest.mark.parametrize("state", ["MERGED", "CLOSED"])
def test_finished_review_triggers_full_cleanup(env, state: str) -> None:  # noqa: ANN001
    container, vcs, review, _launcher, pruner, add = env
    record = add("A", review_ref="12")
    review.statuses["12"] = ReviewStatus(state=state, target_ref="main")

    report = pruner.prune()

    assert list(report.full) == ["A"]
    assert record.branch in vcs.deleted
    assert not Path(record.worktree).exists()
    assert container.ledger.get("A") is None


def test_dead_session_only_drops_ledger_entry(env) -> None:  # noqa: ANN001
    container, vcs, _review, launcher, pruner, add = env
    launcher.session = False
    record = add("A", review_ref="3")

    report = pruner.prune()

    assert report.orphaned == {"A": "orphaned (no active session)"}
    assert Path(record.worktree).exists()
    assert record.branch in vcs.branches
    assert vcs.deleted == []
    assert vcs.prunes == 0
    assert container.ledger.get("A") is None


def test_live_entries_are_kept(env) -> None:  # noqa: ANN001
    container, _vcs, _review, _launcher, pruner, add = env
    add("A", review_ref="3")
    add("B")

    report = pruner.prune()

    assert report.pruned == []
    assert report.kept == ["A", "B"]
    assert set(container.ledger.load().tasks) == {"A", "B"}


def test_unreachable_review_falls_back_to_session_check(env) -> None:  # noqa: ANN001
    container, _vcs, review, launcher, pruner, add = env
    add("A", review_ref="9")
    review.broken.add("9")

    assert pruner.prune().kept == ["A"]

    launcher.session = False
    assert list(pruner.prune().orphaned) == ["A"]
    assert container.ledger.get("A") is None


def test_crash_recovery_is_idempotent(env) -> None:  # noqa: ANN001
    container, vcs, review, launcher, pruner, add = env
    launcher.session = False
    add("GONE", branch_exists=False)
    add("DONE", review_ref="1")
    add("IDLE")
    review.statuses["1"] = ReviewStatus(state="MERGED", target_ref="main")

    first = pruner.prune()
    assert set(first.full) == {"GONE", "DONE"}
    assert set(first.orphaned) == {"IDLE"}
    assert container.ledger.load().tasks == {}

    pruned_events = [event for event in container.events.list_recent(20) if event["type"] == "task.pruned"]
    assert {event["entity_id"] for event in pruned_events} == {"GONE", "DONE", "IDLE"}

    second = pruner.prune()
    assert second.pruned == [] and second.kept == []
    assert vcs.prunes == 1


class _StuckWorkspaceVCS(FakeVersionControl):
    def __init__(self, stuck: str) -> None:
        super().__init__()
        self.stuck = stuck
        self.attempts = 0

    def remove_workspace(self, path: Path) -> None:
        if path.name == self.stuck:
            self.attempts += 1
            raise ExternalCallError(f"cannot remove {path}", stderr="Device or resource busy")
        super().remove_workspace(path)


def test_cleanup_failure_keeps_that_entry_and_prunes_the_rest(tmp_path: Path, repo_dir: Path) -> None:
    container = Container(repo_dir)
    vcs = _StuckWorkspaceVCS("A")
    pruner = StalePruner(
        container.ledger,
        vcs,
        FakeReviewSystem(),
        FakeLauncher(),
        retry=RetryPolicy(attempts=2, delay=0),
        sleep=lambda _seconds: None,
    )
    for task_id in ("A", "B"):
        worktree = tmp_path / "worktrees" / task_id
        worktree.mkdir(parents=True)
        container.ledger.put(
            TaskRecord(task_id=task_id, slug=task_id.lower(), branch=f"task/{task_id}", worktree=str(worktree))
        )

    report = pruner.prune()

    assert vcs.attempts == 2
    assert report.kept == ["A"]
    assert report.full == {"B": "branch deleted"}
    assert container.ledger.get("A") is not None
    assert (tmp_path / "worktrees" / "A").is_dir()
    assert container.ledger.get("B") is None
    assert not (tmp_path / "worktrees" / "B").exists()
    assert vcs.prunes == 1
