from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

from taskmill.config import MillConfig
from taskmill.errors import ExternalCallError, TaskNotFoundError
from taskmill.runtime.domain.models import Candidate, ReviewStatus, TaskDetail
from taskmill.runtime.events.bus import EventBus
from taskmill.runtime.orchestrator.interfaces import CandidateFilter, SelectionReply
from taskmill.runtime.orchestrator.service import MillService
from taskmill.runtime.orchestrator.worker_launcher import LaunchRequest, WorkerHandle
from taskmill.runtime.storage.container import Container


def make_candidate(
    task_id: str,
    *,
    title: Optional[str] = None,
    priority: int = 2,
    estimate: Optional[float] = 1,
    domain: Optional[str] = None,
    **extra: Any,
) -> Candidate:
    state = extra.pop("state", "Backlog")
    return Candidate(
        task_id=task_id,
        title=title or f"Task {task_id}",
        priority=priority,
        estimate=estimate,
        conflict_domain=domain,
        state=state,
        **extra,
    )


class FakeTaskSource:
    def __init__(self, candidates: Optional[list[Candidate]] = None) -> None:
        self.candidates: list[Candidate] = list(candidates or [])
        self.details: dict[str, TaskDetail] = {}
        self.statuses: dict[str, list[str]] = {}
        self.list_calls = 0
        self.filters: list[CandidateFilter] = []

    def list_candidates(self, filter: CandidateFilter) -> list[Candidate]:
        self.list_calls += 1
        self.filters.append(filter)
        return list(self.candidates)

    def get_task(self, task_id: str) -> TaskDetail:
        if task_id in self.details:
            return self.details[task_id]
        for candidate in self.candidates:
            if candidate.task_id == task_id:
                return TaskDetail(
                    task_id=task_id,
                    title=candidate.title,
                    description=candidate.description,
                    labels=list(candidate.tags),
                )
        raise TaskNotFoundError(task_id)

    def set_task_status(self, task_id: str, status: str) -> None:
        self.statuses.setdefault(task_id, []).append(status)

    def last_status(self, task_id: str) -> Optional[str]:
        history = self.statuses.get(task_id)
        return history[-1] if history else None


class FakeReviewSystem:
    def __init__(self) -> None:
        self.requests: dict[str, str] = {}
        self.statuses: dict[str, ReviewStatus] = {}
        self.broken: set[str] = set()

    def find_open_request_for_branch(self, branch: str) -> Optional[str]:
        return self.requests.get(branch)

    def get_request_status(self, ref: str) -> ReviewStatus:
        if ref in self.broken:
            raise ExternalCallError(f"review backend unavailable for {ref}")
        return self.statuses.get(ref, ReviewStatus(state="OPEN", target_ref="main"))


class FakeVersionControl:
    def __init__(self) -> None:
        self.branches: set[str] = set()
        self.created: list[tuple[str, Path, str]] = []
        self.removed: list[Path] = []
        self.deleted: list[str] = []
        self.fetched: list[str] = []
        self.prunes = 0

    def create_workspace(self, branch: str, path: Path, from_ref: str) -> Path:
        path.mkdir(parents=True, exist_ok=True)
        self.branches.add(branch)
        self.created.append((branch, path, from_ref))
        return path

    def remove_workspace(self, path: Path) -> None:
        if path.exists():
            shutil.rmtree(path)
            self.removed.append(path)

    def branch_exists(self, name: str) -> bool:
        return name in self.branches

    def delete_branch(self, name: str) -> None:
        self.branches.discard(name)
        self.deleted.append(name)

    def fetch(self, ref: str) -> None:
        self.fetched.append(ref)

    def prune_worktrees(self) -> None:
        self.prunes += 1


class FakeLauncher:
    def __init__(self) -> None:
        self.requests: list[LaunchRequest] = []
        self.alive: set[str] = set()
        self.stopped: list[str] = []
        self.failing: set[str] = set()
        self.session = True

    def launch(self, request: LaunchRequest) -> WorkerHandle:
        if request.task_id in self.failing:
            raise RuntimeError(f"cannot start worker for {request.task_id}")
        self.requests.append(request)
        self.alive.add(request.task_id)
        return WorkerHandle(task_id=request.task_id, pid=len(self.requests))

    def is_alive(self, handle: WorkerHandle) -> bool:
        return handle.task_id in self.alive

    def stop(self, handle: WorkerHandle) -> None:
        self.alive.discard(handle.task_id)
        self.stopped.append(handle.task_id)

    def session_alive(self) -> bool:
        return self.session

    def request_for(self, task_id: str) -> LaunchRequest:
        return next(request for request in self.requests if request.task_id == task_id)


class FakePrompt:
    def __init__(self, *replies: SelectionReply) -> None:
        self.replies = list(replies)
        self.shown: list[list[str]] = []

    def ask(self, ranked, free_slots, timeout) -> SelectionReply:  # noqa: ANN001
        self.shown.append([item.task_id for item in ranked])
        if not self.replies:
            return SelectionReply(kind="none")
        return self.replies.pop(0)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@dataclass
class Harness:
    service: MillService
    container: Container
    tasks: FakeTaskSource
    review: FakeReviewSystem
    vcs: FakeVersionControl
    launcher: FakeLauncher
    prompt: FakePrompt
    clock: FakeClock
    hooks: list[tuple[str, str]] = field(default_factory=list)

    def record(self, task_id: str):  # noqa: ANN201
        return self.container.ledger.get(task_id)

    def branch_of(self, task_id: str) -> str:
        record = self.record(task_id)
        assert record is not None
        return record.branch


@pytest.fixture
def repo_dir(tmp_path: Path) -> Path:
    repo = tmp_path / "repo"
    repo.mkdir()
    return repo


@pytest.fixture
def mill_factory(tmp_path: Path, repo_dir: Path) -> Callable[..., Harness]:
    def _build(
        candidates: Optional[list[Candidate]] = None,
        *,
        replies: tuple[SelectionReply, ...] = (),
        post_merge: Optional[Callable[..., None]] = None,
        **overrides: Any,
    ) -> Harness:
        settings: dict[str, Any] = {
            "poll_seconds": 0.01,
            "retry_delay": 0,
            "remote": "",
            "worktree_root": str(tmp_path / "worktrees"),
            "require_confirm": False,
        }
        settings.update(overrides)
        config = MillConfig(**settings)
        container = Container(repo_dir, config)
        bus = EventBus(container.events, config.session)
        tasks = FakeTaskSource(candidates)
        review = FakeReviewSystem()
        vcs = FakeVersionControl()
        launcher = FakeLauncher()
        prompt = FakePrompt(*replies)
        clock = FakeClock()
        hooks: list[tuple[str, str]] = []

        def _record_hook(record, ref) -> None:  # noqa: ANN001
            hooks.append((record.task_id, ref))

        service = MillService(
            container,
            bus,
            tasks=tasks,
            review=review,
            vcs=vcs,
            launcher=launcher,
            prompt=prompt,
            post_merge=post_merge or _record_hook,
            clock=clock,
            sleep=lambda _seconds: None,
        )
        return Harness(service, container, tasks, review, vcs, launcher, prompt, clock, hooks)

    return _build
