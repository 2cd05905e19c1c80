"""Scheduling, reconciliation, and recovery for in-flight tasks."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from ...config import MillConfig, check_required_tools
from ...logging_setup import configure_logging
from ..events.bus import EventBus
from ..storage.container import Container
from .interfaces import (
    CandidateFilter,
    PostMergeHook,
    ReviewSystem,
    SelectionPrompt,
    SelectionReply,
    TaskSource,
    VersionControl,
)
from .recovery import PruneReport, StalePruner
from .reservations import ReservationAllocator, needs_reservation
from .retry import RetryPolicy, call_with_retry
from .scoring import ScoredCandidate, rank_candidates, score_candidate
from .selector import select_batch, validate_manual_selection
from .service import MillService, TickReport
from .state_machine import PHASE_TRANSITIONS, GateResult, ensure_transition, evaluate_merge_gate
from .ticker import Ticker
from .worker_launcher import LaunchRequest, SubprocessWorkerLauncher, WorkerHandle, WorkerLauncher
from .worktree_manager import GitVersionControl


def create_mill(
    repo_dir: Path,
    config: Optional[MillConfig] = None,
    *,
    tasks: Optional[TaskSource] = None,
    review: Optional[ReviewSystem] = None,
    vcs: Optional[VersionControl] = None,
    launcher: Optional[WorkerLauncher] = None,
    prompt: Optional[SelectionPrompt] = None,
    post_merge: Optional[PostMergeHook] = None,
) -> MillService:
    """Build a mill for ``repo_dir``, filling unspecified collaborators with defaults.

    Args:
        repo_dir (Path): Repository the mill operates on.
        config (Optional[MillConfig]): Validated configuration; defaults when omitted.
        tasks (Optional[TaskSource]): Task source; the YAML backlog under the state root by default.
        review (Optional[ReviewSystem]): Review system; the ``gh`` CLI by default.
        vcs (Optional[VersionControl]): Version control; git worktrees by default.
        launcher (Optional[WorkerLauncher]): Worker launcher; a subprocess per task by default.
        prompt (Optional[SelectionPrompt]): Manual-mode chooser; the console by default.
        post_merge (Optional[PostMergeHook]): Hook run after merges when ``auto_eval`` is on.

    Returns:
        MillService: Service ready for :meth:`MillService.run` or manual ticks.

    Raises:
        ConfigError: If a default collaborator needs a tool that is not on ``PATH``.
    """
    container = Container(repo_dir, config)
    cfg = container.config
    configure_logging(cfg.log_level)
    tools = tuple(name for name, wanted in (("git", vcs is None), ("gh", review is None)) if wanted)
    check_required_tools(cfg, tools=tools, agent=launcher is None and not cfg.dry_run)
    bus = EventBus(container.events, cfg.session)
    if tasks is None:
        from ..integrations.file_tasks import FileTaskSource

        tasks = FileTaskSource(container.backlog_path, container.state_root / "backlog.lock")
    if review is None:
        from ..integrations.github_review import GitHubReviewSystem

        review = GitHubReviewSystem(container.repo_dir)
    if vcs is None:
        vcs = GitVersionControl(container.repo_dir, remote=cfg.remote, dry_run=cfg.dry_run)
    if launcher is None:
        launcher = SubprocessWorkerLauncher(cfg.agent_command, log_dir=container.state_root / "logs", dry_run=cfg.dry_run)
    if prompt is None and cfg.selection_mode == "manual":
        from .prompt import ConsoleSelectionPrompt

        prompt = ConsoleSelectionPrompt()
    return MillService(
        container,
        bus,
        tasks=tasks,
        review=review,
        vcs=vcs,
        launcher=launcher,
        prompt=prompt,
        post_merge=post_merge,
    )


__all__ = [
    "CandidateFilter",
    "GateResult",
    "GitVersionControl",
    "LaunchRequest",
    "MillService",
    "PHASE_TRANSITIONS",
    "PostMergeHook",
    "PruneReport",
    "ReservationAllocator",
    "RetryPolicy",
    "ReviewSystem",
    "ScoredCandidate",
    "SelectionPrompt",
    "SelectionReply",
    "StalePruner",
    "SubprocessWorkerLauncher",
    "TaskSource",
    "TickReport",
    "Ticker",
    "VersionControl",
    "WorkerHandle",
    "WorkerLauncher",
    "call_with_retry",
    "create_mill",
    "ensure_transition",
    "evaluate_merge_gate",
    "needs_reservation",
    "rank_candidates",
    "score_candidate",
    "select_batch",
    "validate_manual_selection",
]
