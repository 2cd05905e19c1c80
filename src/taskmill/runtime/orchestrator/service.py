"""Reconciliation loop: advance in-flight tasks, then fill free slots."""

from __future__ import annotations

import logging
import signal
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional, Sequence, TypeVar

from ...errors import MillError
from ..domain.models import (
    Candidate,
    Phase,
    TaskDetail,
    TaskRecord,
)
from ..events.bus import EventBus
from ..storage.container import Container
from .interfaces import (
    REVIEW_CLOSED,
    REVIEW_MERGED,
    STATUS_BACKLOG,
    STATUS_DONE,
    STATUS_IN_PROGRESS,
    STATUS_IN_REVIEW,
    CandidateFilter,
    PostMergeHook,
    ReviewSystem,
    SelectionPrompt,
    TaskSource,
    VersionControl,
)
from .recovery import PruneReport, StalePruner
from .reservations import ReservationAllocator, needs_reservation
from .retry import RetryPolicy, call_with_retry
from .scoring import ScoredCandidate, rank_candidates
from .selector import select_batch, validate_manual_selection
from .state_machine import ensure_transition, evaluate_merge_gate, initial_phase, plan_approved
from .ticker import Ticker
from .worker_launcher import LaunchRequest, WorkerHandle, WorkerLauncher

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class TickReport:
    """What one reconciliation tick did."""
    transitions: list[tuple[str, str]] = field(default_factory=list)
    launched: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    exit_reason: Optional[str] = None

    @property
    def should_exit(self) -> bool:
        return self.exit_reason is not None


class MillService:
    """Single-threaded controller that keeps in-flight work moving.

    Each :meth:`tick_once` first advances every active ledger record against
    the review and version-control systems, then evaluates exit conditions,
    and finally fills free slots from the task source. :meth:`run` wraps
    ticks in startup recovery, interrupt handling, and a cancellable timer.
    """

    def __init__(
        self,
        container: Container,
        bus: EventBus,
        *,
        tasks: TaskSource,
        review: ReviewSystem,
        vcs: VersionControl,
        launcher: WorkerLauncher,
        prompt: Optional[SelectionPrompt] = None,
        post_merge: Optional[PostMergeHook] = None,
        ticker: Optional[Ticker] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the MillService.

        Args:
            container (Container): State files and validated configuration.
            bus (EventBus): Event sink for lifecycle transitions.
            tasks (TaskSource): Tracker candidates come from and statuses go to.
            review (ReviewSystem): Review system workers open requests on.
            vcs (VersionControl): Workspace and branch operations.
            launcher (WorkerLauncher): Starts and stops workers.
            prompt (Optional[SelectionPrompt]): Chooser used in manual selection mode.
            post_merge (Optional[PostMergeHook]): Called after a merge when ``auto_eval`` is on.
            ticker (Optional[Ticker]): Interval timer; one is built from ``poll_seconds`` when omitted.
            clock (Callable[[], float]): Monotonic clock for the candidate cache.
            sleep (Callable[[float], None]): Sleep used between retry attempts.
        """
        self.container = container
        self.bus = bus
        self.config = container.config
        self.tasks = tasks
        self.review = review
        self.vcs = vcs
        self.launcher = launcher
        self.prompt = prompt
        self.post_merge = post_merge
        self.ticker = ticker or Ticker(self.config.poll_seconds)
        self._clock = clock
        self._sleep = sleep
        self._retry = RetryPolicy.from_config(self.config)
        self._allocator = ReservationAllocator(
            container.repo_dir / self.config.reservations.directory,
            pattern=self.config.reservations.pattern,
        )
        self._handles: dict[str, WorkerHandle] = {}
        self._outcomes: dict[str, str] = {}
        self._quit_requested = False
        self._candidate_cache: Optional[tuple[float, list[Candidate]]] = None
        self._lock = threading.RLock()

    # -- external calls ---------------------------------------------------

    def _call(self, what: str, fn: Callable[..., T], *args: Any) -> T:
        return call_with_retry(fn, *args, policy=self._retry, what=what, sleep=self._sleep)

    def _set_tracker(self, task_id: str, status: str) -> None:
        """Best-effort tracker update; the ledger stays the source of truth."""
        if self.config.dry_run:
            logger.info("[DRY-RUN] Would set %s to %s", task_id, status)
            return
        try:
            self._call(f"set {task_id} to {status}", self.tasks.set_task_status, task_id, status)
        except MillError as exc:
            logger.error("Could not move %s to %s in the tracker: %s", task_id, status, exc)

    def _stop_worker(self, task_id: str) -> None:
        handle = self._handles.pop(task_id, None)
        if handle is None:
            return
        try:
            self.launcher.stop(handle)
        except Exception:
            logger.exception("Failed to stop worker for %s", task_id)

    def _emit(self, event_type: str, task_id: str, **payload: Any) -> None:
        self.bus.emit(channel="tasks", event_type=event_type, entity_id=task_id, payload=payload)

    def _transition(self, record: TaskRecord, target: Phase, **fields: Any) -> Optional[TaskRecord]:
        ensure_transition(record.phase, target)
        fields.setdefault("status", target)
        updated = self.container.ledger.set_phase(record.task_id, target, **fields)
        if updated is None:
            logger.warning("%s left the ledger before moving to %s", record.task_id, target)
            return None
        self._emit("task.phase", record.task_id, previous=record.phase, phase=target)
        return updated

    # -- per-task reconciliation -----------------------------------------

    def _advance(self, record: TaskRecord, report: TickReport) -> None:
        """Apply at most one transition chain for ``record`` this tick."""
        start = record.phase
        current: Optional[TaskRecord] = record
        if current.phase == "selected":
            current = self._transition(current, initial_phase(self.config.planning_mode))
        if current is not None and current.phase == "planning":
            current = self._advance_planning(current)
        if current is not None and current.phase == "executing":
            current = self._advance_executing(current)
        if current is not None and current.phase == "awaiting_review":
            current = self._advance_review(current)
        if current is not None and current.phase == "merged":
            current = self._advance_merged(current)
        end = current.phase if current is not None else self._final_phase(record.task_id)
        if end != start:
            report.transitions.append((record.task_id, end))

    def _final_phase(self, task_id: str) -> str:
        return self._outcomes.get(task_id, "removed")

    def _advance_planning(self, record: TaskRecord) -> Optional[TaskRecord]:
        if not plan_approved(record):
            return record
        logger.info("%s: plan approved, now executing", record.task_id)
        return self._transition(record, "executing")

    def _advance_executing(self, record: TaskRecord) -> Optional[TaskRecord]:
        ref = self._call(f"review lookup for {record.branch}", self.review.find_open_request_for_branch, record.branch)
        if not ref:
            return record
        updated = self._transition(record, "awaiting_review", review_ref=str(ref), status="in_review")
        self._set_tracker(record.task_id, STATUS_IN_REVIEW)
        logger.info("%s: review request %s opened (In Review)", record.task_id, ref)
        return updated

    def _advance_review(self, record: TaskRecord) -> Optional[TaskRecord]:
        if not record.review_ref:
            logger.warning("%s is awaiting review without a review reference", record.task_id)
            return record
        status = self._call(f"review status for {record.task_id}", self.review.get_request_status, record.review_ref)
        state = str(status.state or "").upper()
        if state == REVIEW_CLOSED:
            self._abandon(record)
            return None
        gate = evaluate_merge_gate(
            status,
            base_branch=self.config.base_branch,
            allow_missing_checks=self.config.allow_missing_checks,
        )
        if not gate.passed:
            if state == REVIEW_MERGED:
                logger.warning("%s: review %s merge validation failed: %s", record.task_id, record.review_ref, gate.reason)
            else:
                logger.debug("%s: waiting on review %s (%s)", record.task_id, record.review_ref, gate.reason)
            return record
        return self._on_merged(record)

    def _on_merged(self, record: TaskRecord) -> Optional[TaskRecord]:
        ref = record.review_ref or ""
        logger.info("%s: review %s merged", record.task_id, ref)
        updated = self._transition(record, "merged", status="merged")
        self._set_tracker(record.task_id, STATUS_DONE)
        self._emit("task.merged", record.task_id, review_ref=ref)
        if self.config.auto_eval and self.post_merge is not None:
            try:
                self.post_merge(updated or record, ref)
            except Exception:
                logger.exception("Post-merge hook failed for %s", record.task_id)
        if updated is None:
            return None
        return self._advance_merged(updated)

    def _advance_merged(self, record: TaskRecord) -> Optional[TaskRecord]:
        if self.config.require_confirm:
            handle = self._handles.get(record.task_id)
            if handle is not None and self.launcher.is_alive(handle):
                logger.debug("%s: merged, waiting for its worker to be closed", record.task_id)
                return record
        self.cleanup(record.task_id)
        return None

    def _abandon(self, record: TaskRecord) -> None:
        ensure_transition(record.phase, "abandoned")
        logger.warning("%s: review %s closed without merge", record.task_id, record.review_ref)
        self._set_tracker(record.task_id, STATUS_BACKLOG)
        self._stop_worker(record.task_id)
        self.container.ledger.remove(record.task_id)
        self._outcomes[record.task_id] = "abandoned"
        self._emit("task.abandoned", record.task_id, review_ref=record.review_ref, worktree=record.worktree)

    def _revert(self, task_id: str, reason: str) -> bool:
        """Roll a task back to the tracker backlog, keeping its workspace and branch."""
        record = self.container.ledger.get(task_id)
        self._stop_worker(task_id)
        if record is None:
            return False
        ensure_transition(record.phase, "reverted")
        self._set_tracker(task_id, STATUS_BACKLOG)
        self.container.ledger.remove(task_id)
        self._emit("task.reverted", task_id, reason=reason, worktree=record.worktree, branch=record.branch)
        logger.info("%s: reverted (%s); workspace kept at %s", task_id, reason, record.worktree)
        return True

    # -- public operations ------------------------------------------------

    def cleanup(self, task_id: str) -> bool:
        """Release a merged task's worker, workspace, and branch, then drop its record.

        Calling it again, or on an unknown id, is a no-op.

        Returns:
            bool: ``True`` when something was cleaned up.

        Raises:
            InvalidTransitionError: If the task exists but has not merged yet.
        """
        with self._lock:
            record = self.container.ledger.get(task_id)
            if record is None:
                return False
            ensure_transition(record.phase, "cleaned")
            self._stop_worker(task_id)
            self._call(f"remove worktree for {task_id}", self.vcs.remove_workspace, Path(record.worktree))
            if self._call(f"branch check for {task_id}", self.vcs.branch_exists, record.branch):
                self._call(f"delete branch {record.branch}", self.vcs.delete_branch, record.branch)
            self._call("worktree prune", self.vcs.prune_worktrees)
            self.container.ledger.remove(task_id)
            self._outcomes[task_id] = "cleaned"
            self._emit("task.cleaned", task_id, branch=record.branch)
            logger.info("%s: complete, worktree and branch released", task_id)
            return True

    def interrupt(self) -> list[str]:
        """Revert every active task after a user interrupt.

        Merged tasks are already Done in the tracker. Their worker is stopped
        but the record stays in the ledger so the next startup prune releases
        the workspace and branch.

        Returns:
            list[str]: Task ids that were reverted.
        """
        reverted: list[str] = []
        with self._lock:
            for record in self.container.ledger.load().active():
                if record.phase == "merged":
                    self._stop_worker(record.task_id)
                    logger.info("%s: merged, left for cleanup on the next start", record.task_id)
                    continue
                try:
                    if self._revert(record.task_id, "interrupted"):
                        reverted.append(record.task_id)
                except Exception:
                    logger.exception("Failed to revert %s", record.task_id)
        return reverted

    def request_stop(self) -> None:
        """Ask the loop to exit once active work has drained."""
        self.container.request_stop()
        logger.info("Stop requested; finishing active task(s) before exiting")

    def recover(self) -> PruneReport:
        """Prune ledger entries left behind by a previous run."""
        pruner = StalePruner(
            self.container.ledger,
            self.vcs,
            self.review,
            self.launcher,
            retry=self._retry,
            bus=self.bus,
            sleep=self._sleep,
        )
        return pruner.prune()

    def status(self) -> dict[str, Any]:
        """Build a snapshot of the run for status displays."""
        document = self.container.ledger.load()
        active = document.active()
        return {
            "session": document.session,
            "started_at": document.started_at,
            "max_parallel": self.config.max_parallel,
            "active": [record.to_dict() for record in active],
            "free_slots": max(self.config.max_parallel - len(active), 0),
            "stop_requested": self.container.stop_requested(),
            "quit_requested": self._quit_requested,
            "finished": dict(self._outcomes),
            "dry_run": self.config.dry_run,
        }

    # -- scheduling -------------------------------------------------------

    def _fetch_candidates(self) -> Optional[list[Candidate]]:
        """Return cached or fresh candidates; ``None`` when the source is unreachable."""
        now = self._clock()
        if self._candidate_cache is not None:
            fetched_at, cached = self._candidate_cache
            if now - fetched_at < self.config.backlog_cache_ttl:
                return list(cached)
        query = CandidateFilter(project=self.config.project)
        try:
            fetched = self._call("candidate fetch", self.tasks.list_candidates, query)
        except MillError:
            return None
        offerable = {state.lower() for state in query.states}
        candidates = [c for c in fetched if c.state.strip().lower() in offerable]
        self._candidate_cache = (now, candidates)
        return list(candidates)

    def invalidate_candidates(self) -> None:
        self._candidate_cache = None

    def _choose(
        self,
        ranked: list[ScoredCandidate],
        *,
        free: int,
        active_domains: set[str],
        tracked: set[str],
    ) -> list[ScoredCandidate]:
        if self.config.selection_mode == "auto" or self.prompt is None:
            return select_batch(ranked, cap=free, active_domains=active_domains, tracked_ids=tracked)
        shown = ranked[: self.config.show_limit]
        reply = self.prompt.ask(shown, free, self.config.poll_seconds)
        if reply.kind == "quit":
            self._quit_requested = True
            logger.info("Quit requested; no new tasks will be offered")
            return []
        if reply.kind != "picks":
            return []
        return validate_manual_selection(
            shown, reply.picks, cap=free, active_domains=active_domains, tracked_ids=tracked
        )

    def launch_batch(self, selected: Sequence[ScoredCandidate]) -> list[str]:
        """Reserve, prepare, record, and launch a batch of selected candidates.

        Reservations are allocated for the whole batch from one snapshot before
        any worker starts. A failure while launching one task reverts that task
        only.

        Args:
            selected (Sequence[ScoredCandidate]): Picks in selection order.

        Returns:
            list[str]: Ids of the tasks whose workers started.
        """
        if not selected:
            return []
        if self.config.remote:
            try:
                self._call(f"fetch {self.config.base_branch}", self.vcs.fetch, self.config.base_branch)
            except MillError:
                logger.warning("Launching from possibly stale %s", self.config.base_ref)

        details: dict[str, TaskDetail] = {}
        ready: list[ScoredCandidate] = []
        for item in selected:
            try:
                details[item.task_id] = self._call(f"details for {item.task_id}", self.tasks.get_task, item.task_id)
            except MillError:
                logger.error("Skipping %s: task details unavailable", item.task_id)
                continue
            ready.append(item)

        reservations: dict[str, int] = {}
        if self.config.reservations.enabled:
            reservations = self._allocator.allocate(
                ready,
                lambda item: needs_reservation(item.candidate, details.get(item.task_id)),
                key=lambda item: item.task_id,
                held=self.container.ledger.load().reservations(),
            )

        launched: list[str] = []
        for item in ready:
            task_id = item.task_id
            try:
                self._launch_one(item.candidate, details[task_id], reservations.get(task_id))
            except Exception:
                logger.exception("Failed to launch %s, reverting it", task_id)
                try:
                    self._revert(task_id, "launch failed")
                except Exception:
                    logger.exception("Failed to revert %s", task_id)
                self._outcomes[task_id] = "reverted"
                continue
            launched.append(task_id)
        self.invalidate_candidates()
        return launched

    def _launch_one(self, candidate: Candidate, detail: TaskDetail, reservation: Optional[int]) -> None:
        slug = candidate.slug
        branch = f"task/{slug}"
        worktree = self.container.worktree_root / slug
        title = detail.title or candidate.title

        self._call(f"workspace for {candidate.task_id}", self.vcs.create_workspace, branch, worktree, self.config.base_ref)
        record = TaskRecord(
            task_id=candidate.task_id,
            slug=slug,
            branch=branch,
            worktree=str(worktree),
            phase="selected",
            title=title,
            reservation=reservation,
            conflict_domain=candidate.conflict_domain,
            status="selected",
        )
        self.container.ledger.put(record)
        self._set_tracker(candidate.task_id, STATUS_IN_PROGRESS)

        planning = self.config.planning_mode == "interactive"
        request = LaunchRequest(
            task_id=candidate.task_id,
            title=title,
            slug=slug,
            branch=branch,
            base_branch=self.config.base_branch,
            workdir=worktree,
            description=detail.description or candidate.description,
            planning=planning,
            reservation=reservation,
            labels=tuple(detail.labels or candidate.tags),
        )
        self._handles[candidate.task_id] = self.launcher.launch(request)
        self._transition(record, initial_phase(self.config.planning_mode))
        self._emit("task.launched", candidate.task_id, branch=branch, worktree=str(worktree), reservation=reservation)
        logger.info("%s: launched on %s (%s)", candidate.task_id, branch, title)

    # -- loop -------------------------------------------------------------

    def tick_once(self) -> TickReport:
        """Run one reconciliation pass.

        Returns:
            TickReport: Transitions applied, tasks launched, and the exit reason
            when the loop should stop.
        """
        report = TickReport()
        with self._lock:
            for record in self.container.ledger.load().active():
                try:
                    self._advance(record, report)
                except Exception:
                    logger.exception("Error reconciling %s; will retry next tick", record.task_id)
                    report.failed.append(record.task_id)

            document = self.container.ledger.load()
            active = document.active()

            if self.container.stop_requested():
                if not active:
                    self.container.clear_stop()
                    logger.info("Stop signal detected and all tasks complete")
                    report.exit_reason = "stop requested"
                else:
                    logger.info("Stop signal detected, finishing %d active task(s)", len(active))
                return report

            if self._quit_requested:
                if not active:
                    report.exit_reason = "quit requested"
                return report

            free = self.config.max_parallel - len(active)
            if free <= 0:
                return report

            candidates = self._fetch_candidates()
            if candidates is None:
                return report
            tracked = set(document.tasks) | set(self._outcomes)
            ranked = [item for item in rank_candidates(candidates, self.config.scoring) if item.task_id not in tracked]
            if not ranked:
                if not active and not self.config.wait_when_empty:
                    logger.info("No candidates left and nothing active")
                    report.exit_reason = "backlog empty"
                else:
                    logger.debug("No new candidates; %d task(s) active", len(active))
                    self.invalidate_candidates()
                return report

            selected = self._choose(ranked, free=free, active_domains=document.claimed_domains(), tracked=tracked)
            if self._quit_requested and not active:
                report.exit_reason = "quit requested"
                return report
            if selected:
                logger.info("%d slot(s) free, launching %s", free, ", ".join(item.task_id for item in selected))
                report.launched = self.launch_batch(selected)
        return report

    def _install_signal_handlers(self) -> dict[int, Any]:
        if threading.current_thread() is not threading.main_thread():
            return {}

        def _raise_interrupt(signum: int, frame: Any) -> None:
            raise KeyboardInterrupt()

        return {signal.SIGTERM: signal.signal(signal.SIGTERM, _raise_interrupt)}

    def run(self) -> str:
        """Recover, then tick until an exit condition holds.

        A ``KeyboardInterrupt`` (or SIGTERM) reverts active tasks and returns
        normally.

        Returns:
            str: Why the loop stopped.
        """
        self.container.ledger.ensure()
        self.recover()
        logger.info(
            "Monitoring tasks: max parallel %d, checking every %ss", self.config.max_parallel, self.config.poll_seconds
        )
        self.bus.emit(channel="system", event_type="mill.started", entity_id=self.config.session, payload={})
        previous = self._install_signal_handlers()
        reason = "cancelled"
        try:
            while not self.ticker.cancelled:
                report = self.tick_once()
                if report.exit_reason:
                    reason = report.exit_reason
                    break
                if not self.ticker.wait():
                    break
        except KeyboardInterrupt:
            logger.warning("Interrupted, reverting active tasks")
            reverted = self.interrupt()
            logger.info("Reverted %d task(s); worktrees kept for resumption", len(reverted))
            reason = "interrupted"
        finally:
            for signum, handler in previous.items():
                signal.signal(signum, handler)
        self.bus.emit(channel="system", event_type="mill.stopped", entity_id=self.config.session, payload={"reason": reason})
        logger.info("Mill stopped: %s", reason)
        return reason
