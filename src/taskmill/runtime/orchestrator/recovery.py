"""Startup reconciliation of a possibly stale ledger against external state."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, TypeVar

from ...errors import MillError
from ..domain.models import TaskRecord
from ..events.bus import EventBus
from ..storage.ledger import FileLedger
from .interfaces import REVIEW_CLOSED, REVIEW_MERGED, ReviewSystem, VersionControl
from .retry import RetryPolicy, call_with_retry
from .worker_launcher import WorkerLauncher

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class PruneReport:
    """What a prune pass did, keyed by task id.

    ``full`` entries had their workspace (and branch) released; ``orphaned``
    entries only lost their ledger record.
    """
    full: dict[str, str] = field(default_factory=dict)
    orphaned: dict[str, str] = field(default_factory=dict)
    kept: list[str] = field(default_factory=list)

    @property
    def pruned(self) -> list[str]:
        return [*self.full, *self.orphaned]


class StalePruner:
    """Remove ledger entries that no longer correspond to real in-flight work.

    For each entry, in order: a missing branch or a merged/closed review request
    triggers a full cleanup; otherwise, if no hosting session is alive, only the
    ledger entry is dropped so the workspace and branch can be resumed by hand.
    """

    def __init__(
        self,
        ledger: FileLedger,
        vcs: VersionControl,
        review: ReviewSystem,
        launcher: WorkerLauncher,
        *,
        retry: Optional[RetryPolicy] = None,
        bus: Optional[EventBus] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._ledger = ledger
        self._vcs = vcs
        self._review = review
        self._launcher = launcher
        self._retry = retry or RetryPolicy()
        self._bus = bus
        self._sleep = sleep

    def _call(self, fn: Callable[..., T], *args: object, what: str) -> T:
        return call_with_retry(fn, *args, policy=self._retry, what=what, sleep=self._sleep)

    def _review_state(self, record: TaskRecord) -> str:
        if not record.review_ref:
            return ""
        try:
            status = self._call(
                self._review.get_request_status,
                record.review_ref,
                what=f"review status for {record.task_id}",
            )
        except MillError:
            # Unknown state falls through to the session check.
            return ""
        return str(status.state or "").upper()

    def _classify(self, record: TaskRecord, session_alive: bool) -> tuple[Optional[str], bool]:
        """Return ``(reason, full_cleanup)``; ``reason`` is ``None`` to keep the entry."""
        if not self._call(self._vcs.branch_exists, record.branch, what=f"branch check for {record.task_id}"):
            return "branch deleted", True
        state = self._review_state(record)
        if state == REVIEW_MERGED:
            return f"review {record.review_ref} merged", True
        if state == REVIEW_CLOSED:
            return f"review {record.review_ref} closed", True
        if not session_alive:
            return "orphaned (no active session)", False
        return None, False

    def _release(self, record: TaskRecord) -> None:
        self._call(self._vcs.remove_workspace, Path(record.worktree), what=f"workspace removal for {record.task_id}")
        if self._call(self._vcs.branch_exists, record.branch, what=f"branch check for {record.task_id}"):
            self._call(self._vcs.delete_branch, record.branch, what=f"branch deletion for {record.task_id}")

    def prune(self) -> PruneReport:
        """Run one prune pass; a second pass over its result changes nothing.

        Returns:
            PruneReport: Entries cleaned fully, entries orphaned, entries kept.
        """
        report = PruneReport()
        document = self._ledger.load()
        if not document.tasks:
            return report
        logger.info("Found %d task(s) in ledger from a previous run, checking", len(document.tasks))
        session_alive = self._launcher.session_alive()

        for record in list(document.tasks.values()):
            try:
                reason, full = self._classify(record, session_alive)
            except MillError:
                logger.exception("Could not check %s, keeping it", record.task_id)
                report.kept.append(record.task_id)
                continue
            if reason is None:
                report.kept.append(record.task_id)
                continue
            logger.info("Pruning %s (%s)", record.task_id, reason)
            if full:
                try:
                    self._release(record)
                except MillError:
                    logger.exception("Could not clean up %s, keeping it for the next run", record.task_id)
                    report.kept.append(record.task_id)
                    continue
                report.full[record.task_id] = reason
            else:
                report.orphaned[record.task_id] = reason
            self._ledger.remove(record.task_id)
            if self._bus is not None:
                self._bus.emit(
                    channel="tasks",
                    event_type="task.pruned",
                    entity_id=record.task_id,
                    payload={"reason": reason, "full_cleanup": full},
                )

        if report.full:
            try:
                self._call(self._vcs.prune_worktrees, what="worktree prune")
            except MillError:
                logger.exception("Worktree prune failed")
        if report.pruned:
            logger.info("Cleaned %d stale task(s)", len(report.pruned))
        return report
