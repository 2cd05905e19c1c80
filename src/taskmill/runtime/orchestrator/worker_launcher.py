"""Worker launcher protocol and the default subprocess-backed launcher."""

from __future__ import annotations

import logging
import shlex
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol

from ...errors import ExternalCallError

logger = logging.getLogger(__name__)

_STOP_GRACE_SECONDS = 10.0


@dataclass(frozen=True)
class LaunchRequest:
    """Everything a worker needs to start on one task."""
    task_id: str
    title: str
    slug: str
    branch: str
    base_branch: str
    workdir: Path
    description: str = ""
    planning: bool = False
    reservation: Optional[int] = None
    labels: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class WorkerHandle:
    """Opaque reference to a launched worker; ``pid`` is ``None`` for dry runs."""
    task_id: str
    pid: Optional[int] = None
    log_path: Optional[Path] = None


class WorkerLauncher(Protocol):
    """Starts and stops the opaque worker process for a task."""
    def launch(self, request: LaunchRequest) -> WorkerHandle:
        """Start a worker for ``request`` and return a handle to it.

        Args:
            request (LaunchRequest): Typed launch parameters for the task.

        Returns:
            WorkerHandle: Handle accepted by ``is_alive`` and ``stop``.
        """
        ...

    def is_alive(self, handle: WorkerHandle) -> bool:
        """Return whether the worker behind ``handle`` is still running."""
        ...

    def stop(self, handle: WorkerHandle) -> None:
        """Stop the worker behind ``handle``; a no-op if it already exited."""
        ...

    def session_alive(self) -> bool:
        """Return whether the hosting session for this run is alive."""
        ...


def format_brief(request: LaunchRequest) -> str:
    """Render the plain-text instructions handed to the agent on stdin."""
    lines = [
        f"You are working on: {request.title} ({request.task_id})",
        "",
        f"Repo worktree: {request.workdir}",
        f"Branch: {request.branch}",
        f"Base branch: {request.base_branch}",
        "",
    ]
    if request.description.strip():
        lines += ["Issue Description:", request.description.strip(), ""]
    if request.reservation is not None:
        lines += [
            f"Reserved migration number: {request.reservation}",
            "Use exactly this number for any new migration file; other tasks running now hold the neighbouring numbers.",
            "",
        ]
    if request.planning:
        plan_dir = f"features/{request.slug}"
        lines += [
            "## Your Workflow",
            "",
            "### Phase 1: Planning (interactive)",
            "1. Research the codebase to understand relevant code and patterns",
            f"2. Save a phased implementation plan to: {plan_dir}/plan.md",
            "3. Present the plan summary and wait for approval",
            f"4. After approval, create the file: {plan_dir}/.plan-approved",
            "",
            "Do NOT proceed to Phase 2 until the plan has been approved.",
            "",
            "### Phase 2: Implementation",
            "1. Execute the plan phase by phase",
            "2. Run tests/lint between phases and pause if anything fails",
            "3. Create a PR using GitHub CLI: gh pr create --fill",
            f"4. Link the PR to {request.task_id}",
        ]
    else:
        lines += [
            "Goal:",
            "- Implement the feature/fix described by the issue and title.",
            "",
            "Success criteria:",
            "- [ ] Implementation matches issue requirements",
            "- [ ] Lint/tests pass",
            "- [ ] No regressions in existing functionality",
            f"- [ ] PR created with clear description and linked to {request.task_id}",
            "",
            "Process:",
            "1. Inspect repo and find relevant code",
            "2. Make minimal, high-quality changes",
            "3. Run tests/lint",
            "4. Create a PR using GitHub CLI: gh pr create --fill",
        ]
    return "\n".join(lines) + "\n"


class SubprocessWorkerLauncher:
    """Run the agent command as a detached child process per task.

    The brief is written to the child's stdin and its output is captured in
    ``<log_dir>/<task_id>.log``. The "hosting session" is this launcher: it is
    alive while at least one of its children still runs.
    """

    def __init__(self, agent_command: str, *, log_dir: Path, dry_run: bool = False) -> None:
        self._argv = shlex.split(agent_command)
        self._log_dir = log_dir
        self._dry_run = dry_run
        self._procs: dict[int, subprocess.Popen[str]] = {}
        self._lock = threading.Lock()

    def launch(self, request: LaunchRequest) -> WorkerHandle:
        brief = format_brief(request)
        if self._dry_run:
            logger.info("[DRY-RUN] Would launch %s in %s for %s", " ".join(self._argv), request.workdir, request.task_id)
            return WorkerHandle(task_id=request.task_id)

        self._log_dir.mkdir(parents=True, exist_ok=True)
        log_path = self._log_dir / f"{request.task_id}.log"
        try:
            with log_path.open("a", encoding="utf-8") as log_handle:
                proc = subprocess.Popen(
                    self._argv,
                    cwd=request.workdir,
                    stdin=subprocess.PIPE,
                    stdout=log_handle,
                    stderr=subprocess.STDOUT,
                    text=True,
                    start_new_session=True,
                )
        except OSError as exc:
            raise ExternalCallError(f"Failed to start worker for {request.task_id}: {exc}", command=self._argv) from exc
        try:
            assert proc.stdin is not None
            proc.stdin.write(brief)
            proc.stdin.close()
        except (BrokenPipeError, OSError):
            # The agent exited before reading its brief; the log says why.
            logger.warning("Worker for %s closed stdin early (see %s)", request.task_id, log_path)
        with self._lock:
            self._procs[proc.pid] = proc
        logger.info("Launched worker pid=%s for %s (log: %s)", proc.pid, request.task_id, log_path)
        return WorkerHandle(task_id=request.task_id, pid=proc.pid, log_path=log_path)

    def is_alive(self, handle: WorkerHandle) -> bool:
        if handle.pid is None:
            return False
        with self._lock:
            proc = self._procs.get(handle.pid)
        return proc is not None and proc.poll() is None

    def stop(self, handle: WorkerHandle) -> None:
        if handle.pid is None:
            return
        with self._lock:
            proc = self._procs.pop(handle.pid, None)
        if proc is None or proc.poll() is not None:
            return
        logger.info("Stopping worker pid=%s for %s", handle.pid, handle.task_id)
        proc.terminate()
        try:
            proc.wait(timeout=_STOP_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()

    def session_alive(self) -> bool:
        with self._lock:
            return any(proc.poll() is None for proc in self._procs.values())
