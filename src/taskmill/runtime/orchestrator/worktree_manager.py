"""Git worktree and branch operations backing the ``VersionControl`` contract."""

from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path

from ...errors import ExternalCallError

logger = logging.getLogger(__name__)


class GitVersionControl:
    """Manage one worktree and branch per task in a local git repository.

    Destructive operations (worktree removal, branch deletion) are only logged
    in dry-run mode.
    """

    def __init__(self, repo_dir: Path, *, remote: str = "origin", dry_run: bool = False) -> None:
        """Initialize the GitVersionControl.

        Args:
            repo_dir (Path): Primary checkout of the repository.
            remote (str): Remote used by :meth:`fetch`; empty disables fetching.
            dry_run (bool): Log mutating commands instead of running them.
        """
        self.repo_dir = repo_dir
        self.remote = remote
        self.dry_run = dry_run

    def _git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        command = ["git", *args]
        try:
            result = subprocess.run(
                command,
                cwd=self.repo_dir,
                capture_output=True,
                text=True,
            )
        except OSError as exc:
            raise ExternalCallError(f"Failed to run {' '.join(command)}: {exc}", command=command) from exc
        if check and result.returncode != 0:
            raise ExternalCallError(
                f"{' '.join(command)} exited with {result.returncode}: {result.stderr.strip()}",
                command=command,
                stderr=result.stderr,
            )
        return result

    def create_workspace(self, branch: str, path: Path, from_ref: str) -> Path:
        """Create the worktree for ``branch`` at ``path``, resuming existing work.

        An existing directory is reused as-is. An existing branch without a
        directory is checked out into a fresh worktree; otherwise the branch is
        created from ``from_ref``.
        """
        if path.exists():
            logger.info("Worktree already exists, resuming: %s", path)
            return path
        if self.dry_run:
            logger.info("[DRY-RUN] Would create worktree %s on %s from %s", path, branch, from_ref)
            return path
        path.parent.mkdir(parents=True, exist_ok=True)
        if self.branch_exists(branch):
            logger.info("Branch %s exists, attaching new worktree %s", branch, path)
            self._git("worktree", "add", str(path), branch)
        else:
            logger.info("Creating worktree %s on new branch %s from %s", path, branch, from_ref)
            self._git("worktree", "add", "-b", branch, str(path), from_ref)
        return path

    def remove_workspace(self, path: Path) -> None:
        if not path.exists():
            return
        if self.dry_run:
            logger.info("[DRY-RUN] Would remove worktree %s", path)
            return
        result = self._git("worktree", "remove", "--force", str(path), check=False)
        if result.returncode != 0 and path.exists():
            logger.warning("git worktree remove failed for %s, deleting directory: %s", path, result.stderr.strip())
            shutil.rmtree(path, ignore_errors=True)
        logger.info("Removed worktree %s", path)

    def branch_exists(self, name: str) -> bool:
        """Return whether the local branch exists; any git failure other than "missing" raises."""
        command = ["git", "show-ref", "--verify", "--quiet", f"refs/heads/{name}"]
        result = self._git(*command[1:], check=False)
        if result.returncode == 0:
            return True
        if result.returncode == 1:
            return False
        raise ExternalCallError(
            f"{' '.join(command)} exited with {result.returncode}: {result.stderr.strip()}",
            command=command,
            stderr=result.stderr,
        )

    def delete_branch(self, name: str) -> None:
        if not self.branch_exists(name):
            return
        if self.dry_run:
            logger.info("[DRY-RUN] Would delete branch %s", name)
            return
        self._git("branch", "-D", name)
        logger.info("Deleted branch %s", name)

    def fetch(self, ref: str) -> None:
        """Fetch ``ref`` from the configured remote; a no-op without a remote."""
        if not self.remote:
            return
        self._git("fetch", self.remote, ref)

    def prune_worktrees(self) -> None:
        if self.dry_run:
            logger.info("[DRY-RUN] Would prune worktree metadata")
            return
        self._git("worktree", "prune", check=False)
