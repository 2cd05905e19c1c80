"""Dependency container for mill state files."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from ...config import MillConfig
from .bootstrap import STATE_FILES, STOP_SENTINEL, ensure_state_root
from .events import FileEventRepository
from .ledger import FileLedger


class Container:
    """Wire file-backed state and repository-scoped settings."""
    def __init__(self, repo_dir: Path, config: Optional[MillConfig] = None) -> None:
        """Initialize the Container.

        Args:
            repo_dir (Path): Repository the mill operates on.
            config (Optional[MillConfig]): Validated configuration; defaults when omitted.
        """
        self.repo_dir = repo_dir.resolve()
        self.config = config or MillConfig()
        self.state_root = ensure_state_root(self.repo_dir)

        self.ledger = FileLedger(
            self.state_root / STATE_FILES["ledger"],
            self.state_root / "ledger.lock",
            session=self.config.session,
        )
        self.events = FileEventRepository(self.state_root / STATE_FILES["events"], self.state_root / "events.lock")

    @property
    def session(self) -> str:
        """Session identifier for this run context."""
        return self.config.session

    @property
    def worktree_root(self) -> Path:
        """Absolute directory that holds per-task worktrees."""
        return self.config.resolve_worktree_root(self.repo_dir)

    @property
    def backlog_path(self) -> Path:
        """YAML backlog consumed by the file-backed task source."""
        return self.state_root / STATE_FILES["backlog"]

    @property
    def stop_sentinel(self) -> Path:
        return self.state_root / STOP_SENTINEL

    def stop_requested(self) -> bool:
        """Return whether someone asked the loop to stop after active work drains."""
        return self.stop_sentinel.exists()

    def request_stop(self) -> None:
        """Create the stop sentinel."""
        self.stop_sentinel.touch()

    def clear_stop(self) -> bool:
        """Remove the stop sentinel; returns whether one was present."""
        try:
            self.stop_sentinel.unlink()
        except FileNotFoundError:
            return False
        return True
