"""``TaskSource`` backed by a local YAML backlog file."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any

import yaml

from ...errors import ExternalCallError, TaskNotFoundError
from ...io_utils import FileLock, atomic_write
from ..domain.models import Candidate, TaskDetail
from ..orchestrator.interfaces import CandidateFilter

logger = logging.getLogger(__name__)


class FileTaskSource:
    """Serve candidates from ``backlog.yaml`` and write tracker states back to it.

    The file holds a ``tasks`` list of raw tracker issues, for example::

        tasks:
          - id: ENG-12
            title: Add export button
            priority: 2
            estimate: 1
            state: Backlog
            labels: ["Area: Reports"]
            description: "..."
    """

    def __init__(self, path: Path, lock_path: Path) -> None:
        """Initialize the FileTaskSource.

        Args:
            path (Path): YAML backlog file.
            lock_path (Path): Lock file used while rewriting the backlog.
        """
        self._path = path
        self._lock = FileLock(lock_path)
        self._thread_lock = threading.RLock()

    def _load(self) -> list[dict[str, Any]]:
        if not self._path.exists():
            return []
        try:
            raw = yaml.safe_load(self._path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            raise ExternalCallError(f"Cannot read backlog {self._path}: {exc}") from exc
        if not isinstance(raw, dict):
            return []
        items = raw.get("tasks", [])
        if not isinstance(items, list):
            return []
        return [item for item in items if isinstance(item, dict)]

    @staticmethod
    def _task_id(item: dict[str, Any]) -> str:
        return str(item.get("task_id") or item.get("identifier") or item.get("id") or "")

    def list_candidates(self, filter: CandidateFilter) -> list[Candidate]:
        states = {state.lower() for state in filter.states}
        out: list[Candidate] = []
        for item in self._load():
            if filter.project and str(item.get("project") or "") not in ("", filter.project):
                continue
            candidate = Candidate.from_dict(item)
            if not candidate.task_id or candidate.state.strip().lower() not in states:
                continue
            out.append(candidate)
        return out

    def get_task(self, task_id: str) -> TaskDetail:
        for item in self._load():
            if self._task_id(item) == task_id:
                return TaskDetail.from_dict(item)
        raise TaskNotFoundError(f"Task not found in backlog: {task_id}")

    def set_task_status(self, task_id: str, status: str) -> None:
        with self._thread_lock:
            with self._lock:
                items = self._load()
                for item in items:
                    if self._task_id(item) == task_id:
                        item["state"] = status
                        break
                else:
                    raise TaskNotFoundError(f"Task not found in backlog: {task_id}")
                payload = {"tasks": items}
                atomic_write(self._path, lambda handle: yaml.safe_dump(payload, handle, sort_keys=False))
        logger.info("Tracker: %s -> %s", task_id, status)
