"""Lifecycle event log for mill runs, one JSON envelope per line."""

from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from collections import deque
from pathlib import Path
from typing import Any, Iterator, Optional

from ...io_utils import FileLock
from ..domain.models import now_iso

logger = logging.getLogger(__name__)


class FileEventRepository:
    """Task lifecycle events appended to ``events.jsonl`` under the state root.

    Every envelope carries the mill session that wrote it, so the log of
    several runs can be read back per run or per task.
    """

    def __init__(self, path: Path, lock_path: Path) -> None:
        self._path = path
        self._lock = FileLock(lock_path)
        self._thread_lock = threading.RLock()

    def append(self, *, channel: str, event_type: str, entity_id: str, payload: dict[str, Any], session: str) -> dict[str, Any]:
        """Record one lifecycle event.

        Args:
            channel (str): ``tasks`` for per-task events, ``system`` for run events.
            event_type (str): Dotted name such as ``task.launched``.
            entity_id (str): Task id, or the session id for run events.
            payload (dict[str, Any]): JSON-serializable details.
            session (str): Session of the mill run emitting the event.

        Returns:
            dict[str, Any]: The stored envelope with its generated id and timestamp.
        """
        event = {
            "id": f"evt-{uuid.uuid4().hex[:10]}",
            "ts": now_iso(),
            "channel": channel,
            "type": event_type,
            "entity_id": entity_id,
            "payload": payload,
            "session": session,
        }
        with self._thread_lock:
            with self._lock:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with self._path.open("a", encoding="utf-8") as handle:
                    handle.write(json.dumps(event) + "\n")
                    handle.flush()
                    os.fsync(handle.fileno())
        return event

    def list_recent(
        self,
        limit: int = 100,
        *,
        task_id: Optional[str] = None,
        event_type: Optional[str] = None,
        session: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """Return the newest ``limit`` events matching every given filter, oldest first.

        Lines that are not valid JSON (a torn final write, for instance) are skipped.
        """
        if limit <= 0 or not self._path.exists():
            return []
        wanted = {"entity_id": task_id, "type": event_type, "session": session}
        wanted = {key: value for key, value in wanted.items() if value is not None}
        with self._thread_lock:
            with self._lock:
                with self._path.open("r", encoding="utf-8") as handle:
                    if not wanted:
                        return list(deque(_parse(handle), maxlen=limit))
                    matches = (
                        event for event in _parse(handle) if all(event.get(key) == value for key, value in wanted.items())
                    )
                    return list(deque(matches, maxlen=limit))


def _parse(lines: Iterator[str]) -> Iterator[dict[str, Any]]:
    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Skipping unreadable event line: %.80s", line)
            continue
        if isinstance(event, dict):
            yield event
