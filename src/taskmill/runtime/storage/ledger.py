"""File-backed state ledger with whole-document atomic replacement."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Callable, Optional

import yaml

from ...errors import LedgerError
from ...io_utils import FileLock, atomic_write
from ..domain.models import LedgerDocument, Phase, TaskRecord, now_iso


LedgerMutation = Callable[[LedgerDocument], Optional[LedgerDocument]]


class FileLedger:
    """YAML-backed ledger of in-flight tasks.

    Every write replaces the whole document (temp file + ``os.replace``), so
    readers that open the file without any lock always see a complete document.
    Writers are serialized with a thread lock plus an advisory file lock.
    Callers only ever receive deep copies; the single mutation entry point is
    :meth:`update`.
    """

    def __init__(self, path: Path, lock_path: Path, *, session: str) -> None:
        """Initialize the FileLedger.

        Args:
            path (Path): YAML file holding the ledger document.
            lock_path (Path): Lock file used while mutating the ledger.
            session (str): Session identifier stamped on a newly created ledger.
        """
        self._path = path
        self._lock = FileLock(lock_path)
        self._thread_lock = threading.RLock()
        self._session = session

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> Optional[LedgerDocument]:
        if not self._path.exists():
            return None
        try:
            raw = yaml.safe_load(self._path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise LedgerError(f"Ledger {self._path} is not valid YAML: {exc}") from exc
        if raw is None:
            return None
        if not isinstance(raw, dict):
            raise LedgerError(f"Ledger {self._path} must contain a mapping")
        return LedgerDocument.from_dict(raw, session=self._session)

    def _write(self, document: LedgerDocument) -> None:
        payload = document.to_dict()
        atomic_write(self._path, lambda handle: yaml.safe_dump(payload, handle, sort_keys=False))

    def ensure(self) -> LedgerDocument:
        """Create the ledger on first run and return a snapshot of it."""
        with self._thread_lock:
            with self._lock:
                document = self._read()
                if document is None:
                    document = LedgerDocument(session=self._session)
                    self._write(document)
                return document.snapshot()

    def load(self) -> LedgerDocument:
        """Return a snapshot of the ledger; an empty document when none exists yet."""
        document = self._read()
        if document is None:
            return LedgerDocument(session=self._session)
        return document

    def update(self, mutate: LedgerMutation) -> LedgerDocument:
        """Apply ``mutate`` to a copy of the ledger and persist the result atomically.

        Args:
            mutate (LedgerMutation): Callback receiving a mutable copy. It may
                modify the copy in place (returning ``None``) or return a
                replacement document.

        Returns:
            LedgerDocument: Snapshot of the document that was written.
        """
        with self._thread_lock:
            with self._lock:
                current = self._read() or LedgerDocument(session=self._session)
                working = current.snapshot()
                replaced = mutate(working)
                document = replaced if replaced is not None else working
                self._write(document)
                return document.snapshot()

    def get(self, task_id: str) -> Optional[TaskRecord]:
        """Fetch one record by task id."""
        return self.load().tasks.get(task_id)

    def put(self, record: TaskRecord) -> TaskRecord:
        """Insert or replace a record, refreshing its timestamp."""
        stored = TaskRecord.from_dict(record.to_dict())
        stored.updated_at = now_iso()

        def _apply(document: LedgerDocument) -> None:
            document.tasks[stored.task_id] = stored

        self.update(_apply)
        return stored

    def set_phase(self, task_id: str, phase: Phase, **fields: Any) -> Optional[TaskRecord]:
        """Move a record to ``phase`` and apply extra field updates.

        Returns:
            Optional[TaskRecord]: Updated record, or ``None`` when the task has no record.
        """
        result: dict[str, TaskRecord] = {}

        def _apply(document: LedgerDocument) -> None:
            record = document.tasks.get(task_id)
            if record is None:
                return
            record.phase = phase
            for key, value in fields.items():
                setattr(record, key, value)
            record.updated_at = now_iso()
            result["record"] = record

        self.update(_apply)
        return result.get("record")

    def remove(self, task_id: str) -> bool:
        """Delete a record; returns ``False`` when there was nothing to delete."""
        removed: list[bool] = []

        def _apply(document: LedgerDocument) -> None:
            removed.append(document.tasks.pop(task_id, None) is not None)

        with self._thread_lock:
            if task_id not in self.load().tasks:
                return False
            self.update(_apply)
        return bool(removed and removed[0])
