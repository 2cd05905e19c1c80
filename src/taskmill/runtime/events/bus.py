"""Session-stamped lifecycle events for a mill run."""

from __future__ import annotations

import logging
from typing import Any

from ..storage.events import FileEventRepository

logger = logging.getLogger(__name__)


class EventBus:
    """Record lifecycle events so readers can follow a run without parsing logs."""
    def __init__(self, repo: FileEventRepository, session: str) -> None:
        """Initialize the EventBus.

        Args:
            repo (FileEventRepository): JSONL stream events are appended to.
            session (str): Mill session stamped on every event.
        """
        self._repo = repo
        self._session = session

    def emit(self, *, channel: str, event_type: str, entity_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Append one event for ``entity_id`` to the stream.

        Args:
            channel (str): Stream namespace, ``tasks`` or ``system``.
            event_type (str): Dotted event name such as ``task.merged``.
            entity_id (str): Task id, or the session id for run-level events.
            payload (dict[str, Any]): JSON-serializable details of the event.

        Returns:
            dict[str, Any]: The stored envelope with its generated id and timestamp.
        """
        event = self._repo.append(
            channel=channel,
            event_type=event_type,
            entity_id=entity_id,
            payload=payload,
            session=self._session,
        )
        logger.debug("event %s %s %s", event_type, entity_id, payload)
        return event
