"""Batch-time allocation of exclusive sequential reservation numbers."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Callable, Iterable, Optional, Sequence, TypeVar

from ..domain.models import Candidate, TaskDetail

logger = logging.getLogger(__name__)

T = TypeVar("T")

RESERVATION_LABEL_PATTERN = re.compile(r"migration|database|schema|alembic", re.IGNORECASE)
RESERVATION_KEYWORD_PATTERN = re.compile(
    r"alembic|migration.*file|database.*migration|schema.*migration", re.IGNORECASE
)
_NUMERIC_PREFIX = re.compile(r"^(\d+)")


def needs_reservation(candidate: Candidate, detail: Optional[TaskDetail] = None) -> bool:
    """Return whether a task declares a need for a reservation number.

    Labels are checked first; the description keyword match is a fallback.
    """
    labels = list(candidate.tags) + (list(detail.labels) if detail else [])
    if any(RESERVATION_LABEL_PATTERN.search(label) for label in labels):
        return True
    description = detail.description if detail and detail.description else candidate.description
    return bool(RESERVATION_KEYWORD_PATTERN.search(description or ""))


class ReservationAllocator:
    """Hand out ``highest+1, highest+2, ...`` to the tasks of one batch.

    The highest issued number is the max of the numeric filename prefixes in
    ``scan_dir`` and every number still held by an in-flight task, so a number
    reserved earlier but not yet written to disk is never handed out again.
    """

    def __init__(self, scan_dir: Path, *, pattern: str = "*.py") -> None:
        self.scan_dir = scan_dir
        self.pattern = pattern

    def highest_existing(self, held: Iterable[int] = ()) -> int:
        """Highest reservation already issued, or 0 when there is none."""
        highest = 0
        if self.scan_dir.is_dir():
            for path in self.scan_dir.glob(self.pattern):
                match = _NUMERIC_PREFIX.match(path.name)
                if match:
                    highest = max(highest, int(match.group(1)))
        for number in held:
            highest = max(highest, int(number))
        return highest

    def allocate(
        self,
        batch: Sequence[T],
        needs: Callable[[T], bool],
        *,
        key: Callable[[T], str],
        held: Iterable[int] = (),
    ) -> dict[str, int]:
        """Assign contiguous numbers to every task in ``batch`` that needs one.

        Runs once per batch from a single snapshot so tasks launched together
        can never compute the same "next" number.

        Args:
            batch (Sequence[T]): Tasks in selection order.
            needs (Callable[[T], bool]): Predicate telling whether a task needs a number.
            key (Callable[[T], str]): Task id accessor.
            held (Iterable[int]): Numbers held by in-flight tasks.

        Returns:
            dict[str, int]: Task id to reserved number.
        """
        next_number = self.highest_existing(held) + 1
        assigned: dict[str, int] = {}
        for item in batch:
            if not needs(item):
                continue
            assigned[key(item)] = next_number
            logger.info("Reserved number %d for %s", next_number, key(item))
            next_number += 1
        return assigned
