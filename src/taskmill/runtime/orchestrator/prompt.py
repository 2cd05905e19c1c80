"""Console selection prompt used in manual selection mode."""

from __future__ import annotations

import logging
import re
import select
import sys
from typing import Optional, Sequence, TextIO

from .interfaces import SelectionReply
from .scoring import ScoredCandidate

logger = logging.getLogger(__name__)


def parse_selection(text: str) -> SelectionReply:
    """Interpret one line of user input.

    ``q``/``quit`` requests exit, whitespace or comma separated numbers are
    1-based picks, and anything else (including an empty line) means no choice.
    """
    stripped = text.strip().lower()
    if stripped in {"q", "quit"}:
        return SelectionReply(kind="quit")
    numbers = tuple(int(token) for token in re.split(r"[\s,]+", stripped) if token.isdigit())
    if not numbers:
        return SelectionReply(kind="none")
    return SelectionReply(kind="picks", picks=numbers)


def render_candidates(ranked: Sequence[ScoredCandidate]) -> str:
    """Format ranked candidates as a numbered list."""
    lines = []
    for index, item in enumerate(ranked, start=1):
        candidate = item.candidate
        domain = f" [{candidate.conflict_domain}]" if candidate.conflict_domain else ""
        lines.append(f"  {index}. {candidate.task_id}  {candidate.title}{domain}  (score {item.score:g})")
    return "\n".join(lines)


class ConsoleSelectionPrompt:
    """Ask on a terminal which candidates to start, giving up after a timeout."""

    def __init__(self, stdin: Optional[TextIO] = None, stdout: Optional[TextIO] = None) -> None:
        self._stdin = stdin or sys.stdin
        self._stdout = stdout or sys.stdout

    def _readline(self, timeout: float) -> Optional[str]:
        ready, _, _ = select.select([self._stdin], [], [], max(timeout, 0.0))
        if not ready:
            return None
        line = self._stdin.readline()
        # EOF on stdin behaves like a timeout.
        return line or None

    def ask(self, ranked: Sequence[ScoredCandidate], free_slots: int, timeout: float) -> SelectionReply:
        if not ranked:
            return SelectionReply(kind="none")
        self._stdout.write(f"\nCandidates ({free_slots} free slot(s)):\n{render_candidates(ranked)}\n")
        self._stdout.write(f"Enter number(s) to start (e.g. 1 3), 'q' to quit, or wait {timeout:g}s to refresh: ")
        self._stdout.flush()
        line = self._readline(timeout)
        if line is None:
            self._stdout.write("\n")
            return SelectionReply(kind="none")
        reply = parse_selection(line)
        logger.debug("Selection reply: %s", reply)
        return reply
