"""Domain model dataclasses and normalization helpers."""

from __future__ import annotations

import copy
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Optional, cast


Phase = Literal[
    "selected",
    "planning",
    "executing",
    "awaiting_review",
    "merged",
    "cleaned",
    "abandoned",
    "reverted",
]

_VALID_PHASES = {"selected", "planning", "executing", "awaiting_review", "merged", "cleaned", "abandoned", "reverted"}
# A record is removed from the ledger when its task reaches one of these.
TERMINAL_PHASES = frozenset({"cleaned", "abandoned", "reverted"})

LEDGER_VERSION = 1

CONFLICT_DOMAIN_PATTERN = re.compile(r"^(Area|Component|Page|Route):")
FOUNDATIONAL_PATTERN = re.compile(r"foundational|architecture|epic|infrastructure", re.IGNORECASE)
TASK_PACKET_PATTERN = re.compile(
    r"(##+ (1\.|Objective|What|Technical Context|Success Criteria|Implementation)|## Task Packet)"
)
OFFERABLE_TRACKER_STATES = frozenset({"todo", "backlog"})

_SLUG_MAX_CHARS = 60


def now_iso() -> str:
    """Get the current UTC timestamp formatted as ISO-8601 text."""
    return datetime.now(timezone.utc).isoformat()


def slugify(title: str) -> str:
    """Turn a task title into a branch/worktree-safe slug."""
    slug = re.sub(r"[^a-z0-9]+", "-", str(title or "").lower()).strip("-")
    return slug[:_SLUG_MAX_CHARS].rstrip("-") or "task"


def is_task_packet(description: str) -> bool:
    """Return whether a tracker description already is a fully specified work packet."""
    return bool(TASK_PACKET_PATTERN.search(str(description or "")))


def _names(raw: Any) -> list[str]:
    """Flatten ``["a", {"name": "b"}]`` or ``{"nodes": [...]}`` into plain names."""
    if isinstance(raw, dict):
        raw = raw.get("nodes")
    if not isinstance(raw, list):
        return []
    out: list[str] = []
    for item in raw:
        if isinstance(item, dict):
            item = item.get("name")
        if isinstance(item, str) and item.strip():
            out.append(item.strip())
    return out


def _relation_counts(raw: Any) -> tuple[int, int]:
    if isinstance(raw, dict):
        raw = raw.get("nodes")
    if not isinstance(raw, list):
        return 0, 0
    types = [str(item.get("type") or "") for item in raw if isinstance(item, dict)]
    return types.count("blocks"), types.count("blocked")


def _optional_float(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


@dataclass
class Candidate:
    """A unit of work offered by the tracker for the current scheduling cycle."""
    task_id: str
    title: str = ""
    priority: int = 0
    estimate: Optional[float] = None
    tags: list[str] = field(default_factory=list)
    conflict_domain: Optional[str] = None
    foundational: bool = False
    blocks_count: int = 0
    blocked_by_count: int = 0
    fully_specified: bool = False
    description: str = ""
    state: str = "backlog"

    @property
    def slug(self) -> str:
        """Branch and worktree name: the task id followed by the title, so equal titles never collide."""
        return slugify(f"{self.task_id} {self.title}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Candidate":
        """Normalize a raw tracker issue into a candidate.

        Explicit keys (``conflict_domain``, ``foundational``, ``fully_specified``,
        ``blocks_count``, ``blocked_by_count``) win over values derived from
        labels, relations, and the description.
        """
        tags = _names(data.get("labels") if "labels" in data else data.get("tags"))
        description = str(data.get("description") or "")
        blocks, blocked_by = _relation_counts(data.get("relations"))

        domain = data.get("conflict_domain")
        if domain is None:
            domain = next((tag for tag in tags if CONFLICT_DOMAIN_PATTERN.match(tag)), None)

        state_raw = data.get("state")
        if isinstance(state_raw, dict):
            state_raw = state_raw.get("name")

        try:
            priority = int(data.get("priority") or 0)
        except (TypeError, ValueError):
            priority = 0

        return cls(
            task_id=str(data.get("task_id") or data.get("identifier") or data.get("id") or ""),
            title=str(data.get("title") or ""),
            priority=priority,
            estimate=_optional_float(data.get("estimate")),
            tags=tags,
            conflict_domain=str(domain) if domain else None,
            foundational=bool(data["foundational"]) if "foundational" in data else any(FOUNDATIONAL_PATTERN.search(t) for t in tags),
            blocks_count=int(data.get("blocks_count", blocks) or 0),
            blocked_by_count=int(data.get("blocked_by_count", blocked_by) or 0),
            fully_specified=bool(data["fully_specified"]) if "fully_specified" in data else is_task_packet(description),
            description=description,
            state=str(state_raw or "backlog"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize the candidate to a plain dictionary."""
        return asdict(self)


@dataclass
class TaskDetail:
    """Full tracker view of one task, fetched right before launch."""
    task_id: str
    title: str = ""
    description: str = ""
    labels: list[str] = field(default_factory=list)
    url: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskDetail":
        """Deserialize tracker task detail."""
        return cls(
            task_id=str(data.get("task_id") or data.get("identifier") or data.get("id") or ""),
            title=str(data.get("title") or ""),
            description=str(data.get("description") or ""),
            labels=_names(data.get("labels")),
            url=(str(data["url"]) if data.get("url") else None),
        )


@dataclass(frozen=True)
class CheckResult:
    """One CI check attached to a review request; ``conclusion=None`` means still running."""
    name: str
    conclusion: Optional[str] = None


@dataclass(frozen=True)
class ReviewStatus:
    """Snapshot of a review request's state, merge target, and check results."""
    state: str
    target_ref: str = ""
    checks: tuple[CheckResult, ...] = ()


@dataclass
class TaskRecord:
    """Ledger entry for one in-flight task."""
    task_id: str
    slug: str
    branch: str
    worktree: str
    phase: Phase = "selected"
    title: str = ""
    review_ref: Optional[str] = None
    reservation: Optional[int] = None
    conflict_domain: Optional[str] = None
    status: str = ""
    updated_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        """Serialize the record for persistence."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskRecord":
        """Deserialize a persisted record, normalizing unknown phases to ``executing``."""
        phase = str(data.get("phase") or "executing")
        if phase not in _VALID_PHASES:
            phase = "executing"
        raw_reservation = data.get("reservation")
        try:
            reservation = int(raw_reservation) if raw_reservation not in (None, "") else None
        except (TypeError, ValueError):
            reservation = None
        review_ref = data.get("review_ref")
        return cls(
            task_id=str(data.get("task_id") or ""),
            slug=str(data.get("slug") or ""),
            branch=str(data.get("branch") or ""),
            worktree=str(data.get("worktree") or ""),
            phase=cast(Phase, phase),
            title=str(data.get("title") or ""),
            review_ref=str(review_ref) if review_ref not in (None, "") else None,
            reservation=reservation,
            conflict_domain=str(data["conflict_domain"]) if data.get("conflict_domain") else None,
            status=str(data.get("status") or ""),
            updated_at=str(data.get("updated_at") or now_iso()),
        )


@dataclass
class LedgerDocument:
    """The whole persisted ledger: session metadata plus the task-record map."""
    session: str
    started_at: str = field(default_factory=now_iso)
    version: int = LEDGER_VERSION
    tasks: dict[str, TaskRecord] = field(default_factory=dict)

    def active(self) -> list[TaskRecord]:
        """Records whose phase is not terminal, in insertion order."""
        return [record for record in self.tasks.values() if record.phase not in TERMINAL_PHASES]

    def claimed_domains(self) -> set[str]:
        """Conflict domains held by active records."""
        return {record.conflict_domain for record in self.active() if record.conflict_domain}

    def reservations(self) -> list[int]:
        """Reservation numbers still held by records in the ledger."""
        return [record.reservation for record in self.tasks.values() if record.reservation is not None]

    def snapshot(self) -> "LedgerDocument":
        """Return a deep copy that can be mutated without touching this document."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        """Serialize the ledger, including nested task records."""
        return {
            "version": self.version,
            "session": self.session,
            "started_at": self.started_at,
            "tasks": {task_id: record.to_dict() for task_id, record in self.tasks.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, session: str = "") -> "LedgerDocument":
        """Deserialize a ledger document from persisted storage."""
        raw_tasks = data.get("tasks")
        tasks: dict[str, TaskRecord] = {}
        if isinstance(raw_tasks, dict):
            for task_id, raw in raw_tasks.items():
                if not isinstance(raw, dict):
                    continue
                record = TaskRecord.from_dict({**raw, "task_id": raw.get("task_id") or task_id})
                tasks[record.task_id] = record
        try:
            version = int(data.get("version") or LEDGER_VERSION)
        except (TypeError, ValueError):
            version = LEDGER_VERSION
        return cls(
            session=str(data.get("session") or session),
            started_at=str(data.get("started_at") or now_iso()),
            version=version,
            tasks=tasks,
        )
