"""Domain models for mill runtime state."""

from .models import (
    Candidate,
    CheckResult,
    LedgerDocument,
    Phase,
    ReviewStatus,
    TaskDetail,
    TaskRecord,
    now_iso,
    slugify,
)

__all__ = [
    "Candidate",
    "CheckResult",
    "LedgerDocument",
    "Phase",
    "ReviewStatus",
    "TaskDetail",
    "TaskRecord",
    "now_iso",
    "slugify",
]
