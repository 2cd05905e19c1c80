"""Pydantic response schemas for the status/control API."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field


class TaskRecordOut(BaseModel):
    """One ledger record as served to readers."""

    task_id: str
    slug: str
    branch: str
    worktree: str
    phase: str
    title: str = ""
    review_ref: Optional[str] = None
    reservation: Optional[int] = None
    conflict_domain: Optional[str] = None
    status: str = ""
    updated_at: str


class LedgerOut(BaseModel):
    """Full ledger snapshot."""

    version: int
    session: str
    started_at: str
    active_count: int
    tasks: dict[str, TaskRecordOut] = Field(default_factory=dict)


class EventOut(BaseModel):
    id: str
    ts: str
    channel: str
    type: str
    entity_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    session: str = ""


class ControlOut(BaseModel):
    """Whether the loop has been asked to stop after draining active work."""

    stop_requested: bool
    sentinel: str


class HealthOut(BaseModel):
    status: str = "ok"
    session: str
