"""FastAPI app exposing the ledger, the event stream, and the stop sentinel."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from fastapi import FastAPI, HTTPException, Query

from ..config import MillConfig, load_config
from ..runtime.storage import Container
from .schemas import ControlOut, EventOut, HealthOut, LedgerOut, TaskRecordOut


def create_app(project_dir: Path, config: Optional[MillConfig] = None) -> FastAPI:
    """Create the read-mostly status/control application for one repository.

    The app never mutates the ledger; it reads whole-document snapshots, so it
    can run alongside the mill loop. The only write is the stop sentinel.

    Args:
        project_dir (Path): Repository the mill operates on.
        config (Optional[MillConfig]): Configuration; loaded from the usual layers when omitted.

    Returns:
        FastAPI: Configured application with the container on ``app.state``.
    """
    container = Container(project_dir, config or load_config(project_dir))

    app = FastAPI(
        title="taskmill",
        description="Status and control surface for the task mill",
        version="0.1.0",
    )
    app.state.container = container

    def _control() -> ControlOut:
        return ControlOut(stop_requested=container.stop_requested(), sentinel=str(container.stop_sentinel))

    @app.get("/healthz", response_model=HealthOut)
    def healthz() -> HealthOut:
        return HealthOut(session=container.session)

    @app.get("/api/ledger", response_model=LedgerOut)
    def get_ledger() -> LedgerOut:
        document = container.ledger.load()
        return LedgerOut(
            version=document.version,
            session=document.session,
            started_at=document.started_at,
            active_count=len(document.active()),
            tasks={task_id: TaskRecordOut(**record.to_dict()) for task_id, record in document.tasks.items()},
        )

    @app.get("/api/ledger/{task_id}", response_model=TaskRecordOut)
    def get_task_record(task_id: str) -> TaskRecordOut:
        record = container.ledger.get(task_id)
        if record is None:
            raise HTTPException(status_code=404, detail=f"No ledger record for {task_id}")
        return TaskRecordOut(**record.to_dict())

    @app.get("/api/events", response_model=list[EventOut])
    def list_events(
        limit: int = Query(100, ge=1, le=1000),
        task_id: Optional[str] = Query(None),
        event_type: Optional[str] = Query(None, alias="type"),
        session: Optional[str] = Query(None),
    ) -> list[EventOut]:
        events = container.events.list_recent(limit, task_id=task_id, event_type=event_type, session=session)
        return [EventOut(**event) for event in events]

    @app.get("/api/control", response_model=ControlOut)
    def get_control() -> ControlOut:
        return _control()

    @app.post("/api/control/stop", response_model=ControlOut)
    def request_stop() -> ControlOut:
        container.request_stop()
        return _control()

    @app.delete("/api/control/stop", response_model=ControlOut)
    def clear_stop() -> ControlOut:
        container.clear_stop()
        return _control()

    return app
