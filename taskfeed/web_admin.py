from __future__ import annotations

import logging
import os
from datetime import date
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from taskfeed.backup import backup_filename, export_backup, parse_backup
from taskfeed.config_manager import ConfigManager
from taskfeed.errors import FetchError, FormatError
from taskfeed.feed_parser import resolve_timezone
from taskfeed.models import AppConfig
from taskfeed.reconciler import add_task, delete_completed, delete_task, toggle_task, update_task
from taskfeed.remote import RemoteRecord, build_remote
from taskfeed.replication import ReplicationCoordinator
from taskfeed.scheduler import SyncScheduler
from taskfeed.sources import FeedFetcher, SourceRegistry
from taskfeed.state_store import StateStore
from taskfeed.views import TASK_FILTERS, events_on, filter_tasks, month_view, task_view


logger = logging.getLogger(__name__)


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class TaskRequest(BaseModel):
    title: str = Field(min_length=1, max_length=500)
    due_date: str | None = Field(default=None, alias="dueDate")
    description: str = ""


class ImportUrlRequest(BaseModel):
    url: str = Field(min_length=1)
    name: str = "iCal Feed"


class ImportFileRequest(BaseModel):
    name: str = "Uploaded file"
    content: str


class RestoreRequest(BaseModel):
    backup: dict[str, Any]


class AppContext:
    def __init__(self, config_path: str, state_path: str, remote: RemoteRecord | None = None) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        config = self.config_manager.load()
        self.coordinator = ReplicationCoordinator(
            self.state_store,
            remote if remote is not None else build_remote(config.remote),
            cutoff=config.sync.cutoff,
        )
        self.remote_config = config.remote
        self.fetcher = FeedFetcher(config.feeds)
        self.registry = SourceRegistry(
            self.coordinator,
            self.fetcher,
            self.state_store,
            local_tz=resolve_timezone(config.sync.timezone),
        )
        self.scheduler = SyncScheduler(self.registry, self.config_manager)

    def apply_config(self, config: AppConfig) -> None:
        self.registry.local_tz = resolve_timezone(config.sync.timezone)
        self.fetcher.config = config.feeds
        self.coordinator.cutoff = config.sync.cutoff
        if config.remote != self.remote_config:
            self.remote_config = config.remote
            self.coordinator.set_remote(build_remote(config.remote))


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, FormatError):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, FetchError):
        return HTTPException(status_code=502, detail=str(exc))
    if isinstance(exc, KeyError):
        return HTTPException(status_code=404, detail=f"not found: {exc.args[0] if exc.args else ''}")
    return HTTPException(status_code=400, detail=str(exc))


def create_app(remote: RemoteRecord | None = None) -> FastAPI:
    config_path = os.getenv("TASKFEED_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("TASKFEED_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path, remote=remote)

    app = FastAPI(title="Taskfeed", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.coordinator.start()
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()
        app.state.context.coordinator.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.load().to_dict()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        try:
            updated = app.state.context.config_manager.update(request.payload)
        except (ValueError, TypeError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        app.state.context.apply_config(updated)
        return {"message": "config updated", "config": updated.to_dict()}

    @app.get("/api/events")
    def list_events(day: str | None = None) -> dict[str, Any]:
        snapshot = app.state.context.coordinator.snapshot()
        if day:
            try:
                selected = date.fromisoformat(day)
            except ValueError as exc:
                raise HTTPException(status_code=400, detail="day must be YYYY-MM-DD") from exc
            return {"events": events_on(snapshot, selected)}
        return {"events": [event.to_dict() for event in snapshot.events]}

    @app.get("/api/calendar")
    def calendar_month(year: int | None = None, month: int | None = None) -> dict[str, Any]:
        today = date.today()
        try:
            return month_view(
                app.state.context.coordinator.snapshot(),
                year or today.year,
                month or today.month,
                today=today,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.get("/api/tasks")
    def list_tasks(filter: str = "all") -> dict[str, Any]:
        if filter not in TASK_FILTERS:
            raise HTTPException(status_code=400, detail=f"filter must be one of {', '.join(TASK_FILTERS)}")
        tasks = filter_tasks(app.state.context.coordinator.snapshot().tasks, filter)
        return {"filter": filter, "tasks": [task_view(task) for task in tasks]}

    @app.post("/api/tasks")
    def create_task(request: TaskRequest) -> dict[str, Any]:
        try:
            task = app.state.context.coordinator.mutate(
                lambda snapshot: add_task(
                    snapshot,
                    title=request.title,
                    due_date=request.due_date,
                    description=request.description,
                ),
                action="add_task",
            )
        except ValueError as exc:
            raise _http_error(exc) from exc
        return {"task": task.to_dict()}

    @app.delete("/api/tasks/completed")
    def remove_completed_tasks() -> dict[str, Any]:
        removed = app.state.context.coordinator.mutate(delete_completed, action="delete_completed")
        return {"removed": removed}

    @app.put("/api/tasks/{task_id}")
    def edit_task(task_id: str, request: TaskRequest) -> dict[str, Any]:
        try:
            task = app.state.context.coordinator.mutate(
                lambda snapshot: update_task(
                    snapshot,
                    task_id,
                    title=request.title,
                    due_date=request.due_date,
                    description=request.description,
                ),
                action="update_task",
            )
        except (KeyError, ValueError) as exc:
            raise _http_error(exc) from exc
        return {"task": task.to_dict()}

    @app.post("/api/tasks/{task_id}/toggle")
    def toggle(task_id: str) -> dict[str, Any]:
        try:
            task = app.state.context.coordinator.mutate(
                lambda snapshot: toggle_task(snapshot, task_id),
                action="toggle_task",
            )
        except KeyError as exc:
            raise _http_error(exc) from exc
        return {"task": task.to_dict()}

    @app.delete("/api/tasks/{task_id}")
    def remove_task(task_id: str) -> dict[str, Any]:
        def _delete(snapshot):
            deletion = delete_task(snapshot, task_id)
            return deletion.snapshot, deletion

        try:
            deletion = app.state.context.coordinator.mutate(_delete, action="delete_task")
        except KeyError as exc:
            raise _http_error(exc) from exc
        app.state.context.state_store.record_audit_event(
            scope="task",
            subject_id=task_id,
            action="delete_task",
            details={"title": deletion.task.title, "ignored_event_id": deletion.ignored_event_id},
        )
        return {"deleted": task_id, "ignored_event_id": deletion.ignored_event_id}

    @app.get("/api/sources")
    def list_sources() -> dict[str, Any]:
        return {"sources": [source.to_dict() for source in app.state.context.registry.list_sources()]}

    @app.post("/api/sources/sync")
    def sync_all_sources() -> dict[str, Any]:
        if not app.state.context.registry.list_sources():
            raise HTTPException(status_code=400, detail="No calendar sources to sync. Import a calendar first.")
        result = app.state.context.registry.resync_all(trigger="manual")
        return {"message": "sync completed", "result": result.to_dict()}

    @app.post("/api/sync/run")
    def trigger_sync() -> dict[str, str]:
        app.state.context.scheduler.trigger_manual()
        return {"message": "sync triggered"}

    @app.post("/api/sources/{source_id}/sync")
    def sync_source(source_id: str) -> dict[str, Any]:
        try:
            result = app.state.context.registry.resync(source_id)
        except (KeyError, ValueError, FetchError, FormatError) as exc:
            raise _http_error(exc) from exc
        return {"message": "calendar synced", "result": result.to_dict()}

    @app.delete("/api/sources/{source_id}")
    def delete_source(source_id: str) -> dict[str, Any]:
        try:
            removed = app.state.context.registry.remove(source_id)
        except KeyError as exc:
            raise _http_error(exc) from exc
        return {"deleted": removed.id}

    @app.post("/api/import/url")
    def import_url(request: ImportUrlRequest) -> dict[str, Any]:
        try:
            result = app.state.context.registry.import_url(request.url, request.name)
        except (ValueError, FetchError, FormatError) as exc:
            raise _http_error(exc) from exc
        return {"message": "calendar imported", "result": result.to_dict()}

    @app.post("/api/import/file")
    def import_file(request: ImportFileRequest) -> dict[str, Any]:
        try:
            result = app.state.context.registry.import_text(request.content, request.name)
        except FormatError as exc:
            raise _http_error(exc) from exc
        return {"message": "calendar imported", "result": result.to_dict()}

    @app.get("/api/backup")
    def backup() -> dict[str, Any]:
        return {
            "filename": backup_filename(),
            "backup": export_backup(app.state.context.coordinator.snapshot()),
        }

    @app.post("/api/restore")
    def restore(request: RestoreRequest) -> dict[str, Any]:
        try:
            snapshot = parse_backup(request.backup)
        except ValueError as exc:
            raise _http_error(exc) from exc
        app.state.context.coordinator.replace(snapshot, action="restore")
        app.state.context.state_store.record_audit_event(
            scope="store",
            subject_id="snapshot",
            action="restore",
            details={
                "exported_at": request.backup.get("exportedAt"),
                "events": len(snapshot.events),
                "tasks": len(snapshot.tasks),
            },
        )
        return {
            "message": "backup restored",
            "events": len(snapshot.events),
            "tasks": len(snapshot.tasks),
            "sources": len(snapshot.sources),
        }

    @app.get("/api/replication/status")
    def replication_status() -> dict[str, Any]:
        return app.state.context.coordinator.status()

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_sync_runs(limit=limit)}

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, action: str | None = None) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, action=action)}

    return app
