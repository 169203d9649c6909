from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from calfeed.config_manager import ConfigManager
from calfeed.ics_fetcher import IcsFetcher
from calfeed.ics_parser import parse_ics
from calfeed.models import CalendarSettings, parse_iso_datetime
from calfeed.scheduler import SyncScheduler
from calfeed.state_store import StateStore
from calfeed.sync_engine import ManualSyncOutcome, SyncEngine
from calfeed.validation import ValidationError, validate_calendar_settings


class UserCreateRequest(BaseModel):
    email: str = ""
    calendar: dict[str, Any] = Field(default_factory=dict)


class CalendarSettingsUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class AppContext:
    def __init__(self, config_path: str, state_path: str | None = None) -> None:
        self.config_manager = ConfigManager(config_path)
        config = self.config_manager.load()
        self.state_store = StateStore(state_path or config.storage.database_path)
        self.sync_engine = SyncEngine(
            store=self.state_store,
            fetcher=IcsFetcher(config.fetcher),
            parser=parse_ics,
            config=config.sync,
            parser_config=config.parser,
        )
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)


def _public_settings(settings: CalendarSettings | None) -> dict[str, Any]:
    payload = (settings or CalendarSettings()).to_dict()
    payload.pop("syncLockedAt", None)
    payload["syncInProgress"] = bool(settings and settings.sync_locked_at)
    return payload


def _raise_for_outcome(outcome: ManualSyncOutcome) -> None:
    if outcome.status == "not_found":
        raise HTTPException(status_code=404, detail="User not found.")
    if outcome.status == "not_configured":
        raise HTTPException(status_code=400, detail="Calendar is not enabled or ICS URL is not set.")
    if outcome.status == "in_progress":
        raise HTTPException(
            status_code=409,
            detail="A calendar sync is already in progress for this user. Please try again later.",
        )


def _parse_range_param(name: str, value: str | None) -> Any:
    if value is None:
        return None
    try:
        return parse_iso_datetime(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {name} parameter.") from exc


def create_app() -> FastAPI:
    config_path = os.getenv("CALFEED_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("CALFEED_STATE_PATH")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="calfeed", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/api/users")
    def create_user(request: UserCreateRequest) -> dict[str, Any]:
        try:
            calendar_fields = validate_calendar_settings(request.calendar) if request.calendar else None
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        user_id = app.state.context.state_store.create_user(email=request.email, calendar=calendar_fields)
        settings = app.state.context.state_store.find_user_settings(user_id)
        return {"id": user_id, "calendar": _public_settings(settings)}

    @app.get("/api/users/{user_id}/calendar/settings")
    def get_calendar_settings(user_id: int) -> dict[str, Any]:
        user = app.state.context.state_store.find_user(user_id)
        if user is None:
            raise HTTPException(status_code=404, detail="User not found.")
        return {"calendar": _public_settings(user.calendar)}

    @app.put("/api/users/{user_id}/calendar/settings")
    def put_calendar_settings(user_id: int, request: CalendarSettingsUpdateRequest) -> dict[str, Any]:
        store = app.state.context.state_store
        user = store.find_user(user_id)
        if user is None:
            raise HTTPException(status_code=404, detail="User not found.")
        try:
            fields = validate_calendar_settings(request.payload)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        current = user.calendar or CalendarSettings()
        if "sourceUrl" in fields and fields["sourceUrl"] != current.source_url:
            # Caching tokens belong to the old feed.
            fields.update({"etag": None, "lastModified": None, "lastSyncedAt": None, "lastSyncError": None})
        if fields:
            store.update_user_settings(user_id, fields)
        return {"message": "calendar settings updated", "calendar": _public_settings(store.find_user_settings(user_id))}

    @app.post("/api/users/{user_id}/calendar/sync")
    def sync_now(user_id: int) -> dict[str, Any]:
        outcome = app.state.context.sync_engine.sync_now(user_id)
        _raise_for_outcome(outcome)
        return outcome.to_dict()

    @app.post("/api/users/{user_id}/calendar/sync-if-stale")
    def sync_if_stale(user_id: int) -> dict[str, Any]:
        outcome = app.state.context.sync_engine.sync_if_stale(user_id)
        _raise_for_outcome(outcome)
        return {"triggered": outcome.triggered}

    @app.get("/api/users/{user_id}/calendar/events")
    def list_events(user_id: int, start: str | None = None, end: str | None = None) -> dict[str, Any]:
        store = app.state.context.state_store
        if store.find_user(user_id) is None:
            raise HTTPException(status_code=404, detail="User not found.")
        events = store.list_calendar_events(
            user_id,
            start=_parse_range_param("start", start),
            end=_parse_range_param("end", end),
        )
        return {"events": [event.to_dict() for event in events]}

    @app.get("/api/sync/runs")
    def recent_runs(limit: int = 20, user_id: int | None = None) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_sync_runs(limit=limit, user_id=user_id)}

    @app.post("/api/sync/due")
    def run_due_sweep() -> dict[str, Any]:
        summary = app.state.context.sync_engine.sync_due_users()
        return summary.to_dict()

    return app
