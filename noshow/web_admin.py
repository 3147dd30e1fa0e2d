from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from noshow.config_manager import ConfigManager
from noshow.firestore_store import FirestoreRecordStore
from noshow.session import ReconciliationSession
from noshow.state_store import StateStore
from noshow.store import RecordStore

MASK = "***"


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class TenantSwitchRequest(BaseModel):
    clinic_id: str = Field(
        default="",
        max_length=200,
        description="Clinic to follow; blank falls back to the signed-in user's clinic.",
    )


class AppContext:
    def __init__(self, config_path: str, state_path: str, store: RecordStore | None = None) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        config = self.config_manager.load()
        self.store = store if store is not None else FirestoreRecordStore(config.firestore)
        self.session = ReconciliationSession(
            self.store,
            self.config_manager,
            self.state_store,
            user_id=config.session.user_id,
            clinic_id=config.session.clinic_id,
        )


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    sanitized = dict(payload)
    firestore = sanitized.get("firestore")
    if isinstance(firestore, dict):
        firestore = dict(firestore)
        credentials_path = firestore.get("credentials_path")
        if credentials_path is not None and str(credentials_path).strip() in {"", MASK}:
            # A masked or blank value echoes what the client was shown; keep the stored path.
            if current.get("firestore", {}).get("credentials_path"):
                firestore.pop("credentials_path", None)
            else:
                firestore["credentials_path"] = ""
        if firestore:
            sanitized["firestore"] = firestore
        else:
            sanitized.pop("firestore", None)
    return sanitized


def create_app(store: RecordStore | None = None) -> FastAPI:
    config_path = os.getenv("NOSHOW_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("NOSHOW_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path, store=store)

    app = FastAPI(title="No-show Sweeper Admin", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.session.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.session.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        current = app.state.context.config_manager.load().to_dict()
        sanitized_payload = _sanitize_config_payload(request.payload, current)
        try:
            app.state.context.config_manager.update(sanitized_payload)
        except (AttributeError, TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=f"invalid config: {exc}") from exc
        app.state.context.session.refresh_settings()
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    @app.get("/api/session")
    def session_status() -> dict[str, Any]:
        return app.state.context.session.status()

    @app.post("/api/session/tenant")
    def switch_tenant(request: TenantSwitchRequest) -> dict[str, Any]:
        app.state.context.session.switch_tenant(request.clinic_id)
        return {"message": "tenant updated", "session": app.state.context.session.status()}

    @app.post("/api/sweep/run")
    def trigger_sweep() -> dict[str, Any]:
        if app.state.context.session.trigger_sweep():
            return {"message": "sweep triggered"}
        result = app.state.context.session.sweeper.run_once(trigger="manual")
        return {"message": "sweep completed", "result": result.to_dict()}

    @app.get("/api/sweep/status")
    def sweep_status(limit: int = 20) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_sweep_runs(limit=limit)}

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, run_id: int | None = None) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, run_id=run_id)}

    return app
