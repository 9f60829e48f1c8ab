from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException

from walletsync.errors import (
    ConfigurationError,
    ConflictNotFoundError,
    SyncBusyError,
    SyncError,
    TransportError,
)
from walletsync.sync.service import RESOLUTION_CHOICES, BackupSyncService

logger = logging.getLogger("walletsync.web")

LOG_LEVELS = ("info", "warn", "error")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_http_error(exc: SyncError) -> HTTPException:
    if isinstance(exc, ConfigurationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, SyncBusyError):
        return HTTPException(status_code=409, detail="sync_busy")
    if isinstance(exc, ConflictNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, TransportError):
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(status_code=500, detail=f"sync_failed: {exc}")


def build_router(service: BackupSyncService) -> APIRouter:
    router = APIRouter(prefix="/api")

    @router.get("/healthz")
    def healthz():
        return {"ok": True, "status": "alive", "checked_at": _now_iso()}

    @router.get("/sync/status")
    def sync_status():
        return {"ok": True, **service.status()}

    @router.get("/sync/settings")
    def get_settings():
        return service.get_settings()

    @router.put("/sync/settings")
    def update_settings(payload: dict):
        try:
            return service.update_settings(**payload)
        except SyncError as exc:
            raise _to_http_error(exc) from exc

    @router.post("/sync/actions/sync")
    def action_sync():
        try:
            service.sync_now("manual")
        except SyncError as exc:
            logger.warning("manual_sync_failed %s", exc)
            raise _to_http_error(exc) from exc
        return {"ok": True, **service.status()}

    @router.post("/sync/actions/push")
    def action_push():
        try:
            service.push_now("manual")
        except SyncError as exc:
            logger.warning("manual_push_failed %s", exc)
            raise _to_http_error(exc) from exc
        return {"ok": True, **service.status()}

    @router.post("/sync/actions/disable")
    def action_disable():
        try:
            service.disable_sync()
        except SyncError as exc:
            raise _to_http_error(exc) from exc
        return {"ok": True, "pending_delete": service.status()["pending_delete"]}

    @router.post("/sync/actions/enable")
    def action_enable():
        service.enable_sync()
        return {"ok": True, "enabled": service.is_enabled()}

    @router.post("/sync/actions/clear-remote")
    def action_clear_remote():
        try:
            deleted = service.clear_remote_now()
        except SyncError as exc:
            raise _to_http_error(exc) from exc
        return {"ok": True, "deleted": deleted}

    @router.get("/sync/logs")
    def get_logs(level: str | None = None, action: str | None = None, limit: int = 200):
        if level and level not in LOG_LEVELS:
            raise HTTPException(status_code=400, detail=f"invalid_level: {level}")
        items = service.activity.entries(level=level, action=action, limit=max(0, limit))
        return {"ok": True, "items": [item.to_store() for item in items]}

    @router.delete("/sync/logs")
    def clear_logs():
        service.clear_activity_logs()
        return {"ok": True}

    @router.get("/sync/conflicts")
    def get_conflicts():
        return {"ok": True, "items": [item.to_store() for item in service.conflicts.list()]}

    @router.post("/sync/conflicts/{conflict_id}/resolve")
    def resolve_conflict(conflict_id: str, payload: dict):
        choice = str(payload.get("choice") or "").strip().lower()
        if choice not in RESOLUTION_CHOICES:
            raise HTTPException(status_code=400, detail=f"invalid_choice: {choice or '<empty>'}")
        try:
            service.resolve_conflict(conflict_id, choice)
        except SyncError as exc:
            raise _to_http_error(exc) from exc
        return {"ok": True, "remaining": len(service.conflicts.list())}

    return router
