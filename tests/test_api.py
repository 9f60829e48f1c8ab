from pathlib import Path

from fastapi import FastAPI
from fastapi.testclient import TestClient

from walletsync.core.config import AppConfig
from walletsync.core.settings import Conflict
from walletsync.errors import TransportError
from walletsync.sync.service import BackupSyncService, build_service
from walletsync.sync.state import DetachedVault
from walletsync.web.api import build_router
from walletsync.web.main import build_app


class _NoopTimer:
    def __init__(self, *_args):
        pass

    def start(self):
        pass

    def cancel(self):
        pass


class _FakeResponse:
    def __init__(self, status_code: int, text: str = "", headers: dict | None = None):
        self.status_code = status_code
        self.text = text
        self.headers = headers or {}

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class _FakeSession:
    def __init__(self):
        self.calls: list[tuple[str, str]] = []

    def request(self, method, url, headers=None, data=None, timeout=None):
        self.calls.append((method, url))
        return _FakeResponse(404 if method in ("GET", "HEAD") else 201)


def _service(tmp_path: Path) -> BackupSyncService:
    cfg = AppConfig()
    cfg.database.path = str(tmp_path / "runtime" / "settings.db")
    cfg.logging.file = str(tmp_path / "runtime" / "walletsync.log")
    service = build_service(cfg, DetachedVault(), session=_FakeSession(), timer_factory=_NoopTimer)
    service.init()
    return service


def _build_client(service: BackupSyncService) -> TestClient:
    app = FastAPI()
    app.include_router(build_router(service))
    return TestClient(app)


def test_healthz_returns_alive(tmp_path: Path):
    client = _build_client(_service(tmp_path))
    resp = client.get("/api/healthz")
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["ok"] is True
    assert payload["status"] == "alive"
    assert "checked_at" in payload


def test_status_and_settings_hide_secrets(tmp_path: Path):
    service = _service(tmp_path)
    service.settings.update(ucan_token="cap-secret")
    client = _build_client(service)

    status = client.get("/api/sync/status").json()
    assert status["enabled"] is True
    assert status["has_auth"] is True

    resp = client.get("/api/sync/settings")
    assert resp.status_code == 200
    assert "cap-secret" not in resp.text
    assert resp.json()["ucan_token_set"] is True


def test_put_settings_updates_and_rejects_unknown_fields(tmp_path: Path):
    client = _build_client(_service(tmp_path))

    resp = client.put("/api/sync/settings", json={"endpoint": "https://dav.test/api", "auth_mode": "basic"})
    assert resp.status_code == 200
    assert resp.json()["endpoint"] == "https://dav.test/api"
    assert resp.json()["auth_mode"] == "basic"

    resp = client.put("/api/sync/settings", json={"dirty": False})
    assert resp.status_code == 400
    assert "setting_not_editable" in resp.json()["detail"]


def test_manual_sync_without_credentials_is_400(tmp_path: Path):
    client = _build_client(_service(tmp_path))

    resp = client.post("/api/sync/actions/sync")

    assert resp.status_code == 400
    assert resp.json()["detail"] == "credentials_not_configured"


def test_manual_sync_busy_is_409(tmp_path: Path):
    service = _service(tmp_path)
    service.settings.update(ucan_token="cap")
    client = _build_client(service)

    service._flight.acquire()
    try:
        resp = client.post("/api/sync/actions/sync")
    finally:
        service._flight.release()

    assert resp.status_code == 409
    assert resp.json()["detail"] == "sync_busy"


def test_manual_sync_ok_without_unlocked_wallets(tmp_path: Path):
    service = _service(tmp_path)
    service.settings.update(ucan_token="cap")
    client = _build_client(service)

    resp = client.post("/api/sync/actions/sync")

    assert resp.status_code == 200
    assert resp.json()["ok"] is True
    actions = [item["action"] for item in client.get("/api/sync/logs").json()["items"]]
    assert actions == ["sync-complete", "sync-start"]


def test_transport_errors_map_to_502(tmp_path: Path, monkeypatch):
    service = _service(tmp_path)
    service.settings.update(ucan_token="cap")

    def _fail(_reason="manual"):
        raise TransportError("webdav_put_failed_status_503")

    monkeypatch.setattr(service, "push_now", _fail)
    client = _build_client(service)

    resp = client.post("/api/sync/actions/push")

    assert resp.status_code == 502


def test_disable_then_enable(tmp_path: Path):
    service = _service(tmp_path)
    client = _build_client(service)

    resp = client.post("/api/sync/actions/disable")
    assert resp.status_code == 200
    assert resp.json()["pending_delete"] is True

    resp = client.post("/api/sync/actions/enable")
    assert resp.json()["enabled"] is True
    assert service.settings.get("pending_delete") is False


def test_logs_filter_and_clear(tmp_path: Path):
    service = _service(tmp_path)
    service.activity.log("info", "push", "manual", "ok")
    service.activity.log("error", "push-error", "manual", "failed")
    client = _build_client(service)

    items = client.get("/api/sync/logs", params={"level": "error"}).json()["items"]
    assert [item["action"] for item in items] == ["push-error"]
    assert client.get("/api/sync/logs", params={"level": "debug"}).status_code == 400

    assert client.delete("/api/sync/logs").status_code == 200
    assert client.get("/api/sync/logs").json()["items"] == []


def test_conflict_listing_and_resolution(tmp_path: Path):
    service = _service(tmp_path)
    service.state.save_contact({"id": "c1", "name": "Bob", "note": "", "address": "0xB0B", "updatedAt": 100})
    service.conflicts.record(
        Conflict(
            id="contact:c1",
            type="contact",
            contact_id="c1",
            address="0xB0B",
            local_name="Bob",
            local_note="",
            remote_name="Robert",
            remote_note="work",
            timestamp=100,
        )
    )
    client = _build_client(service)

    items = client.get("/api/sync/conflicts").json()["items"]
    assert items[0]["remoteName"] == "Robert"

    assert client.post("/api/sync/conflicts/contact:c1/resolve", json={"choice": "maybe"}).status_code == 400
    resp = client.post("/api/sync/conflicts/contact:c1/resolve", json={"choice": "remote"})
    assert resp.status_code == 200
    assert resp.json()["remaining"] == 0
    contact = service.state.get_contact_list()[0]
    assert contact["name"] == "Robert"
    assert contact["note"] == "work"

    resp = client.post("/api/sync/conflicts/contact:c1/resolve", json={"choice": "local"})
    assert resp.status_code == 404


def test_build_app_allowlist_blocks_unknown_clients(tmp_path: Path):
    service = _service(tmp_path)

    with TestClient(build_app(service, allowed_nets=["127.0.0.1/32"])) as client:
        assert client.get("/api/healthz").status_code == 403

    with TestClient(build_app(service, allowed_nets=None)) as client:
        assert client.get("/api/healthz").status_code == 200
