from pathlib import Path

import pytest
import requests

from walletsync.core.kv_store import SqliteKeyValueStore
from walletsync.core.settings import SettingsRepository
from walletsync.errors import TransportError, WebDavError
from walletsync.providers.webdav import ProbeResult, WebDavClient
from walletsync.providers.webdav.client import build_payload_filename, strip_app_scope


class _FakeResponse:
    def __init__(self, status_code: int = 200, text: str = "", headers: dict | None = None):
        self.status_code = status_code
        self.text = text
        self.headers = headers or {}

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 400


class _FakeSession:
    def __init__(self):
        self.calls: list[dict] = []
        self.responses: dict[str, list[_FakeResponse]] = {}
        self.error: Exception | None = None

    def queue(self, method: str, response: _FakeResponse):
        self.responses.setdefault(method, []).append(response)

    def request(self, method, url, headers=None, data=None, timeout=None):
        self.calls.append({"method": method, "url": url, "headers": dict(headers or {}), "data": data})
        if self.error is not None:
            raise self.error
        pending = self.responses.get(method) or []
        return pending.pop(0) if pending else _FakeResponse(201)


def _client(tmp_path: Path, **settings) -> tuple[WebDavClient, _FakeSession]:
    store = SqliteKeyValueStore(str(tmp_path / "settings.db"))
    repo = SettingsRepository(store, default_app_id="yeying-wallet")
    repo.migrate()
    repo.update(**settings)
    session = _FakeSession()
    return WebDavClient(repo, timeout=5, session=session), session


def test_payload_filename_and_scope():
    assert build_payload_filename("abc") == "payload.abc.json.enc"
    assert build_payload_filename("") == "payload.json.enc"
    assert strip_app_scope("https://dav.test/api/apps/yeying-wallet/", "yeying-wallet") == "https://dav.test/api"
    assert strip_app_scope("https://dav.test/api/apps/other/", "yeying-wallet") == "https://dav.test/api/apps/other/"


def test_requests_use_scoped_path_and_capability_header(tmp_path: Path):
    client, session = _client(
        tmp_path,
        endpoint="https://dav.test/api/apps/yeying-wallet/",
        ucan_token="Bearer cap-token",
    )

    client.put(client.payload_path("fp1"), '{"x":1}')

    call = session.calls[-1]
    assert call["method"] == "PUT"
    assert call["url"] == "https://dav.test/api/apps/yeying-wallet/payload.fp1.json.enc"
    assert call["headers"]["Authorization"] == "Bearer cap-token"
    assert call["headers"]["Content-Type"] == "application/json"
    assert call["data"] == b'{"x":1}'


@pytest.mark.parametrize(
    "settings, expected",
    [
        ({"auth_mode": "basic", "basic_auth": "dXNlcjpwYXNz"}, "Basic dXNlcjpwYXNz"),
        ({"auth_mode": "basic", "basic_auth": "Basic dXNlcjpwYXNz"}, "Basic dXNlcjpwYXNz"),
        ({"auth_mode": "token", "auth_token": "UCAN tok"}, "Bearer tok"),
        ({"auth_mode": "token", "auth_token": ""}, ""),
    ],
)
def test_auth_header_per_mode(tmp_path: Path, settings, expected):
    client, _ = _client(tmp_path, endpoint="https://dav.test/api", **settings)
    assert client.auth_header() == expected


def test_no_endpoint_means_no_request(tmp_path: Path):
    client, session = _client(tmp_path, endpoint="")

    assert client.get("x") is None
    assert client.head("x") is None
    assert client.put("x", "{}") is None
    assert session.calls == []


def test_head_probe_statuses(tmp_path: Path):
    client, session = _client(tmp_path, endpoint="https://dav.test/api")
    session.queue("HEAD", _FakeResponse(404))
    session.queue("HEAD", _FakeResponse(405))
    session.queue("HEAD", _FakeResponse(200, headers={"ETag": '"v1"', "Last-Modified": "Mon"}))
    session.queue("HEAD", _FakeResponse(500))

    assert client.head("p") == ProbeResult(exists=False)
    assert client.head("p") == ProbeResult(exists=True, bypass=True)
    assert client.head("p") == ProbeResult(exists=True, etag='"v1"', last_modified="Mon")
    with pytest.raises(WebDavError):
        client.head("p")
    assert session.calls[0]["headers"]["Cache-Control"] == "no-cache"


def test_get_404_is_missing_and_errors_raise(tmp_path: Path):
    client, session = _client(tmp_path, endpoint="https://dav.test/api")
    session.queue("GET", _FakeResponse(404))
    session.queue("GET", _FakeResponse(200, text="body", headers={"ETag": "e1"}))
    session.queue("GET", _FakeResponse(503, text="down"))

    assert client.get("p") is None
    remote = client.get("p")
    assert remote.body == "body"
    assert remote.etag == "e1"
    with pytest.raises(WebDavError) as exc_info:
        client.get("p")
    assert exc_info.value.status == 503


def test_ensure_directory_tolerates_existing_collections(tmp_path: Path):
    client, session = _client(tmp_path, endpoint="https://dav.test/api")
    session.queue("MKCOL", _FakeResponse(405))
    session.queue("MKCOL", _FakeResponse(409))

    client.ensure_directory()

    urls = [c["url"] for c in session.calls]
    assert urls == ["https://dav.test/api/apps/", "https://dav.test/api/apps/yeying-wallet/"]


def test_mkcol_other_errors_raise(tmp_path: Path):
    client, session = _client(tmp_path, endpoint="https://dav.test/api")
    session.queue("MKCOL", _FakeResponse(403))

    with pytest.raises(WebDavError):
        client.mkcol("apps")


def test_network_errors_become_transport_errors(tmp_path: Path):
    client, session = _client(tmp_path, endpoint="https://dav.test/api")
    session.error = requests.ConnectionError("refused")

    with pytest.raises(TransportError):
        client.get("p")


def test_delete_treats_404_as_done(tmp_path: Path):
    client, session = _client(tmp_path, endpoint="https://dav.test/api")
    session.queue("DELETE", _FakeResponse(404))

    assert client.delete("p") is True
