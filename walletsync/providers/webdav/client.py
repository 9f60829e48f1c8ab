from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urljoin, urlsplit, urlunsplit

import requests

from walletsync.core.settings import AuthMode, SettingsRepository, normalize_bearer_token
from walletsync.errors import TransportError, WebDavError

logger = logging.getLogger("walletsync.webdav")

APP_SCOPE_PREFIX = "apps"
SYNC_FILENAME = "payload.json.enc"


@dataclass
class ProbeResult:
    exists: bool
    # Server does not support HEAD; change detection cannot be trusted.
    bypass: bool = False
    etag: str = ""
    last_modified: str = ""


@dataclass
class RemoteObject:
    body: str
    etag: str = ""
    last_modified: str = ""


def join_url(base: str, path: str) -> str:
    if not base:
        return path
    normalized_base = base if base.endswith("/") else f"{base}/"
    return urljoin(normalized_base, path.lstrip("/"))


def build_payload_filename(fingerprint: str) -> str:
    safe = str(fingerprint or "").strip()
    if not safe:
        return SYNC_FILENAME
    return f"payload.{safe}.json.enc"


def app_scope_prefix(app_id: str) -> str:
    if not app_id:
        return ""
    return f"{APP_SCOPE_PREFIX}/{app_id}/"


def strip_app_scope(endpoint: str, app_id: str) -> str:
    """Drop a trailing `/apps/<app_id>/...` from an endpoint the user pasted in full."""
    if not endpoint or not app_id:
        return endpoint
    try:
        parts = urlsplit(endpoint)
    except ValueError:
        return endpoint
    marker = f"/{APP_SCOPE_PREFIX}/"
    idx = parts.path.find(marker)
    if idx < 0:
        return endpoint
    rest = parts.path[idx + len(marker):]
    if rest.split("/")[0] != app_id:
        return endpoint
    base_path = parts.path[:idx] or "/"
    return urlunsplit((parts.scheme, parts.netloc, base_path, "", ""))


def _validators(res: requests.Response) -> tuple[str, str]:
    return res.headers.get("ETag") or "", res.headers.get("Last-Modified") or ""


class WebDavClient:
    """WebDAV operations against the configured endpoint.

    Endpoint and credentials are re-read from settings on every call because
    tokens are refreshed out of band. Every operation returns None when no
    endpoint is configured.
    """

    def __init__(self, settings: SettingsRepository, timeout: int = 30, session: requests.Session | None = None):
        self.settings = settings
        self.timeout = timeout
        self.session = session or requests.Session()

    def base_endpoint(self) -> str:
        endpoint = str(self.settings.get("endpoint", "") or "").strip()
        if not endpoint:
            return ""
        return strip_app_scope(endpoint, self.settings.app_id())

    def auth_header(self) -> str:
        mode = self.settings.auth_mode()
        if mode == AuthMode.BASIC:
            basic = str(self.settings.get("basic_auth", "") or "").strip()
            if not basic:
                return ""
            return basic if basic.startswith("Basic ") else f"Basic {basic}"
        if mode == AuthMode.CAPABILITY:
            token = normalize_bearer_token(self.settings.get("ucan_token", ""))
        else:
            token = normalize_bearer_token(self.settings.get("auth_token", ""))
        return f"Bearer {token}" if token else ""

    def scope_prefix(self) -> str:
        return app_scope_prefix(self.settings.app_id())

    def payload_path(self, fingerprint: str) -> str:
        return f"{self.scope_prefix()}{build_payload_filename(fingerprint)}"

    def _request(
        self,
        method: str,
        path: str,
        headers: dict[str, str] | None = None,
        data: str | None = None,
    ) -> Optional[requests.Response]:
        endpoint = self.base_endpoint()
        if not endpoint:
            return None

        req_headers = dict(headers or {})
        auth = self.auth_header()
        if auth:
            req_headers["Authorization"] = auth

        url = join_url(endpoint, path)
        try:
            res = self.session.request(
                method,
                url,
                headers=req_headers,
                data=data.encode("utf-8") if data is not None else None,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise TransportError(f"webdav_{method.lower()}_request_failed: {exc}") from exc
        logger.debug("webdav %s %s -> %s", method, path, res.status_code)
        return res

    def get(self, path: str) -> Optional[RemoteObject]:
        res = self._request("GET", path)
        if res is None or res.status_code == 404:
            return None
        if not res.ok:
            raise WebDavError("GET", res.status_code, res.text or "")
        etag, last_modified = _validators(res)
        return RemoteObject(body=res.text or "", etag=etag, last_modified=last_modified)

    def put(self, path: str, body: str, content_type: str = "application/json") -> Optional[tuple[str, str]]:
        res = self._request("PUT", path, headers={"Content-Type": content_type}, data=body)
        if res is None:
            return None
        if not res.ok:
            raise WebDavError("PUT", res.status_code, res.text or "")
        return _validators(res)

    def head(self, path: str) -> Optional[ProbeResult]:
        res = self._request("HEAD", path, headers={"Cache-Control": "no-cache"})
        if res is None:
            return None
        if res.status_code == 404:
            return ProbeResult(exists=False)
        if res.status_code in (405, 501):
            return ProbeResult(exists=True, bypass=True)
        if not res.ok:
            raise WebDavError("HEAD", res.status_code)
        etag, last_modified = _validators(res)
        return ProbeResult(exists=True, etag=etag, last_modified=last_modified)

    def mkcol(self, path: str) -> None:
        dir_path = path if path.endswith("/") else f"{path}/"
        res = self._request("MKCOL", dir_path)
        if res is None or res.ok:
            return
        # Directory already exists (or parent handled by the server).
        if res.status_code in (405, 409):
            return
        raise WebDavError("MKCOL", res.status_code, res.text or "")

    def delete(self, path: str) -> bool:
        res = self._request("DELETE", path)
        if res is None:
            return False
        if not res.ok and res.status_code != 404:
            raise WebDavError("DELETE", res.status_code, res.text or "")
        return True

    def ensure_directory(self) -> None:
        current = ""
        for part in [p for p in self.scope_prefix().split("/") if p]:
            current += f"{part}/"
            self.mkcol(current)
