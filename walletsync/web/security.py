from __future__ import annotations

import ipaddress
import logging
from typing import Iterable, Union

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import PlainTextResponse

logger = logging.getLogger("walletsync.web")

Network = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


def parse_nets(raw: Iterable[str]) -> list[Network]:
    nets: list[Network] = []
    for part in raw:
        s = str(part or "").strip()
        if not s:
            continue
        try:
            nets.append(ipaddress.ip_network(s, strict=False))
        except ValueError as exc:
            raise ValueError(f"invalid_allowed_net: {s}") from exc
    return nets


def check_client(host: str, nets: list[Network]) -> str | None:
    """Return a denial code for `host`, or None when it may pass."""
    if not nets:
        return None
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return "unknown_client_address"
    # IPv4 clients arriving over a dual-stack socket show up as ::ffff:a.b.c.d
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    if any(ip.version == net.version and ip in net for net in nets):
        return None
    return "client_not_allowed"


class NetworkAllowlistMiddleware(BaseHTTPMiddleware):
    """Only serve clients inside `allowed_nets`; an empty list allows everyone."""

    def __init__(self, app, allowed_nets: Iterable[str]):
        super().__init__(app)
        self.allowed: list[Network] = []
        self.allowlist_error: str | None = None
        try:
            self.allowed = parse_nets(allowed_nets)
        except ValueError as exc:
            self.allowlist_error = str(exc)
            logger.error("allowlist_invalid error=%s", exc)

    async def dispatch(self, request: Request, call_next):
        if self.allowlist_error:
            return PlainTextResponse(f"access_denied: {self.allowlist_error}", status_code=503)

        client_host = request.client.host if request.client else ""
        denial = check_client(client_host, self.allowed)
        if denial:
            logger.warning("request_denied client=%s path=%s reason=%s", client_host or "-", request.url.path, denial)
            return PlainTextResponse(f"access_denied: {denial}", status_code=403)

        return await call_next(request)
