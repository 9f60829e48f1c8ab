from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from walletsync import __version__
from walletsync.core.config import load_config
from walletsync.sync.service import BackupSyncService, build_service
from walletsync.sync.state import DetachedVault
from walletsync.web.api import build_router
from walletsync.web.security import NetworkAllowlistMiddleware


def build_app(service: BackupSyncService, allowed_nets: list[str] | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_api: FastAPI):
        service.init()
        try:
            yield
        finally:
            service.close()

    api = FastAPI(title="walletsync", version=__version__, lifespan=lifespan)
    if allowed_nets is not None:
        api.add_middleware(NetworkAllowlistMiddleware, allowed_nets=allowed_nets)

    api.include_router(build_router(service))
    return api


def main():
    import uvicorn

    cfg = load_config()

    from walletsync.core.logging_setup import setup_logging

    setup_logging(cfg.logging)

    # Standalone console: settings, logs and conflicts only; no wallet keyring attached.
    service = build_service(cfg, DetachedVault())

    uvicorn.run(
        build_app(service, allowed_nets=cfg.web.allowed_nets),
        host=cfg.web.bind_host,
        port=cfg.web.port,
        log_level=cfg.logging.level.lower(),
        log_config=None,
    )


if __name__ == "__main__":
    main()
