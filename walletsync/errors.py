from __future__ import annotations


class SyncError(RuntimeError):
    """Base class for every error raised by the sync engine."""


class ConfigurationError(SyncError):
    """Endpoint or credentials are missing; sync is not attempted."""


class TransportError(SyncError):
    """Network failure or an unexpected response from the remote store."""


class WebDavError(TransportError):
    def __init__(self, method: str, status: int, detail: str = ""):
        self.method = method
        self.status = status
        self.detail = detail
        message = f"webdav_{method.lower()}_failed_status_{status}"
        if detail:
            message = f"{message}: {detail[:200]}"
        super().__init__(message)


class IdentityError(SyncError):
    """The wallet cannot provide the secret material needed for a sync context."""


class CryptoError(SyncError):
    pass


class SyncBusyError(SyncError):
    def __init__(self):
        super().__init__("sync_busy")


class ConflictNotFoundError(SyncError):
    def __init__(self, conflict_id: str):
        self.conflict_id = conflict_id
        super().__init__(f"conflict_not_found: {conflict_id}")
