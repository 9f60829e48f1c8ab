from .identity import SyncContext, derive_context
from .service import BackupSyncService, build_service

__all__ = ["BackupSyncService", "SyncContext", "build_service", "derive_context"]
