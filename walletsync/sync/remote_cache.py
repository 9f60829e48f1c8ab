from __future__ import annotations

import logging
import threading
from typing import Optional

from pydantic import ValidationError

from walletsync.core.settings import RemoteMetaEntry, SettingsRepository
from walletsync.core.timeutil import now_ms
from walletsync.errors import SyncError

from .identity import SyncContext

logger = logging.getLogger("walletsync.remote_cache")


class RemoteChangeCache:
    """Last-seen validator (ETag / Last-Modified) per fingerprint.

    Purely an optimisation: a wrong answer only delays convergence by a cycle.
    """

    def __init__(self, settings: SettingsRepository):
        self.settings = settings
        self._lock = threading.Lock()
        self._entries: dict[str, RemoteMetaEntry] = {}

    def load(self) -> None:
        raw = self.settings.get("remote_meta", {})
        entries: dict[str, RemoteMetaEntry] = {}
        for fingerprint, item in (raw.items() if isinstance(raw, dict) else []):
            try:
                entries[fingerprint] = RemoteMetaEntry.model_validate(item)
            except ValidationError:
                continue
        with self._lock:
            self._entries = entries

    def _persist(self) -> None:
        snapshot = {fp: entry.to_store() for fp, entry in self._entries.items()}
        try:
            self.settings.set("remote_meta", snapshot)
        except Exception:
            logger.warning("remote_meta_persist_failed", exc_info=True)

    def get(self, fingerprint: str) -> Optional[RemoteMetaEntry]:
        with self._lock:
            return self._entries.get(fingerprint)

    def set(self, fingerprint: str, etag: str = "", last_modified: str = "") -> None:
        if not fingerprint:
            return
        with self._lock:
            # Both validators always come from the same response.
            self._entries[fingerprint] = RemoteMetaEntry(
                etag=etag or None,
                last_modified=last_modified or None,
                updated_at=now_ms(),
            )
            self._persist()

    def record_response(self, fingerprint: str, etag: str, last_modified: str) -> None:
        if etag or last_modified:
            self.set(fingerprint, etag=etag, last_modified=last_modified)

    def clear(self, fingerprint: str) -> None:
        if not fingerprint:
            return
        with self._lock:
            if fingerprint not in self._entries:
                return
            del self._entries[fingerprint]
            self._persist()

    def should_pull(self, context: SyncContext, client) -> bool:
        try:
            probe = client.head(client.payload_path(context.fingerprint))
        except SyncError as exc:
            logger.warning("remote_probe_failed %s", exc)
            return True
        if probe is None:
            return True
        if not probe.exists:
            self.clear(context.fingerprint)
            return False
        if probe.bypass:
            return True

        cached = self.get(context.fingerprint)
        if cached is None:
            return True
        if probe.etag and cached.etag and probe.etag == cached.etag:
            return False
        if (
            not probe.etag
            and probe.last_modified
            and cached.last_modified
            and probe.last_modified == cached.last_modified
        ):
            return False
        return True
