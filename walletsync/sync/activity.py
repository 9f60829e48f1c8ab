"""
Sync activity log.

A bounded, newest-first list of what the engine tried and how it went,
persisted with the settings so the user can inspect it. Entries can also be
mirrored to an external audit endpoint through `AuditExporter`.
"""

from __future__ import annotations

import logging
import secrets
import string
import threading
from typing import Any, Callable, Optional

import requests
from pydantic import ValidationError

from walletsync.core.config import AuditExportConfig
from walletsync.core.settings import LogEntry, SettingsRepository
from walletsync.core.timeutil import now_ms

logger = logging.getLogger("walletsync.activity")

DAY_MS = 24 * 60 * 60 * 1000
AUDIT_QUEUE_KEY = "backupSyncAuditQueue"
AUDIT_STATUS_KEY = "backupSyncAuditStatus"

_REASON_LABELS = {
    "manual": "manual",
    "auto": "auto",
    "unlock": "unlock",
    "lock": "lock",
}
_ID_ALPHABET = string.ascii_lowercase + string.digits


def _random_suffix(n: int = 6) -> str:
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(n))


def format_reason(reason: str = "") -> str:
    if not reason:
        return ""
    if reason.startswith("debounced:"):
        detail = reason[len("debounced:"):]
        return f"local change ({detail})" if detail else "local change"
    return _REASON_LABELS.get(reason, reason)


def format_sync_message(outcome: str, reason: str = "") -> str:
    label = format_reason(reason)
    return f"{label} sync {outcome}" if label else f"sync {outcome}"


def format_error_message(reason: str, error: object) -> str:
    base = format_sync_message("failed", reason)
    detail = str(error or "")
    return f"{base}: {detail}" if detail else base


def build_entry(
    level: str = "info",
    action: str = "",
    reason: str = "",
    message: str = "",
    duration_ms: Optional[int] = None,
) -> LogEntry:
    ts = now_ms()
    return LogEntry(
        id=f"sync_{ts}_{_random_suffix()}",
        time=ts,
        level=level,
        action=action,
        reason=reason,
        message=message,
        duration_ms=duration_ms if duration_ms is None else max(0, int(duration_ms)),
    )


def prune_entries(entries: list[LogEntry], max_count: int, retention_days: int, now: int | None = None) -> list[LogEntry]:
    if retention_days > 0:
        cutoff = (now if now is not None else now_ms()) - retention_days * DAY_MS
        entries = [e for e in entries if e.time >= cutoff]
    return entries[:max_count]


class ActivityLog:
    def __init__(self, settings: SettingsRepository, exporter: "AuditExporter | None" = None):
        self.settings = settings
        self.exporter = exporter
        self._lock = threading.Lock()

    def _stored(self) -> list[LogEntry]:
        raw = self.settings.get("logs", [])
        items: list[LogEntry] = []
        for item in raw if isinstance(raw, list) else []:
            try:
                items.append(LogEntry.model_validate(item))
            except ValidationError:
                continue
        return items

    def append(self, entry: LogEntry) -> None:
        """Record an entry. Persistence problems are logged, never raised."""
        try:
            max_count, retention_days = self.settings.log_policy()
            with self._lock:
                items = prune_entries([entry, *self._stored()], max_count, retention_days)
                self.settings.set("logs", [item.to_store() for item in items])
        except Exception:
            logger.warning("activity_append_failed action=%s", entry.action, exc_info=True)
            return

        if self.exporter is not None:
            self.exporter.enqueue(entry)

    def log(self, level: str, action: str, reason: str, message: str, duration_ms: Optional[int] = None) -> LogEntry:
        entry = build_entry(level=level, action=action, reason=reason, message=message, duration_ms=duration_ms)
        self.append(entry)
        return entry

    def entries(self, level: str | None = None, action: str | None = None, limit: int | None = None) -> list[LogEntry]:
        items = self._stored()
        if level:
            items = [e for e in items if e.level == level]
        if action:
            items = [e for e in items if e.action == action]
        if limit is not None and limit >= 0:
            items = items[:limit]
        return items

    def prune(self) -> int:
        max_count, retention_days = self.settings.log_policy()
        with self._lock:
            items = self._stored()
            kept = prune_entries(items, max_count, retention_days)
            if len(kept) != len(items):
                self.settings.set("logs", [item.to_store() for item in kept])
        return len(items) - len(kept)

    def clear(self) -> None:
        with self._lock:
            self.settings.set("logs", [])


def _spawn_daemon(fn: Callable[[], Any]) -> None:
    threading.Thread(target=fn, name="walletsync-audit-export", daemon=True).start()


class AuditExporter:
    """Mirror activity entries to an HTTP endpoint.

    Entries are queued in the store and flushed in the background. Each
    queued entry is retried on later flushes until it has failed
    `max_attempts` times; export failures never reach the caller of
    `ActivityLog.append`.
    """

    def __init__(
        self,
        store,
        cfg: AuditExportConfig,
        session: requests.Session | None = None,
        spawn: Callable[[Callable[[], Any]], None] = _spawn_daemon,
    ):
        self.store = store
        self.cfg = cfg
        self.session = session or requests.Session()
        self.spawn = spawn
        self._flush_lock = threading.Lock()
        self._queue_lock = threading.Lock()

    @property
    def active(self) -> bool:
        return bool(self.cfg.enabled and self.cfg.endpoint.strip())

    def queue(self) -> list[dict[str, Any]]:
        raw = self.store.get(AUDIT_QUEUE_KEY, [])
        return [item for item in raw if isinstance(item, dict)] if isinstance(raw, list) else []

    def status(self) -> dict[str, Any]:
        raw = self.store.get(AUDIT_STATUS_KEY, {})
        return raw if isinstance(raw, dict) else {}

    def enqueue(self, entry: LogEntry) -> None:
        if not self.active:
            return
        with self._queue_lock:
            items = self.queue()
            items.append({"entry": entry.to_store(), "attempts": 0})
            self.store.set(AUDIT_QUEUE_KEY, items)
        self.spawn(self._flush_in_background)

    def _flush_in_background(self) -> None:
        try:
            self.flush()
        except Exception:
            logger.exception("audit_export_flush_crashed")

    def _send(self, logs: list[dict[str, Any]]) -> None:
        headers = {"Content-Type": "application/json", **self.cfg.headers}
        body = {"type": "sync_activity_logs", "exportedAt": now_ms(), "logs": logs}
        res = self.session.post(self.cfg.endpoint.strip(), json=body, headers=headers, timeout=self.cfg.timeout_sec)
        if res.status_code >= 400:
            raise RuntimeError(f"audit_export_failed_status_{res.status_code}")

    def _set_status(self, status: str, sent: int, error: str = "") -> None:
        self.store.set(AUDIT_STATUS_KEY, {"status": status, "time": now_ms(), "sent": sent, "error": error})

    def flush(self) -> dict[str, Any]:
        if not self.active:
            return {"skipped": True, "reason": "disabled"}
        if not self._flush_lock.acquire(blocking=False):
            return {"skipped": True, "reason": "in_flight"}
        try:
            batch = self.queue()
            if not batch:
                return {"sent": 0}
            try:
                self._send([item.get("entry", {}) for item in batch])
            except (requests.RequestException, RuntimeError) as exc:
                dropped = self._record_failure(len(batch))
                self._set_status("error", len(batch), str(exc))
                logger.warning("audit_export_failed batch=%s dropped=%s %s", len(batch), dropped, exc)
                return {"sent": 0, "failed": len(batch), "dropped": dropped, "error": str(exc)}

            with self._queue_lock:
                # Entries queued while the batch was in flight stay for the next flush.
                self.store.set(AUDIT_QUEUE_KEY, self.queue()[len(batch):])
            self._set_status("success", len(batch))
            return {"sent": len(batch)}
        finally:
            self._flush_lock.release()

    def _record_failure(self, batch_size: int) -> int:
        with self._queue_lock:
            items = self.queue()
            kept: list[dict[str, Any]] = []
            dropped = 0
            for pos, item in enumerate(items):
                if pos < batch_size:
                    attempts = int(item.get("attempts", 0)) + 1
                    if attempts >= self.cfg.max_attempts:
                        dropped += 1
                        continue
                    item = {**item, "attempts": attempts}
                kept.append(item)
            self.store.set(AUDIT_QUEUE_KEY, kept)
        if dropped:
            logger.error("audit_export_discarded count=%s", dropped)
        return dropped
