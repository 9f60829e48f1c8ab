"""
Backup sync orchestrator.

One `BackupSyncService` is built at process start and handed to whoever
needs it (HTTP layer, wallet host). It owns the per-wallet sync contexts,
the single-flight guard, the debounce timer and the auto-sync timer.

Background triggers (debounce, auto-sync tick, storage listener) catch and
log every failure. Explicit operations log and re-raise so the caller can
show the error.
"""

from __future__ import annotations

import logging
import random
import threading
from typing import Any, Callable, Optional

from walletsync.core.config import AppConfig, SyncConfig
from walletsync.core.kv_store import LOCAL_AREA, SqliteKeyValueStore
from walletsync.core.settings import (
    AuthMode,
    SettingsRepository,
    normalize_ucan_action,
    normalize_ucan_resource,
)
from walletsync.core.timeutil import ms_to_iso, now_ms
from walletsync.crypto import decrypt_object, encrypt_object
from walletsync.errors import ConfigurationError, ConflictNotFoundError, SyncBusyError, SyncError
from walletsync.providers.webdav import WebDavClient

from .activity import ActivityLog, AuditExporter, format_error_message, format_sync_message
from .conflicts import ConflictLedger
from .identity import SyncContext, derive_context
from .payload import PayloadCodec, SyncPayload, encode_envelope, extract_ciphertext
from .ports import DOMAIN_KEYS, WALLET_TYPE_HD, DomainState, PasswordSource, WalletVault
from .remote_cache import RemoteChangeCache
from .state import PasswordCache, StoreDomainState

logger = logging.getLogger("walletsync.service")

TimerFactory = Callable[[float, Callable[[], None]], Any]

EDITABLE_SETTINGS = (
    "enabled",
    "endpoint",
    "auth_mode",
    "auth_token",
    "auth_token_expires_at",
    "ucan_token",
    "ucan_resource",
    "ucan_action",
    "ucan_audience",
    "basic_auth",
    "log_max_count",
    "log_retention_days",
)
RESOLUTION_CHOICES = ("local", "remote")


def _default_timer(delay_sec: float, fn: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(delay_sec, fn)
    timer.daemon = True
    return timer


class BackupSyncService:
    def __init__(
        self,
        cfg: SyncConfig,
        settings: SettingsRepository,
        state: DomainState,
        vault: WalletVault,
        passwords: PasswordSource,
        client: WebDavClient,
        activity: ActivityLog,
        timer_factory: TimerFactory = _default_timer,
        rand: Callable[[], float] = random.random,
    ):
        self.cfg = cfg
        self.settings = settings
        self.state = state
        self.vault = vault
        self.passwords = passwords
        self.client = client
        self.activity = activity
        self.timer_factory = timer_factory
        self.rand = rand

        self.conflicts = ConflictLedger(settings, activity)
        self.remote_cache = RemoteChangeCache(settings)
        self.codec = PayloadCodec(state, vault, passwords, settings, self.conflicts)

        self._initialized = False
        self._contexts: dict[str, SyncContext] = {}
        self._flight = threading.Lock()
        self._timer_lock = threading.Lock()
        self._dirty = False
        # Bumped by every local edit; a pass only clears dirty when no edit arrived meanwhile.
        self._dirty_gen = 0
        self._suppress_storage_events = False
        self._unsubscribe_storage: Optional[Callable[[], None]] = None
        self._debounce_timer: Any = None
        self._auto_timer: Any = None
        self._auto_running = False
        self._auto_ticking = False
        self._auto_failures = 0
        self._next_auto_at: Optional[int] = None

    # ------------------------------------------------------------- lifecycle

    def init(self) -> None:
        if self._initialized:
            return
        self._initialized = True
        self.settings.migrate()
        self._dirty = bool(self.settings.get("dirty", False))
        self.remote_cache.load()
        self.activity.prune()
        self._attach_storage_listener()
        logger.info("sync_service_initialized enabled=%s dirty=%s", self.is_enabled(), self._dirty)

    def close(self) -> None:
        self.stop_auto_sync()
        self._cancel_debounce()
        if self._unsubscribe_storage is not None:
            self._unsubscribe_storage()
            self._unsubscribe_storage = None

    def on_unlocked(self, password: str) -> None:
        if isinstance(self.passwords, PasswordCache):
            self.passwords.cache(password)
        self._prepare_contexts(password)
        self._handle_pending_delete()
        try:
            self.sync_all("unlock")
        except SyncError as exc:
            # Already recorded as sync-error; the auto loop retries.
            logger.warning("unlock_sync_failed %s", exc)
        self.start_auto_sync()

    def on_locked(self) -> None:
        try:
            self.push_all("lock")
        except SyncError as exc:
            # Dirty stays set; the next unlock sync pushes it.
            logger.warning("lock_push_failed %s", exc)
        finally:
            self._contexts.clear()
            self._cancel_debounce()
            self.stop_auto_sync()
            if isinstance(self.passwords, PasswordCache):
                self.passwords.clear()
            logger.info("sync_contexts_cleared")

    # ----------------------------------------------------------------- state

    def is_enabled(self) -> bool:
        return self.settings.is_enabled()

    @property
    def sync_in_flight(self) -> bool:
        return self._flight.locked()

    @property
    def dirty(self) -> bool:
        return self._dirty

    def context_wallet_ids(self) -> list[str]:
        return list(self._contexts)

    def _set_dirty(self, value: bool) -> None:
        try:
            self.settings.set("dirty", value)
        except Exception:
            logger.warning("dirty_flag_persist_failed value=%s", value, exc_info=True)
        self._dirty = value

    def _require_ready(self) -> None:
        if not str(self.settings.get("endpoint", "") or "").strip():
            raise ConfigurationError("endpoint_not_configured")
        if not self.settings.get("enabled", True):
            raise ConfigurationError("sync_disabled")
        if not self.settings.has_auth():
            raise ConfigurationError("credentials_not_configured")

    def _prepare_contexts(self, password: str) -> None:
        for wallet in list((self.state.get_wallets() or {}).values()):
            if not wallet or wallet.get("type") != WALLET_TYPE_HD:
                continue
            wallet_id = str(wallet.get("id"))
            try:
                mnemonic = self.vault.get_wallet_mnemonic(wallet, password)
                self._contexts[wallet_id] = derive_context(mnemonic)
            except Exception as exc:
                logger.warning("sync_context_prepare_failed wallet=%s error=%s", wallet_id, type(exc).__name__)
        logger.info("sync_contexts_prepared count=%s", len(self._contexts))

    # ----------------------------------------------------------- dirty/debounce

    def mark_dirty(self, reason: str = "change") -> None:
        self._set_dirty(True)
        self._dirty_gen += 1
        self._schedule_push(reason)

    def _schedule_push(self, reason: str) -> None:
        with self._timer_lock:
            if self._debounce_timer is not None:
                self._debounce_timer.cancel()
            timer = self.timer_factory(self.cfg.debounce_sec, lambda: self._run_debounced_push(reason))
            self._debounce_timer = timer
        timer.start()

    def _cancel_debounce(self) -> None:
        with self._timer_lock:
            if self._debounce_timer is not None:
                self._debounce_timer.cancel()
                self._debounce_timer = None

    def _run_debounced_push(self, reason: str) -> None:
        with self._timer_lock:
            self._debounce_timer = None
        label = f"debounced:{reason}"
        if self.sync_in_flight:
            self._schedule_push(reason)
            return
        try:
            self.push_all(label)
        except SyncError as exc:
            # push-error entry is written by _push_wallet
            logger.warning("debounced_push_failed reason=%s %s", label, exc)
        except Exception as exc:
            logger.exception("debounced_push_crashed reason=%s", label)
            self.activity.log("error", "push-error", label, format_error_message(label, exc))

    def _attach_storage_listener(self) -> None:
        if self._unsubscribe_storage is not None:
            return
        self._unsubscribe_storage = self.settings.store.subscribe(self._on_storage_changed)

    def _on_storage_changed(self, changed_keys: list[str], area: str) -> None:
        if area != LOCAL_AREA or self._suppress_storage_events:
            return
        if any(key in DOMAIN_KEYS for key in changed_keys):
            self.mark_dirty("storage-change")

    # ------------------------------------------------------------ sync passes

    def sync_all(self, reason: str = "manual") -> bool:
        """Pull, merge and push every prepared wallet. Returns False when skipped."""
        if not self.is_enabled():
            return False
        if not self._flight.acquire(blocking=False):
            logger.info("sync_skipped_busy reason=%s", reason)
            return False
        try:
            generation = self._dirty_gen
            started_at = now_ms()
            self.activity.log("info", "sync-start", reason, format_sync_message("started", reason))
            logger.info("sync_started reason=%s wallets=%s", reason, len(self._contexts))
            try:
                wallet_ids = list(self._contexts)
                # Every merge lands before any push, so each backup carries the shared contacts and networks.
                for wallet_id in wallet_ids:
                    self._pull_wallet(wallet_id, reason)
                for wallet_id in wallet_ids:
                    self._push_wallet(wallet_id, reason)
            except Exception as exc:
                self.activity.log("error", "sync-error", reason, format_error_message(reason, exc))
                logger.warning("sync_failed reason=%s %s", reason, exc)
                raise
            if self._contexts and generation == self._dirty_gen:
                self._set_dirty(False)
            duration_ms = now_ms() - started_at
            self.activity.log("info", "sync-complete", reason, format_sync_message("completed", reason), duration_ms)
            logger.info("sync_completed reason=%s duration_ms=%s", reason, duration_ms)
            return True
        finally:
            self._flight.release()

    def push_all(self, reason: str = "manual", force: bool = False) -> bool:
        """Push every prepared wallet when local state is dirty. Returns False when skipped."""
        if not self.is_enabled():
            return False
        if not self._dirty and not force:
            return False
        if not self._flight.acquire(blocking=False):
            logger.info("push_skipped_busy reason=%s", reason)
            return False
        try:
            generation = self._dirty_gen
            for wallet_id in list(self._contexts):
                self._push_wallet(wallet_id, reason)
            if self._contexts and generation == self._dirty_gen:
                self._set_dirty(False)
            return True
        finally:
            self._flight.release()

    def pull_if_changed(self, reason: str = "auto") -> bool:
        """Pull only wallets whose remote validator moved. Returns False when skipped."""
        if not self.is_enabled():
            return False
        if not self._flight.acquire(blocking=False):
            return False
        try:
            for wallet_id, context in list(self._contexts.items()):
                if not self.remote_cache.should_pull(context, self.client):
                    continue
                remote = self._pull_quietly(context, reason)
                if remote is not None:
                    self._apply_remote(wallet_id, remote, reason)
            return True
        finally:
            self._flight.release()

    def sync_now(self, reason: str = "manual") -> None:
        self._require_ready()
        if not self.sync_all(reason):
            raise SyncBusyError()

    def push_now(self, reason: str = "manual") -> None:
        self._require_ready()
        if not self.push_all(reason, force=True):
            raise SyncBusyError()

    def _pull_wallet(self, wallet_id: str, reason: str) -> None:
        context = self._contexts.get(wallet_id)
        if context is None:
            return
        remote = self._pull_quietly(context, reason)
        if remote is not None:
            self._apply_remote(wallet_id, remote, reason)

    def _pull_quietly(self, context: SyncContext, reason: str) -> Any:
        try:
            return self._pull_remote(context, reason)
        except SyncError as exc:
            logger.warning("pull_failed fingerprint=%s %s", context.fingerprint[:12], exc)
            self.activity.log("warn", "pull-error", reason, format_error_message(reason, exc))
            return None

    def _pull_remote(self, context: SyncContext, reason: str) -> Any:
        if not self.client.base_endpoint():
            return None
        remote = self.client.get(self.client.payload_path(context.fingerprint))
        if remote is None:
            self.remote_cache.clear(context.fingerprint)
            return None
        if not remote.body:
            return None

        payload = decrypt_object(extract_ciphertext(remote.body), context.sync_key)
        self.remote_cache.record_response(context.fingerprint, remote.etag, remote.last_modified)
        self.settings.set("last_pull_at", now_ms())
        self.activity.log("info", "pull", reason, "pulled remote backup")
        return payload

    def _apply_remote(self, wallet_id: str, remote: Any, reason: str) -> None:
        self._suppress_storage_events = True
        try:
            changed = self.codec.merge(wallet_id, remote, reason)
        finally:
            self._suppress_storage_events = False
        if changed:
            self._set_dirty(True)

    def _push_wallet(self, wallet_id: str, reason: str) -> None:
        context = self._contexts.get(wallet_id)
        if context is None:
            return
        payload = self.codec.build(wallet_id, reason)
        if payload is None:
            return
        try:
            self._write_remote(context, payload)
        except Exception as exc:
            self.activity.log("error", "push-error", reason, format_error_message(reason, exc))
            raise
        self.settings.set("last_push_at", now_ms())
        self.activity.log("info", "push", reason, "pushed remote backup")

    def _write_remote(self, context: SyncContext, payload: SyncPayload) -> None:
        self.client.ensure_directory()
        ciphertext = encrypt_object(payload.to_store(), context.sync_key)
        validators = self.client.put(self.client.payload_path(context.fingerprint), encode_envelope(ciphertext))
        if validators:
            self.remote_cache.record_response(context.fingerprint, *validators)

    # ------------------------------------------------------- remote deletion

    def _delete_remote_all(self) -> int:
        deleted = 0
        for context in list(self._contexts.values()):
            if self.client.delete(self.client.payload_path(context.fingerprint)):
                deleted += 1
            self.remote_cache.clear(context.fingerprint)
        return deleted

    def _handle_pending_delete(self) -> None:
        if not self.settings.get("pending_delete", False):
            return
        try:
            deleted = self._delete_remote_all()
        except SyncError as exc:
            # Flag stays set; retried on the next unlock.
            logger.warning("pending_delete_failed %s", exc)
            self.activity.log("error", "clear-remote-error", "unlock", format_error_message("unlock", exc))
            return
        self.settings.set("pending_delete", False)
        self.activity.log("info", "clear-remote", "unlock", f"cleared remote backup ({deleted} objects)")

    def disable_sync(self) -> None:
        self.settings.set("enabled", False)
        self.stop_auto_sync()
        self._cancel_debounce()
        if not self._contexts:
            self.settings.set("pending_delete", True)
            self.activity.log("info", "disable", "manual", "sync disabled; remote backup removed on next unlock")
            return
        try:
            self._delete_remote_all()
        except SyncError as exc:
            self.settings.set("pending_delete", True)
            self.activity.log("error", "disable", "manual", format_error_message("manual", exc))
            logger.warning("disable_remote_delete_failed %s", exc)
            raise
        self.settings.set("pending_delete", False)
        self.activity.log("info", "disable", "manual", "sync disabled; remote backup removed")

    def enable_sync(self) -> None:
        self.settings.update(enabled=True, pending_delete=False)
        self.activity.log("info", "enable", "manual", "sync enabled")
        self.try_start_auto_sync()

    def clear_remote_now(self) -> int:
        if not str(self.settings.get("endpoint", "") or "").strip():
            raise ConfigurationError("endpoint_not_configured")
        if not self.settings.has_auth():
            raise ConfigurationError("credentials_not_configured")
        if not self._contexts:
            self.activity.log("warn", "clear-remote", "manual", "no unlocked wallet; nothing cleared")
            return 0
        try:
            deleted = self._delete_remote_all()
        except SyncError as exc:
            self.activity.log("error", "clear-remote-error", "manual", format_error_message("manual", exc))
            logger.warning("clear_remote_failed %s", exc)
            raise
        self.activity.log("info", "clear-remote", "manual", f"cleared remote backup ({deleted} objects)")
        return deleted

    def clear_activity_logs(self) -> None:
        self.activity.clear()

    # -------------------------------------------------------------- conflicts

    def resolve_conflict(self, conflict_id: str, choice: str) -> None:
        if choice not in RESOLUTION_CHOICES:
            raise ValueError(f"invalid_resolution_choice: {choice}")
        conflict = self.conflicts.get(conflict_id)
        if conflict is None:
            raise ConflictNotFoundError(conflict_id)

        self._suppress_storage_events = True
        try:
            applied = self.codec.apply_resolution(conflict, choice)
        finally:
            self._suppress_storage_events = False
        self.conflicts.remove(conflict_id)

        if not applied:
            self.activity.log("warn", "conflict-resolved", "manual", f"{conflict_id}: local record no longer exists")
            return
        self.activity.log("info", "conflict-resolved", "manual", f"{conflict_id}: kept {choice} value")
        self.mark_dirty("conflict-resolved")

    # -------------------------------------------------------------- auto sync

    def next_auto_delay(self, failures: Optional[int] = None) -> float:
        """Seconds until the next auto-sync tick: capped exponential backoff with symmetric jitter."""
        count = self._auto_failures if failures is None else failures
        base = self.cfg.auto_interval_sec
        cap = self.cfg.auto_max_backoff_sec
        backoff = min(base * (2 ** count), cap)
        jitter = (self.rand() * 2 - 1) * self.cfg.auto_jitter_sec
        return max(self.cfg.auto_min_delay_sec, min(backoff + jitter, cap))

    def start_auto_sync(self) -> None:
        with self._timer_lock:
            if self._auto_timer is not None:
                return
            self._auto_running = True
            if self._auto_ticking:
                # The running tick reschedules itself on exit.
                return
            self._auto_failures = 0
        self._schedule_auto_sync()

    def stop_auto_sync(self) -> None:
        with self._timer_lock:
            self._auto_running = False
            if self._auto_timer is not None:
                self._auto_timer.cancel()
                self._auto_timer = None
            self._auto_failures = 0
            self._next_auto_at = None

    def try_start_auto_sync(self) -> None:
        if not self.is_enabled():
            return
        if self._auto_timer is not None or self._auto_ticking:
            return
        if not self._contexts:
            password = self.passwords.get_cached_password()
            if password:
                self._prepare_contexts(password)
        self.start_auto_sync()

    def _schedule_auto_sync(self) -> None:
        delay = self.next_auto_delay()
        with self._timer_lock:
            if not self._auto_running:
                return
            if self._auto_timer is not None:
                self._auto_timer.cancel()
            timer = self.timer_factory(delay, self._auto_tick)
            self._auto_timer = timer
            self._next_auto_at = now_ms() + int(delay * 1000)
        timer.start()
        logger.debug("auto_sync_scheduled delay_sec=%.1f failures=%s", delay, self._auto_failures)

    def _auto_tick(self) -> None:
        with self._timer_lock:
            self._auto_timer = None
            self._auto_ticking = True
        try:
            self._run_auto_sync()
        except Exception:
            logger.exception("auto_sync_tick_crashed")
        finally:
            with self._timer_lock:
                self._auto_ticking = False

    def _run_auto_sync(self) -> None:
        if not self.is_enabled():
            self.stop_auto_sync()
            return
        try:
            if self.sync_in_flight or not self.settings.has_auth() or self.conflicts.has_pending():
                return
            if not self._contexts:
                password = self.passwords.get_cached_password()
                if password:
                    self._prepare_contexts(password)
            if not self._contexts:
                return
            try:
                if self._dirty:
                    self.sync_all("auto")
                else:
                    self.pull_if_changed("auto")
                self._auto_failures = 0
            except Exception as exc:
                self._auto_failures += 1
                logger.warning("auto_sync_failed failures=%s %s", self._auto_failures, exc)
                self.activity.log("error", "auto-sync-error", "auto", format_error_message("auto", exc))
        finally:
            if self.is_enabled():
                self._schedule_auto_sync()
            else:
                self.stop_auto_sync()

    # --------------------------------------------------------------- settings

    def get_settings(self) -> dict[str, Any]:
        return self.settings.load().public_view()

    def update_settings(self, **fields: Any) -> dict[str, Any]:
        values: dict[str, Any] = {}
        for name, value in fields.items():
            if name not in EDITABLE_SETTINGS:
                raise ConfigurationError(f"setting_not_editable: {name}")
            if name == "auth_mode":
                try:
                    raw = value.value if isinstance(value, AuthMode) else str(value).strip().lower()
                    value = AuthMode(raw).value
                except ValueError as exc:
                    raise ConfigurationError(f"invalid_auth_mode: {value}") from exc
            elif name == "endpoint":
                value = str(value or "").strip()
            elif name == "ucan_resource":
                value = normalize_ucan_resource(value, self.settings.default_app_id)
            elif name == "ucan_action":
                value = normalize_ucan_action(value)
            elif name in ("log_max_count", "log_retention_days"):
                if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                    raise ConfigurationError(f"invalid_{name}: {value}")
            values[name] = value
        if values:
            self.settings.update(**values)
            logger.info("settings_updated fields=%s", ",".join(sorted(values)))

        if "enabled" in values:
            if values["enabled"]:
                self.try_start_auto_sync()
            else:
                self.stop_auto_sync()
        if "log_max_count" in values or "log_retention_days" in values:
            self.activity.prune()
        return self.get_settings()

    # ----------------------------------------------------------------- status

    def status(self) -> dict[str, Any]:
        last_pull_at = self.settings.get("last_pull_at")
        last_push_at = self.settings.get("last_push_at")
        return {
            "enabled": self.is_enabled(),
            "endpoint": str(self.settings.get("endpoint", "") or ""),
            "auth_mode": self.settings.auth_mode().value,
            "has_auth": self.settings.has_auth(),
            "dirty": self._dirty,
            "in_flight": self.sync_in_flight,
            "unlocked_wallets": len(self._contexts),
            "pending_delete": bool(self.settings.get("pending_delete", False)),
            "pending_conflicts": len(self.conflicts.list()),
            "last_pull_at": last_pull_at,
            "last_pull_at_iso": ms_to_iso(last_pull_at),
            "last_push_at": last_push_at,
            "last_push_at_iso": ms_to_iso(last_push_at),
            "auto_sync": {
                "running": self._auto_running,
                "failures": self._auto_failures,
                "next_run_at": self._next_auto_at,
                "next_run_at_iso": ms_to_iso(self._next_auto_at),
            },
        }


def build_service(
    cfg: AppConfig,
    vault: WalletVault,
    passwords: Optional[PasswordSource] = None,
    state: Optional[DomainState] = None,
    store: Optional[SqliteKeyValueStore] = None,
    session=None,
    timer_factory: TimerFactory = _default_timer,
) -> BackupSyncService:
    store = store or SqliteKeyValueStore(cfg.database.path)
    settings = SettingsRepository(
        store,
        default_endpoint=cfg.remote.default_endpoint,
        default_app_id=cfg.remote.default_app_id,
        log_max_count=cfg.sync.log_max_count,
        log_retention_days=cfg.sync.log_retention_days,
    )
    activity = ActivityLog(settings, AuditExporter(store, cfg.audit, session=session))
    client = WebDavClient(settings, timeout=cfg.remote.timeout_sec, session=session)
    return BackupSyncService(
        cfg.sync,
        settings,
        state or StoreDomainState(store),
        vault,
        passwords or PasswordCache(),
        client,
        activity,
        timer_factory=timer_factory,
    )
