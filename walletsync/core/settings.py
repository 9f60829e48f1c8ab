"""
Persisted sync settings.

Everything the engine needs to survive a restart lives in the key-value
store under the keys in `SETTINGS_KEYS`. `SettingsRepository` is the only
writer; it always persists before returning so the store stays the single
source of truth.
"""

from __future__ import annotations

import logging
import re
from enum import Enum
from typing import Any, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .config import DEFAULT_APP_ID, DEFAULT_SYNC_ENDPOINT

logger = logging.getLogger("walletsync.settings")

SETTINGS_VERSION = 1
DEFAULT_UCAN_ACTION = "write"
LEGACY_DEFAULT_APP_ID = "yeying-wallet"
LEGACY_UCAN_RESOURCES = {"profile", "webdav/*", "webdav#access", "webdav/access", "webdav"}

SETTINGS_KEYS: dict[str, str] = {
    "version": "backupSyncVersion",
    "enabled": "backupSyncEnabled",
    "endpoint": "backupSyncEndpoint",
    "auth_mode": "backupSyncAuthMode",
    "auth_token": "backupSyncAuthToken",
    "auth_token_expires_at": "backupSyncAuthTokenExpiresAt",
    "ucan_token": "backupSyncUcanToken",
    "ucan_resource": "backupSyncUcanResource",
    "ucan_action": "backupSyncUcanAction",
    "ucan_audience": "backupSyncUcanAudience",
    "basic_auth": "backupSyncBasicAuth",
    "dirty": "backupSyncDirty",
    "last_pull_at": "backupSyncLastPullAt",
    "last_push_at": "backupSyncLastPushAt",
    "pending_delete": "backupSyncPendingDelete",
    "network_ids": "backupSyncNetworkIds",
    "conflicts": "backupSyncConflicts",
    "remote_meta": "backupSyncRemoteMeta",
    "logs": "backupSyncLogs",
    "log_max_count": "backupSyncLogMaxCount",
    "log_retention_days": "backupSyncLogRetentionDays",
}

SECRET_FIELDS = ("auth_token", "ucan_token", "basic_auth")


class AuthMode(str, Enum):
    TOKEN = "token"
    # Stored as "ucan" for compatibility with existing installs.
    CAPABILITY = "ucan"
    BASIC = "basic"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_store(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class RemoteMetaEntry(CamelModel):
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    updated_at: int = 0


class Conflict(CamelModel):
    id: str
    type: Literal["account", "contact"]
    local_name: str = ""
    remote_name: str = ""
    timestamp: int = 0

    # account conflicts
    wallet_id: Optional[str] = None
    account_id: Optional[str] = None
    index: Optional[int] = None

    # contact conflicts
    contact_id: Optional[str] = None
    address: Optional[str] = None
    local_note: Optional[str] = None
    remote_note: Optional[str] = None


class LogEntry(CamelModel):
    id: str
    time: int
    level: Literal["info", "warn", "error"] = "info"
    action: str = ""
    reason: str = ""
    message: str = ""
    duration_ms: Optional[int] = None


class SyncSettings(BaseModel):
    version: int = SETTINGS_VERSION
    enabled: bool = True
    endpoint: str = ""
    auth_mode: AuthMode = AuthMode.CAPABILITY
    auth_token: str = ""
    auth_token_expires_at: Optional[int] = None
    ucan_token: str = ""
    ucan_resource: str = ""
    ucan_action: str = ""
    ucan_audience: str = ""
    basic_auth: str = ""
    dirty: bool = False
    pending_delete: bool = False
    last_pull_at: Optional[int] = None
    last_push_at: Optional[int] = None
    network_ids: list[str] = Field(default_factory=list)
    conflicts: list[Conflict] = Field(default_factory=list)
    remote_meta: dict[str, RemoteMetaEntry] = Field(default_factory=dict)
    logs: list[LogEntry] = Field(default_factory=list)
    log_max_count: int = 200
    log_retention_days: int = 30

    def public_view(self) -> dict[str, Any]:
        """Settings as shown to UI collaborators: secrets reduced to presence flags."""
        data = self.model_dump(mode="json", exclude={"logs", "remote_meta", *SECRET_FIELDS})
        for name in SECRET_FIELDS:
            data[f"{name}_set"] = bool(getattr(self, name))
        return data


def default_ucan_resource(app_id: str = DEFAULT_APP_ID) -> str:
    return f"app:{(app_id or LEGACY_DEFAULT_APP_ID).strip().lower()}"


def is_legacy_ucan_resource(value: object, default_app_id: str = DEFAULT_APP_ID) -> bool:
    trimmed = str(value or "").strip()
    if not trimmed:
        return True
    normalized = trimmed.lower()
    if normalized in LEGACY_UCAN_RESOURCES:
        return True
    if normalized == f"app:{LEGACY_DEFAULT_APP_ID}":
        return normalized != default_ucan_resource(default_app_id).lower()
    return False


def normalize_ucan_resource(value: object, default_app_id: str = DEFAULT_APP_ID) -> str:
    trimmed = str(value or "").strip()
    if not trimmed or is_legacy_ucan_resource(trimmed, default_app_id):
        return default_ucan_resource(default_app_id)
    return trimmed


def normalize_ucan_action(value: object, force_default: bool = False) -> str:
    trimmed = str(value or "").strip()
    if force_default or not trimmed or trimmed == "*":
        return DEFAULT_UCAN_ACTION
    return trimmed


def extract_app_id(resource: object) -> str:
    trimmed = str(resource or "").strip()
    if not trimmed.lower().startswith("app:"):
        return ""
    app_id = trimmed[4:].strip()
    if not app_id or "*" in app_id:
        return ""
    return app_id


def normalize_bearer_token(value: object) -> str:
    trimmed = str(value or "").strip()
    if not trimmed:
        return ""
    trimmed = re.sub(r"^Bearer\s+", "", trimmed, flags=re.IGNORECASE)
    trimmed = re.sub(r"^UCAN\s+", "", trimmed, flags=re.IGNORECASE)
    return trimmed.strip()


def normalize(
    raw: Mapping[str, Any],
    *,
    default_endpoint: str = DEFAULT_SYNC_ENDPOINT,
    default_app_id: str = DEFAULT_APP_ID,
) -> dict[str, Any]:
    """Migrate a raw settings mapping (storage keys) to the current layout.

    Pure: returns a new mapping and never touches the store.
    """
    out = dict(raw)
    keys = SETTINGS_KEYS

    if not out.get(keys["endpoint"]):
        out[keys["endpoint"]] = default_endpoint

    mode = str(out.get(keys["auth_mode"]) or "").strip().lower()
    if mode == "capability":
        mode = AuthMode.CAPABILITY.value
    if mode not in {m.value for m in AuthMode}:
        mode = AuthMode.CAPABILITY.value
    out[keys["auth_mode"]] = mode

    raw_resource = out.get(keys["ucan_resource"]) or ""
    legacy = is_legacy_ucan_resource(raw_resource, default_app_id)
    out[keys["ucan_resource"]] = normalize_ucan_resource(raw_resource, default_app_id)
    out[keys["ucan_action"]] = normalize_ucan_action(out.get(keys["ucan_action"]), force_default=legacy)
    if legacy and out.get(keys["ucan_token"]):
        # Tokens issued for a legacy resource are not valid for the app-scoped path.
        out[keys["ucan_token"]] = ""

    if out.get(keys["enabled"]) is None:
        out[keys["enabled"]] = True

    out[keys["version"]] = SETTINGS_VERSION
    return out


class SettingsRepository:
    def __init__(
        self,
        store,
        *,
        default_endpoint: str = DEFAULT_SYNC_ENDPOINT,
        default_app_id: str = DEFAULT_APP_ID,
        log_max_count: int = 200,
        log_retention_days: int = 30,
    ):
        self.store = store
        self.default_endpoint = default_endpoint
        self.default_app_id = default_app_id
        self.default_log_max_count = log_max_count
        self.default_log_retention_days = log_retention_days

    def migrate(self) -> list[str]:
        """Run `normalize` against the stored values and persist what changed."""
        raw = self.store.get_many(list(SETTINGS_KEYS.values()))
        present = {k: v for k, v in raw.items() if v is not None}
        migrated = normalize(present, default_endpoint=self.default_endpoint, default_app_id=self.default_app_id)
        changed = {k: v for k, v in migrated.items() if present.get(k) != v}
        if changed:
            self.store.set_many(changed)
            logger.info("settings_migrated keys=%s", ",".join(sorted(changed)))
        return sorted(changed)

    def load(self) -> SyncSettings:
        data: dict[str, Any] = {}
        for name, key in SETTINGS_KEYS.items():
            value = self.store.get(key)
            if value is not None:
                data[name] = value
        data.setdefault("log_max_count", self.default_log_max_count)
        data.setdefault("log_retention_days", self.default_log_retention_days)
        try:
            return SyncSettings.model_validate(data)
        except ValidationError as exc:
            logger.warning("settings_invalid %s", exc.errors()[:3])
            valid: dict[str, Any] = {}
            for name, value in data.items():
                try:
                    SyncSettings.model_validate({name: value})
                except ValidationError:
                    continue
                valid[name] = value
            return SyncSettings.model_validate(valid)

    def get(self, name: str, default: Any = None) -> Any:
        return self.store.get(SETTINGS_KEYS[name], default)

    def set(self, name: str, value: Any) -> None:
        self.update(**{name: value})

    def update(self, **fields: Any) -> None:
        values: dict[str, Any] = {}
        for name, value in fields.items():
            if name not in SETTINGS_KEYS:
                raise KeyError(f"unknown_setting: {name}")
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, BaseModel):
                value = value.model_dump(mode="json", by_alias=True, exclude_none=True)
            values[SETTINGS_KEYS[name]] = value
        self.store.set_many(values)

    def is_enabled(self) -> bool:
        return bool(self.get("enabled", True) and self.get("endpoint", ""))

    def auth_mode(self) -> AuthMode:
        raw = str(self.get("auth_mode", AuthMode.CAPABILITY.value) or "").strip().lower()
        try:
            return AuthMode(raw)
        except ValueError:
            return AuthMode.CAPABILITY

    def credential(self) -> str:
        mode = self.auth_mode()
        if mode == AuthMode.BASIC:
            return str(self.get("basic_auth", "") or "")
        if mode == AuthMode.CAPABILITY:
            return str(self.get("ucan_token", "") or "")
        return str(self.get("auth_token", "") or "")

    def has_auth(self) -> bool:
        return bool(self.credential().strip())

    def app_id(self) -> str:
        resource = normalize_ucan_resource(self.get("ucan_resource", ""), self.default_app_id)
        return extract_app_id(resource)

    def log_policy(self) -> tuple[int, int]:
        max_count = self.get("log_max_count", None)
        retention = self.get("log_retention_days", None)
        return (
            int(max_count) if isinstance(max_count, int) and max_count > 0 else self.default_log_max_count,
            int(retention) if isinstance(retention, int) and retention >= 0 else self.default_log_retention_days,
        )
