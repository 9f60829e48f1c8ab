from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

PROJECT_ROOT = Path(os.environ.get("WALLETSYNC_HOME", "~/.walletsync")).expanduser()
RUNTIME_DIR = PROJECT_ROOT / "runtime"
DEFAULT_CONFIG_PATH = Path(os.environ.get("WALLETSYNC_CONFIG", PROJECT_ROOT / "config.yaml")).expanduser()
DEFAULT_CONFIG_TEMPLATE_PATH = PROJECT_ROOT / "config.yaml.example"

DEFAULT_SYNC_ENDPOINT = "https://webdav.yeying.pub/api"
DEFAULT_APP_ID = "yeying-wallet"


class RemoteConfig(BaseModel):
    default_endpoint: str = DEFAULT_SYNC_ENDPOINT
    # Application id used to scope remote objects under `apps/<id>/`.
    default_app_id: str = DEFAULT_APP_ID
    timeout_sec: int = Field(default=30, ge=1, le=600)


class SyncConfig(BaseModel):
    # Local edits arriving within this window collapse into one remote write.
    debounce_sec: float = Field(default=1.5, ge=0)
    auto_interval_sec: float = Field(default=300, gt=0)
    auto_jitter_sec: float = Field(default=30, ge=0)
    auto_max_backoff_sec: float = Field(default=900, gt=0)
    auto_min_delay_sec: float = Field(default=30, ge=0)
    log_max_count: int = Field(default=200, ge=1, le=10000)
    log_retention_days: int = Field(default=30, ge=0, le=3650)


class AuditExportConfig(BaseModel):
    enabled: bool = False
    endpoint: str = ""
    headers: dict[str, str] = Field(default_factory=dict)
    max_attempts: int = Field(default=5, ge=1, le=100)
    timeout_sec: int = Field(default=15, ge=1, le=600)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: str = str(RUNTIME_DIR / "walletsync.log")
    max_bytes: int = Field(default=5 * 1024 * 1024, ge=1024)
    backup_count: int = Field(default=3, ge=0, le=50)


class DatabaseConfig(BaseModel):
    path: str = str(RUNTIME_DIR / "settings.db")


class WebConfig(BaseModel):
    bind_host: str = "127.0.0.1"
    port: int = Field(default=8765, ge=1, le=65535)
    # Client networks allowed to reach the HTTP console; empty means no restriction.
    allowed_nets: list[str] = Field(default_factory=lambda: ["127.0.0.1/32", "::1/128"])


class AppConfig(BaseModel):
    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    audit: AuditExportConfig = Field(default_factory=AuditExportConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    web: WebConfig = Field(default_factory=WebConfig)


def ensure_runtime_dirs(cfg: AppConfig):
    Path(cfg.logging.file).parent.mkdir(parents=True, exist_ok=True)
    Path(cfg.database.path).parent.mkdir(parents=True, exist_ok=True)

def _dump(cfg: AppConfig) -> str:
    import yaml

    return yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False)


def _bootstrap_config(path: Path) -> AppConfig:
    """Write a first config file, preferring the bundled template."""
    import yaml

    path.parent.mkdir(parents=True, exist_ok=True)
    if DEFAULT_CONFIG_TEMPLATE_PATH.exists():
        template_text = DEFAULT_CONFIG_TEMPLATE_PATH.read_text(encoding="utf-8")
        try:
            cfg = AppConfig.model_validate(yaml.safe_load(template_text) or {})
        except (yaml.YAMLError, ValidationError):
            cfg = None
        if cfg is not None:
            path.write_text(template_text, encoding="utf-8")
            return cfg

    cfg = AppConfig()
    path.write_text(_dump(cfg), encoding="utf-8")
    return cfg


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> AppConfig:
    import yaml

    if not path.exists():
        cfg = _bootstrap_config(path)
    else:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        cfg = AppConfig.model_validate(data)
    ensure_runtime_dirs(cfg)
    return cfg


def save_config(cfg: AppConfig, path: Path = DEFAULT_CONFIG_PATH):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(_dump(cfg), encoding="utf-8")
