from __future__ import annotations

import logging
import re
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .config import LoggingConfig

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"

# Authorization values, basic-auth userinfo and password-like query parameters.
_SECRET_PATTERNS = (
    re.compile(r"(?i)(authorization['\"]?\s*[:=]\s*['\"]?(?:bearer|basic)\s+)[^\s'\",]+"),
    re.compile(r"(?i)(https?://)[^/\s:@]+:[^/\s@]+@"),
    re.compile(r"(?i)((?:password|token|secret)=)[^&\s]+"),
)


class SecretRedactionFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def redact(text: str) -> str:
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(lambda m: f"{m.group(1)}***" + ("@" if m.group(0).endswith("@") else ""), text)
    return text


def setup_logging(cfg: LoggingConfig, console: bool = True):
    Path(cfg.file).parent.mkdir(parents=True, exist_ok=True)

    log_level = getattr(logging, cfg.level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(log_level)

    # Repeated setup (CLI commands, app reloads) must not stack handlers.
    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = logging.Formatter(LOG_FORMAT)
    redaction = SecretRedactionFilter()

    handlers: list[logging.Handler] = [
        RotatingFileHandler(cfg.file, maxBytes=cfg.max_bytes, backupCount=cfg.backup_count, encoding="utf-8")
    ]
    if console:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setLevel(log_level)
        handler.setFormatter(fmt)
        handler.addFilter(redaction)
        root.addHandler(handler)

    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logger = logging.getLogger(logger_name)
        logger.handlers.clear()
        logger.setLevel(log_level)
        logger.propagate = True
    for logger_name in ("urllib3", "urllib3.connectionpool"):
        logging.getLogger(logger_name).setLevel(max(log_level, logging.WARNING))

    root.info("logging initialized level=%s file=%s", cfg.level.upper(), cfg.file)
