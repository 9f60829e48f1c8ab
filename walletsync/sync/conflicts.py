from __future__ import annotations

import logging
import threading
from typing import Optional

from pydantic import ValidationError

from walletsync.core.settings import Conflict, SettingsRepository

from .activity import ActivityLog

logger = logging.getLogger("walletsync.conflicts")


def account_conflict_id(wallet_id: str, index: int) -> str:
    return f"account:{wallet_id}:{index}"


def contact_conflict_id(contact_id: str) -> str:
    return f"contact:{contact_id}"


class ConflictLedger:
    """Merge decisions left to the user, persisted until explicitly resolved."""

    def __init__(self, settings: SettingsRepository, activity: Optional[ActivityLog] = None):
        self.settings = settings
        self.activity = activity
        self._lock = threading.Lock()

    def list(self) -> list[Conflict]:
        raw = self.settings.get("conflicts", [])
        items: list[Conflict] = []
        for item in raw if isinstance(raw, list) else []:
            try:
                items.append(Conflict.model_validate(item))
            except ValidationError:
                logger.warning("conflict_record_invalid %s", item)
        return items

    def get(self, conflict_id: str) -> Optional[Conflict]:
        for conflict in self.list():
            if conflict.id == conflict_id:
                return conflict
        return None

    def has_pending(self) -> bool:
        return len(self.list()) > 0

    def record(self, conflict: Conflict) -> bool:
        """Store a conflict unless one with the same id is already pending."""
        with self._lock:
            items = self.list()
            if any(item.id == conflict.id for item in items):
                return False
            items.append(conflict)
            self.settings.set("conflicts", [item.to_store() for item in items])
        logger.info("conflict_recorded id=%s type=%s", conflict.id, conflict.type)
        if self.activity is not None:
            summary = "contact conflict found" if conflict.type == "contact" else "account conflict found"
            self.activity.log("warn", "conflict", "", f"{summary}: {conflict.id}")
        return True

    def remove(self, conflict_id: str) -> bool:
        with self._lock:
            items = self.list()
            kept = [item for item in items if item.id != conflict_id]
            if len(kept) == len(items):
                return False
            self.settings.set("conflicts", [item.to_store() for item in kept])
        return True

    def clear(self) -> None:
        with self._lock:
            self.settings.set("conflicts", [])
