from __future__ import annotations

import copy
import json
import logging
import threading
from typing import Any, Callable, Mapping

from .db import get_conn, init_db

logger = logging.getLogger("walletsync.store")

StorageListener = Callable[[list[str], str], None]

LOCAL_AREA = "local"


class SqliteKeyValueStore:
    """JSON values keyed by string, persisted in `kv_entries` under one storage area.

    Listeners are notified with the list of changed keys after every write
    that actually changes a value.
    """

    def __init__(self, db_path: str, area: str = LOCAL_AREA):
        self.db_path = db_path
        self.area = area
        self._lock = threading.RLock()
        self._listeners: list[StorageListener] = []
        init_db(db_path)

    def get(self, key: str, default: Any = None) -> Any:
        conn = get_conn(self.db_path)
        try:
            row = conn.execute("SELECT value FROM kv_entries WHERE area=? AND key=?", (self.area, key)).fetchone()
        finally:
            conn.close()
        if row is None or row["value"] is None:
            return copy.deepcopy(default)
        try:
            return json.loads(row["value"])
        except json.JSONDecodeError:
            logger.warning("store_value_corrupt key=%s", key)
            return copy.deepcopy(default)

    def get_many(self, keys: list[str]) -> dict[str, Any]:
        return {key: self.get(key) for key in keys}

    def set(self, key: str, value: Any) -> None:
        self.set_many({key: value})

    def set_many(self, values: Mapping[str, Any]) -> None:
        changed: list[str] = []
        with self._lock:
            conn = get_conn(self.db_path)
            try:
                for key, value in values.items():
                    encoded = json.dumps(value, ensure_ascii=False, sort_keys=True)
                    row = conn.execute("SELECT value FROM kv_entries WHERE area=? AND key=?", (self.area, key)).fetchone()
                    if row is not None and row["value"] == encoded:
                        continue
                    conn.execute(
                        """
                        INSERT INTO kv_entries(area, key, value, updated_at) VALUES (?, ?, ?, CURRENT_TIMESTAMP)
                        ON CONFLICT(area, key) DO UPDATE SET value=excluded.value, updated_at=CURRENT_TIMESTAMP
                        """,
                        (self.area, key, encoded),
                    )
                    changed.append(key)
                conn.commit()
            finally:
                conn.close()
        if changed:
            self._notify(changed)

    def delete(self, key: str) -> None:
        with self._lock:
            conn = get_conn(self.db_path)
            try:
                cur = conn.execute("DELETE FROM kv_entries WHERE area=? AND key=?", (self.area, key))
                conn.commit()
                removed = cur.rowcount > 0
            finally:
                conn.close()
        if removed:
            self._notify([key])

    def keys(self) -> list[str]:
        conn = get_conn(self.db_path)
        try:
            rows = conn.execute("SELECT key FROM kv_entries WHERE area=? ORDER BY key", (self.area,)).fetchall()
        finally:
            conn.close()
        return [row["key"] for row in rows]

    def subscribe(self, listener: StorageListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, changed: list[str]) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(list(changed), self.area)
            except Exception:
                logger.exception("store_listener_failed keys=%s", ",".join(changed))
