import sqlite3
from pathlib import Path

SCHEMA_VERSION = 1


def get_conn(db_path: str):
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=10)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: str):
    """Create the key/value table; one row per (area, key) with a JSON value."""
    conn = get_conn(db_path)
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS kv_entries (
              area TEXT NOT NULL,
              key TEXT NOT NULL,
              value TEXT,
              updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
              PRIMARY KEY (area, key)
            )
            """
        )
        conn.execute(f"PRAGMA user_version={SCHEMA_VERSION}")
        conn.commit()
    finally:
        conn.close()
