from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Protocol, Set

import orjson

from lumigram.core.errors import PersistenceFailure
from lumigram.core.time import utc_now_iso

logger = logging.getLogger(__name__)

STAMPS_KEY = "lumigram:stamps:v1"
STAMPS_SCHEMA_VERSION = 1


# ──────────────────────────────────────────────────────────────
# Connections
# ──────────────────────────────────────────────────────────────

def connect_sqlite(path: str) -> sqlite3.Connection:
    """
    Open a RW SQLite connection with sane pragmas.

    IMPORTANT:
    - SQLite will NOT create parent directories.
    - WAL mode requires the directory to be writable (creates -wal/-shm).
    """
    if path != ":memory:":
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(path, check_same_thread=False)
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=FULL;")
    return conn


def ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS kv_state (
            key TEXT PRIMARY KEY,
            updated_at TEXT NOT NULL,
            value_json BLOB NOT NULL
        );
        """
    )
    conn.commit()


# ──────────────────────────────────────────────────────────────
# Namespaced key/value stores
# ──────────────────────────────────────────────────────────────

class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[bytes]: ...

    def put(self, key: str, value: bytes) -> None: ...

    def delete(self, key: str) -> None: ...


class SqliteKeyValueStore:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        ensure_schema(conn)

    def get(self, key: str) -> Optional[bytes]:
        try:
            cur = self.conn.execute("SELECT value_json FROM kv_state WHERE key=?;", (key,))
            row = cur.fetchone()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"read {key} failed: {e}") from e
        if not row:
            return None
        return bytes(row[0])

    def put(self, key: str, value: bytes) -> None:
        try:
            self.conn.execute(
                """
                INSERT OR REPLACE INTO kv_state (key, updated_at, value_json)
                VALUES (?, ?, ?);
                """,
                (key, utc_now_iso(), value),
            )
            self.conn.commit()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"write {key} failed: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self.conn.execute("DELETE FROM kv_state WHERE key=?;", (key,))
            self.conn.commit()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"delete {key} failed: {e}") from e


class MemoryKeyValueStore:
    def __init__(self, initial: Optional[Dict[str, bytes]] = None):
        self.data: Dict[str, bytes] = dict(initial or {})

    def get(self, key: str) -> Optional[bytes]:
        return self.data.get(key)

    def put(self, key: str, value: bytes) -> None:
        self.data[key] = value

    def delete(self, key: str) -> None:
        self.data.pop(key, None)


# ──────────────────────────────────────────────────────────────
# Collected stamps
# ──────────────────────────────────────────────────────────────

def load_stamped_ids(store: KeyValueStore) -> Set[str]:
    """Absent, corrupt or non-array content loads as an empty set."""
    try:
        raw = store.get(STAMPS_KEY)
    except PersistenceFailure as e:
        logger.warning("[Stamps] load failed: %s", e)
        return set()
    if not raw:
        return set()
    try:
        parsed: Any = orjson.loads(raw)
    except orjson.JSONDecodeError:
        logger.warning("[Stamps] ignoring corrupt payload under %s", STAMPS_KEY)
        return set()
    if not isinstance(parsed, dict) or not isinstance(parsed.get("ids"), list):
        return set()
    return {str(x) for x in parsed["ids"] if isinstance(x, str)}


def persist_stamped_ids(store: KeyValueStore, ids: Iterable[str]) -> None:
    payload = {
        "ids": sorted(ids),
        "updatedAt": utc_now_iso(),
        "version": STAMPS_SCHEMA_VERSION,
    }
    store.put(STAMPS_KEY, orjson.dumps(payload))


def clear_stamped_ids(store: KeyValueStore) -> None:
    store.delete(STAMPS_KEY)
