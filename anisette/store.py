"""
anisette/store.py -- SQLite-backed store for stable device identity.

The anisette provider needs two identifiers that must stay the same across
runs: the device id (X-Mme-Device-Id) and the local user id (X-Apple-I-MD-LU).
A new value on every run looks like a new machine to the provider, which
triggers extra two-factor prompts. They are generated once and kept in the
configuration directory.

Usage:
    store = IdentityStore(settings.ensure_config_dir() / "identity.db")
    device_id = store.get_or_create("device_id", lambda: str(uuid.uuid4()).upper())
    store.clear()                          # forget the identity (new "machine")
"""

import sqlite3
import time
from pathlib import Path
from typing import Callable, Optional, Union

_DDL = """
CREATE TABLE IF NOT EXISTS device_identity (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    created_at  REAL NOT NULL
);
"""


class IdentityStore:
    def __init__(self, db_path: Union[Path, str]) -> None:
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_DDL)
        self._conn.commit()

    def get(self, key: str) -> Optional[str]:
        row = self._conn.execute(
            "SELECT value FROM device_identity WHERE key = ?",
            (key,),
        ).fetchone()
        return None if row is None else row[0]

    def set(self, key: str, value: str) -> None:
        """Store value for key, replacing any existing entry."""
        self._conn.execute(
            "INSERT OR REPLACE INTO device_identity (key, value, created_at) VALUES (?, ?, ?)",
            (key, value, time.time()),
        )
        self._conn.commit()

    def get_or_create(self, key: str, factory: Callable[[], str]) -> str:
        """Return the stored value, generating and persisting it on first use."""
        existing = self.get(key)
        if existing is not None:
            return existing
        value = factory()
        # INSERT OR IGNORE keeps the first writer's value if two processes race.
        self._conn.execute(
            "INSERT OR IGNORE INTO device_identity (key, value, created_at) VALUES (?, ?, ?)",
            (key, value, time.time()),
        )
        self._conn.commit()
        stored = self.get(key)
        return stored if stored is not None else value

    def clear(self) -> int:
        """Delete all stored identity values. Returns number of rows removed."""
        cursor = self._conn.execute("DELETE FROM device_identity")
        self._conn.commit()
        return cursor.rowcount

    def close(self) -> None:
        self._conn.close()
