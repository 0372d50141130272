"""Shared SQLite connection handling."""

from __future__ import annotations

import sqlite3
import threading
from pathlib import Path
from typing import Mapping, Sequence

_SqlValue = str | bytes | int | float | None
_SqlParams = Sequence[_SqlValue] | Mapping[str, _SqlValue]


class SqliteDatabase:
    """One connection guarded by a lock; subclasses provide ``_init_schema``."""

    def __init__(self, path: str, wal: bool = True) -> None:
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._closed = False
        if wal and path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._init_schema()

    def _init_schema(self) -> None:
        raise NotImplementedError

    def execute(self, query: str, params: _SqlParams = ()) -> int:
        """Run a write statement and return the affected row count."""
        with self._lock:
            try:
                cursor = self._conn.execute(query, params)
            except sqlite3.Error:
                self._conn.rollback()
                raise
            self._conn.commit()
            return cursor.rowcount

    def fetch_one(self, query: str, params: _SqlParams = ()) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.execute(query, params)
            return cur.fetchone()

    def fetch_all(self, query: str, params: _SqlParams = ()) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.execute(query, params)
            return cur.fetchall()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._conn.close()
            self._closed = True
