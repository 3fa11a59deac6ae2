from __future__ import annotations

import sqlite3
from pathlib import Path
from threading import RLock
from typing import Any, Iterable

MEMORY_PATH = ":memory:"


class SQLiteEngine:
    """One shared connection per database, serialized by a lock.

    ``db_path=None`` opens a private in-memory database, which only lives as
    long as this engine.
    """

    def __init__(self, db_path: Path | None) -> None:
        self.db_path = Path(db_path) if db_path is not None else None
        if self.db_path is not None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = RLock()
        self._conn: sqlite3.Connection | None = None

    @property
    def in_memory(self) -> bool:
        return self.db_path is None

    def connect(self) -> sqlite3.Connection:
        with self._lock:
            if self._conn is None:
                target = MEMORY_PATH if self.db_path is None else str(self.db_path)
                conn = sqlite3.connect(target, check_same_thread=False)
                conn.row_factory = sqlite3.Row
                if self.db_path is not None:
                    conn.execute("PRAGMA journal_mode=WAL;")
                conn.execute("PRAGMA foreign_keys=ON;")
                self._conn = conn
            return self._conn

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def execute(self, sql: str, params: Iterable[Any] = ()) -> int:
        with self._lock:
            conn = self.connect()
            cur = conn.execute(sql, tuple(params))
            conn.commit()
            return cur.rowcount

    def query_all(self, sql: str, params: Iterable[Any] = ()) -> list[dict[str, Any]]:
        with self._lock:
            cur = self.connect().execute(sql, tuple(params))
            return [dict(row) for row in cur.fetchall()]

    def query_one(self, sql: str, params: Iterable[Any] = ()) -> dict[str, Any] | None:
        with self._lock:
            cur = self.connect().execute(sql, tuple(params))
            row = cur.fetchone()
            return dict(row) if row else None


def probe_durable(db_path: Path) -> str | None:
    """Return ``None`` when ``db_path`` can host a WAL database, else the reason."""
    try:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(db_path))
        try:
            mode = conn.execute("PRAGMA journal_mode=WAL;").fetchone()
            conn.execute("CREATE TABLE IF NOT EXISTS _probe (id INTEGER PRIMARY KEY)")
            conn.execute("DROP TABLE _probe")
            conn.commit()
        finally:
            conn.close()
    except (OSError, sqlite3.Error) as exc:
        return f"{type(exc).__name__}: {exc}"
    if not mode or str(mode[0]).lower() != "wal":
        return f"journal mode rejected: {mode[0] if mode else 'none'}"
    return None
