from __future__ import annotations

from devicemem.infra.sqlite.db import SQLiteEngine


def init_chunk_schema(engine: SQLiteEngine) -> None:
    # rowid is not AUTOINCREMENT so freed ids are reused by the vector index
    ddl = [
        """
        CREATE TABLE IF NOT EXISTS chunk (
            id INTEGER PRIMARY KEY,
            owner_id TEXT NOT NULL,
            source_name TEXT NOT NULL,
            chunk_index INTEGER NOT NULL,
            text TEXT NOT NULL,
            embedding BLOB,
            status TEXT NOT NULL DEFAULT 'pending',
            created_at INTEGER NOT NULL,
            UNIQUE(owner_id, source_name, chunk_index)
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_chunk_owner_status ON chunk(owner_id, status)",
        "CREATE INDEX IF NOT EXISTS idx_chunk_owner_source ON chunk(owner_id, source_name)",
    ]
    for sql in ddl:
        engine.execute(sql)


def init_turn_schema(engine: SQLiteEngine) -> None:
    ddl = [
        """
        CREATE TABLE IF NOT EXISTS conversation_turn (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            id TEXT UNIQUE NOT NULL,
            session_id TEXT NOT NULL,
            role TEXT NOT NULL,
            content TEXT NOT NULL,
            token_count INTEGER NOT NULL,
            created_at INTEGER NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_turn_session_seq ON conversation_turn(session_id, seq)",
    ]
    for sql in ddl:
        engine.execute(sql)
