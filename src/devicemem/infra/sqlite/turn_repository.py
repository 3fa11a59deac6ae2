from __future__ import annotations

from typing import Any

from devicemem.domain.models import ConversationTurn
from devicemem.infra.sqlite.db import SQLiteEngine

_COLUMNS = "id,session_id,role,content,token_count,created_at"


class TurnRepository:
    def __init__(self, engine: SQLiteEngine) -> None:
        self.engine = engine

    def insert(self, turn: ConversationTurn) -> None:
        self.engine.execute(
            """
            INSERT INTO conversation_turn(id,session_id,role,content,token_count,created_at)
            VALUES(?,?,?,?,?,?)
            """,
            (
                turn.id,
                turn.session_id,
                turn.role,
                turn.content,
                int(turn.token_count),
                int(turn.created_at),
            ),
        )

    def list_session(self, session_id: str) -> list[ConversationTurn]:
        rows = self.engine.query_all(
            f"SELECT {_COLUMNS} FROM conversation_turn WHERE session_id=? ORDER BY seq ASC",
            (session_id,),
        )
        return [ConversationTurn.from_row(r) for r in rows]

    def list_newest_first(self, session_id: str) -> list[ConversationTurn]:
        rows = self.engine.query_all(
            f"SELECT {_COLUMNS} FROM conversation_turn WHERE session_id=? ORDER BY seq DESC",
            (session_id,),
        )
        return [ConversationTurn.from_row(r) for r in rows]

    def delete_ids(self, ids: list[str]) -> int:
        if not ids:
            return 0
        marks = ",".join("?" for _ in ids)
        return self.engine.execute(
            f"DELETE FROM conversation_turn WHERE id IN ({marks})", tuple(ids)
        )

    def delete_session(self, session_id: str) -> int:
        return self.engine.execute(
            "DELETE FROM conversation_turn WHERE session_id=?", (session_id,)
        )

    def delete_all(self) -> int:
        return self.engine.execute("DELETE FROM conversation_turn")

    def aggregate(self, session_id: str | None = None) -> dict[str, Any]:
        where = "WHERE session_id=?" if session_id is not None else ""
        params: tuple[Any, ...] = (session_id,) if session_id is not None else ()
        row = self.engine.query_one(
            f"""
            SELECT COALESCE(SUM(token_count), 0) AS token_total,
                   COUNT(*) AS turn_count,
                   MIN(seq) AS oldest_seq,
                   MAX(seq) AS newest_seq
            FROM conversation_turn {where}
            """,
            params,
        ) or {}
        oldest = newest = None
        if row.get("oldest_seq") is not None:
            first = self.engine.query_one(
                "SELECT id FROM conversation_turn WHERE seq=?", (row["oldest_seq"],)
            )
            last = self.engine.query_one(
                "SELECT id FROM conversation_turn WHERE seq=?", (row["newest_seq"],)
            )
            oldest = str(first["id"]) if first else None
            newest = str(last["id"]) if last else None
        return {
            "token_total": int(row.get("token_total") or 0),
            "turn_count": int(row.get("turn_count") or 0),
            "oldest_turn_id": oldest,
            "newest_turn_id": newest,
        }
