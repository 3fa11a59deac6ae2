from __future__ import annotations

import logging
import time
import uuid
from threading import Lock

from devicemem.domain.errors import UserInputError
from devicemem.domain.models import AddTurnResult, ConversationTurn, TurnRole, WindowStats
from devicemem.domain.text.tokens import estimate_turn_tokens
from devicemem.infra.sqlite.turn_repository import TurnRepository

logger = logging.getLogger(__name__)

_ROLES = {r.value for r in TurnRole}


class ActiveMemoryWindow:
    """Token-budgeted conversation log, one budget per session.

    Crossing ``max_tokens`` evicts the oldest turns until the session total is
    at or below ``max_tokens * evict_ratio``. Evicted turns are handed back to
    the caller for archival.
    """

    def __init__(
        self,
        repo: TurnRepository,
        *,
        max_tokens: int = 800_000,
        evict_ratio: float = 0.9,
        chars_per_token: float = 3.5,
        overhead_tokens: int = 4,
    ) -> None:
        self.repo = repo
        self.max_tokens = int(max_tokens)
        self.evict_ratio = float(evict_ratio)
        self.chars_per_token = float(chars_per_token)
        self.overhead_tokens = int(overhead_tokens)
        self._lock = Lock()

    @property
    def evict_threshold(self) -> int:
        return int(self.max_tokens * self.evict_ratio)

    def estimate(self, content: str) -> int:
        return estimate_turn_tokens(content, self.chars_per_token, self.overhead_tokens)

    def add_turn(
        self, role: str, content: str, session_id: str = "default"
    ) -> AddTurnResult:
        role = str(role).strip().lower()
        if role not in _ROLES:
            raise UserInputError(f"unknown role '{role}'")
        turn = ConversationTurn(
            id=uuid.uuid4().hex,
            role=role,
            content=str(content),
            created_at=int(time.time() * 1000),
            token_count=self.estimate(str(content)),
            session_id=session_id,
        )
        with self._lock:
            self.repo.insert(turn)
            evicted = self._evict_locked(session_id)
        return AddTurnResult(turn=turn, evicted=evicted)

    def get_recent_turns(
        self, max_tokens: int, session_id: str = "default"
    ) -> list[ConversationTurn]:
        picked: list[ConversationTurn] = []
        used = 0
        with self._lock:
            turns = self.repo.list_newest_first(session_id)
        for turn in turns:
            if used + turn.token_count > max_tokens:
                break
            picked.append(turn)
            used += turn.token_count
        picked.reverse()
        return picked

    def get_turns(self, session_id: str = "default") -> list[ConversationTurn]:
        with self._lock:
            return self.repo.list_session(session_id)

    def clear(self, session_id: str | None = None) -> int:
        with self._lock:
            if session_id is None:
                return self.repo.delete_all()
            return self.repo.delete_session(session_id)

    def stats(self, session_id: str | None = None) -> WindowStats:
        with self._lock:
            agg = self.repo.aggregate(session_id)
        return WindowStats(
            token_total=agg["token_total"],
            turn_count=agg["turn_count"],
            oldest_turn_id=agg["oldest_turn_id"],
            newest_turn_id=agg["newest_turn_id"],
            percent_used=round(agg["token_total"] * 100.0 / max(1, self.max_tokens), 2),
        )

    def _evict_locked(self, session_id: str) -> list[ConversationTurn]:
        total = self.repo.aggregate(session_id)["token_total"]
        if total <= self.max_tokens:
            return []
        target = self.evict_threshold
        evicted: list[ConversationTurn] = []
        for turn in self.repo.list_session(session_id):
            if total <= target:
                break
            evicted.append(turn)
            total -= turn.token_count
        self.repo.delete_ids([t.id for t in evicted])
        logger.info(
            "evicted %s turns from session=%s, window now %s/%s tokens",
            len(evicted),
            session_id,
            total,
            self.max_tokens,
        )
        return evicted
