from __future__ import annotations

import inspect
import logging
from functools import partial
from typing import Any, Callable

import anyio

from devicemem.domain.errors import GenerationError, UserInputError
from devicemem.domain.models import ConversationTurn, WindowStats
from devicemem.service.archival_bridge import ArchivalBridge
from devicemem.service.auth import AuthProvider, require_owner
from devicemem.service.generation import ChatGenerator, build_messages
from devicemem.service.memory_window import ActiveMemoryWindow

logger = logging.getLogger(__name__)

StreamCallback = Callable[[str], Any]


class ChatSession:
    def __init__(
        self,
        *,
        window: ActiveMemoryWindow,
        bridge: ArchivalBridge,
        generator: ChatGenerator,
        auth: AuthProvider,
        system_prompt: str,
        context_preamble: str = "",
        welcome_message: str = "",
        session_id: str = "default",
        recent_turns_tokens: int = 32_000,
        max_context_tokens: int = 4000,
    ) -> None:
        self.window = window
        self.bridge = bridge
        self.generator = generator
        self.auth = auth
        self.system_prompt = system_prompt
        self.context_preamble = context_preamble
        self._welcome_message = welcome_message
        self.session_id = session_id
        self.recent_turns_tokens = int(recent_turns_tokens)
        self.max_context_tokens = int(max_context_tokens)

    def welcome_message(self) -> str:
        return self._welcome_message

    async def send_message(
        self, content: str, on_stream: StreamCallback | None = None
    ) -> str:
        text = str(content or "").strip()
        if not text:
            raise UserInputError("Type a message first.")
        require_owner(self.auth)

        added = await anyio.to_thread.run_sync(
            partial(self.window.add_turn, "user", text, self.session_id)
        )
        await self._archive(added.evicted)

        history = await anyio.to_thread.run_sync(
            self.window.get_recent_turns, self.recent_turns_tokens, self.session_id
        )
        if not history or history[-1].id != added.turn.id:
            history.append(added.turn)

        context: str | None = None
        try:
            context = await self.bridge.get_relevant_context(text, self.max_context_tokens)
        except Exception as exc:
            logger.warning("context retrieval skipped: %s", exc)

        messages = build_messages(
            system_prompt=self.system_prompt,
            history=history,
            context=context,
            context_preamble=self.context_preamble,
        )
        if on_stream is None:
            reply = await self.generator.generate(messages)
        else:
            parts: list[str] = []
            async for piece in self.generator.stream(messages):
                parts.append(piece)
                result = on_stream(piece)
                if inspect.isawaitable(result):
                    await result
            reply = "".join(parts)
            if not reply.strip():
                raise GenerationError()

        added_reply = await anyio.to_thread.run_sync(
            partial(self.window.add_turn, "assistant", reply, self.session_id)
        )
        await self._archive(added_reply.evicted)
        return reply

    async def history(self) -> list[ConversationTurn]:
        return await anyio.to_thread.run_sync(self.window.get_turns, self.session_id)

    async def stats(self) -> WindowStats:
        return await anyio.to_thread.run_sync(self.window.stats, self.session_id)

    async def clear(self) -> int:
        return await anyio.to_thread.run_sync(self.window.clear, self.session_id)

    async def _archive(self, turns: list[ConversationTurn]) -> None:
        if not turns:
            return
        try:
            await self.bridge.archive(turns)
        except Exception as exc:
            logger.warning(
                "archival of %s evicted turns failed (first=%s): %s",
                len(turns),
                turns[0].id,
                exc,
            )
