from __future__ import annotations

import logging
from typing import Any, AsyncIterator

from devicemem.domain.errors import ConfigurationError, GenerationError
from devicemem.domain.models import ConversationTurn

logger = logging.getLogger(__name__)


def build_messages(
    *,
    system_prompt: str,
    history: list[ConversationTurn],
    context: str | None = None,
    context_preamble: str = "",
) -> list[dict[str, str]]:
    messages: list[dict[str, str]] = [{"role": "system", "content": system_prompt}]
    if context:
        preamble = context_preamble.strip()
        content = f"{preamble}\n\n{context}" if preamble else context
        messages.append({"role": "system", "content": content})
    for turn in history:
        messages.append({"role": turn.role, "content": turn.content})
    return messages


class ChatGenerator:
    """OpenAI-compatible chat completions, single-shot or streamed."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        model: str,
        temperature: float = 0.2,
        top_p: float = 0.95,
        max_tokens: int = 8192,
    ) -> None:
        self.base_url = str(base_url or "").strip()
        self.api_key = str(api_key or "").strip()
        self.model = str(model or "").strip()
        self.temperature = float(temperature)
        self.top_p = float(top_p)
        self.max_tokens = int(max_tokens)
        self._client: Any = None

    def _require_config(self) -> None:
        if not self.base_url:
            raise ConfigurationError("chat model base_url is not configured")
        if not self.api_key:
            raise ConfigurationError("Set DEVICEMEM_CHAT_API_KEY to enable replies.")
        if not self.model:
            raise ConfigurationError("chat model name is not configured")

    def _get_client(self) -> Any:
        if self._client is None:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(base_url=self.base_url, api_key=self.api_key)
        return self._client

    async def generate(self, messages: list[dict[str, str]]) -> str:
        self._require_config()
        try:
            text = await self._chat_completion(messages)
        except (ConfigurationError, GenerationError):
            raise
        except Exception as exc:
            logger.warning("chat completion failed: %s", exc)
            raise GenerationError() from exc
        if not text.strip():
            raise GenerationError()
        return text

    async def stream(self, messages: list[dict[str, str]]) -> AsyncIterator[str]:
        self._require_config()
        try:
            async for piece in self._stream_completion(messages):
                if piece:
                    yield piece
        except (ConfigurationError, GenerationError):
            raise
        except Exception as exc:
            logger.warning("chat stream failed: %s", exc)
            raise GenerationError() from exc

    async def _chat_completion(self, messages: list[dict[str, str]]) -> str:
        completion = await self._get_client().chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=self.temperature,
            top_p=self.top_p,
            max_tokens=self.max_tokens,
        )
        return str(completion.choices[0].message.content or "").strip()

    async def _stream_completion(
        self, messages: list[dict[str, str]]
    ) -> AsyncIterator[str]:
        stream = await self._get_client().chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=self.temperature,
            top_p=self.top_p,
            max_tokens=self.max_tokens,
            stream=True,
        )
        async for event in stream:
            if not event.choices:
                continue
            delta = event.choices[0].delta
            content = getattr(delta, "content", None)
            if content:
                yield str(content)
