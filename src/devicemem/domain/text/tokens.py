from __future__ import annotations

import math

CHARS_PER_TOKEN = 3.5
MESSAGE_OVERHEAD_TOKENS = 4


def estimate_tokens(text: str, chars_per_token: float = CHARS_PER_TOKEN) -> int:
    if not text:
        return 0
    return int(math.ceil(len(text) / float(chars_per_token)))


def estimate_turn_tokens(
    content: str,
    chars_per_token: float = CHARS_PER_TOKEN,
    overhead: int = MESSAGE_OVERHEAD_TOKENS,
) -> int:
    return estimate_tokens(content, chars_per_token) + int(overhead)


def tokens_to_chars(tokens: int, chars_per_token: float = CHARS_PER_TOKEN) -> int:
    return int(tokens * chars_per_token)
