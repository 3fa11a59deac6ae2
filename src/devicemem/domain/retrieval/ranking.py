from __future__ import annotations

import re
from typing import Iterable

from devicemem.domain.models import SearchHit, SearchSource

CONTEXT_SEPARATOR = "\n\n---\n\n"
_WS_RE = re.compile(r"\s+")


def query_terms(query: str, min_length: int = 3) -> list[str]:
    terms = [t for t in _WS_RE.split(str(query or "").lower()) if len(t) >= min_length]
    return list(dict.fromkeys(terms))


def keyword_hits(text: str, terms: Iterable[str]) -> int:
    lowered = str(text or "").lower()
    return sum(1 for term in terms if term in lowered)


def lexical_boost(text: str, terms: list[str], bonus: float) -> float:
    if not terms or bonus <= 0:
        return 0.0
    return keyword_hits(text, terms) * float(bonus)


def sort_hits(hits: list[SearchHit]) -> list[SearchHit]:
    return sorted(hits, key=lambda h: h.score, reverse=True)


def rerank_lexical(
    hits: list[SearchHit], query: str, bonus: float
) -> list[SearchHit]:
    terms = query_terms(query)
    out: list[SearchHit] = []
    for hit in hits:
        if hit.source == SearchSource.SCAN:
            # scan scores already carry the bonus
            out.append(hit)
            continue
        boost = lexical_boost(hit.text, terms, bonus)
        out.append(
            SearchHit(
                text=hit.text,
                score=hit.score + boost,
                source=hit.source,
                source_name=hit.source_name,
                chunk_index=hit.chunk_index,
                chunk_id=hit.chunk_id,
            )
        )
    return sort_hits(out)


def assemble_context(
    hits: list[SearchHit],
    *,
    min_score: float,
    max_chars: int,
    separator: str = CONTEXT_SEPARATOR,
) -> str | None:
    parts: list[str] = []
    used = 0
    for hit in sort_hits([h for h in hits if h.score > min_score]):
        text = hit.text.strip()
        if not text:
            continue
        extra = len(text) + (len(separator) if parts else 0)
        if used + extra > max_chars:
            break
        parts.append(text)
        used += extra
    if not parts:
        return None
    return separator.join(parts)
