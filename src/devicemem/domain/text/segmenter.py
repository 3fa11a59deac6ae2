from __future__ import annotations

import re

from devicemem.config.profiles import ChunkProfile, select_chunk_profile

_SENTENCE_END_RE = re.compile(r"([.!?]|\n)\s")
_INLINE_WS_RE = re.compile(r"[\t ]+")
_BLANK_LINES_RE = re.compile(r"\n{3,}")
_ANY_WS_RE = re.compile(r"\s+")

BOUNDARY_LOOKBACK = 120
MIN_BOUNDARY_OFFSET = 100


def normalize_text(text: str) -> str:
    value = str(text or "").replace("\r\n", "\n").replace("\r", "\n")
    value = _INLINE_WS_RE.sub(" ", value)
    value = _BLANK_LINES_RE.sub("\n\n", value)
    return value.strip()


def dedup_key(chunk: str) -> str:
    return _ANY_WS_RE.sub(" ", chunk).strip().lower()


def find_sentence_boundary(
    text: str,
    start: int,
    end: int,
    *,
    lookback: int = BOUNDARY_LOOKBACK,
    min_offset: int = MIN_BOUNDARY_OFFSET,
) -> int | None:
    """Return the cut position just after the last sentence end in the window tail.

    Only the last ``lookback`` characters before ``end`` are searched, and the
    cut must land more than ``min_offset`` characters past ``start``.
    """
    search_start = max(start, end - lookback)
    last: re.Match[str] | None = None
    for match in _SENTENCE_END_RE.finditer(text, search_start, end):
        last = match
    if last is None:
        return None
    boundary = last.start() + 1
    if boundary > start + min_offset:
        return boundary
    return None


def segment(
    text: str,
    max_len: int,
    overlap: int,
    *,
    max_chunks: int = 500,
    dedup_min_length: int = 80,
    lookback: int = BOUNDARY_LOOKBACK,
    min_boundary: int = MIN_BOUNDARY_OFFSET,
) -> list[str]:
    max_len = max(1, int(max_len))
    overlap = max(0, min(int(overlap), max_len - 1))
    normalized = normalize_text(text)
    if not normalized:
        return []
    if len(normalized) <= max_len:
        return [normalized]
    min_offset = min(int(min_boundary), max_len // 2)
    total = len(normalized)
    chunks: list[str] = []
    seen: set[str] = set()
    start = 0
    while start < total and len(chunks) < max_chunks:
        end = min(start + max_len, total)
        if end < total:
            boundary = find_sentence_boundary(
                normalized, start, end, lookback=lookback, min_offset=min_offset
            )
            if boundary is not None:
                end = boundary
        piece = normalized[start:end].strip()
        if piece:
            if len(piece) >= dedup_min_length:
                key = dedup_key(piece)
                if key not in seen:
                    seen.add(key)
                    chunks.append(piece)
            else:
                chunks.append(piece)
        if end >= total:
            break
        next_start = max(0, end - overlap)
        if next_start <= start:
            next_start = end
        start = next_start
    return chunks


def segment_with_profile(text: str, profile: ChunkProfile) -> list[str]:
    return segment(
        text,
        profile.max_len,
        profile.overlap,
        max_chunks=profile.max_chunks,
        dedup_min_length=profile.dedup_min_length,
    )


def segment_for_ingestion(
    text: str,
    profiles: dict[str, ChunkProfile] | None = None,
    *,
    short_text_threshold: int = 500,
) -> tuple[ChunkProfile, list[str]]:
    normalized = normalize_text(text)
    profile = select_chunk_profile(
        len(normalized), profiles, short_text_threshold=short_text_threshold
    )
    return profile, segment_with_profile(normalized, profile)


def chunk_fixed(text: str, max_chars: int, overlap_chars: int) -> list[str]:
    """Coarse fixed-size chunker used for archived conversation text."""
    value = str(text or "")
    max_chars = max(1, int(max_chars))
    overlap_chars = max(0, min(int(overlap_chars), max_chars - 1))
    if len(value) <= max_chars:
        return [value] if value.strip() else []
    chunks: list[str] = []
    start = 0
    total = len(value)
    while start < total:
        end = min(start + max_chars, total)
        if end < total:
            window = value[start:end]
            cut = max(window.rfind("."), window.rfind("\n"))
            if cut > max_chars * 0.5:
                end = start + cut + 1
        piece = value[start:end].strip()
        if piece:
            chunks.append(piece)
        if end >= total:
            break
        next_start = end - overlap_chars
        start = next_start if next_start > start else end
    return chunks
