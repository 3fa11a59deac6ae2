from __future__ import annotations

from dataclasses import dataclass

from devicemem.config.settings import MemorySettings


@dataclass(frozen=True)
class ChunkProfile:
    name: str
    max_len: int
    overlap: int
    max_chunks: int
    dedup_min_length: int


PROFILE_PRESETS: dict[str, ChunkProfile] = {
    "short": ChunkProfile(
        name="short",
        max_len=400,
        overlap=60,
        max_chunks=500,
        dedup_min_length=80,
    ),
    "default": ChunkProfile(
        name="default",
        max_len=1200,
        overlap=200,
        max_chunks=500,
        dedup_min_length=80,
    ),
}
SHORT_TEXT_THRESHOLD = 500


def profiles_from_settings(settings: MemorySettings) -> dict[str, ChunkProfile]:
    return {
        "short": ChunkProfile(
            name="short",
            max_len=settings.short_chunk_size,
            overlap=min(settings.short_chunk_overlap, settings.short_chunk_size - 1),
            max_chunks=settings.max_chunks,
            dedup_min_length=settings.dedup_min_length,
        ),
        "default": ChunkProfile(
            name="default",
            max_len=settings.chunk_size,
            overlap=min(settings.chunk_overlap, settings.chunk_size - 1),
            max_chunks=settings.max_chunks,
            dedup_min_length=settings.dedup_min_length,
        ),
    }


def select_chunk_profile(
    text_length: int,
    profiles: dict[str, ChunkProfile] | None = None,
    *,
    short_text_threshold: int = SHORT_TEXT_THRESHOLD,
) -> ChunkProfile:
    presets = profiles or PROFILE_PRESETS
    if text_length <= short_text_threshold:
        return presets["short"]
    return presets["default"]
