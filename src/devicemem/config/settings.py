from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_SYSTEM_PROMPT = (
    "You are a warm, attentive assistant. Answer clearly and honestly, "
    "keep the user's privacy in mind and suggest professional help when a "
    "question goes beyond what a conversation can safely cover."
)
DEFAULT_WELCOME_MESSAGE = (
    "Hi! I remember what we talked about before, right here on this device. "
    "What would you like to talk about?"
)
DEFAULT_CONTEXT_PREAMBLE = (
    "The following context comes from earlier conversations and may be helpful. "
    "Use it only when it is directly related to the current question:"
)
DEFAULT_ADAPTER_DENYLIST = "llvmpipe,swiftshader,software,basic render"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: str) -> tuple[str, ...]:
    raw = os.getenv(name, default)
    return tuple(x.strip().lower() for x in raw.split(",") if x.strip())


def _default_data_dir() -> Path:
    if os.name == "nt":
        base = os.getenv("LOCALAPPDATA")
        if base:
            return Path(base) / "DeviceMem"
        return Path.home() / "AppData" / "Local" / "DeviceMem"
    xdg = os.getenv("XDG_DATA_HOME")
    if xdg:
        return Path(xdg) / "devicemem"
    return Path.home() / ".local" / "share" / "devicemem"


@dataclass(frozen=True)
class MemorySettings:
    app_name: str
    host: str
    port: int
    log_level: str
    data_dir: Path
    chunks_db_path: Path
    turns_db_path: Path
    lancedb_dir: Path
    mirror_dir: Path
    durability: str
    user_id: str
    session_id: str
    embedding_model: str
    embedding_dim: int
    embedding_backend: str
    accel_min_memory_gb: float
    accel_min_cpu_cores: int
    adapter_denylist: tuple[str, ...]
    embed_concurrency: int
    embed_batch_size_max: int
    vector_index_enabled: bool
    vector_index_metric: str
    vector_index_rebuild_every: int
    chunk_size: int
    chunk_overlap: int
    short_text_threshold: int
    short_chunk_size: int
    short_chunk_overlap: int
    max_chunks: int
    dedup_min_length: int
    window_max_tokens: int
    window_evict_ratio: float
    chars_per_token: float
    turn_overhead_tokens: int
    archive_chunk_tokens: int
    archive_overlap_tokens: int
    max_context_tokens: int
    recent_turns_tokens: int
    retrieval_top_k: int
    retrieval_min_score: float
    lexical_bonus: float
    worker_timeout_sec: float
    chat_base_url: str
    chat_api_key: str
    chat_model: str
    chat_temperature: float
    chat_top_p: float
    chat_max_tokens: int
    system_prompt: str
    welcome_message: str
    context_preamble: str
    remote_store_url: str
    remote_store_token: str
    remote_read_limit: int
    remote_batch_size: int

    @classmethod
    def from_env(cls) -> "MemorySettings":
        data_dir_raw = os.getenv("DEVICEMEM_DATA_DIR")
        if not data_dir_raw:
            data_dir_raw = str(_default_data_dir())
        data_dir = Path(data_dir_raw).resolve()
        chunks_db_path = Path(
            os.getenv("DEVICEMEM_CHUNKS_DB_PATH", str(data_dir / "chunks.db"))
        ).resolve()
        turns_db_path = Path(
            os.getenv("DEVICEMEM_TURNS_DB_PATH", str(data_dir / "turns.db"))
        ).resolve()
        lancedb_dir = Path(
            os.getenv("DEVICEMEM_LANCEDB_DIR", str(data_dir / "lancedb"))
        ).resolve()
        mirror_dir = Path(
            os.getenv("DEVICEMEM_MIRROR_DIR", str(data_dir / "mirror"))
        ).resolve()
        durability = os.getenv("DEVICEMEM_DURABILITY", "auto").strip().lower()
        if durability not in {"auto", "durable", "memory"}:
            durability = "auto"
        backend = os.getenv("DEVICEMEM_EMBEDDING_BACKEND", "auto").strip().lower()
        if backend not in {"auto", "accelerated", "fallback"}:
            backend = "auto"
        return cls(
            app_name=os.getenv("DEVICEMEM_APP_NAME", "DeviceMem"),
            host=os.getenv("DEVICEMEM_HOST", "127.0.0.1"),
            port=int(os.getenv("DEVICEMEM_PORT", "20196")),
            log_level=os.getenv("DEVICEMEM_LOG_LEVEL", "INFO").strip().upper() or "INFO",
            data_dir=data_dir,
            chunks_db_path=chunks_db_path,
            turns_db_path=turns_db_path,
            lancedb_dir=lancedb_dir,
            mirror_dir=mirror_dir,
            durability=durability,
            user_id=os.getenv("DEVICEMEM_USER_ID", "local-user").strip() or "local-user",
            session_id=os.getenv("DEVICEMEM_SESSION_ID", "default").strip() or "default",
            embedding_model=os.getenv(
                "DEVICEMEM_EMBEDDING_MODEL", "google/embeddinggemma-300m"
            ),
            embedding_dim=max(8, int(os.getenv("DEVICEMEM_EMBEDDING_DIM", "768"))),
            embedding_backend=backend,
            accel_min_memory_gb=max(
                0.0, float(os.getenv("DEVICEMEM_ACCEL_MIN_MEMORY_GB", "4"))
            ),
            accel_min_cpu_cores=max(
                1, int(os.getenv("DEVICEMEM_ACCEL_MIN_CPU_CORES", "4"))
            ),
            adapter_denylist=_env_list(
                "DEVICEMEM_ADAPTER_DENYLIST", DEFAULT_ADAPTER_DENYLIST
            ),
            embed_concurrency=max(
                1, int(os.getenv("DEVICEMEM_EMBED_CONCURRENCY", "2"))
            ),
            embed_batch_size_max=max(
                1, int(os.getenv("DEVICEMEM_EMBED_BATCH_SIZE_MAX", "16"))
            ),
            vector_index_enabled=_env_bool("DEVICEMEM_VECTOR_INDEX_ENABLED", True),
            vector_index_metric=str(
                os.getenv("DEVICEMEM_VECTOR_INDEX_METRIC", "cosine")
            ).strip().lower()
            or "cosine",
            vector_index_rebuild_every=max(
                16, int(os.getenv("DEVICEMEM_VECTOR_INDEX_REBUILD_EVERY", "256"))
            ),
            chunk_size=max(100, int(os.getenv("DEVICEMEM_CHUNK_SIZE", "1200"))),
            chunk_overlap=max(0, int(os.getenv("DEVICEMEM_CHUNK_OVERLAP", "200"))),
            short_text_threshold=max(
                0, int(os.getenv("DEVICEMEM_SHORT_TEXT_THRESHOLD", "500"))
            ),
            short_chunk_size=max(
                50, int(os.getenv("DEVICEMEM_SHORT_CHUNK_SIZE", "400"))
            ),
            short_chunk_overlap=max(
                0, int(os.getenv("DEVICEMEM_SHORT_CHUNK_OVERLAP", "60"))
            ),
            max_chunks=max(1, int(os.getenv("DEVICEMEM_MAX_CHUNKS", "500"))),
            dedup_min_length=max(
                0, int(os.getenv("DEVICEMEM_DEDUP_MIN_LENGTH", "80"))
            ),
            window_max_tokens=max(
                1000, int(os.getenv("DEVICEMEM_WINDOW_MAX_TOKENS", "800000"))
            ),
            window_evict_ratio=max(
                0.1,
                min(1.0, float(os.getenv("DEVICEMEM_WINDOW_EVICT_RATIO", "0.9"))),
            ),
            chars_per_token=max(
                0.5, float(os.getenv("DEVICEMEM_CHARS_PER_TOKEN", "3.5"))
            ),
            turn_overhead_tokens=max(
                0, int(os.getenv("DEVICEMEM_TURN_OVERHEAD_TOKENS", "4"))
            ),
            archive_chunk_tokens=max(
                50, int(os.getenv("DEVICEMEM_ARCHIVE_CHUNK_TOKENS", "500"))
            ),
            archive_overlap_tokens=max(
                0, int(os.getenv("DEVICEMEM_ARCHIVE_OVERLAP_TOKENS", "50"))
            ),
            max_context_tokens=max(
                100, int(os.getenv("DEVICEMEM_MAX_CONTEXT_TOKENS", "4000"))
            ),
            recent_turns_tokens=max(
                100, int(os.getenv("DEVICEMEM_RECENT_TURNS_TOKENS", "32000"))
            ),
            retrieval_top_k=max(1, int(os.getenv("DEVICEMEM_RETRIEVAL_TOP_K", "10"))),
            retrieval_min_score=float(
                os.getenv("DEVICEMEM_RETRIEVAL_MIN_SCORE", "0.3")
            ),
            lexical_bonus=max(
                0.0, float(os.getenv("DEVICEMEM_LEXICAL_BONUS", "0.15"))
            ),
            worker_timeout_sec=max(
                1.0, float(os.getenv("DEVICEMEM_WORKER_TIMEOUT_SEC", "60"))
            ),
            chat_base_url=os.getenv(
                "DEVICEMEM_CHAT_BASE_URL", "https://api.openai.com/v1"
            ),
            chat_api_key=os.getenv("DEVICEMEM_CHAT_API_KEY", ""),
            chat_model=os.getenv("DEVICEMEM_CHAT_MODEL", "gpt-4o-mini"),
            chat_temperature=max(
                0.0,
                min(2.0, float(os.getenv("DEVICEMEM_CHAT_TEMPERATURE", "0.2"))),
            ),
            chat_top_p=max(
                0.0, min(1.0, float(os.getenv("DEVICEMEM_CHAT_TOP_P", "0.95")))
            ),
            chat_max_tokens=max(
                16, int(os.getenv("DEVICEMEM_CHAT_MAX_TOKENS", "8192"))
            ),
            system_prompt=os.getenv("DEVICEMEM_SYSTEM_PROMPT", DEFAULT_SYSTEM_PROMPT),
            welcome_message=os.getenv(
                "DEVICEMEM_WELCOME_MESSAGE", DEFAULT_WELCOME_MESSAGE
            ),
            context_preamble=os.getenv(
                "DEVICEMEM_CONTEXT_PREAMBLE", DEFAULT_CONTEXT_PREAMBLE
            ),
            remote_store_url=os.getenv("DEVICEMEM_REMOTE_STORE_URL", "").strip(),
            remote_store_token=os.getenv("DEVICEMEM_REMOTE_STORE_TOKEN", "").strip(),
            remote_read_limit=max(
                1, int(os.getenv("DEVICEMEM_REMOTE_READ_LIMIT", "100"))
            ),
            remote_batch_size=max(
                1, min(450, int(os.getenv("DEVICEMEM_REMOTE_BATCH_SIZE", "400")))
            ),
        )

    @property
    def window_evict_threshold(self) -> int:
        return int(self.window_max_tokens * self.window_evict_ratio)

    @property
    def archive_chunk_chars(self) -> int:
        return int(self.archive_chunk_tokens * self.chars_per_token)

    @property
    def archive_overlap_chars(self) -> int:
        return int(self.archive_overlap_tokens * self.chars_per_token)
