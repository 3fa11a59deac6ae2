from __future__ import annotations

import logging

from devicemem.config.profiles import ChunkProfile
from devicemem.domain.errors import UserInputError
from devicemem.domain.models import IngestReport
from devicemem.domain.text.redaction import redact_sensitive
from devicemem.domain.text.segmenter import segment_for_ingestion
from devicemem.service.auth import AuthProvider, require_owner
from devicemem.worker.client import ProgressCallback, WorkerClient

logger = logging.getLogger(__name__)


class IngestionService:
    def __init__(
        self,
        client: WorkerClient,
        auth: AuthProvider,
        *,
        profiles: dict[str, ChunkProfile],
        short_text_threshold: int = 500,
    ) -> None:
        self.client = client
        self.auth = auth
        self.profiles = profiles
        self.short_text_threshold = int(short_text_threshold)

    def plan(self, raw_text: str) -> tuple[ChunkProfile, list[str]]:
        """Redact and segment ``raw_text`` without touching the store."""
        if not str(raw_text or "").strip():
            raise UserInputError("There is no text to save. Paste or type something first.")
        profile, chunks = segment_for_ingestion(
            redact_sensitive(raw_text),
            self.profiles,
            short_text_threshold=self.short_text_threshold,
        )
        if not chunks:
            raise UserInputError("There is no text to save. Paste or type something first.")
        if len(chunks) >= profile.max_chunks:
            raise UserInputError(
                f"This text is too long to save at once (limit {profile.max_chunks - 1} "
                "chunks). Split it into smaller parts and add them one by one."
            )
        return profile, chunks

    async def ingest_text(
        self,
        raw_text: str,
        source_name: str,
        *,
        clear_existing: bool = False,
        on_progress: ProgressCallback | None = None,
    ) -> IngestReport:
        owner_id = require_owner(self.auth)
        source = str(source_name or "").strip()
        if not source:
            raise UserInputError("Give the text a name so it can be updated later.")
        profile, chunks = self.plan(raw_text)
        result = await self.client.prepare(
            owner_id,
            source,
            chunks,
            clear_existing=clear_existing,
            on_progress=on_progress,
        )
        report = IngestReport(
            source_name=source,
            profile=profile.name,
            chunk_count=int(result.get("chunk_count", len(chunks))),
            embedded_count=int(result.get("embedded_count", 0)),
            skipped_count=int(result.get("skipped_count", 0)),
            backend=str(result.get("backend", "")),
        )
        logger.info(
            "ingested source=%s owner=%s profile=%s chunks=%s skipped=%s",
            source,
            owner_id,
            report.profile,
            report.chunk_count,
            report.skipped_count,
        )
        return report
