from __future__ import annotations

import base64
import json
import os
from pathlib import Path
from threading import Lock
from typing import Any

from devicemem.domain.models import Chunk, ChunkStatus


def mirror_key(owner_id: str, source_name: str, chunk_index: int) -> str:
    return f"{owner_id}::{source_name}::{int(chunk_index)}"


class ChunkMirror:
    """Durable key-value copy of every completed chunk.

    Records live in memory and are persisted as a JSON snapshot plus an
    append-only JSONL log that is compacted once it outgrows the snapshot.
    """

    SNAPSHOT_FILE = "chunk_mirror.snapshot.json"
    LOG_FILE = "chunk_mirror.log.jsonl"
    COMPACT_MIN_OPS = 200

    def __init__(self, mirror_dir: Path) -> None:
        self.mirror_dir = Path(mirror_dir)
        self.mirror_dir.mkdir(parents=True, exist_ok=True)
        self._records: dict[str, dict[str, Any]] = {}
        self._lock = Lock()
        self._snapshot_path = self.mirror_dir / self.SNAPSHOT_FILE
        self._log_path = self.mirror_dir / self.LOG_FILE
        self._log_ops = 0
        self._load_from_disk()

    def put(self, chunk: Chunk) -> str:
        record = self._to_record(chunk)
        with self._lock:
            self._records[record["key"]] = record
            self._append_log_locked({"op": "put", "record": record})
            if self._should_compact_locked():
                self._compact_locked()
        return record["key"]

    def get_all_by_owner(self, owner_id: str) -> list[Chunk]:
        with self._lock:
            records = [r for r in self._records.values() if r["owner_id"] == owner_id]
        return [self._to_chunk(r) for r in records]

    def delete_by_owner(self, owner_id: str) -> int:
        with self._lock:
            keys = [k for k, r in self._records.items() if r["owner_id"] == owner_id]
            for key in keys:
                self._records.pop(key, None)
            if keys:
                self._append_log_locked({"op": "delete_owner", "owner_id": owner_id})
                if self._should_compact_locked():
                    self._compact_locked()
        return len(keys)

    def delete_keys(self, keys: list[str]) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._records.pop(key, None) is not None:
                    self._append_log_locked({"op": "delete", "key": key})
                    removed += 1
            if removed and self._should_compact_locked():
                self._compact_locked()
        return removed

    def scan(self) -> list[Chunk]:
        with self._lock:
            records = list(self._records.values())
        return [self._to_chunk(r) for r in records]

    def summary(self) -> dict[str, Any]:
        with self._lock:
            owners = {r["owner_id"] for r in self._records.values()}
            return {
                "records": len(self._records),
                "owners": len(owners),
                "pending_log_ops": self._log_ops,
            }

    def _to_record(self, chunk: Chunk) -> dict[str, Any]:
        embedding = chunk.embedding or b""
        return {
            "key": mirror_key(chunk.owner_id, chunk.source_name, chunk.chunk_index),
            "owner_id": chunk.owner_id,
            "source_name": chunk.source_name,
            "chunk_index": int(chunk.chunk_index),
            "text": chunk.text,
            "embedding": base64.b64encode(embedding).decode("ascii"),
            "created_at": int(chunk.created_at),
        }

    @staticmethod
    def _to_chunk(record: dict[str, Any]) -> Chunk:
        try:
            embedding = base64.b64decode(record.get("embedding") or "", validate=True)
        except (ValueError, TypeError):
            embedding = b""
        return Chunk(
            owner_id=str(record["owner_id"]),
            source_name=str(record["source_name"]),
            chunk_index=int(record["chunk_index"]),
            text=str(record.get("text", "")),
            embedding=embedding,
            status=ChunkStatus.COMPLETED,
            created_at=int(record.get("created_at") or 0),
        )

    @staticmethod
    def _normalize_record(value: Any) -> dict[str, Any] | None:
        if not isinstance(value, dict):
            return None
        owner_id = str(value.get("owner_id", "")).strip()
        source_name = str(value.get("source_name", "")).strip()
        if not owner_id or not source_name:
            return None
        try:
            chunk_index = int(value.get("chunk_index"))
        except (TypeError, ValueError):
            return None
        return {
            "key": mirror_key(owner_id, source_name, chunk_index),
            "owner_id": owner_id,
            "source_name": source_name,
            "chunk_index": chunk_index,
            "text": str(value.get("text", "")),
            "embedding": str(value.get("embedding", "")),
            "created_at": int(value.get("created_at") or 0),
        }

    def _load_from_disk(self) -> None:
        try:
            if self._snapshot_path.exists():
                self._load_snapshot()
            if self._log_path.exists():
                self._replay_log()
        except (OSError, ValueError):
            self._records = {}
            self._log_ops = 0

    def _load_snapshot(self) -> None:
        payload = json.loads(self._snapshot_path.read_text(encoding="utf-8"))
        if not isinstance(payload, dict):
            return
        items = payload.get("records")
        if not isinstance(items, list):
            return
        restored: dict[str, dict[str, Any]] = {}
        for item in items:
            record = self._normalize_record(item)
            if record:
                restored[record["key"]] = record
        self._records = restored

    def _replay_log(self) -> None:
        ops = 0
        with self._log_path.open("r", encoding="utf-8") as fh:
            for line in fh:
                text = line.strip()
                if not text:
                    continue
                try:
                    evt = json.loads(text)
                except ValueError:
                    continue
                if not isinstance(evt, dict):
                    continue
                op = str(evt.get("op"))
                if op == "delete":
                    self._records.pop(str(evt.get("key", "")), None)
                    ops += 1
                elif op == "delete_owner":
                    owner_id = str(evt.get("owner_id", ""))
                    for key in [k for k, r in self._records.items() if r["owner_id"] == owner_id]:
                        self._records.pop(key, None)
                    ops += 1
                elif op == "put":
                    record = self._normalize_record(evt.get("record"))
                    if record:
                        self._records[record["key"]] = record
                        ops += 1
        self._log_ops = ops

    def _append_log_locked(self, event: dict[str, Any]) -> None:
        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        with self._log_path.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(event, ensure_ascii=False))
            fh.write("\n")
        self._log_ops += 1

    def _should_compact_locked(self) -> bool:
        if self._log_ops < self.COMPACT_MIN_OPS:
            return False
        return self._log_ops >= max(1, len(self._records)) * 2

    def _compact_locked(self) -> None:
        tmp_snapshot = self._snapshot_path.with_suffix(".tmp")
        payload = {"records": list(self._records.values())}
        tmp_snapshot.write_text(
            json.dumps(payload, ensure_ascii=False, separators=(",", ":")),
            encoding="utf-8",
        )
        os.replace(tmp_snapshot, self._snapshot_path)
        tmp_log = self._log_path.with_suffix(".tmp")
        tmp_log.write_text("", encoding="utf-8")
        os.replace(tmp_log, self._log_path)
        self._log_ops = 0
