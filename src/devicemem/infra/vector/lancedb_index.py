from __future__ import annotations

import logging
import shutil
import tempfile
from pathlib import Path
from threading import Lock
from typing import Any

import numpy as np

try:
    import lancedb  # type: ignore
    import pyarrow as pa  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    lancedb = None
    pa = None

logger = logging.getLogger(__name__)


class LanceSimilarityIndex:
    """Approximate k-NN index over chunk embeddings, keyed by chunk row id.

    The index is an accelerator only. Any failure while opening, self-testing
    or querying disables it for the rest of the process, and callers fall back
    to scanning the structured table.
    """

    TABLE_NAME = "chunk_vectors"
    SELF_TEST_ID = 2**53 - 1
    SELF_TEST_OWNER = "__self_test__"

    def __init__(
        self,
        db_dir: Path | None,
        vector_dim: int,
        *,
        enabled: bool = True,
        metric: str = "cosine",
        rebuild_every: int = 256,
    ) -> None:
        self.vector_dim = int(vector_dim)
        self.metric = str(metric or "cosine").strip().lower() or "cosine"
        self.available = False
        self.reason: str | None = None
        self._enabled = bool(enabled)
        self._lock = Lock()
        self._owns_dir = db_dir is None
        self.db_dir = Path(db_dir) if db_dir is not None else None
        self._db: Any = None
        self._table: Any = None
        self._rebuild_every = max(1, int(rebuild_every))
        self._pending_since_rebuild = 0

    def open(self) -> bool:
        if not self._enabled:
            self.disable("disabled by configuration")
            return False
        if lancedb is None or pa is None:
            self.disable("lancedb is not installed")
            return False
        try:
            if self.db_dir is None:
                self.db_dir = Path(tempfile.mkdtemp(prefix="devicemem-lance-"))
            self.db_dir.mkdir(parents=True, exist_ok=True)
            self._db = lancedb.connect(str(self.db_dir))
            self._table = self._open_or_create_table()
            self._self_test()
        except Exception as exc:
            self.disable(f"{type(exc).__name__}: {exc}")
            return False
        self.available = True
        return True

    def disable(self, reason: str) -> None:
        with self._lock:
            first = self.reason is None
            self.available = False
            self.reason = reason
            self._table = None
        if first:
            logger.warning(
                "similarity index unavailable, using brute-force scan: %s", reason
            )

    def close(self) -> None:
        with self._lock:
            self._table = None
            self._db = None
        if self._owns_dir and self.db_dir is not None:
            shutil.rmtree(self.db_dir, ignore_errors=True)

    def upsert(self, chunk_id: int, owner_id: str, vector: np.ndarray) -> bool:
        if not self.available:
            return False
        row = self._to_row(chunk_id, owner_id, vector)
        try:
            with self._lock:
                table = self._table
                if table is None:
                    return False
                table.delete(f"chunk_id = {int(chunk_id)}")
                table.add([row])
                self._pending_since_rebuild += 1
                if self._pending_since_rebuild >= self._rebuild_every:
                    self._ensure_index_locked()
                    self._pending_since_rebuild = 0
        except Exception as exc:
            logger.warning(
                "similarity index upsert failed for chunk_id=%s owner=%s: %s",
                chunk_id,
                owner_id,
                exc,
            )
            return False
        return True

    def delete_ids(self, chunk_ids: list[int]) -> None:
        if not self.available or not chunk_ids:
            return
        ids = ",".join(str(int(x)) for x in chunk_ids)
        try:
            with self._lock:
                if self._table is not None:
                    self._table.delete(f"chunk_id IN ({ids})")
        except Exception as exc:
            logger.warning("similarity index delete failed: %s", exc)

    def delete_owner(self, owner_id: str) -> None:
        if not self.available:
            return
        try:
            with self._lock:
                if self._table is not None:
                    self._table.delete(f"owner_id = '{self._quote_sql(owner_id)}'")
        except Exception as exc:
            logger.warning("similarity index delete failed for owner=%s: %s", owner_id, exc)

    def search(self, owner_id: str, vector: np.ndarray, k: int) -> list[tuple[int, float]]:
        """Return ``(chunk_id, distance)`` pairs, nearest first. Raises on failure."""
        with self._lock:
            table = self._table
        if table is None:
            return []
        query = table.search(np.asarray(vector, dtype=np.float32).tolist())
        if hasattr(query, "distance_type"):
            query = query.distance_type(self.metric)
        elif hasattr(query, "metric"):
            query = query.metric(self.metric)
        query = query.where(f"owner_id = '{self._quote_sql(owner_id)}'", prefilter=True)
        rows = query.limit(max(1, int(k))).to_list()
        out: list[tuple[int, float]] = []
        for row in rows:
            if not isinstance(row, dict):
                continue
            raw_distance = row.get("_distance")
            distance = float(raw_distance) if raw_distance is not None else 1.0
            out.append((int(row["chunk_id"]), distance))
        out.sort(key=lambda x: x[1])
        return out

    def count(self) -> int:
        with self._lock:
            table = self._table
        if table is None:
            return 0
        try:
            return int(table.count_rows())
        except Exception:
            return 0

    def _schema(self) -> Any:
        return pa.schema(
            [
                pa.field("chunk_id", pa.int64()),
                pa.field("owner_id", pa.string()),
                pa.field("vector", pa.list_(pa.float32(), self.vector_dim)),
            ]
        )

    def _open_or_create_table(self) -> Any:
        names = self._table_names()
        if self.TABLE_NAME in names:
            table = self._db.open_table(self.TABLE_NAME)
            field = table.schema.field("vector")
            width = getattr(field.type, "list_size", None)
            if width != self.vector_dim:
                raise ValueError(
                    f"index vector width {width} does not match dimension {self.vector_dim}"
                )
            return table
        return self._db.create_table(self.TABLE_NAME, schema=self._schema())

    def _table_names(self) -> set[str]:
        if hasattr(self._db, "list_tables"):
            listed = self._db.list_tables()
            table_names = getattr(listed, "tables", None)
            if isinstance(table_names, list):
                return {str(x) for x in table_names}
            if isinstance(listed, dict):
                return {str(x) for x in listed.get("tables", [])}
            try:
                return {str(x) for x in listed}
            except TypeError:
                return set()
        return {str(x) for x in self._db.table_names()}

    def _self_test(self) -> None:
        probe = np.zeros(self.vector_dim, dtype=np.float32)
        probe[0] = 1.0
        self._table.add([self._to_row(self.SELF_TEST_ID, self.SELF_TEST_OWNER, probe)])
        self._table.delete(f"chunk_id = {self.SELF_TEST_ID}")

    def _ensure_index_locked(self) -> None:
        if self._table is None:
            return
        try:
            self._table.create_index(
                metric=self.metric,
                vector_column_name="vector",
                replace=True,
            )
        except Exception as exc:
            # too few rows for partitioning, or unsupported by this build
            logger.debug("similarity index build skipped: %s", exc)

    def _to_row(self, chunk_id: int, owner_id: str, vector: np.ndarray) -> dict[str, Any]:
        return {
            "chunk_id": int(chunk_id),
            "owner_id": str(owner_id),
            "vector": np.asarray(vector, dtype=np.float32).tolist(),
        }

    @staticmethod
    def _quote_sql(value: str) -> str:
        return str(value).replace("'", "''")
