from __future__ import annotations

import json
from typing import Any, Protocol
from urllib import error, parse, request

from devicemem.domain.errors import ConfigurationError, TransientIOError

MAX_BATCH_WRITES = 450


class RemoteDocumentStore(Protocol):
    def upsert_batch(self, owner_id: str, records: list[dict[str, Any]]) -> int:
        ...

    def recent(self, owner_id: str, limit: int) -> list[dict[str, Any]]:
        ...


class HttpDocumentStore:
    """JSON-over-HTTP document store scoped by owner.

    ``POST {base}/owners/{owner}/chunks:batch`` upserts records keyed by
    ``owner::source::index``; ``GET {base}/owners/{owner}/chunks`` returns the
    newest records first.
    """

    def __init__(self, base_url: str, token: str = "", *, timeout: float = 30.0) -> None:
        self.base_url = str(base_url or "").strip().rstrip("/")
        self.token = str(token or "").strip()
        self.timeout = float(timeout)

    def upsert_batch(self, owner_id: str, records: list[dict[str, Any]]) -> int:
        if not records:
            return 0
        if len(records) > MAX_BATCH_WRITES:
            raise ValueError(
                f"remote batch of {len(records)} exceeds the {MAX_BATCH_WRITES}-write limit"
            )
        body = self._call(
            "POST",
            f"/owners/{parse.quote(owner_id, safe='')}/chunks:batch",
            payload={"records": records},
        )
        try:
            return int(body.get("written", len(records)))
        except (TypeError, ValueError):
            return len(records)

    def recent(self, owner_id: str, limit: int) -> list[dict[str, Any]]:
        query = parse.urlencode({"order": "created_at_desc", "limit": max(1, int(limit))})
        body = self._call(
            "GET", f"/owners/{parse.quote(owner_id, safe='')}/chunks?{query}"
        )
        items = body.get("records")
        if not isinstance(items, list):
            return []
        return [item for item in items if isinstance(item, dict)]

    def _call(
        self, method: str, path: str, payload: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        if not self.base_url:
            raise ConfigurationError("remote document store URL is not configured")
        headers = {"Accept": "application/json"}
        data = None
        if payload is not None:
            headers["Content-Type"] = "application/json"
            data = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        req = request.Request(
            url=f"{self.base_url}{path}", data=data, headers=headers, method=method
        )
        try:
            with request.urlopen(req, timeout=self.timeout) as resp:
                raw = resp.read().decode("utf-8")
        except error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="ignore")
            raise TransientIOError(
                f"remote store HTTP {exc.code}: {detail[:260]}"
            ) from exc
        except (error.URLError, OSError) as exc:
            raise TransientIOError(f"remote store request failed: {exc}") from exc
        if not raw.strip():
            return {}
        try:
            body = json.loads(raw)
        except ValueError as exc:
            raise TransientIOError("remote store returned invalid JSON") from exc
        return body if isinstance(body, dict) else {}
