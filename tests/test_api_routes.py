from __future__ import annotations

import dataclasses
import os
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest.mock import patch

from fastapi.testclient import TestClient

from devicemem.bootstrap.app_factory import build_runtime, create_app
from devicemem.config.settings import MemorySettings
from devicemem.service.backend_probe import BackendDecision
from devicemem.service.encoders import HashEncoderLoader
from devicemem.service.generation import ChatGenerator


class _EchoGenerator(ChatGenerator):
    def __init__(self) -> None:
        super().__init__(base_url="http://stub.local/v1", api_key="k", model="stub")

    async def _chat_completion(self, messages):
        return f"echo: {messages[-1]['content']}"

    async def _stream_completion(self, messages):
        for piece in ("ec", "ho"):
            yield piece


class ApiRouteTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = TemporaryDirectory()
        base = Path(self._tmp.name)
        with patch.dict(os.environ, {"DEVICEMEM_DATA_DIR": str(base)}, clear=True):
            settings = MemorySettings.from_env()
        self.settings = dataclasses.replace(
            settings,
            durability="memory",
            embedding_model="hash",
            embedding_dim=32,
            vector_index_enabled=False,
            retrieval_min_score=0.0,
        )
        self.runtime = build_runtime(
            self.settings,
            loader=HashEncoderLoader(32),
            probe=lambda: BackendDecision(backend="fallback", device="cpu", reason="test"),
            generator=_EchoGenerator(),
        )
        self.app = create_app(self.settings, self.runtime)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_ingest_then_search(self) -> None:
        with TestClient(self.app) as client:
            resp = client.post(
                "/api/v1/memories/ingest",
                json={"text": "The spare key is under the blue flower pot.", "source_name": "notes"},
            )
            self.assertEqual(200, resp.status_code, resp.text)
            report = resp.json()["result"]
            self.assertEqual("short", report["profile"])
            self.assertEqual(1, report["embedded_count"])

            resp = client.post("/api/v1/memories/search", json={"query": "where is the spare key"})
            self.assertEqual(200, resp.status_code)
            hits = resp.json()["result"]
            self.assertEqual("The spare key is under the blue flower pot.", hits[0]["text"])

            rows = client.get("/api/v1/memories", params={"status": "completed"}).json()["result"]
            self.assertEqual(1, len(rows))

            deleted = client.delete("/api/v1/memories").json()["result"]["deleted"]
            self.assertEqual(1, deleted)

    def test_empty_ingest_is_a_bad_request(self) -> None:
        with TestClient(self.app) as client:
            resp = client.post("/api/v1/memories/ingest", json={"text": "   ", "source_name": "x"})
        self.assertEqual(400, resp.status_code)

    def test_chat_round_trip_and_history(self) -> None:
        with TestClient(self.app) as client:
            welcome = client.get("/api/v1/chat/welcome").json()["result"]["message"]
            self.assertEqual(self.settings.welcome_message, welcome)

            resp = client.post("/api/v1/chat", json={"message": "hello"})
            self.assertEqual(200, resp.status_code, resp.text)
            self.assertEqual("echo: hello", resp.json()["result"]["reply"])

            streamed = client.post("/api/v1/chat", json={"message": "again", "stream": True})
            self.assertEqual("echo", streamed.text)

            history = client.get("/api/v1/chat/history").json()["result"]
            self.assertEqual(
                ["user", "assistant", "user", "assistant"], [t["role"] for t in history["turns"]]
            )
            self.assertEqual(4, history["window"]["turn_count"])

            self.assertEqual(4, client.delete("/api/v1/chat/history").json()["result"]["removed"])

    def test_upload_without_remote_is_a_bad_request(self) -> None:
        with TestClient(self.app) as client:
            resp = client.post("/api/v1/memories/upload")
        self.assertEqual(400, resp.status_code)

    def test_status_reports_window_store_and_events(self) -> None:
        with TestClient(self.app) as client:
            status = client.get("/api/v1/status").json()["result"]
            self.assertEqual(0, status["window"]["turn_count"])
            self.assertEqual(0, status["local_store"]["chunk_count"])
            self.assertIn("rehydrated", [e["kind"] for e in status["events"]])
            self.assertEqual(
                {"reason": "disabled by configuration"}, status["degraded"]["index_unavailable"]
            )

            debug = client.get("/api/v1/status/debug").json()["result"]
            self.assertEqual("memory", debug["durability"])
            self.assertEqual("hash", debug["embedding"]["model_id"])

    def test_signed_out_requests_are_unauthorized(self) -> None:
        self.runtime.auth.sign_out()
        with TestClient(self.app) as client:
            resp = client.post("/api/v1/memories/search", json={"query": "anything"})
        self.assertEqual(401, resp.status_code)
