from __future__ import annotations

import io
import json
import unittest
from unittest.mock import patch
from urllib import error

from devicemem.domain.errors import ConfigurationError, TransientIOError
from devicemem.infra.remote.document_store import MAX_BATCH_WRITES, HttpDocumentStore


class _Response(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class HttpDocumentStoreTests(unittest.TestCase):
    def test_upsert_posts_records_with_bearer_token(self) -> None:
        store = HttpDocumentStore("https://docs.example/v1/", "secret")
        captured = {}

        def fake_urlopen(req, timeout):
            captured["url"] = req.full_url
            captured["method"] = req.get_method()
            captured["auth"] = req.get_header("Authorization")
            captured["body"] = json.loads(req.data.decode("utf-8"))
            return _Response(b'{"written": 2}')

        with patch("devicemem.infra.remote.document_store.request.urlopen", fake_urlopen):
            written = store.upsert_batch("user 1", [{"key": "a"}, {"key": "b"}])
        self.assertEqual(2, written)
        self.assertEqual("https://docs.example/v1/owners/user%201/chunks:batch", captured["url"])
        self.assertEqual("POST", captured["method"])
        self.assertEqual("Bearer secret", captured["auth"])
        self.assertEqual(2, len(captured["body"]["records"]))

    def test_oversized_batch_is_refused(self) -> None:
        store = HttpDocumentStore("https://docs.example/v1")
        with self.assertRaises(ValueError):
            store.upsert_batch("u1", [{"key": str(i)} for i in range(MAX_BATCH_WRITES + 1)])

    def test_recent_returns_only_dict_records(self) -> None:
        store = HttpDocumentStore("https://docs.example/v1")
        body = json.dumps({"records": [{"text": "a"}, "junk", {"text": "b"}]}).encode("utf-8")
        with patch(
            "devicemem.infra.remote.document_store.request.urlopen",
            lambda req, timeout: _Response(body),
        ):
            records = store.recent("u1", 10)
        self.assertEqual([{"text": "a"}, {"text": "b"}], records)

    def test_network_failure_is_transient(self) -> None:
        store = HttpDocumentStore("https://docs.example/v1")

        def boom(req, timeout):
            raise error.URLError("connection refused")

        with patch("devicemem.infra.remote.document_store.request.urlopen", boom):
            with self.assertRaises(TransientIOError):
                store.recent("u1", 10)

    def test_missing_url_is_a_configuration_error(self) -> None:
        with self.assertRaises(ConfigurationError):
            HttpDocumentStore("").recent("u1", 10)
