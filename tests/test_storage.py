import io
import os
import socket
import sys
import tempfile
import time
import unittest
from pathlib import Path
from unittest import mock

import requests

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from temphost import storage  # noqa: E402
from temphost.errors import (  # noqa: E402
    InternalError,
    InvalidURLError,
    TooLargeError,
    UpstreamFetchFailedError,
)
from temphost.storage import BlobStore, _is_safe_url  # noqa: E402


def _fake_response(chunks, headers=None, status_error=None):
    response = mock.MagicMock()
    response.headers = headers or {}
    response.iter_content.return_value = iter(chunks)
    if status_error is not None:
        response.raise_for_status.side_effect = status_error
    return response


class BlobStoreTests(unittest.TestCase):
    def setUp(self):
        self.storage_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.storage_dir.name) / "uploads"
        self.blobs = BlobStore(self.root)
        self.blobs.ensure_directories()

    def tearDown(self):
        self.storage_dir.cleanup()

    def test_put_writes_sharded_blob(self):
        storage_path, size = self.blobs.put("abcdef", "txt", io.BytesIO(b"hello"))
        self.assertEqual(storage_path, "ab/abcdef.txt")
        self.assertEqual(size, 5)
        self.assertEqual((self.root / "ab" / "abcdef.txt").read_bytes(), b"hello")
        self.assertEqual(self.blobs.size_of(storage_path), 5)
        with self.blobs.open(storage_path) as handle:
            self.assertEqual(handle.read(), b"hello")

    def test_put_rejects_oversized_payload_and_cleans_up(self):
        with self.assertRaises(TooLargeError):
            self.blobs.put("abcdef", "bin", b"x" * 11, max_bytes=10)
        self.assertEqual(list(self.root.rglob("*")), [])

    def test_put_refuses_existing_slot(self):
        self.blobs.put("abcdef", "txt", b"one")
        with self.assertRaises(InternalError):
            self.blobs.put("abcdef", "txt", b"two")
        self.assertEqual((self.root / "ab" / "abcdef.txt").read_bytes(), b"one")

    def test_resolve_blocks_traversal(self):
        for bad in ("../secret.txt", "/etc/passwd", "ab/../../x", ""):
            with self.subTest(path=bad):
                with self.assertRaises(ValueError):
                    self.blobs.resolve(bad)
        self.assertFalse(self.blobs.exists("../secret.txt"))
        self.assertFalse(self.blobs.delete("../secret.txt"))

    def test_delete_prunes_empty_shard(self):
        storage_path, _ = self.blobs.put("qwerty", "txt", b"x")
        self.assertTrue(self.blobs.delete(storage_path))
        self.assertFalse((self.root / "qw").exists())
        self.assertFalse(self.blobs.delete(storage_path))

    def test_delete_keeps_shard_with_remaining_blobs(self):
        first, _ = self.blobs.put("qwerty", "txt", b"x")
        second, _ = self.blobs.put("qwertz", "txt", b"y")
        self.assertEqual(first.split("/")[0], second.split("/")[0])

        self.assertTrue(self.blobs.delete(first))
        self.assertTrue(self.blobs.exists(second))
        self.assertTrue((self.root / "qw").is_dir())
        self.assertTrue(self.root.is_dir())

    def test_open_missing_blob(self):
        with self.assertRaises(FileNotFoundError):
            self.blobs.open("ab/abcdef.txt")

    def test_cleanup_orphans_respects_minimum_age(self):
        live, _ = self.blobs.put("aaaaaa", "txt", b"live")
        orphan, _ = self.blobs.put("bbbbbb", "txt", b"orphan")

        self.assertEqual(self.blobs.cleanup_orphans({live}, now=time.time()), 0)
        removed = self.blobs.cleanup_orphans({live}, now=time.time() + 601)
        self.assertEqual(removed, 1)
        self.assertTrue(self.blobs.exists(live))
        self.assertFalse(self.blobs.exists(orphan))
        self.assertEqual(list(self.blobs.iter_storage_paths()), [live])

    def test_cleanup_temp_files(self):
        shard = self.root / "cc"
        shard.mkdir()
        stale = shard / "cccccc.txt.tmp"
        fresh = shard / "cccccd.txt.tmp"
        stale.write_bytes(b"partial")
        fresh.write_bytes(b"partial")
        old = time.time() - 7200
        os.utime(stale, (old, old))

        self.assertEqual(self.blobs.cleanup_temp_files(), 1)
        self.assertFalse(stale.exists())
        self.assertTrue(fresh.exists())

    def test_disk_free_bytes(self):
        self.assertGreater(self.blobs.disk_free_bytes(), 0)


class PutFromUrlTests(unittest.TestCase):
    def setUp(self):
        self.storage_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.storage_dir.name) / "uploads"
        self.blobs = BlobStore(self.root)
        self.blobs.ensure_directories()
        patcher = mock.patch.object(storage, "_is_safe_url", return_value=(True, None))
        patcher.start()
        self.addCleanup(patcher.stop)

    def tearDown(self):
        self.storage_dir.cleanup()

    def test_downloads_into_store(self):
        response = _fake_response(
            [b"abc", b"def"], headers={"content-type": "image/png", "content-length": "6"}
        )
        with mock.patch("temphost.storage.requests.get", return_value=response) as get:
            storage_path, size, content_type = self.blobs.put_from_url(
                "abcdef", "png", "https://example.com/a.png"
            )
        get.assert_called_once_with("https://example.com/a.png", timeout=30, stream=True)
        response.close.assert_called_once()
        self.assertEqual((storage_path, size, content_type), ("ab/abcdef.png", 6, "image/png"))
        self.assertEqual(self.blobs.resolve(storage_path).read_bytes(), b"abcdef")

    def test_declared_length_over_cap_fails_before_download(self):
        response = _fake_response([b"x"], headers={"content-length": "1000"})
        with mock.patch("temphost.storage.requests.get", return_value=response):
            with self.assertRaises(TooLargeError) as ctx:
                self.blobs.put_from_url("abcdef", "bin", "https://example.com/f", max_bytes=10)
        self.assertIn("actualSize", ctx.exception.context)
        response.iter_content.assert_not_called()
        self.assertEqual(list(self.root.rglob("*.tmp")), [])

    def test_streamed_body_over_cap_is_discarded(self):
        response = _fake_response([b"x" * 8, b"x" * 8])
        with mock.patch("temphost.storage.requests.get", return_value=response):
            with self.assertRaises(TooLargeError):
                self.blobs.put_from_url("abcdef", "bin", "https://example.com/f", max_bytes=10)
        self.assertEqual([p for p in self.root.rglob("*") if p.is_file()], [])

    def test_upstream_http_error(self):
        upstream = mock.MagicMock(status_code=404)
        response = _fake_response([], status_error=requests.HTTPError(response=upstream))
        with mock.patch("temphost.storage.requests.get", return_value=response):
            with self.assertRaises(UpstreamFetchFailedError) as ctx:
                self.blobs.put_from_url("abcdef", "bin", "https://example.com/missing")
        self.assertEqual(ctx.exception.context["upstreamStatus"], 404)
        self.assertEqual(ctx.exception.status_code, 502)

    def test_network_error(self):
        with mock.patch(
            "temphost.storage.requests.get",
            side_effect=requests.ConnectionError("refused"),
        ):
            with self.assertRaises(UpstreamFetchFailedError):
                self.blobs.put_from_url("abcdef", "bin", "https://example.com/f")
        self.assertEqual([p for p in self.root.rglob("*") if p.is_file()], [])

    def test_unsafe_url_is_rejected(self):
        with mock.patch.object(storage, "_is_safe_url", return_value=(False, "blocked")):
            with mock.patch("temphost.storage.requests.get") as get:
                with self.assertRaises(InvalidURLError):
                    self.blobs.put_from_url("abcdef", "bin", "http://10.0.0.1/x")
        get.assert_not_called()


class SafeUrlTests(unittest.TestCase):
    def test_rejects_non_http_schemes(self):
        self.assertFalse(_is_safe_url("ftp://example.com/file")[0])
        self.assertFalse(_is_safe_url("file:///etc/passwd")[0])

    def test_rejects_dangerous_hostnames(self):
        for url in ("http://localhost/x", "http://169.254.169.254/latest", "http://api.localhost/"):
            with self.subTest(url=url):
                self.assertFalse(_is_safe_url(url)[0])

    def test_rejects_private_resolution(self):
        addr_info = [(socket.AF_INET, socket.SOCK_STREAM, 6, "", ("10.1.2.3", 0))]
        with mock.patch("temphost.storage.socket.getaddrinfo", return_value=addr_info):
            is_safe, reason = _is_safe_url("http://internal.example.com/file")
        self.assertFalse(is_safe)
        self.assertIn("10.1.2.3", reason)

    def test_accepts_public_resolution(self):
        addr_info = [(socket.AF_INET, socket.SOCK_STREAM, 6, "", ("93.184.216.34", 0))]
        with mock.patch("temphost.storage.socket.getaddrinfo", return_value=addr_info):
            self.assertEqual(_is_safe_url("https://example.com/file"), (True, None))


if __name__ == "__main__":
    unittest.main()
