"""Tests for the content-addressed snapshot cache."""
import json

import pytest

from extraction.cache import FileContentCache, MemoryContentCache, compute_file_hash, default_cache_dir
from schemas.enums import ExtractionStatusKind


class TestFileHash:
    def test_stable_sha256(self):
        assert compute_file_hash(b"abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"

    def test_content_sensitive(self):
        assert compute_file_hash(b"plans v1") != compute_file_hash(b"plans v2")


class TestDefaultCacheDir:
    def test_env_override(self, monkeypatch, tmp_path):
        monkeypatch.setenv("PLAN_EXTRACT_CACHE_DIR", str(tmp_path))
        assert default_cache_dir() == tmp_path


class TestFileContentCache:
    def test_miss(self, tmp_path):
        assert FileContentCache(tmp_path).get("0" * 64) is None

    def test_round_trip(self, tmp_path, make_snapshot):
        cache = FileContentCache(tmp_path / "cache")
        snapshot = make_snapshot(units=5, far=3.0)
        cache.put("a" * 64, snapshot)
        assert cache.get("a" * 64) == snapshot
        assert list((tmp_path / "cache").glob("*.tmp")) == []

    def test_put_overwrites(self, tmp_path, make_snapshot):
        cache = FileContentCache(tmp_path)
        cache.put("a" * 64, make_snapshot(units=5))
        cache.put("a" * 64, make_snapshot(units=7))
        assert cache.get("a" * 64).totals.total_units == 7

    def test_stale_version_ignored(self, tmp_path, make_snapshot):
        cache = FileContentCache(tmp_path)
        cache.put("a" * 64, make_snapshot(units=5))
        path = tmp_path / f"{'a' * 64}.json"
        payload = json.loads(path.read_text())
        payload["cache_version"] = 0
        path.write_text(json.dumps(payload))
        assert cache.get("a" * 64) is None

    def test_invalidate_and_clear(self, tmp_path, make_snapshot):
        cache = FileContentCache(tmp_path)
        cache.put("a" * 64, make_snapshot(units=1))
        cache.put("b" * 64, make_snapshot(units=2))
        cache.invalidate("a" * 64)
        cache.invalidate("c" * 64)
        assert cache.get("a" * 64) is None
        assert cache.clear() == 1
        assert cache.get("b" * 64) is None


class TestMemoryContentCache:
    def test_hits_are_independent_copies(self, make_snapshot):
        cache = MemoryContentCache()
        snapshot = make_snapshot(units=3)
        cache.put("h", snapshot)
        first = cache.get("h")
        second = cache.get("h")
        assert first == snapshot
        assert first is not second

    def test_status_preserved(self, make_snapshot):
        cache = MemoryContentCache()
        cache.put("h", make_snapshot(units=3, status=ExtractionStatusKind.PARTIAL, errors=["OCR failed: boom"]))
        cached = cache.get("h")
        assert cached.status == ExtractionStatusKind.PARTIAL
        assert cached.errors == ["OCR failed: boom"]
