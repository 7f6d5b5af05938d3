"""CacheStore 单元测试"""

from __future__ import annotations

import json
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

import mammoth.services.cache as cachemod
from mammoth.core.exceptions import NotFoundError, PartialStateError, ResourceBusyError
from mammoth.core.models import CacheKey, CacheState
from mammoth.services.cache import MARKER_NAME, CacheStore

KEY = CacheKey(repo="main", path="templates/vue-admin")


def _make_source(root: Path, files: dict[str, str]) -> Path:
    root.mkdir(parents=True, exist_ok=True)
    for rel, content in files.items():
        p = root / rel
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(content, encoding="utf-8")
    return root


class TestSlotLayout:
    def test_path_encoded_as_single_directory(self, cache: CacheStore) -> None:
        slot = cache.slot_path(KEY)
        assert slot.parent == cache.root / "main"
        assert slot.name == "templates%2Fvue-admin"

    def test_distinct_paths_do_not_collide(self, cache: CacheStore) -> None:
        a = cache.slot_path(CacheKey("r", "a/b"))
        b = cache.slot_path(CacheKey("r", "a_b"))
        assert a != b


class TestPutAndGet:
    def test_absent_initially(self, cache: CacheStore) -> None:
        assert cache.inspect(KEY) == CacheState.ABSENT
        assert cache.has(KEY) is False
        assert cache.size_of(KEY) == 0
        with pytest.raises(NotFoundError):
            cache.get(KEY)

    def test_put_from_outside_scratch(self, cache: CacheStore, tmp_path: Path) -> None:
        src = _make_source(tmp_path / "src", {"a.txt": "12345", "sub/b.txt": "xy"})
        slot = cache.put(KEY, src, url="https://x/y.git", branch="dev", fingerprint="f00")
        assert slot == cache.slot_path(KEY)
        assert cache.has(KEY)
        assert (slot / "sub" / "b.txt").read_text(encoding="utf-8") == "xy"
        # 外部源目录保持不动
        assert (src / "a.txt").exists()
        assert not (src / MARKER_NAME).exists()
        assert cache.size_of(KEY) == 7

    def test_put_from_scratch_is_moved(self, cache: CacheStore) -> None:
        with cache.scratch_dir() as scratch:
            src = _make_source(scratch / "content", {"a.txt": "1"})
            cache.put(KEY, src)
            assert not src.exists()
        assert cache.has(KEY)

    def test_put_replaces_previous_content(self, cache: CacheStore, tmp_path: Path) -> None:
        cache.put(KEY, _make_source(tmp_path / "v1", {"old.txt": "o"}))
        cache.put(KEY, _make_source(tmp_path / "v2", {"new.txt": "n"}))
        slot = cache.get(KEY)
        assert (slot / "new.txt").exists()
        assert not (slot / "old.txt").exists()
        assert list(cache.scratch_root.iterdir()) == []

    def test_put_missing_source(self, cache: CacheStore, tmp_path: Path) -> None:
        with pytest.raises(NotFoundError):
            cache.put(KEY, tmp_path / "nope")

    def test_marker_content(self, cache: CacheStore, tmp_path: Path) -> None:
        cache.put(KEY, _make_source(tmp_path / "s", {"a": "1", "b": "2"}), branch="main")
        marker = json.loads((cache.slot_path(KEY) / MARKER_NAME).read_text(encoding="utf-8"))
        assert marker["complete"] is True
        assert marker["repo"] == "main"
        assert marker["path"] == "templates/vue-admin"
        assert marker["file_count"] == 2

    def test_failed_rename_restores_old_slot(
        self, cache: CacheStore, tmp_path: Path, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        cache.put(KEY, _make_source(tmp_path / "v1", {"old.txt": "o"}))
        real_rename = cachemod.rename_path
        calls = []

        def flaky(src, dst, **kw):
            calls.append((src, dst))
            # 第二次改名（新内容 → 槽位）失败
            if len(calls) == 2:
                raise ResourceBusyError("busy")
            return real_rename(src, dst, **kw)

        monkeypatch.setattr(cachemod, "rename_path", flaky)
        with pytest.raises(ResourceBusyError):
            cache.put(KEY, _make_source(tmp_path / "v2", {"new.txt": "n"}))
        slot = cache.get(KEY)
        assert (slot / "old.txt").exists()
        assert not (slot / "new.txt").exists()

    def test_interrupted_rename_restores_old_slot(
        self, cache: CacheStore, tmp_path: Path, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        cache.put(KEY, _make_source(tmp_path / "v1", {"old.txt": "o"}))
        real_rename = cachemod.rename_path
        calls = []

        def interrupted(src, dst, **kw):
            calls.append((src, dst))
            if len(calls) == 2:
                raise KeyboardInterrupt
            return real_rename(src, dst, **kw)

        monkeypatch.setattr(cachemod, "rename_path", interrupted)
        with pytest.raises(KeyboardInterrupt):
            cache.put(KEY, _make_source(tmp_path / "v2", {"new.txt": "n"}))
        slot = cache.get(KEY)
        assert (slot / "old.txt").exists()
        assert list(cache.scratch_root.iterdir()) == []

    def test_promote_hands_back_tombstone(self, cache: CacheStore, tmp_path: Path) -> None:
        cache.put(KEY, _make_source(tmp_path / "v1", {"old.txt": "o"}))
        slot, tombstone = cache.promote(KEY, _make_source(tmp_path / "v2", {"new.txt": "n"}))
        assert (slot / "new.txt").exists()
        assert tombstone is not None
        assert (tombstone / "old.txt").exists()
        assert tombstone.parent == cache.scratch_root

    def test_promote_into_empty_slot(self, cache: CacheStore, tmp_path: Path) -> None:
        slot, tombstone = cache.promote(KEY, _make_source(tmp_path / "v1", {"a.txt": "a"}))
        assert tombstone is None
        assert cache.has(KEY)


class TestPartialState:
    def test_slot_without_marker_is_partial(self, cache: CacheStore) -> None:
        slot = cache.slot_path(KEY)
        slot.mkdir(parents=True)
        (slot / "x").write_text("x", encoding="utf-8")
        assert cache.inspect(KEY) == CacheState.PARTIAL
        assert cache.has(KEY) is False

    def test_get_partial_cleans_and_raises(self, cache: CacheStore) -> None:
        slot = cache.slot_path(KEY)
        slot.mkdir(parents=True)
        with pytest.raises(PartialStateError):
            cache.get(KEY)
        assert not slot.exists()

    def test_incomplete_marker_is_partial(self, cache: CacheStore) -> None:
        slot = cache.slot_path(KEY)
        slot.mkdir(parents=True)
        (slot / MARKER_NAME).write_text(json.dumps({"complete": False}), encoding="utf-8")
        assert cache.inspect(KEY) == CacheState.PARTIAL

    def test_list_all_skips_partial(self, cache: CacheStore, tmp_path: Path) -> None:
        cache.put(KEY, _make_source(tmp_path / "s", {"a": "1"}))
        cache.slot_path(CacheKey("main", "broken")).mkdir(parents=True)
        entries = cache.list_all()
        assert [e.key for e in entries] == [KEY]


class TestInvalidate:
    def test_invalidate_existing(self, cache: CacheStore, tmp_path: Path) -> None:
        cache.put(KEY, _make_source(tmp_path / "s", {"a": "1"}))
        assert cache.invalidate(KEY) is True
        assert cache.inspect(KEY) == CacheState.ABSENT
        assert not (cache.root / "main").exists()

    def test_invalidate_absent_is_noop(self, cache: CacheStore) -> None:
        assert cache.invalidate(KEY) is False
        assert cache.invalidate(KEY) is False

    def test_invalidate_keeps_sibling_slots(self, cache: CacheStore, tmp_path: Path) -> None:
        other = CacheKey("main", "templates/react")
        cache.put(KEY, _make_source(tmp_path / "a", {"a": "1"}))
        cache.put(other, _make_source(tmp_path / "b", {"b": "1"}))
        cache.invalidate(KEY)
        assert cache.has(other)


class TestMaintenance:
    def test_sweep_removes_leftovers(self, cache: CacheStore) -> None:
        cache.scratch_root.mkdir(parents=True)
        (cache.scratch_root / "dl-abandoned").mkdir()
        (cache.scratch_root / "old-123").mkdir()
        assert cache.sweep() == 2
        assert list(cache.scratch_root.iterdir()) == []

    def test_sweep_without_scratch(self, cache: CacheStore) -> None:
        assert cache.sweep() == 0

    def test_clear(self, cache: CacheStore, tmp_path: Path) -> None:
        cache.put(KEY, _make_source(tmp_path / "s", {"a": "1"}))
        cache.clear()
        assert cache.root.exists()
        assert cache.list_all() == []

    def test_scratch_dir_removed_on_error(self, cache: CacheStore) -> None:
        with pytest.raises(RuntimeError):
            with cache.scratch_dir() as scratch:
                (scratch / "f").write_text("x", encoding="utf-8")
                raise RuntimeError("boom")
        assert not scratch.exists()


class TestStaleness:
    def test_zero_ttl_never_stale(self, cache: CacheStore, tmp_path: Path) -> None:
        cache.put(KEY, _make_source(tmp_path / "s", {"a": "1"}))
        assert cache.is_stale(KEY, 0) is False

    def test_old_entry_is_stale(self, cache: CacheStore, tmp_path: Path) -> None:
        cache.put(KEY, _make_source(tmp_path / "s", {"a": "1"}))
        marker_file = cache.slot_path(KEY) / MARKER_NAME
        marker = json.loads(marker_file.read_text(encoding="utf-8"))
        marker["retrieved_at"] = (datetime.now(timezone.utc) - timedelta(days=10)).isoformat()
        marker_file.write_text(json.dumps(marker), encoding="utf-8")
        assert cache.is_stale(KEY, 7) is True
        assert cache.is_stale(KEY, 30) is False


class TestKeyLock:
    def test_lock_file_created(self, cache: CacheStore) -> None:
        with cache.key_lock(KEY):
            files = os.listdir(cache.locks_root)
            assert any(f.endswith(".lock") for f in files)

    def test_lock_reentrant_across_calls(self, cache: CacheStore) -> None:
        with cache.key_lock(KEY):
            pass
        with cache.key_lock(KEY):
            pass

    def test_path_spellings_share_lock(self, cache: CacheStore) -> None:
        assert cache._thread_lock(CacheKey("main", "templates/vue-admin/")) is cache._thread_lock(KEY)
