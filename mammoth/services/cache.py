"""模板缓存管理

职责:
- (仓库名, 仓内路径) → 本地缓存目录映射
- 新鲜度标记文件读写
- 原子提升（scratch → 缓存槽位）与失效
- 每个缓存键的进程内 / 跨进程互斥

缓存布局:
  <root>/<repo>/<quote(path)>/            缓存槽位
  <root>/<repo>/<quote(path)>/.mammoth-cache.json   新鲜度标记
  <root>/.scratch/                         下载中的临时目录与待删除的旧槽位
  <root>/.locks/                           每键锁文件

槽位要么带完整标记（可用），要么不存在；没有标记的槽位视为半成品，
读取时强制清理并上报 PartialStateError。
"""

from __future__ import annotations

import json
import logging
import tempfile
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any
from urllib.parse import quote, unquote

from filelock import FileLock, Timeout

from mammoth.core.exceptions import NotFoundError, PartialStateError, ResourceBusyError
from mammoth.core.models import CacheEntry, CacheKey, CacheState
from mammoth.utils.fs import copy_tree, dir_size, iter_files, remove_tree, rename_path

logger = logging.getLogger(__name__)

MARKER_NAME = ".mammoth-cache.json"
MARKER_VERSION = 1
SCRATCH_DIR = ".scratch"
LOCKS_DIR = ".locks"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class CacheStore:
    """模板缓存存储"""

    def __init__(
        self,
        root: str | Path,
        *,
        busy_retries: int = 3,
        busy_backoff: float = 0.5,
        lock_timeout: float = 30,
    ) -> None:
        self.root = Path(root)
        self.busy_retries = busy_retries
        self.busy_backoff = busy_backoff
        self.lock_timeout = lock_timeout
        self.scratch_root = self.root / SCRATCH_DIR
        self.locks_root = self.root / LOCKS_DIR
        self._key_locks: dict[CacheKey, threading.Lock] = {}
        self._key_locks_guard = threading.Lock()

    # ---- 路径 ----

    def slot_path(self, key: CacheKey) -> Path:
        """缓存槽位路径，仓内路径整体 URL 编码为单级目录名"""
        return self.root / key.repo / quote(key.path.strip("/"), safe="")

    def _marker_path(self, key: CacheKey) -> Path:
        return self.slot_path(key) / MARKER_NAME

    def remove_path(self, path: Path) -> bool:
        """按缓存的占用重试策略删除路径"""
        return remove_tree(path, retries=self.busy_retries, backoff=self.busy_backoff)

    # ---- 查询 ----

    def read_marker(self, key: CacheKey) -> dict[str, Any] | None:
        """读取新鲜度标记，缺失或损坏返回 None"""
        marker = self._marker_path(key)
        try:
            data = json.loads(marker.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        return data if isinstance(data, dict) else None

    def inspect(self, key: CacheKey) -> CacheState:
        """只看元数据判断槽位状态，不比较内容"""
        if not self.slot_path(key).exists():
            return CacheState.ABSENT
        marker = self.read_marker(key)
        if marker is None or marker.get("complete") is not True:
            return CacheState.PARTIAL
        return CacheState.COMPLETE

    def has(self, key: CacheKey) -> bool:
        return self.inspect(key) == CacheState.COMPLETE

    def get(self, key: CacheKey) -> Path:
        """返回完整缓存槽位路径

        异常:
            NotFoundError: 未缓存
            PartialStateError: 槽位残缺，已强制清理
        """
        state = self.inspect(key)
        if state == CacheState.ABSENT:
            raise NotFoundError(f"模板未缓存: {key}")
        if state == CacheState.PARTIAL:
            self.discard_partial(key)
            raise PartialStateError(f"缓存槽位残缺，已强制清理: {key}")
        return self.slot_path(key)

    def discard_partial(self, key: CacheKey) -> None:
        """强制清理残缺槽位"""
        logger.error("发现残缺缓存槽位，强制清理: %s", self.slot_path(key))
        self.remove_path(self.slot_path(key))

    def is_stale(self, key: CacheKey, max_age_days: int) -> bool:
        """按标记中的获取时间判断是否过期，max_age_days <= 0 表示永不过期"""
        if max_age_days <= 0:
            return False
        marker = self.read_marker(key) or {}
        try:
            retrieved = datetime.fromisoformat(marker.get("retrieved_at", ""))
        except ValueError:
            return True
        return datetime.now(timezone.utc) - retrieved > timedelta(days=max_age_days)

    def size_of(self, key: CacheKey) -> int:
        """缓存内容字节数（不含标记文件），未缓存返回 0"""
        if not self.has(key):
            return 0
        slot = self.slot_path(key)
        marker_size = (slot / MARKER_NAME).stat().st_size
        return dir_size(slot) - marker_size

    def list_all(self) -> list[CacheEntry]:
        """列出所有完整的缓存条目（按仓库、路径排序）"""
        entries: list[CacheEntry] = []
        if not self.root.exists():
            return entries
        for repo_dir in sorted(self.root.iterdir()):
            if not repo_dir.is_dir() or repo_dir.name.startswith("."):
                continue
            for slot in sorted(repo_dir.iterdir()):
                if not slot.is_dir():
                    continue
                key = CacheKey(repo=repo_dir.name, path=unquote(slot.name))
                marker = self.read_marker(key)
                if marker is None or marker.get("complete") is not True:
                    logger.warning("跳过残缺缓存槽位: %s", slot)
                    continue
                entries.append(CacheEntry(
                    key=CacheKey(repo=repo_dir.name, path=marker.get("path", key.path)),
                    path=slot,
                    retrieved_at=marker.get("retrieved_at", ""),
                    fingerprint=marker.get("fingerprint", ""),
                    file_count=int(marker.get("file_count", 0)),
                    url=marker.get("url", ""),
                    branch=marker.get("branch", ""),
                ))
        return entries

    # ---- 写入 ----

    @contextmanager
    def scratch_dir(self, label: str = "dl") -> Iterator[Path]:
        """分配独立的临时目录，退出时（含异常/中断）必定删除"""
        self.scratch_root.mkdir(parents=True, exist_ok=True)
        path = Path(tempfile.mkdtemp(prefix=f"{label}-", dir=str(self.scratch_root)))
        try:
            yield path
        finally:
            self.remove_path(path)

    def put(
        self,
        key: CacheKey,
        source_dir: Path,
        *,
        url: str = "",
        branch: str = "",
        fingerprint: str = "",
    ) -> Path:
        """把 source_dir 原子提升为 key 的缓存槽位，并删除被替换的旧内容"""
        slot, tombstone = self.promote(
            key, source_dir, url=url, branch=branch, fingerprint=fingerprint,
        )
        if tombstone is not None:
            self.remove_path(tombstone)
        return slot

    def promote(
        self,
        key: CacheKey,
        source_dir: Path,
        *,
        url: str = "",
        branch: str = "",
        fingerprint: str = "",
    ) -> tuple[Path, Path | None]:
        """原子提升，返回 (槽位, 墓碑)，墓碑由调用方删除

        顺序: 写标记 → 旧槽位改名为墓碑 → 新内容改名为槽位。
        第二次改名失败或被中断时把墓碑改回，槽位保持原样；
        任何时刻槽位要么是旧的完整内容，要么是新的完整内容，要么不存在。
        source_dir 不在 scratch 区时先复制进 scratch 区，保证改名发生在同一文件系统内。
        """
        if not source_dir.is_dir():
            raise NotFoundError(f"源目录不存在: {source_dir}")

        self.scratch_root.mkdir(parents=True, exist_ok=True)
        staged = source_dir
        if self.scratch_root.resolve() not in source_dir.resolve().parents:
            staged = Path(tempfile.mkdtemp(prefix="stage-", dir=str(self.scratch_root)))
            copy_tree(source_dir, staged)

        try:
            file_count = sum(1 for f in iter_files(staged) if f.name != MARKER_NAME)
            marker = {
                "version": MARKER_VERSION,
                "repo": key.repo,
                "path": key.path,
                "url": url,
                "branch": branch,
                "retrieved_at": _now_iso(),
                "fingerprint": fingerprint,
                "file_count": file_count,
                "complete": True,
            }
            (staged / MARKER_NAME).write_text(
                json.dumps(marker, indent=2, ensure_ascii=False), encoding="utf-8",
            )

            slot = self.slot_path(key)
            slot.parent.mkdir(parents=True, exist_ok=True)
            tombstone: Path | None = None
            if slot.exists():
                tombstone = self.scratch_root / f"old-{uuid.uuid4().hex}"
                rename_path(slot, tombstone, retries=self.busy_retries, backoff=self.busy_backoff)
            try:
                rename_path(staged, slot, retries=self.busy_retries, backoff=self.busy_backoff)
            except BaseException:
                if tombstone is not None and not slot.exists():
                    rename_path(tombstone, slot, retries=self.busy_retries, backoff=self.busy_backoff)
                raise
        except BaseException:
            if staged is not source_dir:
                self.remove_path(staged)
            raise

        logger.info("缓存已更新: %s -> %s (%d 个文件)", key, slot, file_count)
        return slot, tombstone

    def invalidate(self, key: CacheKey) -> bool:
        """删除缓存槽位，已不存在时视为成功，返回是否实际删除

        先把槽位整体改名为墓碑再删除，删除中途失败也不会留下残缺槽位。
        """
        slot = self.slot_path(key)
        if not slot.exists():
            return False
        self.scratch_root.mkdir(parents=True, exist_ok=True)
        tombstone = self.scratch_root / f"old-{uuid.uuid4().hex}"
        try:
            rename_path(slot, tombstone, retries=self.busy_retries, backoff=self.busy_backoff)
        except FileNotFoundError:
            return False
        removed = self.remove_path(tombstone)
        if removed:
            logger.info("缓存已失效: %s", key)
        repo_dir = self.root / key.repo
        try:
            repo_dir.rmdir()
        except OSError:
            # 仓库目录下仍有其他槽位
            pass
        return removed

    def clear(self) -> None:
        """删除整个缓存树后重建空根目录"""
        self.remove_path(self.root)
        self.root.mkdir(parents=True, exist_ok=True)
        logger.info("缓存目录已清空: %s", self.root)

    def sweep(self) -> int:
        """清理上次中断遗留的 scratch 目录和墓碑，返回清理数量

        调用方需保证没有进行中的下载。
        """
        if not self.scratch_root.exists():
            return 0
        count = 0
        for child in self.scratch_root.iterdir():
            self.remove_path(child)
            count += 1
        if count:
            logger.info("已清理 %d 个遗留临时目录", count)
        return count

    # ---- 互斥 ----

    def _thread_lock(self, key: CacheKey) -> threading.Lock:
        with self._key_locks_guard:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock

    @contextmanager
    def key_lock(self, key: CacheKey) -> Iterator[None]:
        """按缓存键串行化：进程内线程锁 + 跨进程文件锁"""
        self.locks_root.mkdir(parents=True, exist_ok=True)
        lock_file = self.locks_root / f"{quote(str(key), safe='')}.lock"
        with self._thread_lock(key):
            file_lock = FileLock(str(lock_file), timeout=self.lock_timeout)
            try:
                file_lock.acquire()
            except Timeout as e:
                raise ResourceBusyError(f"获取缓存锁超时（{self.lock_timeout} 秒）: {key}") from e
            try:
                yield
            finally:
                file_lock.release()
