"""文件系统工具 — 带重试的删除/重命名、目录复制与统计

Windows 上被其他进程打开的文件无法删除或重命名，
这里对删除/重命名做有限次重试，仍失败则抛 ResourceBusyError。
"""

from __future__ import annotations

import logging
import os
import shutil
import time
from collections.abc import Iterable
from pathlib import Path

from mammoth.core.exceptions import ResourceBusyError

logger = logging.getLogger(__name__)


def remove_tree(path: Path, *, retries: int = 3, backoff: float = 0.5) -> bool:
    """删除目录或文件，目标不存在视为成功

    返回:
        bool: 是否实际删除了内容

    异常:
        ResourceBusyError: 重试 retries 次后仍无法删除
    """
    attempts = max(1, retries)
    for attempt in range(1, attempts + 1):
        if not os.path.lexists(path):
            return attempt > 1
        try:
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
            else:
                path.unlink()
            if attempt > 1:
                logger.info("第 %d 次尝试删除成功: %s", attempt, path)
            return True
        except FileNotFoundError:
            # 删除过程中目标已被其他清理路径移走
            return True
        except OSError as e:
            if attempt == attempts:
                raise ResourceBusyError(
                    f"删除失败（已重试 {attempts} 次）: {path}: {e}"
                ) from e
            logger.warning("删除失败，%.1f 秒后重试 (%d/%d): %s", backoff, attempt, attempts, e)
            time.sleep(backoff)
    return False


def rename_path(src: Path, dst: Path, *, retries: int = 3, backoff: float = 0.5) -> None:
    """重命名（同一文件系统内原子），对文件占用做有限次重试"""
    attempts = max(1, retries)
    for attempt in range(1, attempts + 1):
        try:
            os.replace(src, dst)
            return
        except FileNotFoundError:
            raise
        except OSError as e:
            if attempt == attempts:
                raise ResourceBusyError(
                    f"重命名失败（已重试 {attempts} 次）: {src} -> {dst}: {e}"
                ) from e
            logger.warning("重命名失败，%.1f 秒后重试 (%d/%d): %s", backoff, attempt, attempts, e)
            time.sleep(backoff)


def copy_tree(src: Path, dst: Path, *, exclude: Iterable[str] = ()) -> int:
    """递归复制目录内容到 dst（dst 可已存在），返回复制的文件数

    exclude 中的名字在任意层级都会被跳过。
    """
    excluded = set(exclude)
    count = 0
    dst.mkdir(parents=True, exist_ok=True)
    for entry in src.iterdir():
        if entry.name in excluded:
            continue
        target = dst / entry.name
        if entry.is_dir() and not entry.is_symlink():
            count += copy_tree(entry, target, exclude=excluded)
        else:
            shutil.copy2(entry, target, follow_symlinks=False)
            count += 1
    return count


def iter_files(root: Path) -> Iterable[Path]:
    """遍历目录下所有普通文件（不跟随符号链接目录）"""
    for dirpath, _dirnames, filenames in os.walk(root):
        for name in filenames:
            yield Path(dirpath) / name


def dir_size(root: Path) -> int:
    """目录总字节数，不存在返回 0"""
    if not root.exists():
        return 0
    total = 0
    for f in iter_files(root):
        try:
            total += f.lstat().st_size
        except OSError:
            continue
    return total


def is_non_empty_dir(path: Path) -> bool:
    """目录存在且至少包含一个条目"""
    if not path.is_dir():
        return False
    return any(path.iterdir())
