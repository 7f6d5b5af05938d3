"""注册表存储 — 单文档加载 / 持久化 / 原子替换

注册表（仓库 + 模板）作为一个带版本号的 JSON 文档保存在用户配置目录。
写操作通过 transaction() 获得跨进程排他锁，完成“读取-修改-持久化”整个周期；
读操作使用最近一次持久化的快照，不加锁。

旧版文档（无 version 字段）在加载时按版本 1 迁移，下次写入时落盘为新格式。
"""

from __future__ import annotations

import copy
import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from filelock import FileLock, Timeout

from mammoth.core.exceptions import ConfigError, ResourceBusyError, ValidationError
from mammoth.core.models import RegistryDocument
from mammoth.utils.logger import register_secret
from mammoth.utils.yaml_io import load_json, save_json

logger = logging.getLogger(__name__)


class ConfigStore:
    """注册表文档存储"""

    def __init__(self, registry_file: str | Path, lock_timeout: float = 30) -> None:
        self.registry_file = Path(registry_file)
        self.lock_timeout = lock_timeout
        self._lock = FileLock(str(self.registry_file) + ".lock", timeout=lock_timeout)
        self._document = self._read()

    # ---- 读 ----

    def _read(self) -> RegistryDocument:
        """从磁盘读取文档，不存在则返回空文档"""
        try:
            raw = load_json(self.registry_file)
        except json.JSONDecodeError as e:
            raise ConfigError(f"注册表文件损坏，无法解析: {self.registry_file}: {e}") from e
        except (OSError, ValueError) as e:
            raise ConfigError(f"读取注册表文件失败: {self.registry_file}: {e}") from e

        if raw is None:
            return RegistryDocument()
        if isinstance(raw, dict) and "version" not in raw:
            logger.info("检测到旧版注册表格式，按版本 1 迁移: %s", self.registry_file)
        try:
            doc = RegistryDocument.from_dict(raw)
        except ValidationError as e:
            detail = "; ".join(e.details)
            raise ConfigError(f"注册表文件结构不合法: {self.registry_file}: {detail}") from e
        for repo in doc.repos:
            register_secret(repo.auth_token)
        return doc

    def load(self) -> RegistryDocument:
        """重新从磁盘加载并返回快照"""
        self._document = self._read()
        return self.snapshot()

    def snapshot(self) -> RegistryDocument:
        """最近一次持久化文档的深拷贝，调用方修改不影响存储"""
        return copy.deepcopy(self._document)

    @property
    def exists(self) -> bool:
        return self.registry_file.exists()

    # ---- 写 ----

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        self.registry_file.parent.mkdir(parents=True, exist_ok=True)
        try:
            with self._lock:
                yield
        except Timeout as e:
            raise ResourceBusyError(
                f"获取注册表写锁超时（{self.lock_timeout} 秒）: {self.registry_file}"
            ) from e

    @contextmanager
    def transaction(self) -> Iterator[RegistryDocument]:
        """排他地执行一次读取-修改-持久化

        进入时重新读取磁盘上的最新文档，交给调用方修改；
        正常退出则原子写回，异常退出则丢弃修改，磁盘与内存均保持原样。
        """
        with self._exclusive():
            working = self._read()
            yield working
            self._persist(working)

    def replace(self, document: RegistryDocument) -> None:
        """整体替换文档（导入覆盖 / 重置）"""
        with self._exclusive():
            self._persist(copy.deepcopy(document))

    def reset(self) -> None:
        """重置为空文档"""
        self.replace(RegistryDocument())

    def _persist(self, document: RegistryDocument) -> None:
        try:
            save_json(self.registry_file, document.to_dict(include_secrets=True))
        except OSError as e:
            raise ConfigError(f"写入注册表文件失败: {self.registry_file}: {e}") from e
        for repo in document.repos:
            register_secret(repo.auth_token)
        self._document = document
        logger.debug(
            "注册表已保存: %d 个仓库, %d 个模板",
            len(document.repos), len(document.templates),
        )
