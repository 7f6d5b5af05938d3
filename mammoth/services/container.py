"""服务容器 — 统一依赖注入，消除 CLI 对存储 / 缓存 / 检出的裸构造

同一容器内的实例共享状态（注册表快照、缓存键锁等）。
CLI 通过 get_container() 获取服务，而非直接 import 构造。

依赖关系图（→ 表示依赖）:
  registry  → store, cache
  retrieval → cache, registry, checkout
  transfer  → store, cache
  project   → retrieval（经 resolve_template）
  maintenance → store, cache

用法:
    container = ServiceContainer()
    path = container.resolve_template("vue-admin")

    # 显式注入配置 / 检出实现（测试）
    container = ServiceContainer(config=cfg, checkout=FakeCheckout())
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from mammoth.core.config import Config
    from mammoth.core.models import ExportReport, ImportReport, Template, TemplateFilter
    from mammoth.core.store import ConfigStore
    from mammoth.services.cache import CacheStore
    from mammoth.services.checkout import CheckoutCollaborator
    from mammoth.services.maintenance import Maintenance
    from mammoth.services.project import ProjectGenerator
    from mammoth.services.registry import RegistryManager
    from mammoth.services.retrieval import RetrievalEngine
    from mammoth.services.transfer import ConfigTransfer

logger = logging.getLogger(__name__)


class ServiceContainer:
    """懒加载服务容器

    接受可选 Config 和检出实现，未提供时使用全局 get_config() 与 GitCheckout。
    """

    def __init__(
        self,
        config: Config | None = None,
        checkout: CheckoutCollaborator | None = None,
    ) -> None:
        self._instances: dict[str, object] = {}
        if config is None:
            from mammoth.core.config import get_config
            config = get_config()
        self._config = config
        if checkout is not None:
            self._instances["checkout"] = checkout

    @property
    def config(self) -> Config:
        return self._config

    # ---- 存储层 ----

    @property
    def store(self) -> ConfigStore:
        if "store" not in self._instances:
            from mammoth.core.store import ConfigStore
            self._instances["store"] = ConfigStore(
                registry_file=self._config.registry_file,
                lock_timeout=self._config.lock_timeout,
            )
        return self._instances["store"]  # type: ignore[return-value]

    @property
    def cache(self) -> CacheStore:
        if "cache" not in self._instances:
            from mammoth.services.cache import CacheStore
            self._instances["cache"] = CacheStore(
                self._config.cache_dir,
                busy_retries=self._config.busy_retries,
                busy_backoff=self._config.busy_backoff,
                lock_timeout=self._config.lock_timeout,
            )
        return self._instances["cache"]  # type: ignore[return-value]

    @property
    def checkout(self) -> CheckoutCollaborator:
        if "checkout" not in self._instances:
            from mammoth.services.checkout import GitCheckout
            self._instances["checkout"] = GitCheckout()
        return self._instances["checkout"]  # type: ignore[return-value]

    # ---- 服务层 ----

    @property
    def registry(self) -> RegistryManager:
        if "registry" not in self._instances:
            from mammoth.services.registry import RegistryManager
            self._instances["registry"] = RegistryManager(self.store, cache=self.cache)
        return self._instances["registry"]  # type: ignore[return-value]

    @property
    def retrieval(self) -> RetrievalEngine:
        if "retrieval" not in self._instances:
            from mammoth.services.retrieval import RetrievalEngine
            cfg = self._config
            self._instances["retrieval"] = RetrievalEngine(
                self.cache, self.registry, self.checkout,
                timeout=cfg.checkout_timeout,
                max_retries=cfg.max_retries,
                retry_backoff=cfg.retry_backoff,
                max_workers=cfg.max_workers,
                cache_ttl_days=cfg.cache_ttl_days,
            )
        return self._instances["retrieval"]  # type: ignore[return-value]

    @property
    def transfer(self) -> ConfigTransfer:
        if "transfer" not in self._instances:
            from mammoth.services.transfer import ConfigTransfer
            self._instances["transfer"] = ConfigTransfer(
                self.store, cache=self.cache,
                redact_by_default=self._config.redact_exports,
            )
        return self._instances["transfer"]  # type: ignore[return-value]

    @property
    def project(self) -> ProjectGenerator:
        if "project" not in self._instances:
            from mammoth.services.project import ProjectGenerator
            self._instances["project"] = ProjectGenerator(self.resolve_template)
        return self._instances["project"]  # type: ignore[return-value]

    @property
    def maintenance(self) -> Maintenance:
        if "maintenance" not in self._instances:
            from mammoth.services.maintenance import Maintenance
            self._instances["maintenance"] = Maintenance(self.store, self.cache)
        return self._instances["maintenance"]  # type: ignore[return-value]

    # ---- 脚手架契约 ----

    def resolve_template(self, template_id: str, force: bool = False) -> Path:
        """返回模板的本地缓存目录，未缓存时先下载"""
        template = self.registry.get_template(template_id)
        return self.retrieval.resolve(template, force=force)

    def list_templates(self, filter: TemplateFilter | None = None) -> list[Template]:  # noqa: A002
        return self.registry.list_templates(filter)

    def export_config(
        self,
        destination: str | Path,
        include_cache: bool = False,
        include_secrets: bool | None = None,
    ) -> ExportReport:
        return self.transfer.export(
            destination, include_cache=include_cache, include_secrets=include_secrets,
        )

    def import_config(
        self,
        source: str | Path,
        mode: str = "merge",
        skip_validation: bool = False,
    ) -> ImportReport:
        return self.transfer.import_(source, mode=mode, skip_validation=skip_validation)


# ---- 全局单例 ----

_global: ServiceContainer | None = None
_global_lock = threading.Lock()


def get_container() -> ServiceContainer:
    """获取全局 ServiceContainer 单例（线程安全）"""
    global _global  # noqa: PLW0603
    if _global is not None:
        return _global
    with _global_lock:
        if _global is None:
            _global = ServiceContainer()
        return _global


def set_container(container: ServiceContainer | None) -> None:
    """替换全局容器（测试注入 / 重置）"""
    global _global  # noqa: PLW0603
    with _global_lock:
        _global = container


def reset_container() -> None:
    """重置全局容器（仅用于测试）"""
    set_container(None)
