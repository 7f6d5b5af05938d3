"""维护命令: 清理缓存 / 查看当前状态"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from mammoth.core.store import ConfigStore
    from mammoth.services.cache import CacheStore

from mammoth.core.models import CacheState
from mammoth.services.registry import dangling_references

logger = logging.getLogger(__name__)


class Maintenance:

    def __init__(self, store: ConfigStore, cache: CacheStore) -> None:
        self.store = store
        self.cache = cache

    def clean(self, all: bool = False) -> None:  # noqa: A002
        """清空缓存目录；all=True 时同时把注册表重置为空文档"""
        self.cache.clear()
        if all:
            self.store.reset()
            logger.info("注册表已重置: %s", self.store.registry_file)

    def info(self) -> dict[str, Any]:
        """汇总仓库、模板（含缓存状态）、悬空引用和目录位置

        不包含任何凭据，只标记仓库是否配置了 token。
        """
        doc = self.store.snapshot()
        templates = []
        for t in doc.templates:
            state = self.cache.inspect(t.key)
            marker = self.cache.read_marker(t.key) if state == CacheState.COMPLETE else None
            templates.append({
                **t.to_dict(),
                "cached": state == CacheState.COMPLETE,
                "cache_state": state.value,
                "retrieved_at": (marker or {}).get("retrieved_at", ""),
            })
        return {
            "config_file": str(self.store.registry_file),
            "cache_dir": str(self.cache.root),
            "repos": [
                {**r.to_dict(include_secrets=False), "has_token": r.has_credentials}
                for r in doc.repos
            ],
            "templates": templates,
            "dangling": [
                {"template": d.template_id, "repo": d.repo}
                for d in dangling_references(doc)
            ],
            "counts": {
                "repos": len(doc.repos),
                "templates": len(doc.templates),
                "cached": sum(1 for t in templates if t["cached"]),
            },
        }
