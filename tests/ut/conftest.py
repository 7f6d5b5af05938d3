"""单元测试公共夹具: 临时注册表 / 缓存 / 假检出实现"""

from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest

from mammoth.core.models import CheckoutResult
from mammoth.core.store import ConfigStore
from mammoth.services.cache import CacheStore
from mammoth.services.registry import RegistryManager
from mammoth.services.retrieval import RetrievalEngine


class FakeCheckout:
    """按脚本行为的检出实现，记录每次调用

    failures: 依次抛出的异常（用完后正常检出）
    fail_paths: 指定仓内路径始终抛出的异常
    partial: 抛异常前先写入一个残缺文件，模拟中途失败
    delay: 每次检出前等待的秒数，用于制造并发重叠
    """

    def __init__(
        self,
        files: dict[str, str] | None = None,
        failures: list[BaseException] | None = None,
        fail_paths: dict[str, BaseException] | None = None,
        partial: bool = True,
        delay: float = 0.0,
    ) -> None:
        self.files = files if files is not None else {"README.md": "hello", "src/main.js": "run()"}
        self.failures = list(failures or [])
        self.fail_paths = dict(fail_paths or {})
        self.partial = partial
        self.delay = delay
        self.calls: list[dict] = []
        self._lock = threading.Lock()

    def checkout(self, url, branch, sparse_path, credentials, destination, timeout) -> CheckoutResult:
        with self._lock:
            self.calls.append({
                "url": url, "branch": branch, "path": sparse_path,
                "credentials": credentials, "destination": destination, "timeout": timeout,
            })
            failure = self.failures.pop(0) if self.failures else self.fail_paths.get(sparse_path)

        destination.mkdir(parents=True)
        if self.delay:
            time.sleep(self.delay)
        if failure is not None:
            if self.partial:
                (destination / "half-written.txt").write_text("partial", encoding="utf-8")
            raise failure
        for rel, content in self.files.items():
            target = destination / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        return CheckoutResult(path=destination, fingerprint="abc123def456")


@pytest.fixture()
def store(tmp_path: Path) -> ConfigStore:
    return ConfigStore(tmp_path / "config" / "templates.json", lock_timeout=5)


@pytest.fixture()
def cache(tmp_path: Path) -> CacheStore:
    return CacheStore(tmp_path / "cache", busy_retries=2, busy_backoff=0, lock_timeout=5)


@pytest.fixture()
def registry(store: ConfigStore, cache: CacheStore) -> RegistryManager:
    return RegistryManager(store, cache=cache)


@pytest.fixture()
def populated(registry: RegistryManager) -> RegistryManager:
    """一个仓库 + 两个模板"""
    registry.add_repository("main", "https://example.com/templates.git", branch="main")
    registry.add_template(
        "vue-admin", "Vue Admin", "main", "templates/vue-admin",
        description="后台模板", language="vue", tags="admin,vue",
    )
    registry.add_template(
        "react-app", "React App", "main", "templates/react-app", language="react",
    )
    return registry


@pytest.fixture()
def fake_checkout() -> FakeCheckout:
    return FakeCheckout()


@pytest.fixture()
def sleeps() -> list[float]:
    return []


@pytest.fixture()
def engine(cache, populated, fake_checkout, sleeps) -> RetrievalEngine:
    return RetrievalEngine(
        cache, populated, fake_checkout,
        timeout=30, max_retries=2, retry_backoff=1.0, max_workers=4,
        sleep=sleeps.append,
    )


@pytest.fixture()
def checkout_factory():
    """构造自定义行为的 FakeCheckout"""
    return FakeCheckout
