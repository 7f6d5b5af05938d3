"""模板获取引擎 — 检出 → 校验 → 原子写入缓存

单次请求的状态机:
  IDLE → CHECKING_CACHE → DOWNLOADING → VERIFYING → CACHED
                                   ↘ FAILED

要点:
  - 缓存命中只读标记文件，不比较内容
  - 检出永远写入独立的 scratch 目录，确认完整后才由 CacheStore.put 原子提升
  - 网络瞬时错误 / 超时按 max_retries 重试，每次重试前清空 scratch；
    认证失败、路径不存在等直接失败
  - 任何退出路径（成功、失败、中断）都会删除 scratch
  - 同一缓存键的请求串行执行；批量下载用有界线程池，单项失败不影响其他项
"""

from __future__ import annotations

import logging
import re
import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from mammoth.services.cache import CacheStore
    from mammoth.services.checkout import CheckoutCollaborator
    from mammoth.services.registry import RegistryManager

from mammoth.core.exceptions import (
    CheckoutError,
    InvalidArgumentError,
    MammothError,
    NotFoundError,
    OperationCancelledError,
    PartialStateError,
    UnknownRepositoryError,
)
from mammoth.core.models import (
    CacheState,
    CheckoutResult,
    Credentials,
    Repository,
    RetrievalResult,
    RetrievalState,
    RetrieveOptions,
    Template,
)
from mammoth.utils.fs import is_non_empty_dir

logger = logging.getLogger(__name__)

_LABEL_RE = re.compile(r"[^A-Za-z0-9_.\-]+")


class RetrievalEngine:
    """模板获取引擎"""

    def __init__(
        self,
        cache: CacheStore,
        registry: RegistryManager,
        checkout: CheckoutCollaborator,
        *,
        timeout: float = 300,
        max_retries: int = 2,
        retry_backoff: float = 1.0,
        max_workers: int = 4,
        cache_ttl_days: int = 0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.cache = cache
        self.registry = registry
        self.checkout = checkout
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.max_workers = max(1, max_workers)
        self.cache_ttl_days = cache_ttl_days
        self._sleep = sleep
        self._cancel = threading.Event()

    # ---- 取消 ----

    def cancel(self) -> None:
        """请求取消：进行中的检出在当前尝试结束后停止并清理

        只作用于当前这次 retrieve / download_all，下一次调用开始时复位。
        """
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # ---- 选项 ----

    def _normalize(self, options: RetrieveOptions | None) -> tuple[bool, float, int]:
        """校验并补全选项，返回 (force, timeout, 总尝试次数)"""
        options = options or RetrieveOptions()
        timeout = self.timeout if options.timeout is None else options.timeout
        if timeout <= 0:
            raise InvalidArgumentError(f"timeout 必须大于 0 秒: {timeout}")
        retries = self.max_retries if options.max_retries is None else options.max_retries
        return options.force, timeout, 1 + max(0, retries)

    # ---- 单个获取 ----

    def retrieve(self, template: Template, options: RetrieveOptions | None = None) -> RetrievalResult:
        """获取单个模板到缓存

        检出相关失败不抛出，以 FAILED 结果返回；选项非法直接抛 InvalidArgumentError。
        """
        self._cancel.clear()
        return self._retrieve(template, options)

    def _retrieve(self, template: Template, options: RetrieveOptions | None) -> RetrievalResult:
        force, timeout, attempts = self._normalize(options)
        result = RetrievalResult(template_id=template.id, key=template.key)

        try:
            repo = self._repository_for(template)
            with self.cache.key_lock(template.key):
                self._retrieve_locked(template, repo, force, timeout, attempts, result)
        except MammothError as e:
            if result.state == RetrievalState.CACHED:
                # 槽位已提升成功，只有旧内容或 scratch 清理失败
                result.warnings.append(f"[{e.code}] {e}")
                logger.error("模板 '%s' 已缓存，但临时目录清理失败: %s", template.id, e)
            else:
                self._fail(result, e)
        return result

    def _repository_for(self, template: Template) -> Repository:
        try:
            return self.registry.get_repository(template.repo)
        except NotFoundError as e:
            raise UnknownRepositoryError(
                f"模板 '{template.id}' 引用的仓库 '{template.repo}' 不存在"
            ) from e

    def _retrieve_locked(
        self,
        template: Template,
        repo: Repository,
        force: bool,
        timeout: float,
        attempts: int,
        result: RetrievalResult,
    ) -> None:
        key = template.key
        result.state = RetrievalState.CHECKING_CACHE
        state = self.cache.inspect(key)
        if state == CacheState.PARTIAL:
            self.cache.discard_partial(key)
            result.warnings.append(f"[{PartialStateError.code}] 缓存槽位残缺，已强制清理: {key}")
        elif state == CacheState.COMPLETE and not force:
            if not self.cache.is_stale(key, self.cache_ttl_days):
                logger.info("模板已缓存: %s", template.id)
                result.state = RetrievalState.CACHED
                result.path = self.cache.slot_path(key)
                result.from_cache = True
                return
            logger.info("缓存已过期，重新下载: %s", template.id)

        result.state = RetrievalState.DOWNLOADING
        logger.info("开始下载模板: %s", template.id)
        label = _LABEL_RE.sub("_", template.id)[:40] or "tpl"
        with self.cache.scratch_dir(label=label) as scratch:
            checked_out = self._checkout_with_retry(
                template, repo, scratch / "content", timeout, attempts, result,
            )

            result.state = RetrievalState.VERIFYING
            if not is_non_empty_dir(checked_out.path):
                raise CheckoutError(f"检出内容为空: {template.path}")

            slot, tombstone = self.cache.promote(
                key, checked_out.path,
                url=repo.url, branch=repo.branch, fingerprint=checked_out.fingerprint,
            )
            result.state = RetrievalState.CACHED
            result.path = slot
            if tombstone is not None:
                self.cache.remove_path(tombstone)
        logger.info("模板已下载: %s -> %s", template.id, slot)

    def _checkout_with_retry(
        self,
        template: Template,
        repo: Repository,
        content: Path,
        timeout: float,
        attempts: int,
        result: RetrievalResult,
    ) -> CheckoutResult:
        credentials = None
        if repo.username or repo.auth_token:
            credentials = Credentials(username=repo.username, token=repo.auth_token)

        for attempt in range(1, attempts + 1):
            if self.cancelled:
                raise OperationCancelledError(f"已取消: {template.id}")
            self.cache.remove_path(content)
            self.cache.remove_path(content.parent / f"{content.name}.clone")
            result.attempts = attempt
            try:
                return self.checkout.checkout(
                    repo.url, repo.branch, template.path, credentials, content, timeout,
                )
            except MammothError as e:
                if not e.retryable or attempt == attempts:
                    raise
                delay = self.retry_backoff * attempt
                logger.warning(
                    "检出失败，%.1f 秒后重试 (%d/%d) %s: %s",
                    delay, attempt, attempts, template.id, e,
                )
                self._sleep(delay)
            except OSError as e:
                raise CheckoutError(f"检出失败: {e}") from e
        raise OperationCancelledError(f"已取消: {template.id}")

    @staticmethod
    def _fail(result: RetrievalResult, error: MammothError) -> None:
        result.state = RetrievalState.FAILED
        result.error = error
        result.error_kind = error.code
        result.message = str(error)
        result.path = None
        logger.error("模板获取失败 %s [%s]: %s", result.template_id, error.code, error)

    # ---- 批量获取 ----

    def _retrieve_isolated(self, template: Template, options: RetrieveOptions | None) -> RetrievalResult:
        """批量任务中的单项：任何非中断异常都收敛为 FAILED 结果"""
        try:
            return self._retrieve(template, options)
        except Exception as e:  # noqa: BLE001
            logger.exception("模板获取出现未预期错误: %s", template.id)
            result = RetrievalResult(template_id=template.id, key=template.key)
            self._fail(result, MammothError(f"未预期错误: {e}"))
            result.error_kind = "INTERNAL"
            return result

    def download_all(
        self,
        templates: Sequence[Template],
        options: RetrieveOptions | None = None,
    ) -> list[RetrievalResult]:
        """批量获取，返回与输入顺序一致的逐项结果

        用户中断时取消排队中的任务，等待进行中的任务完成清理后重新抛出。
        """
        self._normalize(options)
        self._cancel.clear()
        if not templates:
            return []

        if self.max_workers == 1 or len(templates) == 1:
            results = []
            try:
                for t in templates:
                    results.append(self._retrieve_isolated(t, options))
            except KeyboardInterrupt:
                self.cancel()
                raise
        else:
            executor = ThreadPoolExecutor(max_workers=min(self.max_workers, len(templates)))
            futures = [executor.submit(self._retrieve_isolated, t, options) for t in templates]
            try:
                results = [f.result() for f in futures]
            except KeyboardInterrupt:
                self.cancel()
                executor.shutdown(wait=True, cancel_futures=True)
                raise
            finally:
                executor.shutdown(wait=True)

        failed = [r for r in results if not r.success]
        logger.info("下载汇总: %d 成功, %d 失败", len(results) - len(failed), len(failed))
        if failed:
            logger.warning("失败模板: %s", ", ".join(r.template_id for r in failed))
        return results

    def resolve(self, template: Template, force: bool = False) -> Path:
        """返回模板的缓存目录，未缓存时先下载；失败时抛出原始异常"""
        result = self.retrieve(template, RetrieveOptions(force=force))
        return result.raise_for_state()


