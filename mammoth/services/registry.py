"""仓库 / 模板注册表 - CRUD 管理

职责：
- 仓库的注册、查询、列表、删除
- 模板的注册、查询、过滤列表、删除
- 唯一性与引用完整性校验（写入时检查）

删除仓库不级联删除模板，引用它的模板以 DanglingReference 警告返回。
删除模板会同时失效对应缓存，避免注册表与缓存悄悄分叉。
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from mammoth.core.store import ConfigStore
    from mammoth.services.cache import CacheStore

from mammoth.core.exceptions import (
    DuplicateKeyError,
    InvalidArgumentError,
    NotFoundError,
    UnknownRepositoryError,
)
from mammoth.core.models import (
    DanglingReference,
    RegistryDocument,
    Repository,
    Template,
    TemplateFilter,
    normalize_tags,
)
from mammoth.services.checkout import validate_sparse_path

logger = logging.getLogger(__name__)

# 仓库名同时用作缓存目录名，禁止以 "." 开头以免与 .scratch / .locks 冲突
_SAFE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]*$")
_SAFE_REF_RE = re.compile(r"^[a-zA-Z0-9_./@\-]+$")


def repository_errors(repo: Repository) -> list[str]:
    """单个仓库条目的字段校验"""
    errors: list[str] = []
    if not repo.name:
        errors.append("仓库 name 不能为空")
    elif not _SAFE_NAME_RE.match(repo.name):
        errors.append(f"仓库名包含非法字符: {repo.name}")
    if not repo.url:
        errors.append(f"仓库 '{repo.name}' 的 url 不能为空")
    if not repo.branch:
        errors.append(f"仓库 '{repo.name}' 的 branch 不能为空")
    elif not _SAFE_REF_RE.match(repo.branch):
        errors.append(f"仓库 '{repo.name}' 的 branch 包含非法字符: {repo.branch}")
    return errors


def template_errors(template: Template) -> list[str]:
    """单个模板条目的字段校验（不含引用完整性）"""
    errors: list[str] = []
    if not template.id:
        errors.append("模板 id 不能为空")
    if not template.name:
        errors.append(f"模板 '{template.id}' 的 name 不能为空")
    if not template.repo:
        errors.append(f"模板 '{template.id}' 的 repo 不能为空")
    try:
        validate_sparse_path(template.path)
    except InvalidArgumentError as e:
        errors.append(f"模板 '{template.id}': {e}")
    return errors


def dangling_references(document: RegistryDocument) -> list[DanglingReference]:
    """文档内所有引用了不存在仓库的模板"""
    names = {r.name for r in document.repos}
    return [
        DanglingReference(template_id=t.id, repo=t.repo)
        for t in document.templates if t.repo not in names
    ]


class RegistryManager:
    """仓库与模板注册表"""

    def __init__(self, store: ConfigStore, cache: CacheStore | None = None) -> None:
        self.store = store
        self.cache = cache

    # ---- 仓库 ----

    def add_repository(
        self,
        name: str,
        url: str,
        branch: str = "main",
        username: str | None = None,
        auth_token: str | None = None,
    ) -> Repository:
        """注册一个仓库"""
        repo = Repository(
            name=name.strip(), url=url.strip(), branch=branch.strip(),
            username=username or None, auth_token=auth_token or None,
        )
        errors = repository_errors(repo)
        if errors:
            raise InvalidArgumentError("; ".join(errors))

        with self.store.transaction() as doc:
            if doc.find_repo(repo.name) is not None:
                raise DuplicateKeyError(f"仓库已存在: {repo.name}")
            doc.repos.append(repo)
        logger.info("仓库已注册: %s (branch=%s)", repo.name, repo.branch)
        return repo

    def remove_repository(self, name: str) -> list[DanglingReference]:
        """移除仓库，返回因此悬空的模板引用（不级联删除）"""
        with self.store.transaction() as doc:
            repo = doc.find_repo(name)
            if repo is None:
                raise NotFoundError(f"仓库不存在: {name}")
            doc.repos.remove(repo)
            dangling = [
                DanglingReference(template_id=t.id, repo=name)
                for t in doc.templates if t.repo == name
            ]
        logger.info("仓库已移除: %s", name)
        for ref in dangling:
            logger.warning("悬空引用: %s", ref)
        return dangling

    def list_repositories(self) -> list[Repository]:
        """列出所有已注册仓库（按注册顺序）"""
        return self.store.snapshot().repos

    def get_repository(self, name: str) -> Repository:
        repo = self.store.snapshot().find_repo(name)
        if repo is None:
            raise NotFoundError(f"仓库不存在: {name}")
        return repo

    # ---- 模板 ----

    def add_template(
        self,
        template_id: str,
        name: str,
        repo: str,
        path: str,
        description: str = "",
        language: str = "",
        tags: Iterable[str] | str | None = None,
    ) -> Template:
        """注册模板，repo 必须已注册"""
        template = Template(
            id=template_id.strip(), name=name.strip(), repo=repo.strip(),
            path=path, description=description, language=language,
            tags=normalize_tags(tags),
        )
        errors = template_errors(template)
        if errors:
            raise InvalidArgumentError("; ".join(errors))

        with self.store.transaction() as doc:
            if doc.find_template(template.id) is not None:
                raise DuplicateKeyError(f"模板 ID 已存在: {template.id}")
            if doc.find_repo(template.repo) is None:
                raise UnknownRepositoryError(
                    f"仓库 '{template.repo}' 不存在，请先执行 repo add 注册"
                )
            doc.templates.append(template)
        logger.info("模板已注册: %s (repo=%s, path=%s)", template.id, template.repo, template.path)
        return template

    def remove_template(self, template_id: str) -> Template:
        """移除模板并失效其缓存（其他模板仍引用同一缓存键时保留缓存）"""
        with self.store.transaction() as doc:
            template = doc.find_template(template_id)
            if template is None:
                raise NotFoundError(f"模板不存在: {template_id}")
            doc.templates.remove(template)
            shared = any(t.key == template.key for t in doc.templates)
            if self.cache is not None and not shared:
                self.cache.invalidate(template.key)
        logger.info("模板已移除: %s", template_id)
        return template

    def get_template(self, template_id: str) -> Template:
        template = self.store.snapshot().find_template(template_id)
        if template is None:
            raise NotFoundError(f"模板不存在: {template_id}")
        return template

    def list_templates(self, filter: TemplateFilter | None = None) -> list[Template]:  # noqa: A002
        """按注册顺序列出模板，可按语言 / 标签 / 仓库过滤"""
        templates = self.store.snapshot().templates
        if filter is None:
            return templates
        return [t for t in templates if filter.matches(t)]

    def find_dangling(self) -> list[DanglingReference]:
        """检测引用了已删除仓库的模板"""
        return dangling_references(self.store.snapshot())
