"""注册表导入导出

职责:
- export: 注册表文档写入 JSON / YAML 文件，默认隐去 auth_token
- import_: merge（导入方覆盖同名条目，记录冲突清单）或 overwrite（整体替换）
- validate: 只读校验一个待导入文件，不改动注册表

导入的整个“读取-合并-校验-持久化”周期持有注册表写锁；
校验失败时抛 ValidationError，注册表保持原样。
"""

from __future__ import annotations

import logging
from collections import Counter
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

if TYPE_CHECKING:
    from mammoth.core.store import ConfigStore
    from mammoth.services.cache import CacheStore

from mammoth.core.exceptions import (
    ConfigError,
    InvalidArgumentError,
    NotFoundError,
    ValidationError,
)
from mammoth.core.models import (
    ExportReport,
    ImportReport,
    KeyCollision,
    RegistryDocument,
    Repository,
    Template,
    ValidationReport,
    structural_errors,
)
from mammoth.services.registry import dangling_references, repository_errors, template_errors
from mammoth.utils.yaml_io import load_document, save_document

logger = logging.getLogger(__name__)

IMPORT_MODES = ("merge", "overwrite")
_KNOWN_KEYS = {"version", "repos", "templates", "redacted", "cache"}
_REPO_FIELDS = ("url", "branch", "username", "auth_token")
_TEMPLATE_FIELDS = ("name", "repo", "path", "description", "language", "tags")


def registry_errors(document: RegistryDocument) -> list[str]:
    """语义校验：必填字段、键唯一性、引用完整性"""
    errors: list[str] = []
    for repo in document.repos:
        errors.extend(repository_errors(repo))
    for template in document.templates:
        errors.extend(template_errors(template))

    for name, n in Counter(r.name for r in document.repos).items():
        if n > 1:
            errors.append(f"仓库名重复: {name} (出现 {n} 次)")
    for tid, n in Counter(t.id for t in document.templates).items():
        if n > 1:
            errors.append(f"模板 ID 重复: {tid} (出现 {n} 次)")

    errors.extend(str(ref) for ref in dangling_references(document))
    return errors


def check_document(data: Any) -> ValidationReport:
    """校验一个原始文档（已解析的字典）"""
    report = ValidationReport()
    report.errors = structural_errors(data)
    if report.errors:
        return report

    doc = RegistryDocument.from_dict(data)
    report.repo_count = len(doc.repos)
    report.template_count = len(doc.templates)
    report.errors = registry_errors(doc)

    unknown = sorted(set(data) - _KNOWN_KEYS)
    if unknown:
        report.warnings.append(f"忽略未识别字段: {', '.join(unknown)}")
    if "version" not in data:
        report.warnings.append("文档缺少 version 字段，按旧版格式处理")
    if data.get("redacted"):
        report.warnings.append("文档中的凭据已脱敏，导入时保留本地已有凭据")
    return report


def _changed_fields(old: Any, new: Any, fields: tuple[str, ...]) -> list[str]:
    return [f for f in fields if getattr(old, f) != getattr(new, f)]


class ConfigTransfer:
    """注册表导入导出"""

    def __init__(
        self,
        store: ConfigStore,
        cache: CacheStore | None = None,
        redact_by_default: bool = True,
    ) -> None:
        self.store = store
        self.cache = cache
        self.redact_by_default = redact_by_default

    # ---- 导出 ----

    def export(
        self,
        destination: str | Path,
        include_cache: bool = False,
        include_secrets: bool | None = None,
    ) -> ExportReport:
        """导出注册表

        参数:
            destination: 目标文件，.yml/.yaml 写 YAML，其他写 JSON
            include_cache: 附带缓存元数据清单（不含文件内容）
            include_secrets: 写出明文 auth_token；None 时按配置决定
        """
        if include_secrets is None:
            include_secrets = not self.redact_by_default
        dest = Path(destination)
        doc = self.store.snapshot()
        data = doc.to_dict(include_secrets=include_secrets)
        if not include_secrets:
            data["redacted"] = True

        cache_entries = 0
        if include_cache and self.cache is not None:
            entries = self.cache.list_all()
            data["cache"] = [e.to_dict() for e in entries]
            cache_entries = len(entries)

        try:
            save_document(dest, data)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"写入导出文件失败: {dest}: {e}") from e

        if include_secrets and any(r.auth_token for r in doc.repos):
            logger.warning("导出文件包含明文凭据，请妥善保管: %s", dest)
        logger.info(
            "注册表已导出: %s (%d 个仓库, %d 个模板)",
            dest, len(doc.repos), len(doc.templates),
        )
        return ExportReport(
            destination=dest,
            repo_count=len(doc.repos),
            template_count=len(doc.templates),
            cache_entries=cache_entries,
            redacted=not include_secrets,
        )

    # ---- 校验 ----

    @staticmethod
    def _load(source: Path) -> Any:
        if not source.exists():
            raise NotFoundError(f"文件不存在: {source}")
        try:
            return load_document(source)
        except (ValueError, yaml.YAMLError) as e:
            raise ValidationError(f"无法解析文件: {source}", details=[str(e)]) from e
        except OSError as e:
            raise ConfigError(f"读取文件失败: {source}: {e}") from e

    def validate(self, source: str | Path) -> ValidationReport:
        """校验待导入文件，不修改任何状态"""
        try:
            data = self._load(Path(source))
        except ValidationError as e:
            return ValidationReport(errors=[str(e), *e.details])
        except (NotFoundError, ConfigError) as e:
            return ValidationReport(errors=[str(e)])
        return check_document(data)

    # ---- 导入 ----

    def import_(
        self,
        source: str | Path,
        mode: str = "merge",
        skip_validation: bool = False,
    ) -> ImportReport:
        """导入注册表文档

        skip_validation 只跳过语义校验（必填、唯一、引用完整性），
        结构不合法的文档始终拒绝。
        """
        if mode not in IMPORT_MODES:
            raise InvalidArgumentError(f"不支持的导入模式: {mode}（可选 {', '.join(IMPORT_MODES)}）")

        src = Path(source)
        data = self._load(src)
        errors = structural_errors(data)
        if errors:
            raise ValidationError(f"导入文件结构不合法: {src}", details=errors)
        incoming = RegistryDocument.from_dict(data)
        redacted = bool(data.get("redacted"))

        report = ImportReport(mode=mode)
        with self.store.transaction() as doc:
            if mode == "overwrite":
                repos, templates = self._overwrite(doc, incoming, redacted)
            else:
                repos, templates = self._merge(doc, incoming, redacted, report)

            result = RegistryDocument(repos=repos, templates=templates)
            if not skip_validation:
                errors = registry_errors(result)
                if errors:
                    raise ValidationError(f"导入后的注册表校验失败: {src}", details=errors)
            else:
                report.warnings.extend(str(ref) for ref in dangling_references(result))

            doc.repos = repos
            doc.templates = templates

        report.repo_count = len(repos)
        report.template_count = len(templates)
        for c in report.collisions:
            fields = ", ".join(c.changed_fields) or "无变化"
            logger.warning("导入冲突 %s '%s' 已被覆盖: %s", c.kind, c.key, fields)
        logger.info(
            "导入完成 (%s): 新增 %d 个仓库, %d 个模板, %d 处冲突",
            mode, report.added_repos, report.added_templates, len(report.collisions),
        )
        return report

    @staticmethod
    def _overwrite(
        current: RegistryDocument, incoming: RegistryDocument, redacted: bool,
    ) -> tuple[list[Repository], list[Template]]:
        if redacted:
            for repo in incoming.repos:
                existing = current.find_repo(repo.name)
                if existing is not None and not repo.auth_token:
                    repo.auth_token = existing.auth_token
        return list(incoming.repos), list(incoming.templates)

    @staticmethod
    def _merge(
        current: RegistryDocument,
        incoming: RegistryDocument,
        redacted: bool,
        report: ImportReport,
    ) -> tuple[list[Repository], list[Template]]:
        repos = list(current.repos)
        index = {r.name: i for i, r in enumerate(repos)}
        for repo in incoming.repos:
            if repo.name not in index:
                index[repo.name] = len(repos)
                repos.append(repo)
                report.added_repos += 1
                continue
            existing = repos[index[repo.name]]
            if redacted and not repo.auth_token:
                repo.auth_token = existing.auth_token
            report.collisions.append(KeyCollision(
                kind="repo", key=repo.name,
                changed_fields=_changed_fields(existing, repo, _REPO_FIELDS),
            ))
            repos[index[repo.name]] = repo

        templates = list(current.templates)
        tindex = {t.id: i for i, t in enumerate(templates)}
        for template in incoming.templates:
            if template.id not in tindex:
                tindex[template.id] = len(templates)
                templates.append(template)
                report.added_templates += 1
                continue
            existing_t = templates[tindex[template.id]]
            report.collisions.append(KeyCollision(
                kind="template", key=template.id,
                changed_fields=_changed_fields(existing_t, template, _TEMPLATE_FIELDS),
            ))
            templates[tindex[template.id]] = template
        return repos, templates
