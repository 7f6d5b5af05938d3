"""核心数据模型

所有核心数据类集中定义，消除 store ↔ services 的循环依赖。
其他模块统一从此处导入 Repository / Template / RegistryDocument 及检出、缓存相关实体。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Any

from mammoth.core.exceptions import MammothError, ValidationError

# 注册表文档当前 schema 版本
SCHEMA_VERSION = 1

# =========================================================================
# 注册表实体
# =========================================================================


@dataclass
class Repository:
    """模板仓库定义

    username / auth_token 为可选凭据，属于敏感信息：不写日志，默认导出时脱敏。
    """

    name: str
    url: str
    branch: str = "main"
    username: str | None = None
    auth_token: str | None = None

    @property
    def has_credentials(self) -> bool:
        return bool(self.auth_token)

    def to_dict(self, include_secrets: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "url": self.url,
            "branch": self.branch,
        }
        # 与历史格式保持一致：空凭据字段不落盘
        if self.username:
            data["username"] = self.username
        if self.auth_token and include_secrets:
            data["auth_token"] = self.auth_token
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Repository:
        return cls(
            name=data.get("name", ""),
            url=data.get("url", ""),
            branch=data.get("branch", "main"),
            username=data.get("username") or None,
            auth_token=data.get("auth_token") or None,
        )


def normalize_repo_path(path: Any) -> str:
    """仓内路径规范化：去空白、末尾斜杠、重复分隔符和 "." 段

    同一目录的不同写法必须得到同一个缓存键。非法路径（绝对路径、..）原样保留，交给校验报告。
    """
    raw = str(path or "").strip()
    if not raw:
        return ""
    cleaned = str(PurePosixPath(raw))
    return "" if cleaned == "." else cleaned


def normalize_tags(tags: Any) -> list[str]:
    """标签归一化：支持逗号分隔字符串或序列，去空去重且保持顺序"""
    if tags is None:
        return []
    if isinstance(tags, str):
        tags = tags.split(",")
    result: list[str] = []
    for t in tags:
        t = str(t).strip()
        if t and t not in result:
            result.append(t)
    return result


@dataclass
class Template:
    """模板定义 — repo 字段引用 Repository.name"""

    id: str
    name: str
    repo: str
    path: str
    description: str = ""
    language: str = ""
    tags: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.path = normalize_repo_path(self.path)
        self.tags = normalize_tags(self.tags)

    @property
    def key(self) -> CacheKey:
        return CacheKey(repo=self.repo, path=self.path)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "repo": self.repo,
            "path": self.path,
            "description": self.description,
            "language": self.language,
            "tags": list(self.tags),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Template:
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            repo=data.get("repo", ""),
            path=data.get("path", ""),
            description=data.get("description", "") or "",
            language=data.get("language", "") or "",
            tags=data.get("tags") or [],
        )


@dataclass
class TemplateFilter:
    """模板列表过滤条件，字段为空表示不过滤"""

    language: str = ""
    tag: str = ""
    repo: str = ""

    def matches(self, template: Template) -> bool:
        if self.language and template.language.lower() != self.language.lower():
            return False
        if self.tag and self.tag not in template.tags:
            return False
        if self.repo and template.repo != self.repo:
            return False
        return True


@dataclass
class RegistryDocument:
    """注册表文档 — 持久化与导入导出的基本单位"""

    repos: list[Repository] = field(default_factory=list)
    templates: list[Template] = field(default_factory=list)
    version: int = SCHEMA_VERSION

    def find_repo(self, name: str) -> Repository | None:
        return next((r for r in self.repos if r.name == name), None)

    def find_template(self, template_id: str) -> Template | None:
        return next((t for t in self.templates if t.id == template_id), None)

    def to_dict(self, include_secrets: bool = True) -> dict[str, Any]:
        return {
            "version": self.version,
            "repos": [r.to_dict(include_secrets) for r in self.repos],
            "templates": [t.to_dict() for t in self.templates],
        }

    @classmethod
    def from_dict(cls, data: Any) -> RegistryDocument:
        """从原始字典构建文档，结构不合法时抛 ValidationError

        缺少 version 字段视为旧版格式，按版本 1 迁移。
        """
        errors = structural_errors(data)
        if errors:
            raise ValidationError("注册表文档结构不合法", details=errors)
        return cls(
            repos=[Repository.from_dict(r) for r in data.get("repos") or []],
            templates=[Template.from_dict(t) for t in data.get("templates") or []],
            version=SCHEMA_VERSION,
        )


_REPO_STR_FIELDS = ("name", "url", "branch")
_REPO_OPT_FIELDS = ("username", "auth_token")
_TEMPLATE_STR_FIELDS = ("id", "name", "repo", "path", "description", "language")


def structural_errors(data: Any) -> list[str]:
    """检查文档结构：顶层字段、数组类型、各条目字段类型"""
    if not isinstance(data, dict):
        return [f"文档顶层必须是对象，实际为 {type(data).__name__}"]

    errors: list[str] = []
    version = data.get("version", SCHEMA_VERSION)
    if not isinstance(version, int) or isinstance(version, bool):
        errors.append(f"version 必须是整数: {version!r}")
    elif version > SCHEMA_VERSION:
        errors.append(f"不支持的 schema 版本: {version}（当前支持 {SCHEMA_VERSION}）")

    repos = data.get("repos", [])
    if not isinstance(repos, list):
        errors.append("repos 必须是数组")
        repos = []
    for i, r in enumerate(repos):
        if not isinstance(r, dict):
            errors.append(f"repos[{i}] 必须是对象")
            continue
        for k in _REPO_STR_FIELDS:
            if k in r and not isinstance(r[k], str):
                errors.append(f"repos[{i}].{k} 必须是字符串")
        for k in _REPO_OPT_FIELDS:
            if r.get(k) is not None and not isinstance(r[k], str):
                errors.append(f"repos[{i}].{k} 必须是字符串")

    templates = data.get("templates", [])
    if not isinstance(templates, list):
        errors.append("templates 必须是数组")
        templates = []
    for i, t in enumerate(templates):
        if not isinstance(t, dict):
            errors.append(f"templates[{i}] 必须是对象")
            continue
        for k in _TEMPLATE_STR_FIELDS:
            if k in t and t[k] is not None and not isinstance(t[k], str):
                errors.append(f"templates[{i}].{k} 必须是字符串")
        tags = t.get("tags", [])
        if tags is not None and not (
            isinstance(tags, list) and all(isinstance(x, str) for x in tags)
        ):
            errors.append(f"templates[{i}].tags 必须是字符串数组")
    return errors


@dataclass
class DanglingReference:
    """悬空引用（警告级）— 模板引用的仓库已不存在"""

    template_id: str
    repo: str

    def __str__(self) -> str:
        return f"模板 '{self.template_id}' 引用的仓库 '{self.repo}' 不存在"


# =========================================================================
# 缓存领域模型
# =========================================================================


@dataclass(frozen=True)
class CacheKey:
    """缓存键 — (仓库名, 仓内路径)"""

    repo: str
    path: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", normalize_repo_path(self.path))

    def __str__(self) -> str:
        return f"{self.repo}:{self.path}"


class CacheState(str, Enum):
    """缓存槽位状态"""
    ABSENT = "absent"
    COMPLETE = "complete"
    PARTIAL = "partial"


@dataclass
class CacheEntry:
    """缓存清单条目（仅元数据，不含文件内容）"""

    key: CacheKey
    path: Path
    retrieved_at: str = ""
    fingerprint: str = ""
    file_count: int = 0
    url: str = ""
    branch: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "repo": self.key.repo,
            "path": self.key.path,
            "retrieved_at": self.retrieved_at,
            "fingerprint": self.fingerprint,
            "file_count": self.file_count,
            "branch": self.branch,
        }


# =========================================================================
# 检出领域模型
# =========================================================================


@dataclass
class Credentials:
    """检出凭据"""

    username: str | None = None
    token: str | None = None

    def __repr__(self) -> str:
        # 防止凭据经由 repr 进入日志
        masked = "***" if self.token else None
        return f"Credentials(username={self.username!r}, token={masked!r})"


@dataclass
class CheckoutResult:
    """检出结果"""

    path: Path
    fingerprint: str = ""


class RetrievalState(str, Enum):
    """单次获取请求的状态机"""
    IDLE = "idle"
    CHECKING_CACHE = "checking_cache"
    DOWNLOADING = "downloading"
    VERIFYING = "verifying"
    CACHED = "cached"
    FAILED = "failed"


@dataclass
class RetrieveOptions:
    """获取选项

    timeout 为 None 时使用配置默认值；max_retries <= 0 表示只尝试一次。
    """

    force: bool = False
    timeout: float | None = None
    max_retries: int | None = None


@dataclass
class RetrievalResult:
    """单个模板的获取结果"""

    template_id: str
    key: CacheKey
    state: RetrievalState = RetrievalState.IDLE
    path: Path | None = None
    attempts: int = 0
    from_cache: bool = False
    error_kind: str = ""
    message: str = ""
    warnings: list[str] = field(default_factory=list)
    error: MammothError | None = field(default=None, repr=False)

    @property
    def success(self) -> bool:
        return self.state == RetrievalState.CACHED

    def raise_for_state(self) -> Path:
        """失败时重新抛出原始异常，成功时返回缓存路径"""
        if self.success and self.path is not None:
            return self.path
        if self.error is not None:
            raise self.error
        raise MammothError(self.message or f"模板获取失败: {self.template_id}")


# =========================================================================
# 导入导出模型
# =========================================================================


@dataclass
class ValidationReport:
    """文档校验报告"""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    repo_count: int = 0
    template_count: int = 0

    @property
    def valid(self) -> bool:
        return not self.errors


@dataclass
class KeyCollision:
    """合并时的键冲突记录"""

    kind: str            # repo | template
    key: str
    changed_fields: list[str] = field(default_factory=list)


@dataclass
class ImportReport:
    """导入结果"""

    mode: str
    added_repos: int = 0
    added_templates: int = 0
    collisions: list[KeyCollision] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    repo_count: int = 0
    template_count: int = 0


@dataclass
class ExportReport:
    """导出结果"""

    destination: Path
    repo_count: int = 0
    template_count: int = 0
    cache_entries: int = 0
    redacted: bool = True
