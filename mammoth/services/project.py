"""从缓存模板生成新项目

流程: 解析模板（未缓存则先下载）→ 复制文件 → 改写 package.json → git init
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from pathlib import Path

from mammoth.core.exceptions import InvalidArgumentError, MammothError
from mammoth.services.cache import MARKER_NAME
from mammoth.utils.fs import copy_tree
from mammoth.utils.shell import CommandExecutor, get_executor
from mammoth.utils.yaml_io import atomic_write

logger = logging.getLogger(__name__)

_PROJECT_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]*$")


def update_package_json(project_dir: Path, name: str, author: str, description: str) -> bool:
    """改写 package.json 的 name / author / description，文件不存在返回 False"""
    pkg = project_dir / "package.json"
    if not pkg.exists():
        return False
    try:
        data = json.loads(pkg.read_text(encoding="utf-8"))
    except ValueError as e:
        raise MammothError(f"package.json 格式错误: {pkg}: {e}") from e
    if not isinstance(data, dict):
        raise MammothError(f"package.json 顶层必须是对象: {pkg}")
    data["name"] = name
    data["author"] = author
    data["description"] = description
    atomic_write(pkg, json.dumps(data, indent=2, ensure_ascii=False) + "\n")
    return True


class ProjectGenerator:
    """项目生成器

    resolve 为 (模板 ID, 是否强制) → 缓存目录 的回调，通常是
    ServiceContainer.resolve_template。
    """

    def __init__(
        self,
        resolve: Callable[[str, bool], Path],
        executor: CommandExecutor | None = None,
    ) -> None:
        self._resolve = resolve
        self._executor = executor

    @property
    def executor(self) -> CommandExecutor:
        return self._executor or get_executor()

    def generate(
        self,
        template_id: str,
        name: str,
        output_dir: str | Path = ".",
        author: str = "",
        description: str = "",
        init_git: bool = True,
    ) -> Path:
        """生成项目，返回项目目录"""
        if not _PROJECT_NAME_RE.match(name):
            raise InvalidArgumentError(f"项目名非法: {name!r}")
        project_dir = Path(output_dir) / name
        if project_dir.exists() and any(project_dir.iterdir()):
            raise InvalidArgumentError(f"目标目录已存在且非空: {project_dir}")

        source = self._resolve(template_id, False)
        project_dir.mkdir(parents=True, exist_ok=True)
        count = copy_tree(source, project_dir, exclude=(MARKER_NAME,))
        logger.info("已复制 %d 个模板文件到 %s", count, project_dir)

        if update_package_json(project_dir, name, author, description):
            logger.info("package.json 已更新")
        if init_git:
            self._git_init(project_dir)
        logger.info("项目已生成: %s (模板 %s)", project_dir, template_id)
        return project_dir

    def _git_init(self, project_dir: Path) -> None:
        try:
            r = self.executor.execute(["git", "init"], cwd=str(project_dir), timeout=60)
        except OSError as e:
            logger.warning("git 不可用，跳过仓库初始化: %s", e)
            return
        if r.returncode != 0:
            logger.warning("git init 失败，跳过仓库初始化: %s", r.stderr.strip())
        else:
            logger.info("git 仓库已初始化")
