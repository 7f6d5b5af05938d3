"""mammoth 命令行接口

CLI 按领域拆分为子模块，每个模块注册自己的命令到 main group。
业务异常统一在 MammothGroup 中转换为 click.ClickException（退出码 1）。
"""

from __future__ import annotations

import os
from typing import Any

import click

from mammoth import __version__
from mammoth.core.config import init_config
from mammoth.core.exceptions import MammothError, ValidationError
from mammoth.services.container import get_container, set_container
from mammoth.utils.logger import setup_logging


def _svc() -> Any:
    """获取全局服务容器的快捷方式"""
    return get_container()


def format_error(error: MammothError) -> str:
    lines = [f"[{error.code}] {error}"]
    if isinstance(error, ValidationError):
        lines.extend(f"  - {d}" for d in error.details)
    return "\n".join(lines)


class MammothGroup(click.Group):
    """把 MammothError 转换为友好的命令行错误"""

    def invoke(self, ctx: click.Context) -> Any:
        try:
            return super().invoke(ctx)
        except MammothError as e:
            raise click.ClickException(format_error(e)) from e


@click.group(cls=MammothGroup)
@click.version_option(version=__version__)
@click.option("--config", "-c", "config_path", default="", help="配置文件路径（默认 <配置目录>/settings.yml）")
def main(config_path: str) -> None:
    """mammoth - 项目模板与仓库管理工具"""
    setup_logging(
        level=os.getenv("MAMMOTH_LOG_LEVEL", "INFO"),
        json_output=os.getenv("MAMMOTH_LOG_JSON", "") == "1",
    )
    init_config(config_path)
    if config_path:
        set_container(None)


# 注册各领域子命令
from mammoth.cli.cmd_repo import register as _reg_repo  # noqa: E402
from mammoth.cli.cmd_template import register as _reg_template  # noqa: E402
from mammoth.cli.cmd_config import register as _reg_config  # noqa: E402
from mammoth.cli.cmd_misc import register as _reg_misc  # noqa: E402

_reg_repo(main)
_reg_template(main)
_reg_config(main)
_reg_misc(main)
