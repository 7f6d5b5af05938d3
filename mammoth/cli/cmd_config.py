"""CLI — 注册表导入 / 导出 / 校验"""

from __future__ import annotations

import click

from mammoth.cli import _svc


def register(group: click.Group) -> None:
    group.add_command(config_group)


@click.group(name="config")
def config_group() -> None:
    """注册表导入导出"""


@config_group.command(name="export")
@click.argument("path")
@click.option("--include-cache", is_flag=True, help="附带缓存元数据清单")
@click.option("--include-secrets", is_flag=True, help="写出明文访问令牌（默认脱敏）")
def config_export(path: str, include_cache: bool, include_secrets: bool) -> None:
    """导出注册表到文件（.json / .yml）"""
    report = _svc().export_config(
        path, include_cache=include_cache, include_secrets=include_secrets or None,
    )
    click.echo(
        f"已导出: {report.destination} "
        f"({report.repo_count} 个仓库, {report.template_count} 个模板)"
    )
    if include_cache:
        click.echo(f"  缓存条目: {report.cache_entries}")
    if not report.redacted:
        click.echo("警告: 导出文件包含明文访问令牌", err=True)


@config_group.command(name="import")
@click.argument("path")
@click.option(
    "--mode", default="merge", type=click.Choice(["merge", "overwrite"]),
    help="merge 合并（导入方优先）/ overwrite 整体替换",
)
@click.option("--skip-validation", is_flag=True, help="跳过语义校验（结构校验始终执行）")
def config_import(path: str, mode: str, skip_validation: bool) -> None:
    """从文件导入注册表"""
    report = _svc().import_config(path, mode=mode, skip_validation=skip_validation)
    click.echo(
        f"导入完成 ({report.mode}): 新增 {report.added_repos} 个仓库, "
        f"{report.added_templates} 个模板; 当前共 {report.repo_count} 个仓库, "
        f"{report.template_count} 个模板"
    )
    for c in report.collisions:
        fields = ", ".join(c.changed_fields) or "无变化"
        click.echo(f"  覆盖 {c.kind} '{c.key}': {fields}")
    for w in report.warnings:
        click.echo(f"警告: {w}", err=True)


@config_group.command(name="validate")
@click.argument("path")
def config_validate(path: str) -> None:
    """校验待导入文件（不修改注册表）"""
    report = _svc().transfer.validate(path)
    for w in report.warnings:
        click.echo(f"警告: {w}")
    if report.valid:
        click.echo(f"校验通过: {report.repo_count} 个仓库, {report.template_count} 个模板")
        return
    for e in report.errors:
        click.echo(f"  - {e}", err=True)
    raise click.ClickException(f"校验失败: {len(report.errors)} 个错误")
