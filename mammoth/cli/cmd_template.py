"""CLI — 模板管理与下载"""

from __future__ import annotations

import click

from mammoth.cli import _svc
from mammoth.core.models import RetrievalResult, RetrieveOptions, TemplateFilter


def register(group: click.Group) -> None:
    group.add_command(template_group)


@click.group(name="template")
def template_group() -> None:
    """模板管理"""


def _options(force: bool, timeout: float | None, retries: int | None) -> RetrieveOptions:
    return RetrieveOptions(force=force, timeout=timeout, max_retries=retries)


def _echo_result(r: RetrievalResult) -> None:
    if r.success:
        how = "已缓存" if r.from_cache else f"已下载 (尝试 {r.attempts} 次)"
        click.echo(f"  [ok]   {r.template_id:24s} {how}  {r.path}")
    else:
        click.echo(f"  [失败] {r.template_id:24s} [{r.error_kind}] {r.message}", err=True)
    for w in r.warnings:
        click.echo(f"    警告: {w}", err=True)


_retrieve_options = [
    click.option("--force", "-f", is_flag=True, help="忽略缓存重新下载"),
    click.option("--timeout", type=float, default=None, help="单次检出超时（秒）"),
    click.option("--retries", type=int, default=None, help="瞬时错误最大重试次数"),
]


def retrieve_options(func):  # type: ignore[no-untyped-def]
    for opt in reversed(_retrieve_options):
        func = opt(func)
    return func


@template_group.command(name="list")
@click.option("--verbose", "-v", is_flag=True, help="显示详细信息")
@click.option("--language", "-l", default="", help="按语言过滤")
@click.option("--tag", "-t", default="", help="按标签过滤")
@click.option("--repo", "-r", default="", help="按仓库过滤")
def template_list(verbose: bool, language: str, tag: str, repo: str) -> None:
    """列出模板"""
    svc = _svc()
    templates = svc.list_templates(TemplateFilter(language=language, tag=tag, repo=repo))
    if not templates:
        click.echo("没有匹配的模板。")
        return
    for t in templates:
        cached = "*" if svc.cache.has(t.key) else " "
        click.echo(f"  [{cached}] {t.id:24s} {t.name}  ({t.language or '-'})")
        if verbose:
            click.echo(f"      仓库: {t.repo}  路径: {t.path}")
            if t.description:
                click.echo(f"      描述: {t.description}")
            if t.tags:
                click.echo(f"      标签: {', '.join(t.tags)}")


@template_group.command(name="download")
@click.argument("template_id")
@retrieve_options
def template_download(template_id: str, force: bool, timeout: float | None, retries: int | None) -> None:
    """下载单个模板到本地缓存"""
    svc = _svc()
    template = svc.registry.get_template(template_id)
    result = svc.retrieval.retrieve(template, _options(force, timeout, retries))
    _echo_result(result)
    result.raise_for_state()


@template_group.command(name="download-all")
@retrieve_options
def template_download_all(force: bool, timeout: float | None, retries: int | None) -> None:
    """下载全部模板（并行）"""
    svc = _svc()
    templates = svc.list_templates()
    if not templates:
        click.echo("没有已注册的模板。")
        return
    results = svc.retrieval.download_all(templates, _options(force, timeout, retries))
    for r in results:
        _echo_result(r)
    failed = sum(1 for r in results if not r.success)
    click.echo(f"完成: {len(results) - failed} 成功, {failed} 失败")
    if failed:
        raise click.ClickException(f"{failed} 个模板下载失败")


@template_group.command(name="add")
@click.argument("template_id")
@click.option("--name", required=True, help="模板显示名称")
@click.option("--repo", required=True, help="所属仓库名")
@click.option("--path", required=True, help="仓内路径")
@click.option("--description", default="", help="模板描述")
@click.option("--language", default="vue", help="模板语言/框架")
@click.option("--tags", default="", help="标签，逗号分隔")
def template_add(
    template_id: str, name: str, repo: str, path: str,
    description: str, language: str, tags: str,
) -> None:
    """注册模板"""
    t = _svc().registry.add_template(
        template_id, name, repo, path,
        description=description, language=language, tags=tags,
    )
    click.echo(f"模板已注册: {t.id} (repo={t.repo}, path={t.path})")


@template_group.command(name="remove")
@click.argument("template_id")
def template_remove(template_id: str) -> None:
    """移除模板并清理其缓存"""
    _svc().registry.remove_template(template_id)
    click.echo(f"模板已移除: {template_id}")
