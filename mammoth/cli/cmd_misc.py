"""CLI — 项目生成、清理、信息查看"""

from __future__ import annotations

import json

import click

from mammoth.cli import _svc


def register(group: click.Group) -> None:
    group.add_command(new)
    group.add_command(clean)
    group.add_command(info)


# ---- 生成项目 ----

@click.command()
@click.argument("template_id")
@click.argument("name")
@click.option("--output", "-o", default=".", help="输出目录")
@click.option("--author", default="", help="作者")
@click.option("--description", default="", help="项目描述")
@click.option("--no-git", is_flag=True, help="不执行 git init")
def new(template_id: str, name: str, output: str, author: str, description: str, no_git: bool) -> None:
    """从模板生成新项目"""
    path = _svc().project.generate(
        template_id, name, output_dir=output,
        author=author, description=description, init_git=not no_git,
    )
    click.echo(f"项目已生成: {path}")


# ---- 清理 ----

@click.command()
@click.option("--all", "all_", is_flag=True, help="同时清空注册表（仓库与模板）")
@click.option("--scratch", is_flag=True, help="只清理中断遗留的临时目录")
@click.option("--force", is_flag=True, help="不询问确认")
def clean(all_: bool, scratch: bool, force: bool) -> None:
    """清理模板缓存"""
    svc = _svc()
    if scratch:
        n = svc.cache.sweep()
        click.echo(f"已清理 {n} 个遗留临时目录")
        return
    if not force:
        prompt = "将删除所有缓存、仓库和模板配置，确定继续?" if all_ else "将删除所有已缓存的模板文件，确定继续?"
        if not click.confirm(prompt, default=False):
            click.echo("已取消。")
            return
    svc.maintenance.clean(all=all_)
    click.echo("缓存与注册表已清空" if all_ else "缓存已清空")


# ---- 信息 ----

@click.command()
@click.option("--json", "as_json", is_flag=True, help="以 JSON 输出")
def info(as_json: bool) -> None:
    """显示当前仓库、模板与缓存状态"""
    data = _svc().maintenance.info()
    if as_json:
        click.echo(json.dumps(data, indent=2, ensure_ascii=False))
        return

    click.echo(f"配置文件: {data['config_file']}")
    click.echo(f"缓存目录: {data['cache_dir']}")
    click.echo("\n仓库:")
    if not data["repos"]:
        click.echo("  （无）")
    for r in data["repos"]:
        click.echo(f"  {r['name']:20s} {r['url']}  branch={r['branch']}")
    click.echo("\n模板:")
    if not data["templates"]:
        click.echo("  （无）")
    for t in data["templates"]:
        mark = "*" if t["cached"] else " "
        click.echo(f"  [{mark}] {t['id']:24s} {t['repo']}/{t['path']}")
    if data["dangling"]:
        click.echo("\n悬空引用:")
        for d in data["dangling"]:
            click.echo(f"  模板 {d['template']} -> 仓库 {d['repo']}（不存在）")
    c = data["counts"]
    click.echo(f"\n共 {c['repos']} 个仓库, {c['templates']} 个模板, {c['cached']} 个已缓存")
