"""CLI — 模板仓库管理"""

from __future__ import annotations

import click

from mammoth.cli import _svc


def register(group: click.Group) -> None:
    group.add_command(repo_group)


@click.group(name="repo")
def repo_group() -> None:
    """模板仓库管理"""


@repo_group.command(name="add")
@click.argument("name")
@click.argument("url")
@click.option("--branch", "-b", default="main", help="分支")
@click.option("--username", default=None, help="认证用户名（可选）")
@click.option(
    "--token", "auth_token", default=None, envvar="MAMMOTH_REPO_TOKEN",
    help="访问令牌（可选，也可通过 MAMMOTH_REPO_TOKEN 提供）",
)
def repo_add(name: str, url: str, branch: str, username: str | None, auth_token: str | None) -> None:
    """注册模板仓库"""
    repo = _svc().registry.add_repository(
        name, url, branch=branch, username=username, auth_token=auth_token,
    )
    suffix = "，已配置令牌" if repo.has_credentials else ""
    click.echo(f"仓库已注册: {repo.name} ({repo.url}@{repo.branch}){suffix}")


@repo_group.command(name="remove")
@click.argument("name")
def repo_remove(name: str) -> None:
    """移除模板仓库（不会删除引用它的模板）"""
    dangling = _svc().registry.remove_repository(name)
    click.echo(f"仓库已移除: {name}")
    if dangling:
        click.echo(f"警告: {len(dangling)} 个模板仍引用该仓库:", err=True)
        for ref in dangling:
            click.echo(f"  {ref.template_id}", err=True)


@repo_group.command(name="list")
def repo_list() -> None:
    """列出已注册的模板仓库"""
    repos = _svc().registry.list_repositories()
    if not repos:
        click.echo("没有已注册的仓库。")
        return
    for r in repos:
        auth = " [token]" if r.has_credentials else ""
        click.echo(f"  {r.name:20s} {r.url}  branch={r.branch}{auth}")
