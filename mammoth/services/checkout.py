"""Git 稀疏检出

职责:
- 只拉取仓库中的一个子目录（clone --filter=blob:none --sparse + sparse-checkout set）
- 超时控制：整个检出共享一个截止时间，每条 git 命令只拿剩余时间
- 失败分类：认证失败 / 路径或分支不存在 / 网络瞬时错误 / 超时

检出引擎把本模块视为黑盒，只依赖 CheckoutCollaborator 协议和异常分类。
"""

from __future__ import annotations

import logging
import re
import subprocess
import time
from pathlib import Path, PurePosixPath
from typing import Protocol
from urllib.parse import quote, urlsplit, urlunsplit

from mammoth.core.exceptions import (
    AuthenticationFailedError,
    CheckoutError,
    CheckoutTimeoutError,
    InvalidArgumentError,
    MammothError,
    NetworkTransientError,
    NotFoundError,
)
from mammoth.core.models import CheckoutResult, Credentials
from mammoth.utils.fs import remove_tree, rename_path
from mammoth.utils.logger import redact, register_secret
from mammoth.utils.shell import CommandExecutor, get_executor

logger = logging.getLogger(__name__)

_SAFE_REF_RE = re.compile(r"^[a-zA-Z0-9_./@\-]+$")

_AUTH_PATTERNS = re.compile(
    r"authentication failed|could not read (username|password)|invalid username or password"
    r"|access denied|permission denied|returned error: 40[13]|terminal prompts disabled",
    re.IGNORECASE,
)
_NOT_FOUND_PATTERNS = re.compile(
    r"remote branch .* not found|couldn't find remote ref|repository .*not found"
    r"|did not match any file|does not appear to be a git repository|pathspec .* did not match",
    re.IGNORECASE,
)
_TRANSIENT_PATTERNS = re.compile(
    r"could not resolve host|connection (timed out|refused|reset)|network is unreachable"
    r"|early eof|rpc failed|remote end hung up|operation timed out|temporary failure"
    r"|unable to access|\bssl\b|\btls\b|gnutls",
    re.IGNORECASE,
)


class CheckoutCollaborator(Protocol):
    """检出原语协议

    把 url@branch 中 sparse_path 子目录的内容放到 destination（调用前不存在），
    失败时抛 CheckoutError 子类；可能留下残缺文件，清理由调用方负责。
    """

    def checkout(
        self,
        url: str,
        branch: str,
        sparse_path: str,
        credentials: Credentials | None,
        destination: Path,
        timeout: float,
    ) -> CheckoutResult:
        ...


def classify_git_failure(stderr: str, context: str) -> MammothError:
    """按 git 的错误输出归类异常"""
    text = redact(stderr.strip())[:300]
    message = f"{context}: {text}" if text else context
    if _AUTH_PATTERNS.search(stderr):
        return AuthenticationFailedError(message)
    if _NOT_FOUND_PATTERNS.search(stderr):
        return NotFoundError(message)
    if _TRANSIENT_PATTERNS.search(stderr):
        return NetworkTransientError(message)
    return CheckoutError(message)


def inject_credentials(url: str, credentials: Credentials | None) -> str:
    """把 token 写入 http(s) URL 的 userinfo，其他协议原样返回"""
    if credentials is None or not credentials.token:
        return url
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https"):
        return url
    host = parts.netloc.rsplit("@", 1)[-1]
    user = quote(credentials.username or "oauth2", safe="")
    token = quote(credentials.token, safe="")
    return urlunsplit((parts.scheme, f"{user}:{token}@{host}", parts.path, parts.query, parts.fragment))


def validate_sparse_path(sparse_path: str) -> str:
    """仓内路径必须是相对路径且不能跳出仓库"""
    cleaned = sparse_path.strip().strip("/")
    if not cleaned or cleaned == ".":
        raise InvalidArgumentError("模板路径不能为空")
    pure = PurePosixPath(cleaned)
    if sparse_path.startswith("/") or ".." in pure.parts:
        raise InvalidArgumentError(f"模板路径非法: {sparse_path}")
    return cleaned


class GitCheckout:
    """基于 git 命令行的稀疏检出"""

    def __init__(self, executor: CommandExecutor | None = None, git: str = "git") -> None:
        self._executor = executor
        self.git = git

    @property
    def executor(self) -> CommandExecutor:
        return self._executor or get_executor()

    def checkout(
        self,
        url: str,
        branch: str,
        sparse_path: str,
        credentials: Credentials | None,
        destination: Path,
        timeout: float,
    ) -> CheckoutResult:
        if branch and not _SAFE_REF_RE.match(branch):
            raise InvalidArgumentError(f"branch 包含非法字符: {branch}")
        path = validate_sparse_path(sparse_path)
        if credentials is not None:
            register_secret(credentials.token)

        deadline = time.monotonic() + timeout
        work = destination.parent / f"{destination.name}.clone"
        remove_tree(work)
        destination.parent.mkdir(parents=True, exist_ok=True)

        clone_cmd = [
            self.git, "clone", "--no-checkout", "--filter=blob:none", "--sparse",
        ]
        if branch:
            clone_cmd += ["--branch", branch]
        clone_cmd += [inject_credentials(url, credentials), str(work)]

        logger.info("稀疏克隆: %s@%s (path=%s)", redact(url), branch or "HEAD", path)
        self._run(clone_cmd, cwd=destination.parent, deadline=deadline, context="git clone 失败")
        self._run(
            [self.git, "sparse-checkout", "set", path],
            cwd=work, deadline=deadline, context=f"设置 sparse-checkout 失败 (path={path})",
        )
        checkout_cmd = [self.git, "checkout"]
        if branch:
            checkout_cmd.append(branch)
        self._run(checkout_cmd, cwd=work, deadline=deadline, context=f"git checkout 失败 ({branch})")

        source = work / path
        if not source.is_dir():
            raise NotFoundError(f"仓库中不存在模板路径: {path}")

        fingerprint = self._head_sha(work, deadline)
        rename_path(source, destination)
        remove_tree(work)
        return CheckoutResult(path=destination, fingerprint=fingerprint)

    def _run(self, cmd: list[str], *, cwd: Path, deadline: float, context: str) -> str:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise CheckoutTimeoutError(f"{context}: 检出超时")
        try:
            r = self.executor.execute(
                cmd, cwd=str(cwd), env={"GIT_TERMINAL_PROMPT": "0"}, timeout=remaining,
            )
        except subprocess.TimeoutExpired as e:
            raise CheckoutTimeoutError(f"{context}: {remaining:.0f} 秒内未完成") from e
        except OSError as e:
            raise NetworkTransientError(f"{context}: 无法启动 git: {e}") from e
        if r.returncode != 0:
            raise classify_git_failure(r.stderr, f"{context} (rc={r.returncode})")
        return r.stdout

    def _head_sha(self, work: Path, deadline: float) -> str:
        try:
            out = self._run(
                [self.git, "rev-parse", "HEAD"], cwd=work, deadline=deadline, context="rev-parse",
            )
        except MammothError as e:
            logger.debug("获取 commit SHA 失败: %s", e)
            return ""
        return out.strip()[:12]
