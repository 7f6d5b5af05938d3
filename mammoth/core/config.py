"""集中配置管理

替代各模块散落的 DEFAULT_* 常量，提供统一的配置入口。
支持从 YAML 文件加载 + 环境变量 + 编程式覆盖。

目录约定（按优先级）:
  配置目录: $MAMMOTH_CONFIG_DIR > $XDG_CONFIG_HOME/mammoth-cli > ~/.config/mammoth-cli
  缓存目录: $MAMMOTH_CACHE_DIR > $XDG_CACHE_HOME/mammoth-cli/templates > ~/.cache/mammoth-cli/templates
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path

import yaml

from mammoth.core.exceptions import ConfigError
from mammoth.utils.yaml_io import load_yaml

logger = logging.getLogger(__name__)

APP_DIR_NAME = "mammoth-cli"
SETTINGS_FILE = "settings.yml"
REGISTRY_FILE = "templates.json"


def default_config_dir() -> str:
    """按环境变量解析用户级配置目录"""
    explicit = os.getenv("MAMMOTH_CONFIG_DIR", "")
    if explicit:
        return explicit
    base = os.getenv("XDG_CONFIG_HOME", "") or str(Path.home() / ".config")
    return str(Path(base) / APP_DIR_NAME)


def default_cache_dir() -> str:
    """按环境变量解析用户级缓存目录"""
    explicit = os.getenv("MAMMOTH_CACHE_DIR", "")
    if explicit:
        return explicit
    base = os.getenv("XDG_CACHE_HOME", "") or str(Path.home() / ".cache")
    return str(Path(base) / APP_DIR_NAME / "templates")


@dataclass
class Config:
    """全局配置"""

    # 目录
    config_dir: str = field(default_factory=default_config_dir)
    cache_dir: str = field(default_factory=default_cache_dir)
    registry_file: str = ""

    # 检出
    max_workers: int = 4
    checkout_timeout: float = 300
    max_retries: int = 2
    retry_backoff: float = 1.0

    # 文件占用重试（Windows 上句柄未释放时删除/重命名会失败）
    busy_retries: int = 3
    busy_backoff: float = 0.5
    lock_timeout: float = 30

    # 缓存有效期（天），0 表示永不过期
    cache_ttl_days: int = 0

    # 导出时默认隐去 auth_token
    redact_exports: bool = True

    # 自定义扩展 (放不到字段里的配置项)
    extra: dict = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.registry_file:
            self.registry_file = str(Path(self.config_dir) / REGISTRY_FILE)
        if self.max_workers < 1:
            raise ConfigError(f"max_workers 必须 >= 1: {self.max_workers}")
        if self.checkout_timeout <= 0:
            raise ConfigError(f"checkout_timeout 必须 > 0: {self.checkout_timeout}")

    @classmethod
    def from_file(cls, path: str = "") -> Config:
        """从 YAML 文件加载配置，不存在则返回默认"""
        if not path:
            path = str(Path(default_config_dir()) / SETTINGS_FILE)
        try:
            data = load_yaml(path)
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise ConfigError(f"读取配置文件失败: {path}: {e}") from e
        if not data:
            return cls()
        known = {f.name for f in cls.__dataclass_fields__.values()}
        matched = {k: v for k, v in data.items() if k in known and k != "extra"}
        extra = {k: v for k, v in data.items() if k not in known}
        if extra:
            logger.debug("配置文件包含未识别字段: %s", ", ".join(extra))
        try:
            cfg = cls(**matched)
        except TypeError as e:
            raise ConfigError(f"配置文件字段非法: {path}: {e}") from e
        cfg.extra = extra
        return cfg

    def to_dict(self) -> dict:
        return asdict(self)


# 全局单例，首次 import 时不加载文件；由 CLI 入口显式初始化
_current: Config | None = None


def get_config() -> Config:
    """获取当前配置（未初始化则返回默认值）"""
    global _current  # noqa: PLW0603
    if _current is None:
        _current = Config()
    return _current


def init_config(path: str = "") -> Config:
    """从文件初始化全局配置"""
    global _current  # noqa: PLW0603
    _current = Config.from_file(path)
    logger.debug("配置已加载: %s", path or "默认位置")
    return _current
