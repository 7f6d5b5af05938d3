"""统一异常体系

所有业务异常继承 MammothError，替代散落的 ValueError / RuntimeError。
CLI 层据此输出友好提示并以非零退出码结束。

retryable 标记可重试的瞬时错误（网络抖动、超时、文件占用），
检出引擎只对这类错误执行重试。
"""

from __future__ import annotations


class MammothError(Exception):
    """框架基础异常"""

    code: str = "UNKNOWN"
    retryable: bool = False

    def __init__(self, message: str) -> None:
        super().__init__(message)


class ConfigError(MammothError):
    """配置/注册表文件缺失、损坏或版本不受支持"""

    code = "CONFIG_ERROR"


class DuplicateKeyError(MammothError):
    """仓库名或模板 ID 重复"""

    code = "DUPLICATE_KEY"


class NotFoundError(MammothError):
    """仓库、模板、缓存条目或仓内路径不存在"""

    code = "NOT_FOUND"


class UnknownRepositoryError(MammothError):
    """模板引用了未注册的仓库"""

    code = "UNKNOWN_REPOSITORY"


class InvalidArgumentError(MammothError):
    """参数取值非法"""

    code = "INVALID_ARGUMENT"


class ValidationError(MammothError):
    """导入/导出文档结构或引用完整性校验失败"""

    code = "VALIDATION_FAILED"

    def __init__(self, message: str, details: list[str] | None = None) -> None:
        super().__init__(message)
        self.details = details or []


class CheckoutError(MammothError):
    """检出失败（不可重试的通用失败）"""

    code = "CHECKOUT_FAILED"


class AuthenticationFailedError(CheckoutError):
    """远端拒绝认证，重试无意义"""

    code = "AUTHENTICATION_FAILED"


class NetworkTransientError(CheckoutError):
    """网络或子进程启动类瞬时错误"""

    code = "NETWORK_TRANSIENT"
    retryable = True


class CheckoutTimeoutError(CheckoutError):
    """检出超时"""

    code = "TIMEOUT"
    retryable = True


class ResourceBusyError(MammothError):
    """文件被占用，删除/重命名多次重试后仍失败"""

    code = "RESOURCE_BUSY"
    retryable = True


class PartialStateError(MammothError):
    """发现半成品缓存槽位，已强制清理"""

    code = "PARTIAL_STATE_DETECTED"


class OperationCancelledError(MammothError):
    """用户中断或批量任务被取消"""

    code = "CANCELLED"
