"""会话异常类。

cli-agent-relay shared v0.1.0

错误分类与 HTTP 层无关，状态码映射由 server 模块负责。
单条记录的解码错误在 decoder 内部吸收，不会出现在这里。
"""

from __future__ import annotations

from enum import Enum

__all__ = [
    "ErrorCategory",
    "RelayError",
    "RequestValidationError",
    "ProcessLaunchError",
    "ProcessExitError",
    "SessionTimeoutError",
    "SessionCancelledError",
    "MissingResultError",
]


class ErrorCategory(str, Enum):
    """错误分类枚举。

    - VALIDATION: 请求参数非法，进程未启动
    - LAUNCH: 可执行文件缺失或无权限
    - EXIT: 非零退出码或被信号终止
    - TIMEOUT: 超过会话截止时间
    - CANCELLED: 外部取消（客户端断开、服务关闭）
    - MISSING_RESULT: 进程正常退出但没有 result 记录
    """

    VALIDATION = "validation_error"
    LAUNCH = "launch_error"
    EXIT = "exit_error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    MISSING_RESULT = "missing_result"


class RelayError(Exception):
    """基础异常。"""

    category: ErrorCategory = ErrorCategory.EXIT


class RequestValidationError(RelayError, ValueError):
    """请求校验失败。"""

    category = ErrorCategory.VALIDATION


class ProcessLaunchError(RelayError):
    """进程启动失败。

    Attributes:
        executable: 尝试启动的可执行文件
    """

    category = ErrorCategory.LAUNCH

    def __init__(self, executable: str, cause: OSError) -> None:
        self.executable = executable
        self.cause = cause
        reason = cause.strerror or str(cause)
        super().__init__(f"Failed to launch {executable}: {reason}")


class ProcessExitError(RelayError):
    """进程异常退出。

    Attributes:
        exit_code: 退出码（被信号终止时为负数）
        signal_name: 终止信号名称（如果有）
        stderr: stderr 末尾几行
    """

    category = ErrorCategory.EXIT

    def __init__(
        self,
        exit_code: int | None,
        signal_name: str | None = None,
        stderr: str = "",
    ) -> None:
        self.exit_code = exit_code
        self.signal_name = signal_name
        self.stderr = stderr
        message = f"Process exited with code {exit_code}"
        if signal_name:
            message += f", signal {signal_name}"
        if stderr:
            message += f"\nStderr: {stderr}"
        super().__init__(message)


class SessionTimeoutError(RelayError):
    """会话超时。"""

    category = ErrorCategory.TIMEOUT

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Request timed out after {timeout:g}s")


class SessionCancelledError(RelayError):
    """会话被取消。"""

    category = ErrorCategory.CANCELLED

    def __init__(self, reason: str = "Request cancelled") -> None:
        super().__init__(reason)


class MissingResultError(RelayError):
    """进程正常结束，但输出中没有 result 记录。"""

    category = ErrorCategory.MISSING_RESULT

    def __init__(self, message: str = "No result in Claude response") -> None:
        super().__init__(message)
