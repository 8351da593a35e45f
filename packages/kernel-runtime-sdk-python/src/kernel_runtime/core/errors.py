"""
异常层级。

- 工具层对外只返回 `ToolResult.error_kind`，这里的异常只在模块之间流动；
- kernel 相关的传输/进程错误（SpawnError/DeadKernelError/InterruptFailure）由 pool 层做一次本地恢复；
  被执行代码自身的报错不是异常，而是 `status=error` 的正常结果（映射为 exit_code=1）。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


class KernelRuntimeError(Exception):
    """本包所有异常的根。"""


@dataclass(frozen=True)
class FrameworkIssue:
    """可序列化的问题条目，CLI 输出的 errors 列表由它组成。"""

    code: str
    message: str
    details: Dict[str, Any]


class FrameworkError(KernelRuntimeError):
    """
    带稳定错误码的结构化错误。

    - code：大写下划线形式，例如 `SETTINGS_INVALID`
    - details：附加上下文，随 `to_issue()` 一起输出
    """

    def __init__(self, *, code: str, message: str, details: Dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

    def to_issue(self) -> FrameworkIssue:
        return FrameworkIssue(code=self.code, message=self.message, details=dict(self.details))


class UserError(FrameworkError):
    """用户输入/配置导致的错误。"""

    def __init__(self, message: str, *, code: str = "USER_ERROR", details: Dict[str, Any] | None = None) -> None:
        super().__init__(code=code, message=message, details=details or {})


class KernelError(KernelRuntimeError):
    """kernel 进程/传输层错误基类。"""

    def __init__(self, message: str, *, kernel_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.kernel_id = kernel_id


class SpawnError(KernelError):
    """
    子进程启动失败或 readiness 握手未完成。

    说明：
    - 进程层不重试；是否在下一次调用时重新 spawn 由 pool 决定。
    """


class DeadKernelError(KernelError):
    """操作目标 kernel 的进程已退出（或通道已断开）。"""


class InterruptFailure(KernelError):
    """取消/超时中断信号无法送达（通常是进程已不存在）；语义上等价于 dead kernel。"""


class KernelUnavailableError(KernelRuntimeError):
    """kernel 可用性检查失败（解释器缺失/版本不满足等）。"""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason
