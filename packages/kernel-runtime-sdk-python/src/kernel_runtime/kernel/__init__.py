"""
Kernel 管理：spawn / 池化复用 / 超时与取消 / 回收长驻 Python 解释器子进程。

常用入口：
- `execute_python` / `stream_python` / `execute_python_with_kernel`
- `warm_python_environment` / `dispose_all_kernel_sessions`
- `KernelSessionPool`（自管池化的调用方）
"""

from __future__ import annotations

from kernel_runtime.kernel.availability import KernelAvailable, KernelUnavailable, check_kernel_availability
from kernel_runtime.kernel.executor import (
    PythonExecutorOptions,
    StreamEvent,
    WarmResult,
    dispose_all_kernel_sessions,
    execute_python,
    execute_python_with_kernel,
    get_default_pool,
    stream_python,
    warm_python_environment,
)
from kernel_runtime.kernel.mapper import PythonResult
from kernel_runtime.kernel.pool import KernelSessionPool
from kernel_runtime.kernel.process import KernelProcess
from kernel_runtime.kernel.protocol import (
    CancelToken,
    DisplayOutput,
    KernelExecuteOptions,
    KernelExecuteResult,
    KernelStartOptions,
)

__all__ = [
    "CancelToken",
    "DisplayOutput",
    "KernelAvailable",
    "KernelExecuteOptions",
    "KernelExecuteResult",
    "KernelProcess",
    "KernelSessionPool",
    "KernelStartOptions",
    "KernelUnavailable",
    "PythonExecutorOptions",
    "PythonResult",
    "StreamEvent",
    "WarmResult",
    "check_kernel_availability",
    "dispose_all_kernel_sessions",
    "execute_python",
    "execute_python_with_kernel",
    "get_default_pool",
    "stream_python",
    "warm_python_environment",
]
