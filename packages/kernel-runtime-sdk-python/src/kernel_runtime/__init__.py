"""
Kernel Runtime SDK（Python）。

说明：
- 交互式执行 kernel 管理：spawn / 池化复用 / 超时与取消 / 回收长驻 Python 解释器子进程；
- 当前包含：
  - kernel 进程与 driver 协议（JSON lines）
  - 执行协调器（完成/超时/取消竞态）
  - session 池（按 key 复用、per-call、恢复一次、批量回收）
  - 结果映射（exit_code 契约 + 输出截断/落盘）
  - 配置加载器（YAML overlay + pydantic 校验）与 SettingsManager
  - Tool System（python/shell_exec 工具与按可用性降级的装配）
"""

from __future__ import annotations

from kernel_runtime.kernel import (
    CancelToken,
    KernelSessionPool,
    PythonExecutorOptions,
    PythonResult,
    dispose_all_kernel_sessions,
    execute_python,
    execute_python_with_kernel,
    stream_python,
)

__all__ = [
    "CancelToken",
    "KernelSessionPool",
    "PythonExecutorOptions",
    "PythonResult",
    "__version__",
    "dispose_all_kernel_sessions",
    "execute_python",
    "execute_python_with_kernel",
    "stream_python",
]

__version__ = "0.1.0"
