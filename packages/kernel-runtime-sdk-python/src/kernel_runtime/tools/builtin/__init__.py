"""
内置工具（builtin tools）。

本包提供：
- `python`：在持久 kernel 中执行代码单元
- `shell_exec`：执行本地命令（python 不可用时的降级路径）
"""

from __future__ import annotations

from kernel_runtime.tools.builtin.python_exec import PYTHON_SPEC, python_exec
from kernel_runtime.tools.builtin.shell_exec import SHELL_EXEC_SPEC, shell_exec
from kernel_runtime.tools.registry import ToolRegistry

__all__ = ["PYTHON_SPEC", "SHELL_EXEC_SPEC", "register_builtin_tools"]

_BUILTIN_TOOL_ENTRIES = [
    (SHELL_EXEC_SPEC, shell_exec),
    (PYTHON_SPEC, python_exec),
]


def register_builtin_tools(registry: ToolRegistry, *, names: "tuple[str, ...] | None" = None, override: bool = False) -> None:
    """
    注册内置工具。

    参数：
    - registry：目标注册表
    - names：只注册这些工具（None 表示全部）
    - override：是否覆盖同名工具
    """

    for spec, handler in _BUILTIN_TOOL_ENTRIES:
        if names is not None and spec.name not in names:
            continue
        registry.register(spec, handler, override=override)
