"""
工具集装配：按 python tool mode 与 kernel 可用性决定注册哪些工具。

mode 的来源（优先级从高到低）：
- 环境变量 `KERNEL_RUNTIME_PY`：`0`/`bash` → bash-only，`1`/`py` → ipy-only，`mix`/`both` → both
- SettingsManager 的 `python.tool_mode`
- 默认 `both`

python 工具需要 kernel 可用；不可用时降级为 `shell_exec`。
session 模式下保留 python 工具时会预热 workspace_root 对应的 session kernel（失败只记 warning）。
"""

from __future__ import annotations

import dataclasses
import logging
import os
from pathlib import Path
from typing import List, Mapping, Optional, Sequence

from kernel_runtime.config.loader import PythonToolMode
from kernel_runtime.config.settings import SettingsManager
from kernel_runtime.core.executor import Executor
from kernel_runtime.kernel import availability
from kernel_runtime.kernel import executor as python_executor
from kernel_runtime.tools.builtin import PYTHON_SPEC, SHELL_EXEC_SPEC, register_builtin_tools
from kernel_runtime.tools.registry import ToolExecutionContext, ToolRegistry

logger = logging.getLogger(__name__)

PYTHON_MODE_ENV = "KERNEL_RUNTIME_PY"

_ENV_MODE_ALIASES = {
    "0": "bash-only",
    "bash": "bash-only",
    "1": "ipy-only",
    "py": "ipy-only",
    "mix": "both",
    "both": "both",
}


def resolve_python_tool_mode(
    settings: Optional[SettingsManager] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> PythonToolMode:
    """解析生效的 python tool mode（环境变量 > 设置 > 默认）。"""

    env = os.environ if environ is None else environ
    raw = str(env.get(PYTHON_MODE_ENV) or "").strip().lower()
    if raw in _ENV_MODE_ALIASES:
        return _ENV_MODE_ALIASES[raw]  # type: ignore[return-value]
    if raw:
        logger.warning("Ignoring unknown %s value: %r", PYTHON_MODE_ENV, raw)
    if settings is not None:
        return settings.get_python_tool_mode()
    return "both"


def _tool_names_for_mode(mode: PythonToolMode) -> List[str]:
    if mode == "bash-only":
        return [SHELL_EXEC_SPEC.name]
    if mode == "ipy-only":
        return [PYTHON_SPEC.name]
    return [SHELL_EXEC_SPEC.name, PYTHON_SPEC.name]


async def create_tools(
    ctx: ToolExecutionContext,
    *,
    settings: Optional[SettingsManager] = None,
    requested: Optional[Sequence[str]] = None,
) -> ToolRegistry:
    """
    创建工具注册表。

    参数：
    - ctx：执行上下文（缺少 config/executor 时按 settings 补齐）
    - settings：用户设置（tool mode/kernel mode/超时等）
    - requested：只保留这些工具（python 降级时 shell_exec 仍会被加入）

    返回：
    - ToolRegistry
    """

    mode = resolve_python_tool_mode(settings)
    names = _tool_names_for_mode(mode)
    if requested is not None:
        names = [n for n in names if n in requested]

    if ctx.config is None and settings is not None:
        ctx = dataclasses.replace(ctx, config=settings.config)

    if PYTHON_SPEC.name in names and os.environ.get(availability.SKIP_CHECK_ENV) != "1":
        python_path = ctx.config.kernel.python_path if ctx.config is not None else None
        result = await availability.check_kernel_availability(ctx.workspace_root, python_path=python_path)
        if isinstance(result, availability.KernelUnavailable):
            logger.warning("Python kernel unavailable (%s); falling back to %s", result.reason, SHELL_EXEC_SPEC.name)
            names = [n for n in names if n != PYTHON_SPEC.name]
            if SHELL_EXEC_SPEC.name not in names:
                names.append(SHELL_EXEC_SPEC.name)

    if SHELL_EXEC_SPEC.name in names and ctx.executor is None:
        shell_cfg = ctx.config.shell if ctx.config is not None else None
        executor = (
            Executor(max_stdout_bytes=shell_cfg.max_stdout_bytes, max_stderr_bytes=shell_cfg.max_stderr_bytes)
            if shell_cfg is not None
            else Executor()
        )
        ctx = dataclasses.replace(ctx, executor=executor)

    kernel_mode = ctx.config.python.kernel_mode if ctx.config is not None else "session"
    if PYTHON_SPEC.name in names and kernel_mode == "session":
        cwd = Path(ctx.workspace_root)
        await python_executor.warm_python_environment(
            cwd,
            ctx.session_key(cwd),
            pool=ctx.kernel_pool,
            config=ctx.config,
            session_file=ctx.session_file,
            artifacts_dir=ctx.artifacts_dir,
            env=ctx.child_env(),
        )

    registry = ToolRegistry(ctx=ctx)
    register_builtin_tools(registry, names=tuple(names))
    logger.debug("Created tools %s (python tool mode: %s)", names, mode)
    return registry
