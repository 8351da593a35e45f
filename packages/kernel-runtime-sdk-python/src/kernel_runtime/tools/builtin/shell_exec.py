"""
内置工具：shell_exec。

kernel 不可用、或 tool mode 为 `bash` 时由它承担代码执行。
结果口径与 python 工具相同：超时/取消时 exit_code 缺省，超时提示追加在 stdout 末尾。
"""

from __future__ import annotations

import asyncio
from functools import partial
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from kernel_runtime.tools.protocol import ToolCall, ToolResult, ToolResultPayload, ToolSpec
from kernel_runtime.tools.registry import ToolExecutionContext

_FALLBACK_TIMEOUT_MS = 60_000


class _ShellExecArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    command: Optional[str] = None
    argv: Optional[list[str]] = Field(default=None, min_length=1)
    cwd: Optional[str] = None
    env: Optional[dict[str, str]] = None
    timeout_ms: Optional[int] = Field(default=None, ge=1)

    @model_validator(mode="after")
    def _exactly_one_form(self) -> "_ShellExecArgs":
        if (self.command is None) == (self.argv is None):
            raise ValueError("shell_exec 需要且只能提供 command 或 argv 之一")
        return self


SHELL_EXEC_SPEC = ToolSpec(
    name="shell_exec",
    description="运行一条本地命令（command 交给 bash，或直接给出 argv），返回 stdout/stderr/exit_code。",
    parameters={
        "type": "object",
        "properties": {
            "command": {"type": "string", "description": "bash -c 执行的命令行"},
            "argv": {"type": "array", "items": {"type": "string"}, "minItems": 1, "description": "直接执行的程序与参数"},
            "cwd": {"type": "string", "description": "相对 workspace_root 的工作目录"},
            "env": {"type": "object", "additionalProperties": {"type": "string"}, "description": "额外环境变量"},
            "timeout_ms": {"type": "integer", "minimum": 1, "description": "超时（毫秒）"},
        },
        "additionalProperties": False,
    },
)


async def shell_exec(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
    """在线程中调用 `Executor`；command 与 argv 必须二选一。"""

    executor = ctx.executor
    if executor is None:
        return ToolResult.error_payload(error_kind="validation", stderr="shell_exec 未启用：上下文中没有 executor")
    try:
        args = _ShellExecArgs.model_validate(call.args)
    except ValueError as e:
        return ToolResult.error_payload(error_kind="validation", stderr=str(e))

    timeout_ms = args.timeout_ms
    if timeout_ms is None:
        timeout_ms = ctx.config.shell.default_timeout_ms if ctx.config is not None else _FALLBACK_TIMEOUT_MS

    if args.command is not None:
        run = partial(executor.run_shell, args.command)
    else:
        run = partial(executor.run_command, list(args.argv or []))
    result = await asyncio.to_thread(
        run,
        cwd=ctx.resolve_cwd(args.cwd),
        env=ctx.child_env(args.env),
        timeout_ms=timeout_ms,
        cancel_checker=ctx.cancel_checker,
    )

    payload = ToolResultPayload(**result.model_dump(include=set(ToolResultPayload.model_fields) - {"data"}))
    return ToolResult.from_payload(payload, message=None if result.ok else "shell_exec 执行失败")
