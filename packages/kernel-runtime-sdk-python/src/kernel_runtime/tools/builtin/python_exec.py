"""
内置工具：python（在持久 kernel 中执行代码单元）。

- 多个 cell 按顺序在同一 session 中执行；遇到非 0 退出（报错/取消/超时）即停止；
- `reset` 只作用于第一个 cell（先重启 kernel 再执行）；
- kernel 模式（session/per-call）来自配置；session key 见 `ToolExecutionContext.session_key`。
"""

from __future__ import annotations

import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from kernel_runtime.kernel import executor as python_executor
from kernel_runtime.kernel.mapper import PythonResult
from kernel_runtime.kernel.protocol import CancelToken
from kernel_runtime.tools.protocol import ToolCall, ToolResult, ToolResultPayload, ToolSpec
from kernel_runtime.tools.registry import ToolExecutionContext


class _PythonCell(BaseModel):
    model_config = ConfigDict(extra="forbid")

    code: str
    title: Optional[str] = None


class _PythonArgs(BaseModel):
    """python 输入参数。"""

    model_config = ConfigDict(extra="forbid")

    cells: List[_PythonCell] = Field(min_length=1, description="按顺序执行的代码单元")
    timeout: Optional[float] = Field(default=None, gt=0, description="每个 cell 的超时秒数（可选）")
    cwd: Optional[str] = Field(default=None, description="工作目录（相对 workspace_root）")
    reset: bool = Field(default=False, description="执行前重启 kernel")


PYTHON_SPEC = ToolSpec(
    name="python",
    description="在持久的 Python kernel 中执行代码单元；变量与导入在同一会话的调用之间保留。",
    parameters={
        "type": "object",
        "properties": {
            "cells": {
                "type": "array",
                "minItems": 1,
                "items": {
                    "type": "object",
                    "properties": {
                        "code": {"type": "string", "description": "Python 源码"},
                        "title": {"type": "string", "description": "cell 标题（可选）"},
                    },
                    "required": ["code"],
                    "additionalProperties": False,
                },
                "description": "按顺序执行的代码单元",
            },
            "timeout": {"type": "number", "exclusiveMinimum": 0, "description": "每个 cell 的超时秒数（可选）"},
            "cwd": {"type": "string", "description": "工作目录（可选；默认 workspace_root）"},
            "reset": {"type": "boolean", "description": "执行前重启 kernel（可选；默认 false）"},
        },
        "required": ["cells"],
        "additionalProperties": False,
    },
)


def _error_kind(result: PythonResult) -> Optional[str]:
    if result.timed_out:
        return "timeout"
    if result.cancelled:
        return "cancelled"
    if result.exit_code not in (0, None):
        return "exit_code"
    return None


async def python_exec(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
    """
    执行 python 工具。

    参数：
    - call：工具调用（args.cells 必填；可选 timeout/cwd/reset）
    - ctx：执行上下文（workspace_root/config/kernel_pool/session_file/artifacts_dir 等）

    返回：
    - ToolResult.content：JSON 字符串（stdout 为所有 cell 的输出，exit_code 为最后执行的 cell）
    """

    try:
        args = _PythonArgs.model_validate(call.args)
    except Exception as e:
        return ToolResult.error_payload(error_kind="validation", stderr=str(e))

    cwd = ctx.resolve_cwd(args.cwd)
    config = ctx.config
    if args.timeout is not None:
        timeout_ms: Optional[int] = max(1, int(args.timeout * 1000))
    else:
        timeout_ms = config.execution.default_timeout_ms if config is not None else None
    kernel_mode = config.python.kernel_mode if config is not None else "session"
    max_output_bytes = config.execution.max_output_bytes if config is not None else None
    cancel = CancelToken(checker=ctx.cancel_checker) if ctx.cancel_checker is not None else None
    session_id = ctx.session_key(cwd)

    start = time.monotonic()
    outputs: List[str] = []
    cells_meta: List[Dict[str, Any]] = []
    last: Optional[PythonResult] = None
    multi = len(args.cells) > 1
    for index, cell in enumerate(args.cells):
        artifact_path = (
            Path(ctx.artifacts_dir) / f"python-{call.call_id}-{index}.log" if ctx.artifacts_dir else None
        )
        options = python_executor.PythonExecutorOptions(
            cwd=cwd,
            timeout_ms=timeout_ms,
            on_chunk=ctx.on_chunk,
            cancel=cancel,
            session_id=session_id,
            kernel_mode=kernel_mode,
            reset=args.reset and index == 0,
            env=ctx.child_env(),
            session_file=ctx.session_file,
            artifacts_dir=ctx.artifacts_dir,
            artifact_path=artifact_path,
            max_output_bytes=max_output_bytes,
        )
        last = await python_executor.execute_python(cell.code, options, pool=ctx.kernel_pool, config=config)
        if multi:
            header = f"[{index + 1}/{len(args.cells)}]" + (f" {cell.title}" if cell.title else "")
            outputs.append(f"{header}\n{last.output}")
        else:
            outputs.append(last.output)
        cells_meta.append(
            {
                "index": index,
                "title": cell.title,
                "exit_code": last.exit_code,
                "kernel_status": last.kernel_status,
                "error_name": last.error_name,
                "stdin_requested": last.stdin_requested,
                "truncated": last.truncated,
                "artifact_path": last.artifact_path,
                "display_outputs": [o.model_dump(exclude_none=True) for o in last.display_outputs],
            }
        )
        if last.exit_code != 0:
            break

    assert last is not None
    ok = last.exit_code == 0
    payload = ToolResultPayload(
        ok=ok,
        stdout="\n".join(outputs) if multi else outputs[0],
        exit_code=last.exit_code,
        duration_ms=int((time.monotonic() - start) * 1000),
        truncated=any(meta["truncated"] for meta in cells_meta),
        data={"kernel_mode": kernel_mode, "session_id": session_id, "cells": cells_meta},
        error_kind=_error_kind(last),
    )
    return ToolResult.from_payload(payload, message=None if ok else "python 执行失败")
