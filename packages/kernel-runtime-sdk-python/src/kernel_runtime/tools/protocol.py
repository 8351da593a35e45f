"""
工具层的数据契约。

`python` 与 `shell_exec` 两个内置工具都经由注册表分发；
它们的输入是 `ToolCall`，输出统一收敛成 `ToolResult`，其 `content` 为 `ToolResultPayload` 的 JSON。

payload 约定（与 kernel 结果映射一致）：
- exit_code 缺省（None）表示运行被取消或超时，不代表成功；
- data 承载工具自有字段，例如 kernel_status、stdin_requested、artifact_path。
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class ToolSpec(BaseModel):
    """注册表条目：名称、说明与 object 形状的 JSON Schema 参数。"""

    model_config = ConfigDict(extra="forbid")

    name: str
    description: str
    parameters: Dict[str, Any] = Field(default_factory=dict)


class ToolCall(BaseModel):
    model_config = ConfigDict(extra="forbid")

    call_id: str
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)


class ToolResultPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ok: bool
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    duration_ms: int = Field(default=0, ge=0)
    truncated: bool = False
    data: Optional[Dict[str, Any]] = None
    error_kind: Optional[str] = None


class ToolResult(BaseModel):
    """
    工具调用的返回信封。

    字段：
    - content：payload 序列化后的 JSON 文本（None 字段省略）
    - details：与 content 同内容的 dict，便于调用方直接读取
    - error_kind：timeout/cancelled/validation/not_found/unavailable/exit_code/unknown
    - message：失败时的一句话概述
    """

    model_config = ConfigDict(extra="forbid")

    ok: bool
    content: str
    error_kind: Optional[str] = None
    message: Optional[str] = None
    details: Optional[Dict[str, Any]] = None

    @classmethod
    def from_payload(cls, payload: ToolResultPayload, *, message: Optional[str] = None) -> "ToolResult":
        details = payload.model_dump(exclude_none=True)
        return cls(
            ok=payload.ok,
            content=json.dumps(details, ensure_ascii=False),
            error_kind=payload.error_kind,
            message=message,
            details=details,
        )

    @classmethod
    def error_payload(
        cls,
        *,
        error_kind: str,
        stderr: str,
        data: Optional[Dict[str, Any]] = None,
        duration_ms: int = 0,
    ) -> "ToolResult":
        """失败结果的快捷方式：进程没跑起来（或没跑完），原因写进 stderr。"""

        failure = ToolResultPayload(ok=False, stderr=stderr, duration_ms=duration_ms, data=data, error_kind=error_kind)
        return cls.from_payload(failure)


def tool_spec_to_openai_tool(spec: ToolSpec) -> Dict[str, Any]:
    """转换为 function calling 的 `{"type": "function", "function": {...}}` 条目。"""

    function = {"name": spec.name, "description": spec.description, "parameters": spec.parameters}
    return {"type": "function", "function": function}
