"""
工具注册与派发。

`ToolRegistry` 按名字保存 (ToolSpec, handler)，`dispatch` 负责调用 handler 并把异常折算成 ToolResult：
- 未注册：not_found
- `UserError`（参数非法、路径越界）：validation
- `KernelUnavailableError`：unavailable
- 其它异常：unknown（记 warning 日志）

handler 都是协程；python 工具在 event loop 上等待 kernel，shell 工具在线程里跑。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Dict, Optional, Tuple

from kernel_runtime.config.loader import KernelRuntimeConfig
from kernel_runtime.core.errors import KernelUnavailableError, UserError
from kernel_runtime.core.executor import Executor
from kernel_runtime.kernel.pool import KernelSessionPool
from kernel_runtime.kernel.protocol import ChunkCallback
from kernel_runtime.tools.protocol import ToolCall, ToolResult, ToolSpec

logger = logging.getLogger(__name__)

ToolHandler = Callable[[ToolCall, "ToolExecutionContext"], Awaitable[ToolResult]]


@dataclass
class ToolExecutionContext:
    """
    handler 共享的运行环境。

    - workspace_root：相对 cwd 的基准，也是默认 cwd
    - config：默认超时、输出上限、kernel 模式
    - kernel_pool：None 时 python 工具使用当前 loop 的默认 pool
    - executor：shell_exec 的执行器；None 表示未启用 shell
    - session_file / artifacts_dir：注入 kernel 环境变量，前者还参与 session key
    - env：叠加给每个子进程的环境变量
    - cancel_checker / on_chunk：取消轮询与 python 输出回调
    """

    workspace_root: Path
    config: Optional[KernelRuntimeConfig] = None
    kernel_pool: Optional[KernelSessionPool] = None
    executor: Optional[Executor] = None
    session_file: Optional[str] = None
    artifacts_dir: Optional[str] = None
    env: Optional[Dict[str, str]] = None
    cancel_checker: Optional[Callable[[], bool]] = None
    on_chunk: Optional[ChunkCallback] = None

    def session_key(self, cwd: Optional[Path] = None) -> str:
        """`session:<session_file>:cwd:<cwd>`；没有会话文件时退化为 `cwd:<cwd>`。"""

        where = f"cwd:{cwd if cwd is not None else self.workspace_root}"
        return f"session:{self.session_file}:{where}" if self.session_file else where

    def resolve_cwd(self, path: Optional[str]) -> Path:
        """
        解析工具参数里的 cwd。

        参数：
        - path：None 时原样返回 workspace_root；相对路径以 workspace_root 为基准

        异常：
        - `UserError`：解析结果在 workspace_root 之外，或不是已存在的目录
        """

        if path is None:
            return Path(self.workspace_root)
        root = Path(self.workspace_root).resolve()
        target = (root / path).resolve()
        if target != root and root not in target.parents:
            raise UserError(f"cwd 越出 workspace_root：{target}")
        if not target.is_dir():
            raise UserError(f"cwd 不存在或不是目录：{target}")
        return target

    def child_env(self, extra: Optional[Dict[str, str]] = None) -> Optional[Dict[str, str]]:
        """ctx.env 叠加 extra；结果为空时返回 None。"""

        env = {**(self.env or {}), **{str(k): str(v) for k, v in (extra or {}).items()}}
        return env or None


class ToolRegistry:
    def __init__(self, *, ctx: ToolExecutionContext) -> None:
        self._ctx = ctx
        self._tools: Dict[str, Tuple[ToolSpec, ToolHandler]] = {}

    @property
    def ctx(self) -> ToolExecutionContext:
        return self._ctx

    def register(self, spec: ToolSpec, handler: ToolHandler, *, override: bool = False) -> None:
        """登记工具；同名且未指定 override 时抛 `UserError`。"""

        if spec.name in self._tools and not override:
            raise UserError(f"tool 已注册：{spec.name}")
        self._tools[spec.name] = (spec, handler)

    def get_spec(self, name: str) -> ToolSpec:
        entry = self._tools.get(name)
        if entry is None:
            raise UserError(f"tool 未注册：{name}")
        return entry[0]

    def list_specs(self) -> list[ToolSpec]:
        return [spec for spec, _ in self._tools.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    async def dispatch(self, call: ToolCall) -> ToolResult:
        """执行一次调用；handler 的异常不会外抛，统一折算为失败结果。"""

        entry = self._tools.get(call.name)
        if entry is None:
            return ToolResult.error_payload(
                error_kind="not_found", stderr=f"tool 未注册：{call.name}", data={"tool": call.name}
            )

        handler = entry[1]
        try:
            return await handler(call, self._ctx)
        except UserError as e:
            return ToolResult.error_payload(error_kind="validation", stderr=str(e))
        except KernelUnavailableError as e:
            return ToolResult.error_payload(error_kind="unavailable", stderr=e.reason)
        except Exception as e:
            logger.warning("tool %s raised during dispatch", call.name, exc_info=True)
            return ToolResult.error_payload(error_kind="unknown", stderr=str(e))
