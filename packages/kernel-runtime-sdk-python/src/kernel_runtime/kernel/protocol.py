"""
Kernel 协议类型（请求/结果/取消令牌/句柄接口）。

本模块只定义各层之间传递的数据结构与最小接口：
- `KernelExecuteOptions`：一次 execute 的可选参数（流式回调/取消令牌/超时/工作目录）
- `DisplayOutput`：富展示输出（图片/JSON），与文本输出分开回调
- `KernelExecuteResult`：kernel 层原始结果（status/cancelled/timed_out/stdin_requested + 真实状态）
- `CancelToken`：取消令牌（显式 cancel 或轮询 checker 两种来源）
- `KernelHandle` / `KernelExecutor`：pool 与 executor 依赖的最小 kernel 接口
- `KernelStartOptions`：spawn 参数
"""

from __future__ import annotations

import asyncio
import enum
import inspect
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Literal, Mapping, Optional, Protocol, Union, runtime_checkable

from pydantic import BaseModel, ConfigDict

KernelMode = Literal["session", "per-call"]
KernelStatus = Literal["ok", "error"]
DriverStatus = Literal["ok", "error", "interrupted", "dead"]

ChunkCallback = Callable[[str], Union[None, Awaitable[None]]]
DisplayCallback = Callable[["DisplayOutput"], Union[None, Awaitable[None]]]


class KernelState(str, enum.Enum):
    """kernel 进程生命周期状态。"""

    STARTING = "starting"
    READY = "ready"
    EXECUTING = "executing"
    TERMINATING = "terminating"
    DEAD = "dead"


class CancelToken:
    """
    取消令牌。

    两种触发来源：
    - 显式调用 `cancel()`
    - 构造时传入 `checker`（轮询；用于桥接 tool 层的 `cancel_checker: Callable[[], bool]`）

    注意：
    - `wait()` 只在当前运行中的 event loop 内使用；
    - checker 抛出的异常按“未取消”处理（fail-open），与 shell executor 一致。
    """

    def __init__(self, *, checker: Optional[Callable[[], bool]] = None, poll_interval_ms: int = 50) -> None:
        self._checker = checker
        self._poll_interval = max(1, int(poll_interval_ms)) / 1000.0
        self._event: Optional[asyncio.Event] = None
        self._cancelled = False

    def cancel(self) -> None:
        """触发取消（幂等）。"""

        self._cancelled = True
        if self._event is not None:
            self._event.set()

    @property
    def cancelled(self) -> bool:
        """是否已取消（会顺带询问 checker）。"""

        if self._cancelled:
            return True
        if self._checker is not None:
            try:
                if self._checker():
                    self.cancel()
            except Exception:
                return False
        return self._cancelled

    async def wait(self) -> None:
        """挂起直到令牌被取消。"""

        if self.cancelled:
            return
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        if self._checker is None:
            await self._event.wait()
            return
        while not self.cancelled:
            try:
                await asyncio.wait_for(self._event.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                continue


@dataclass
class KernelExecuteOptions:
    """一次 execute 的可选参数。"""

    on_chunk: Optional[ChunkCallback] = None
    cancel: Optional[CancelToken] = None
    timeout_ms: Optional[int] = None
    cwd: Optional[Path] = None
    on_display: Optional[DisplayCallback] = None


class DisplayOutput(BaseModel):
    """
    一条富展示输出。

    - type=image：data 为 base64，mime_type 为图片类型
    - type=json：data 为任意 JSON 值
    """

    model_config = ConfigDict(extra="forbid")

    type: Literal["image", "json"]
    data: Any = None
    mime_type: Optional[str] = None


class KernelExecuteResult(BaseModel):
    """
    kernel 层原始执行结果。

    字段：
    - status：`ok|error`（对外契约；被中断的执行记为 ok + cancelled）
    - cancelled/timed_out：竞态胜出方决定，不会被后到的信号覆盖
    - stdin_requested：被执行代码尝试读取交互输入（非交互模式下不会得到输入）
    - kernel_status：driver 报告的真实完成状态（ok/error/interrupted/dead）
    - error_name/error_value：被执行代码抛出的异常类型与消息（如有）
    - kernel_dead：中断无法送达/无响应，kernel 已被标记为 dead（pool 会在下次调用时重建）
    """

    model_config = ConfigDict(extra="forbid")

    status: KernelStatus = "ok"
    cancelled: bool = False
    timed_out: bool = False
    stdin_requested: bool = False
    kernel_status: DriverStatus = "ok"
    error_name: Optional[str] = None
    error_value: Optional[str] = None
    kernel_dead: bool = False


@dataclass(frozen=True)
class KernelStartOptions:
    """
    kernel spawn 参数。

    字段：
    - cwd：kernel 进程的初始工作目录
    - env：追加到过滤后环境变量之上的变量（例如 session 文件/ARTIFACTS 目录）
    - python_path：显式指定解释器；为 None 时按 venv/PATH 解析
    - startup_timeout_ms：readiness 握手超时
    - ping_timeout_ms：ping 的往返超时
    - interrupt_grace_ms：中断后等待 driver 报告完成的宽限时间
    - shutdown_timeout_ms：优雅退出的等待时间（超出后 SIGTERM→SIGKILL）
    """

    cwd: Path
    env: Optional[Mapping[str, str]] = None
    python_path: Optional[str] = None
    startup_timeout_ms: int = 30_000
    ping_timeout_ms: int = 3_000
    interrupt_grace_ms: int = 2_000
    shutdown_timeout_ms: int = 2_000


@runtime_checkable
class KernelExecutor(Protocol):
    """直接持有 kernel 的调用方所需的最小接口（测试与自管池化的高级调用方使用）。"""

    async def execute(self, code: str, options: Optional[KernelExecuteOptions] = None) -> KernelExecuteResult:
        ...


@runtime_checkable
class KernelHandle(KernelExecutor, Protocol):
    """pool 托管的 kernel 接口。"""

    kernel_id: str

    def is_alive(self) -> bool:
        ...

    async def ping(self, timeout_ms: Optional[int] = None) -> bool:
        ...

    async def shutdown(self) -> None:
        ...


KernelFactory = Callable[[KernelStartOptions], Awaitable[KernelHandle]]


async def emit_chunk(callback: Optional[ChunkCallback], text: str) -> None:
    """调用 chunk 回调（同步/异步两种形态均支持）。"""

    if callback is None or not text:
        return
    ret = callback(text)
    if inspect.isawaitable(ret):
        await ret


async def emit_display(callback: Optional[DisplayCallback], output: DisplayOutput) -> None:
    if callback is None:
        return
    ret = callback(output)
    if inspect.isawaitable(ret):
        await ret
