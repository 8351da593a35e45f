"""
Python 执行入口（编排层）。

对外入口：
- `execute_python(code, options)`：可用性检查 → 按 kernel_mode 分派（session 复用 / per-call）→ 映射结果
- `execute_python_with_kernel(kernel, code, options)`：调用方已持有 kernel 时的低层入口
- `stream_python(code, options)`：以异步迭代器形式产出输出块、富展示与最终结果
- `warm_python_environment(cwd)`：预先检查可用性并启动 session kernel（永不抛出）
- `dispose_all_kernel_sessions()`：关闭默认 pool 中的所有 session kernel

环境变量：
- `KERNEL_RUNTIME_PYTHON_SKIP_CHECK=1`：跳过可用性预检查
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict

from kernel_runtime.config.loader import KernelRuntimeConfig, KernelSettings
from kernel_runtime.kernel.availability import SKIP_CHECK_ENV, ensure_kernel_available
from kernel_runtime.kernel.mapper import PythonResult, map_kernel_result
from kernel_runtime.kernel.pool import KernelSessionPool
from kernel_runtime.kernel.protocol import (
    CancelToken,
    ChunkCallback,
    DisplayCallback,
    DisplayOutput,
    KernelExecuteOptions,
    KernelExecutor,
    KernelHandle,
    KernelMode,
    KernelStartOptions,
    emit_chunk,
    emit_display,
)
from kernel_runtime.kernel.sink import OutputSink

logger = logging.getLogger(__name__)

SESSION_FILE_ENV = "KERNEL_RUNTIME_SESSION_FILE"
ARTIFACTS_ENV = "ARTIFACTS"


@dataclass
class PythonExecutorOptions:
    """
    一次 python 执行的参数。

    字段：
    - cwd：工作目录（默认当前进程 cwd）
    - timeout_ms：超时；None 表示不设超时
    - on_chunk：输出块回调（同步或异步）
    - on_display：富展示输出回调（同步或异步）
    - cancel：取消令牌
    - session_id：session key（默认 `session:<cwd>`）
    - kernel_mode：session | per-call
    - reset：执行前重启 session kernel
    - env：追加给 kernel 的环境变量
    - session_file：通过 `KERNEL_RUNTIME_SESSION_FILE` 暴露给被执行代码
    - artifacts_dir：通过 `ARTIFACTS` 暴露给被执行代码
    - artifact_path：输出被截断时完整输出的落盘路径
    - max_output_bytes：返回输出的上限；None 表示不截断
    - python_path：显式解释器
    """

    cwd: Optional[Path] = None
    timeout_ms: Optional[int] = None
    on_chunk: Optional[ChunkCallback] = None
    cancel: Optional[CancelToken] = None
    session_id: Optional[str] = None
    kernel_mode: KernelMode = "session"
    reset: bool = False
    env: Optional[Mapping[str, str]] = None
    session_file: Optional[str] = None
    artifacts_dir: Optional[str] = None
    artifact_path: Optional[Path] = None
    max_output_bytes: Optional[int] = None
    python_path: Optional[str] = None
    on_display: Optional[DisplayCallback] = None


_default_pool: Optional[KernelSessionPool] = None
_default_pool_loop: Optional[asyncio.AbstractEventLoop] = None


def create_pool(settings: Optional[KernelSettings] = None) -> KernelSessionPool:
    """按配置创建一个 pool。"""

    cfg = settings or KernelSettings()
    return KernelSessionPool(
        max_restarts=cfg.max_restarts,
        heartbeat_interval_ms=cfg.heartbeat_interval_ms,
        ping_timeout_ms=cfg.ping_timeout_ms,
    )


def get_default_pool() -> KernelSessionPool:
    """
    返回绑定当前 event loop 的默认 pool。

    说明：
    - pool 绑定创建它的 event loop；在新的 loop 中调用时会创建新的 pool（旧 loop 上的 kernel 无法再被驱动）。
    """

    global _default_pool, _default_pool_loop
    loop = asyncio.get_running_loop()
    if _default_pool is None or _default_pool_loop is not loop:
        if _default_pool is not None and len(_default_pool):
            logger.warning("Default kernel pool belonged to another event loop; %d session(s) dropped", len(_default_pool))
        _default_pool = create_pool()
        _default_pool_loop = loop
    return _default_pool


async def dispose_all_kernel_sessions() -> None:
    """关闭默认 pool 中的所有 session kernel（永不抛出；可重复调用）。"""

    if _default_pool is None or _default_pool_loop is not asyncio.get_running_loop():
        return
    await _default_pool.dispose_all()


def _kernel_env(options: PythonExecutorOptions) -> Dict[str, str]:
    env: Dict[str, str] = dict(options.env or {})
    if options.session_file:
        env[SESSION_FILE_ENV] = str(options.session_file)
    if options.artifacts_dir:
        env[ARTIFACTS_ENV] = str(options.artifacts_dir)
    return env


def build_start_options(
    options: PythonExecutorOptions,
    *,
    cwd: Path,
    settings: Optional[KernelSettings] = None,
) -> KernelStartOptions:
    """把执行参数与 kernel 配置合成 spawn 参数。"""

    cfg = settings or KernelSettings()
    return KernelStartOptions(
        cwd=cwd,
        env=_kernel_env(options),
        python_path=options.python_path or cfg.python_path,
        startup_timeout_ms=cfg.startup_timeout_ms,
        ping_timeout_ms=cfg.ping_timeout_ms,
        interrupt_grace_ms=cfg.interrupt_grace_ms,
        shutdown_timeout_ms=cfg.shutdown_timeout_ms,
    )


async def execute_python_with_kernel(
    kernel: KernelExecutor,
    code: str,
    options: Optional[PythonExecutorOptions] = None,
) -> PythonResult:
    """
    在给定 kernel 上执行代码并映射结果。

    参数：
    - kernel：任何实现了 `execute(code, options)` 的对象
    - code：源码
    - options：执行参数（只使用 on_chunk/on_display/cancel/timeout_ms/cwd/max_output_bytes/artifact_path）

    异常：
    - kernel 层异常（DeadKernelError 等）记日志后原样抛出
    """

    opts = options or PythonExecutorOptions()
    sink = OutputSink(on_chunk=opts.on_chunk, max_output_bytes=opts.max_output_bytes, artifact_path=opts.artifact_path)
    displays: List[DisplayOutput] = []

    async def _on_display(output: DisplayOutput) -> None:
        displays.append(output)
        await emit_display(opts.on_display, output)

    try:
        raw = await kernel.execute(
            code,
            KernelExecuteOptions(
                on_chunk=sink.push,
                cancel=opts.cancel,
                timeout_ms=opts.timeout_ms,
                cwd=opts.cwd,
                on_display=_on_display,
            ),
        )
    except Exception as exc:
        logger.error("Python execution failed: %s", exc)
        raise
    return map_kernel_result(raw, sink, timeout_ms=opts.timeout_ms, display_outputs=displays)


class WarmResult(BaseModel):
    """`warm_python_environment` 的结果；失败时 reason 给出原因。"""

    model_config = ConfigDict(extra="forbid")

    ok: bool
    reason: Optional[str] = None


async def warm_python_environment(
    cwd: Path,
    session_id: Optional[str] = None,
    *,
    pool: Optional[KernelSessionPool] = None,
    config: Optional[KernelRuntimeConfig] = None,
    session_file: Optional[str] = None,
    artifacts_dir: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    python_path: Optional[str] = None,
) -> WarmResult:
    """
    预热：检查可用性，并在 session key 上启动（或复用）一个 kernel，让首次执行不必等待 spawn。

    参数：
    - cwd：kernel 工作目录
    - session_id：session key（默认 `session:<cwd>`，与 `execute_python` 一致）
    - 其余参数与 `PythonExecutorOptions` 同名字段含义相同

    返回：
    - WarmResult：任何失败都折算为 ok=False，不抛异常
    """

    opts = PythonExecutorOptions(
        cwd=Path(cwd),
        session_id=session_id,
        env=env,
        session_file=session_file,
        artifacts_dir=artifacts_dir,
        python_path=python_path,
    )
    settings = config.kernel if config is not None else None
    resolved_python = python_path or (settings.python_path if settings is not None else None)
    try:
        if os.environ.get(SKIP_CHECK_ENV) != "1":
            await ensure_kernel_available(Path(cwd), python_path=resolved_python)
        start_options = build_start_options(opts, cwd=Path(cwd), settings=settings)

        async def _handler(kernel: KernelHandle) -> None:
            return None

        await (pool or get_default_pool()).run(session_id or f"session:{cwd}", _handler, start_options=start_options)
    except Exception as exc:
        reason = getattr(exc, "reason", None) or str(exc) or type(exc).__name__
        logger.warning("Python kernel warm-up failed for %s: %s", cwd, reason)
        return WarmResult(ok=False, reason=reason)
    return WarmResult(ok=True)


async def execute_python(
    code: str,
    options: Optional[PythonExecutorOptions] = None,
    *,
    pool: Optional[KernelSessionPool] = None,
    config: Optional[KernelRuntimeConfig] = None,
) -> PythonResult:
    """
    执行一段 python 代码。

    参数：
    - code：源码
    - options：执行参数
    - pool：使用的 pool（默认 `get_default_pool()`）
    - config：kernel 配置（spawn 超时、解释器等；默认使用内置默认值）

    返回：
    - PythonResult

    异常：
    - KernelUnavailableError：可用性检查失败（未设置 `KERNEL_RUNTIME_PYTHON_SKIP_CHECK=1` 时）
    - SpawnError / DeadKernelError：spawn 失败或恢复一次后仍失败
    """

    opts = options or PythonExecutorOptions()
    cwd = Path(opts.cwd) if opts.cwd is not None else Path.cwd()
    settings = config.kernel if config is not None else None
    python_path = opts.python_path or (settings.python_path if settings is not None else None)

    if os.environ.get(SKIP_CHECK_ENV) != "1":
        await ensure_kernel_available(cwd, python_path=python_path)

    start_options = build_start_options(opts, cwd=cwd, settings=settings)
    active_pool = pool or get_default_pool()

    async def _handler(kernel: KernelHandle) -> PythonResult:
        return await execute_python_with_kernel(kernel, code, opts)

    if opts.kernel_mode == "per-call":
        return await active_pool.run_per_call(_handler, start_options=start_options)

    key = opts.session_id or f"session:{cwd}"
    return await active_pool.run(key, _handler, start_options=start_options, reset=opts.reset)


@dataclass(frozen=True)
class StreamEvent:
    """`stream_python` 产出的事件：输出块（chunk）、富展示（display）或最终结果（result）。"""

    kind: Literal["chunk", "display", "result"]
    text: str = ""
    result: Optional[PythonResult] = None
    display: Optional[DisplayOutput] = None


_END = object()


async def stream_python(
    code: str,
    options: Optional[PythonExecutorOptions] = None,
    *,
    pool: Optional[KernelSessionPool] = None,
    config: Optional[KernelRuntimeConfig] = None,
) -> AsyncIterator[StreamEvent]:
    """
    以异步迭代器形式执行代码：按到达顺序产出 chunk/display 事件，最后产出一个 result 事件。

    说明：
    - 提前结束迭代（break / aclose）会取消本次执行（中断 kernel，而不是杀进程）；
    - options.on_chunk / options.on_display 仍会被调用。
    """

    opts = options or PythonExecutorOptions()
    outer_cancel = opts.cancel
    token = CancelToken(checker=(lambda: outer_cancel.cancelled) if outer_cancel is not None else None)
    queue: "asyncio.Queue[object]" = asyncio.Queue()
    user_on_chunk = opts.on_chunk
    user_on_display = opts.on_display

    async def _on_chunk(text: str) -> None:
        queue.put_nowait(StreamEvent(kind="chunk", text=text))
        await emit_chunk(user_on_chunk, text)

    async def _on_display(output: DisplayOutput) -> None:
        queue.put_nowait(StreamEvent(kind="display", display=output))
        await emit_display(user_on_display, output)

    run_opts = dataclasses.replace(opts, on_chunk=_on_chunk, on_display=_on_display, cancel=token)
    task = asyncio.ensure_future(execute_python(code, run_opts, pool=pool, config=config))
    task.add_done_callback(lambda _: queue.put_nowait(_END))
    try:
        while True:
            item = await queue.get()
            if item is _END:
                break
            yield item  # type: ignore[misc]
        yield StreamEvent(kind="result", result=task.result())
    finally:
        if not task.done():
            token.cancel()
            await asyncio.gather(task, return_exceptions=True)
