"""
Session Pool：按 session key 复用 kernel。

两种模式：
- session（`run`/`execute`）：同一 key 至多一个存活 kernel；同一 key 的调用按 `asyncio.Lock` 串行，跨 key 并行；
- per-call（`run_per_call`）：每次调用 spawn 一个 kernel，结束后在 finally 中关闭，不进入注册表。

恢复策略：
- 调用前发现 kernel 已死：重启；
- handler 失败且 kernel 不再存活（或抛出 DeadKernelError/InterruptFailure）：重启并重试一次；
- 两次成功之间的重启次数超过 `max_restarts`：抛出 `DeadKernelError("kernel restarted too many times")`；
- 上一次调用被取消/超时：下一次复用前先 ping 一次（探测只发生在恢复路径上）。

关闭：
- `dispose_all()` 一步摘下整个注册表，再尽力关闭所有 kernel；失败只记日志，永不抛出；幂等。
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, TypeVar

from kernel_runtime.core.errors import DeadKernelError, InterruptFailure
from kernel_runtime.kernel.protocol import (
    KernelExecuteOptions,
    KernelExecuteResult,
    KernelFactory,
    KernelHandle,
    KernelStartOptions,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

KernelHandler = Callable[[KernelHandle], Awaitable[T]]


@dataclass
class _KernelSession:
    """注册表条目：一个 key 对应的 kernel 与其串行锁。"""

    key: str
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    kernel: Optional[KernelHandle] = None
    needs_ping: bool = False
    restarts: int = 0
    executions: int = 0
    disposed: bool = False


async def _default_kernel_factory(options: KernelStartOptions) -> KernelHandle:
    from kernel_runtime.kernel.process import KernelProcess

    return await KernelProcess.start(options)


class KernelSessionPool:
    """
    kernel 会话池。

    参数：
    - kernel_factory：spawn 函数（默认 `KernelProcess.start`；测试可注入 fake kernel）
    - max_restarts：两次成功之间允许的重启次数
    - heartbeat_interval_ms：>0 时启用后台心跳，定期 ping 空闲 kernel 并回收已死的 kernel
    - ping_timeout_ms：探测/心跳使用的 ping 超时（None 表示使用 kernel 自身的默认值）

    说明：
    - 一个 pool 实例绑定一个运行中的 event loop。
    """

    def __init__(
        self,
        *,
        kernel_factory: Optional[KernelFactory] = None,
        max_restarts: int = 1,
        heartbeat_interval_ms: int = 0,
        ping_timeout_ms: Optional[int] = None,
    ) -> None:
        if max_restarts < 0:
            raise ValueError("max_restarts must be >= 0")
        if heartbeat_interval_ms < 0:
            raise ValueError("heartbeat_interval_ms must be >= 0")
        self._kernel_factory: KernelFactory = kernel_factory or _default_kernel_factory
        self._max_restarts = max_restarts
        self._heartbeat_interval_ms = heartbeat_interval_ms
        self._ping_timeout_ms = ping_timeout_ms
        self._sessions: Dict[str, _KernelSession] = {}
        self._heartbeat_task: Optional["asyncio.Task[None]"] = None

    def keys(self) -> List[str]:
        return list(self._sessions.keys())

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, key: object) -> bool:
        return key in self._sessions

    def _get_or_create(self, key: str) -> _KernelSession:
        # 查找与插入之间没有 await：并发的首次调用只会创建一个条目
        entry = self._sessions.get(key)
        if entry is None:
            entry = _KernelSession(key=key)
            self._sessions[key] = entry
        return entry

    async def run(
        self,
        key: str,
        handler: KernelHandler[T],
        *,
        start_options: KernelStartOptions,
        reset: bool = False,
    ) -> T:
        """
        在 key 对应的 kernel 上运行 handler（session 模式）。

        参数：
        - key：session key
        - handler：接收 kernel 的协程函数
        - start_options：需要 spawn 时使用的参数
        - reset：先关闭旧 kernel 再 spawn 新 kernel（在 key 锁内完成）

        异常：
        - SpawnError：spawn 失败
        - DeadKernelError：重启一次后仍失败，或重启次数超过上限
        """

        self._ensure_heartbeat()
        while True:
            entry = self._get_or_create(key)
            async with entry.lock:
                if entry.disposed:
                    # 等锁期间条目已被 dispose：按新调用重新取条目
                    continue
                return await self._run_locked(entry, handler, start_options=start_options, reset=reset)

    async def execute(
        self,
        key: str,
        code: str,
        *,
        start_options: KernelStartOptions,
        options: Optional[KernelExecuteOptions] = None,
        reset: bool = False,
    ) -> KernelExecuteResult:
        """`run` 的便捷形式：在 session kernel 上执行一段代码。"""

        async def _handler(kernel: KernelHandle) -> KernelExecuteResult:
            return await kernel.execute(code, options)

        return await self.run(key, _handler, start_options=start_options, reset=reset)

    async def run_per_call(self, handler: KernelHandler[T], *, start_options: KernelStartOptions) -> T:
        """spawn → handler → 关闭（无论成功与否）；不进入注册表。"""

        kernel = await self._kernel_factory(start_options)
        try:
            return await handler(kernel)
        finally:
            await self._safe_shutdown(kernel, reason="per-call")

    async def reset(self, key: str) -> None:
        """关闭 key 对应的 kernel；条目保留，下次调用重新 spawn。"""

        entry = self._sessions.get(key)
        if entry is None:
            return
        async with entry.lock:
            await self._drop_kernel(entry, reason="reset")
            entry.restarts = 0
            entry.needs_ping = False

    async def dispose(self, key: str) -> None:
        """移除 key 并关闭其 kernel（不等待在途执行；在途执行会以 DeadKernelError 结束）。"""

        entry = self._sessions.pop(key, None)
        if entry is None:
            return
        await self._dispose_entry(entry)

    async def dispose_all(self) -> None:
        """摘下整个注册表并尽力关闭所有 kernel；永不抛出，可重复调用。"""

        entries, self._sessions = list(self._sessions.values()), {}
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is not None and not task.done():
            task.cancel()
        if not entries:
            return
        results = await asyncio.gather(*(self._dispose_entry(e) for e in entries), return_exceptions=True)
        for entry, result in zip(entries, results):
            if isinstance(result, BaseException):
                logger.warning("Failed to dispose kernel session %s: %s", entry.key, result)
        logger.debug("Disposed %d kernel session(s)", len(entries))

    async def _dispose_entry(self, entry: _KernelSession) -> None:
        entry.disposed = True
        kernel, entry.kernel = entry.kernel, None
        if kernel is not None:
            await self._safe_shutdown(kernel, reason=f"dispose {entry.key}")

    async def _run_locked(
        self,
        entry: _KernelSession,
        handler: KernelHandler[T],
        *,
        start_options: KernelStartOptions,
        reset: bool,
    ) -> T:
        if reset and entry.kernel is not None:
            await self._drop_kernel(entry, reason="reset requested")
            entry.restarts = 0
            entry.needs_ping = False

        kernel = await self._ensure_kernel(entry, start_options)
        try:
            result = await self._invoke(entry, kernel, handler)
        except Exception as exc:
            if not self._is_transport_failure(exc, kernel):
                raise
            logger.warning("Kernel for session %s failed (%s); restarting and retrying once", entry.key, exc)
            await self._restart(entry, reason=str(exc))
            kernel = await self._ensure_kernel(entry, start_options)
            try:
                result = await self._invoke(entry, kernel, handler)
            except Exception:
                # 重试也失败：错误交给调用方，下一次调用重新计数
                entry.restarts = 0
                raise

        entry.restarts = 0
        return result

    async def _invoke(self, entry: _KernelSession, kernel: KernelHandle, handler: KernelHandler[T]) -> T:
        try:
            result = await handler(kernel)
        except asyncio.CancelledError:
            entry.needs_ping = True
            raise
        entry.executions += 1
        if getattr(result, "cancelled", False) or getattr(result, "kernel_dead", False):
            entry.needs_ping = True
        return result

    @staticmethod
    def _is_transport_failure(exc: Exception, kernel: KernelHandle) -> bool:
        if isinstance(exc, (DeadKernelError, InterruptFailure)):
            return True
        try:
            return not kernel.is_alive()
        except Exception:
            return True

    async def _ensure_kernel(self, entry: _KernelSession, start_options: KernelStartOptions) -> KernelHandle:
        if entry.disposed:
            raise DeadKernelError(f"kernel session was disposed: {entry.key}")

        kernel = entry.kernel
        if kernel is not None and entry.needs_ping:
            entry.needs_ping = False
            if kernel.is_alive() and not await kernel.ping(self._ping_timeout_ms):
                logger.info("Kernel for session %s did not answer ping after an interrupted call", entry.key)
                await self._restart(entry, reason="ping failed")
                kernel = None
        if kernel is not None and not kernel.is_alive():
            await self._restart(entry, reason="kernel is not alive")

        if entry.kernel is None:
            entry.kernel = await self._kernel_factory(start_options)
            logger.debug("Spawned kernel %s for session %s", entry.kernel.kernel_id, entry.key)
        return entry.kernel

    async def _restart(self, entry: _KernelSession, *, reason: str) -> None:
        entry.restarts += 1
        await self._drop_kernel(entry, reason=reason)
        if entry.restarts > self._max_restarts:
            entry.restarts = 0
            raise DeadKernelError(f"kernel restarted too many times (session {entry.key}): {reason}")

    async def _drop_kernel(self, entry: _KernelSession, *, reason: str) -> None:
        kernel, entry.kernel = entry.kernel, None
        if kernel is not None:
            await self._safe_shutdown(kernel, reason=reason)

    async def _safe_shutdown(self, kernel: KernelHandle, *, reason: str) -> None:
        try:
            await kernel.shutdown()
        except Exception:
            logger.warning("Kernel %s shutdown failed (%s)", getattr(kernel, "kernel_id", "?"), reason, exc_info=True)

    def _ensure_heartbeat(self) -> None:
        if self._heartbeat_interval_ms <= 0:
            return
        if self._heartbeat_task is not None and not self._heartbeat_task.done():
            return
        self._heartbeat_task = asyncio.ensure_future(self._heartbeat_loop())

    async def _heartbeat_loop(self) -> None:
        interval = self._heartbeat_interval_ms / 1000.0
        while True:
            await asyncio.sleep(interval)
            for entry in list(self._sessions.values()):
                if entry.kernel is None or entry.lock.locked() or entry.disposed:
                    continue
                try:
                    async with entry.lock:
                        kernel = entry.kernel
                        if kernel is None or entry.disposed:
                            continue
                        if kernel.is_alive() and await kernel.ping(self._ping_timeout_ms):
                            continue
                        logger.info("Heartbeat found dead kernel for session %s; releasing it", entry.key)
                        await self._drop_kernel(entry, reason="heartbeat failed")
                except Exception:
                    logger.warning("Heartbeat check failed for session %s", entry.key, exc_info=True)
