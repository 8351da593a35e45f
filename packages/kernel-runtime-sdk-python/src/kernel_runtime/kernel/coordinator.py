"""
Execution Coordinator：一次执行的“完成 / 超时 / 取消”三方竞态。

规则：
- deadline 计时器、取消令牌与执行完成三者竞争，只有一个胜出；
- 超时或取消胜出：对 kernel 发送一次中断（只中断当前求值，不杀进程），再在宽限期内等待 driver 报告完成；
- 执行完成胜出：两个标志均为 False；
- 胜出方决定的标志不会被后到的信号覆盖；
- 中断无法送达、宽限期内未完成、或中断后 kernel 死亡：返回 `kernel_dead=True`，不会无限挂起。
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Generic, Literal, Optional, TypeVar

from kernel_runtime.core.errors import KernelError
from kernel_runtime.kernel.protocol import CancelToken

logger = logging.getLogger(__name__)

T = TypeVar("T")

SettledBy = Literal["completed", "timeout", "cancel"]


@dataclass(frozen=True)
class RaceOutcome(Generic[T]):
    """
    竞态结果。

    字段：
    - value：执行完成时的返回值；超时/取消后若 driver 在宽限期内报告完成，也会带回该值
    - settled_by：胜出方（completed/timeout/cancel）
    - kernel_dead：中断后 kernel 失去响应
    """

    value: Optional[T] = None
    settled_by: SettledBy = "completed"
    kernel_dead: bool = False

    @property
    def cancelled(self) -> bool:
        return self.settled_by != "completed"

    @property
    def timed_out(self) -> bool:
        return self.settled_by == "timeout"


def _consume(fut: "asyncio.Future[Any]") -> None:
    """取走已完成 future 的异常，避免 “exception was never retrieved” 告警。"""

    if fut.done() and not fut.cancelled():
        fut.exception()


async def run_with_deadline(
    completion: Awaitable[T],
    *,
    interrupt: Callable[[], Awaitable[None]],
    cancel: Optional[CancelToken] = None,
    timeout_ms: Optional[int] = None,
    interrupt_grace_ms: int = 2_000,
) -> RaceOutcome[T]:
    """
    在 deadline 与取消令牌的约束下等待 `completion`。

    参数：
    - completion：代表本次执行完成的 awaitable（通常是 driver `done` 消息的 future）
    - interrupt：中断当前求值的协程函数（最多调用一次）
    - cancel：取消令牌（可选）
    - timeout_ms：超时毫秒数；None 或 <=0 表示不设超时
    - interrupt_grace_ms：中断后等待完成的宽限时间

    返回：
    - RaceOutcome

    说明：
    - completion 自身抛出的异常（例如 DeadKernelError）在其胜出时原样向上传播；
    - 外层任务被取消时，所有内部任务一并取消后重新抛出 CancelledError。
    """

    task: "asyncio.Future[T]" = asyncio.ensure_future(completion)
    watchers: Dict["asyncio.Future[Any]", SettledBy] = {}
    if timeout_ms is not None and timeout_ms > 0:
        watchers[asyncio.ensure_future(asyncio.sleep(timeout_ms / 1000.0))] = "timeout"
    if cancel is not None:
        watchers[asyncio.ensure_future(cancel.wait())] = "cancel"

    try:
        done, _ = await asyncio.wait({task, *watchers}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        for watcher in watchers:
            watcher.cancel()
        raise

    for watcher in watchers:
        if not watcher.done():
            watcher.cancel()
        else:
            _consume(watcher)

    if task in done:
        return RaceOutcome(value=task.result())

    fired = {watchers[w] for w in done if w in watchers}
    settled_by: SettledBy = "timeout" if "timeout" in fired else "cancel"
    logger.debug("Execution settled by %s; interrupting kernel", settled_by)

    kernel_dead = False
    value: Optional[T] = None
    try:
        await interrupt()
    except Exception as exc:
        logger.warning("Failed to interrupt kernel (%s); treating kernel as dead", exc)
        kernel_dead = True

    if not kernel_dead:
        try:
            value = await asyncio.wait_for(asyncio.shield(task), timeout=max(0, interrupt_grace_ms) / 1000.0)
        except asyncio.TimeoutError:
            logger.warning("Kernel did not settle within %sms after interrupt", interrupt_grace_ms)
            kernel_dead = True
        except KernelError as exc:
            logger.warning("Kernel failed after interrupt: %s", exc)
            kernel_dead = True
        except asyncio.CancelledError:
            task.cancel()
            raise

    if not task.done():
        task.cancel()
    else:
        _consume(task)
    return RaceOutcome(value=value, settled_by=settled_by, kernel_dead=kernel_dead)
