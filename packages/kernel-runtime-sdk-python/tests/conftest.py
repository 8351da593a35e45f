from __future__ import annotations

import asyncio
from typing import Any, List, Optional, Tuple

import pytest

from kernel_runtime.core.errors import DeadKernelError, SpawnError
from kernel_runtime.kernel.coordinator import run_with_deadline
from kernel_runtime.kernel.protocol import (
    DisplayOutput,
    KernelExecuteOptions,
    KernelExecuteResult,
    KernelStartOptions,
    emit_chunk,
    emit_display,
)


class FakeKernel:
    """
    内存中的 kernel 替身（实现 KernelHandle）。

    代码约定：
    - `die`：kernel 死亡并抛出 DeadKernelError
    - `error`：输出 traceback 并返回 status=error
    - `slow`：挂起直到被中断（走真实的 run_with_deadline 竞态）
    - `input`：标记 stdin_requested
    - `display`：输出一行文本，再依次回调一张图片与一个 JSON 展示
    - 其它：把代码本身作为一行输出
    """

    def __init__(self, kernel_id: str, events: List[Tuple[str, str]], start_options: KernelStartOptions) -> None:
        self.kernel_id = kernel_id
        self.start_options = start_options
        self.alive = True
        self.ping_ok = True
        self.executed: List[str] = []
        self.shutdown_calls = 0
        self.ping_calls = 0
        self.interrupts = 0
        self.running = 0
        self.max_running = 0
        self._events = events

    def is_alive(self) -> bool:
        return self.alive

    async def ping(self, timeout_ms: Optional[int] = None) -> bool:
        self.ping_calls += 1
        return self.alive and self.ping_ok

    async def shutdown(self) -> None:
        self.shutdown_calls += 1
        self.alive = False
        self._events.append(("shutdown", self.kernel_id))

    async def execute(self, code: str, options: Optional[KernelExecuteOptions] = None) -> KernelExecuteResult:
        opts = options or KernelExecuteOptions()
        if not self.alive:
            raise DeadKernelError("fake kernel is dead", kernel_id=self.kernel_id)
        self.executed.append(code)
        self._events.append(("execute", self.kernel_id))
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            await asyncio.sleep(0)
            if code == "die":
                self.alive = False
                raise DeadKernelError("fake kernel crashed", kernel_id=self.kernel_id)
            if code == "error":
                await emit_chunk(opts.on_chunk, "Traceback (most recent call last):\n")
                await emit_chunk(opts.on_chunk, "ValueError: boom\n")
                return KernelExecuteResult(status="error", kernel_status="error", error_name="ValueError", error_value="boom")
            if code == "input":
                return KernelExecuteResult(stdin_requested=True)
            if code == "display":
                await emit_chunk(opts.on_chunk, "table\n")
                await emit_display(opts.on_display, DisplayOutput(type="image", data="aW1n", mime_type="image/png"))
                await emit_display(opts.on_display, DisplayOutput(type="json", data={"rows": 2}))
                return KernelExecuteResult()
            if code == "slow":
                return await self._slow(opts)
            await emit_chunk(opts.on_chunk, f"{code}\n")
            return KernelExecuteResult()
        finally:
            self.running -= 1

    async def _slow(self, opts: KernelExecuteOptions) -> KernelExecuteResult:
        loop = asyncio.get_running_loop()
        done: "asyncio.Future[dict[str, Any]]" = loop.create_future()
        await emit_chunk(opts.on_chunk, "started\n")

        async def _interrupt() -> None:
            self.interrupts += 1
            if not done.done():
                done.set_result({"status": "interrupted"})

        outcome = await run_with_deadline(
            done,
            interrupt=_interrupt,
            cancel=opts.cancel,
            timeout_ms=opts.timeout_ms,
            interrupt_grace_ms=1000,
        )
        status = (outcome.value or {}).get("status", "ok")
        return KernelExecuteResult(
            cancelled=outcome.cancelled,
            timed_out=outcome.timed_out,
            kernel_status=status,
            kernel_dead=outcome.kernel_dead,
        )


class FakeKernelFactory:
    """记录 spawn/shutdown 顺序的 kernel 工厂。"""

    def __init__(self) -> None:
        self.spawned: List[FakeKernel] = []
        self.events: List[Tuple[str, str]] = []
        self.fail_spawn = False

    async def __call__(self, options: KernelStartOptions) -> FakeKernel:
        if self.fail_spawn:
            raise SpawnError("fake spawn failure")
        kernel = FakeKernel(f"k{len(self.spawned) + 1}", self.events, options)
        self.spawned.append(kernel)
        self.events.append(("spawn", kernel.kernel_id))
        return kernel


@pytest.fixture
def fake_factory() -> FakeKernelFactory:
    return FakeKernelFactory()


@pytest.fixture
def skip_availability_check(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("KERNEL_RUNTIME_PYTHON_SKIP_CHECK", "1")
