from __future__ import annotations

import asyncio
from pathlib import Path
from typing import List

import pytest

from conftest import FakeKernel, FakeKernelFactory
from kernel_runtime.core.errors import DeadKernelError, SpawnError
from kernel_runtime.kernel.pool import KernelSessionPool
from kernel_runtime.kernel.protocol import CancelToken, KernelExecuteOptions, KernelHandle, KernelStartOptions


def _start(tmp_path: Path) -> KernelStartOptions:
    return KernelStartOptions(cwd=tmp_path)


def test_session_calls_reuse_one_kernel(tmp_path: Path, fake_factory: FakeKernelFactory) -> None:
    async def _run() -> None:
        pool = KernelSessionPool(kernel_factory=fake_factory)
        r1 = await pool.execute("s", "a = 1", start_options=_start(tmp_path))
        r2 = await pool.execute("s", "print(a)", start_options=_start(tmp_path))
        assert r1.status == "ok" and r2.status == "ok"
        assert len(fake_factory.spawned) == 1
        assert fake_factory.spawned[0].executed == ["a = 1", "print(a)"]
        assert pool.keys() == ["s"]
        await pool.dispose_all()

    asyncio.run(_run())


def test_reset_shuts_down_old_kernel_before_spawning_new(tmp_path: Path, fake_factory: FakeKernelFactory) -> None:
    async def _run() -> None:
        pool = KernelSessionPool(kernel_factory=fake_factory)
        await pool.execute("s", "x = 1", start_options=_start(tmp_path))
        await pool.execute("s", "x", start_options=_start(tmp_path), reset=True)
        assert len(fake_factory.spawned) == 2
        first, second = fake_factory.spawned
        assert first.shutdown_calls == 1
        assert second.executed == ["x"]
        assert fake_factory.events.index(("shutdown", "k1")) < fake_factory.events.index(("spawn", "k2"))
        await pool.dispose_all()

    asyncio.run(_run())


def test_reset_on_first_call_spawns_once(tmp_path: Path, fake_factory: FakeKernelFactory) -> None:
    async def _run() -> None:
        pool = KernelSessionPool(kernel_factory=fake_factory)
        await pool.execute("s", "x = 1", start_options=_start(tmp_path), reset=True)
        assert len(fake_factory.spawned) == 1
        await pool.dispose_all()

    asyncio.run(_run())


def test_per_call_spawns_and_shuts_down_every_call(tmp_path: Path, fake_factory: FakeKernelFactory) -> None:
    async def _handler(kernel: KernelHandle) -> str:
        result = await kernel.execute("print(1)")
        return result.status

    async def _run() -> None:
        pool = KernelSessionPool(kernel_factory=fake_factory)
        for _ in range(3):
            assert await pool.run_per_call(_handler, start_options=_start(tmp_path)) == "ok"
        assert len(fake_factory.spawned) == 3
        assert all(k.shutdown_calls == 1 for k in fake_factory.spawned)
        assert len(pool) == 0

    asyncio.run(_run())


def test_per_call_shuts_down_when_handler_raises(tmp_path: Path, fake_factory: FakeKernelFactory) -> None:
    async def _handler(kernel: KernelHandle) -> None:
        raise RuntimeError("handler failed")

    async def _run() -> None:
        pool = KernelSessionPool(kernel_factory=fake_factory)
        with pytest.raises(RuntimeError):
            await pool.run_per_call(_handler, start_options=_start(tmp_path))
        assert fake_factory.spawned[0].shutdown_calls == 1

    asyncio.run(_run())


def test_dispose_all_is_idempotent(tmp_path: Path, fake_factory: FakeKernelFactory) -> None:
    async def _run() -> None:
        pool = KernelSessionPool(kernel_factory=fake_factory)
        await pool.execute("a", "1", start_options=_start(tmp_path))
        await pool.execute("b", "2", start_options=_start(tmp_path))
        await pool.dispose_all()
        await pool.dispose_all()
        assert len(pool) == 0
        assert [k.shutdown_calls for k in fake_factory.spawned] == [1, 1]

    asyncio.run(_run())


def test_dispose_all_tolerates_shutdown_failures(tmp_path: Path, fake_factory: FakeKernelFactory) -> None:
    async def _run() -> None:
        pool = KernelSessionPool(kernel_factory=fake_factory)
        await pool.execute("a", "1", start_options=_start(tmp_path))

        async def _broken_shutdown() -> None:
            raise OSError("kill failed")

        fake_factory.spawned[0].shutdown = _broken_shutdown  # type: ignore[method-assign]
        await pool.dispose_all()
        assert len(pool) == 0

    asyncio.run(_run())


def test_same_key_calls_are_serialized(tmp_path: Path, fake_factory: FakeKernelFactory) -> None:
    async def _run() -> None:
        pool = KernelSessionPool(kernel_factory=fake_factory)
        await asyncio.gather(*(pool.execute("s", f"n{i}", start_options=_start(tmp_path)) for i in range(5)))
        assert len(fake_factory.spawned) == 1
        assert fake_factory.spawned[0].max_running == 1
        assert len(fake_factory.spawned[0].executed) == 5
        await pool.dispose_all()

    asyncio.run(_run())


def test_different_keys_get_separate_kernels(tmp_path: Path, fake_factory: FakeKernelFactory) -> None:
    async def _run() -> None:
        pool = KernelSessionPool(kernel_factory=fake_factory)
        await asyncio.gather(
            pool.execute("a", "1", start_options=_start(tmp_path)),
            pool.execute("b", "2", start_options=_start(tmp_path)),
        )
        assert len(fake_factory.spawned) == 2
        assert sorted(pool.keys()) == ["a", "b"]
        await pool.dispose_all()

    asyncio.run(_run())


def test_dead_kernel_is_restarted_before_the_call(tmp_path: Path, fake_factory: FakeKernelFactory) -> None:
    async def _run() -> None:
        pool = KernelSessionPool(kernel_factory=fake_factory)
        await pool.execute("s", "1", start_options=_start(tmp_path))
        fake_factory.spawned[0].alive = False
        result = await pool.execute("s", "2", start_options=_start(tmp_path))
        assert result.status == "ok"
        assert len(fake_factory.spawned) == 2
        assert fake_factory.spawned[1].executed == ["2"]
        await pool.dispose_all()

    asyncio.run(_run())


def test_kernel_dying_mid_call_is_retried_once(tmp_path: Path, fake_factory: FakeKernelFactory) -> None:
    async def _handler(kernel: KernelHandle) -> str:
        if kernel.kernel_id == "k1":
            assert isinstance(kernel, FakeKernel)
            kernel.alive = False
            raise DeadKernelError("lost the kernel", kernel_id=kernel.kernel_id)
        return kernel.kernel_id

    async def _run() -> None:
        pool = KernelSessionPool(kernel_factory=fake_factory)
        assert await pool.run("s", _handler, start_options=_start(tmp_path)) == "k2"
        assert fake_factory.spawned[0].shutdown_calls == 1
        await pool.dispose_all()

    asyncio.run(_run())


def test_retry_failure_propagates_and_next_call_recovers(tmp_path: Path, fake_factory: FakeKernelFactory) -> None:
    async def _run() -> None:
        pool = KernelSessionPool(kernel_factory=fake_factory)
        with pytest.raises(DeadKernelError):
            await pool.execute("s", "die", start_options=_start(tmp_path))
        assert len(fake_factory.spawned) == 2
        result = await pool.execute("s", "ok", start_options=_start(tmp_path))
        assert result.status == "ok"
        assert len(fake_factory.spawned) == 3
        await pool.dispose_all()

    asyncio.run(_run())


def test_too_many_restarts_raises(tmp_path: Path, fake_factory: FakeKernelFactory) -> None:
    async def _run() -> None:
        pool = KernelSessionPool(kernel_factory=fake_factory, max_restarts=0)
        await pool.execute("s", "1", start_options=_start(tmp_path))
        fake_factory.spawned[0].alive = False
        with pytest.raises(DeadKernelError, match="restarted too many times"):
            await pool.execute("s", "2", start_options=_start(tmp_path))
        await pool.dispose_all()

    asyncio.run(_run())


def test_user_errors_do_not_restart(tmp_path: Path, fake_factory: FakeKernelFactory) -> None:
    async def _run() -> None:
        pool = KernelSessionPool(kernel_factory=fake_factory)
        result = await pool.execute("s", "error", start_options=_start(tmp_path))
        assert result.status == "error"
        await pool.execute("s", "after", start_options=_start(tmp_path))
        assert len(fake_factory.spawned) == 1
        await pool.dispose_all()

    asyncio.run(_run())


def test_handler_exception_with_live_kernel_is_not_retried(tmp_path: Path, fake_factory: FakeKernelFactory) -> None:
    calls: List[str] = []

    async def _handler(kernel: KernelHandle) -> None:
        calls.append(kernel.kernel_id)
        raise ValueError("bad handler")

    async def _run() -> None:
        pool = KernelSessionPool(kernel_factory=fake_factory)
        with pytest.raises(ValueError):
            await pool.run("s", _handler, start_options=_start(tmp_path))
        assert calls == ["k1"]
        await pool.dispose_all()

    asyncio.run(_run())


def test_spawn_failure_propagates(tmp_path: Path, fake_factory: FakeKernelFactory) -> None:
    async def _run() -> None:
        fake_factory.fail_spawn = True
        pool = KernelSessionPool(kernel_factory=fake_factory)
        with pytest.raises(SpawnError):
            await pool.execute("s", "1", start_options=_start(tmp_path))
        fake_factory.fail_spawn = False
        assert (await pool.execute("s", "1", start_options=_start(tmp_path))).status == "ok"
        await pool.dispose_all()

    asyncio.run(_run())


def test_timed_out_call_pings_kernel_before_reuse(tmp_path: Path, fake_factory: FakeKernelFactory) -> None:
    async def _run() -> None:
        pool = KernelSessionPool(kernel_factory=fake_factory)
        result = await pool.execute(
            "s",
            "slow",
            start_options=_start(tmp_path),
            options=KernelExecuteOptions(timeout_ms=20),
        )
        assert result.timed_out is True
        kernel = fake_factory.spawned[0]
        assert kernel.interrupts == 1
        assert kernel.ping_calls == 0

        await pool.execute("s", "next", start_options=_start(tmp_path))
        assert kernel.ping_calls == 1
        assert len(fake_factory.spawned) == 1

        # 探测只发生在恢复路径上
        await pool.execute("s", "again", start_options=_start(tmp_path))
        assert kernel.ping_calls == 1
        await pool.dispose_all()

    asyncio.run(_run())


def test_unresponsive_kernel_is_replaced_after_cancel(tmp_path: Path, fake_factory: FakeKernelFactory) -> None:
    async def _run() -> None:
        pool = KernelSessionPool(kernel_factory=fake_factory)
        token = CancelToken()
        asyncio.get_running_loop().call_later(0.02, token.cancel)
        result = await pool.execute("s", "slow", start_options=_start(tmp_path), options=KernelExecuteOptions(cancel=token))
        assert result.cancelled is True and result.timed_out is False

        fake_factory.spawned[0].ping_ok = False
        await pool.execute("s", "next", start_options=_start(tmp_path))
        assert len(fake_factory.spawned) == 2
        assert fake_factory.spawned[0].shutdown_calls == 1
        assert fake_factory.spawned[1].executed == ["next"]
        await pool.dispose_all()

    asyncio.run(_run())


def test_dispose_while_waiting_does_not_leak_kernel(tmp_path: Path, fake_factory: FakeKernelFactory) -> None:
    async def _run() -> None:
        pool = KernelSessionPool(kernel_factory=fake_factory)
        token = CancelToken()
        first = asyncio.ensure_future(
            pool.execute("s", "slow", start_options=_start(tmp_path), options=KernelExecuteOptions(cancel=token))
        )
        await asyncio.sleep(0.01)
        second = asyncio.ensure_future(pool.execute("s", "queued", start_options=_start(tmp_path)))
        await asyncio.sleep(0.01)
        await pool.dispose_all()
        token.cancel()
        await asyncio.gather(first, return_exceptions=True)
        await second
        # 排队的调用落在新条目上；收尾后不应留下存活 kernel
        await pool.dispose_all()
        assert all(not k.alive for k in fake_factory.spawned)

    asyncio.run(_run())


def test_reset_key_drops_kernel(tmp_path: Path, fake_factory: FakeKernelFactory) -> None:
    async def _run() -> None:
        pool = KernelSessionPool(kernel_factory=fake_factory)
        await pool.execute("s", "1", start_options=_start(tmp_path))
        await pool.reset("s")
        await pool.reset("missing")
        assert fake_factory.spawned[0].shutdown_calls == 1
        await pool.execute("s", "2", start_options=_start(tmp_path))
        assert len(fake_factory.spawned) == 2
        await pool.dispose("s")
        assert "s" not in pool
        assert fake_factory.spawned[1].shutdown_calls == 1

    asyncio.run(_run())


def test_heartbeat_releases_dead_idle_kernel(tmp_path: Path, fake_factory: FakeKernelFactory) -> None:
    async def _run() -> None:
        pool = KernelSessionPool(kernel_factory=fake_factory, heartbeat_interval_ms=10)
        await pool.execute("s", "1", start_options=_start(tmp_path))
        fake_factory.spawned[0].ping_ok = False
        await asyncio.sleep(0.08)
        assert fake_factory.spawned[0].shutdown_calls == 1
        await pool.execute("s", "2", start_options=_start(tmp_path))
        assert len(fake_factory.spawned) == 2
        await pool.dispose_all()

    asyncio.run(_run())


def test_invalid_limits_are_rejected() -> None:
    with pytest.raises(ValueError):
        KernelSessionPool(max_restarts=-1)
    with pytest.raises(ValueError):
        KernelSessionPool(heartbeat_interval_ms=-5)
