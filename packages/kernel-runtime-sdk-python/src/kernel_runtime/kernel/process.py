"""
Kernel Process：一个长驻的 Python 解释器子进程（父进程侧）。

职责：
- spawn：解析解释器与环境 → `python -u driver.py`（新 session，便于按进程组回收）→ 等待 ready 握手；
- execute：同一 kernel 同一时刻只执行一段代码；输出按到达顺序经 chunk 回调逐段转发；
- 存活检查：`is_alive()`（本地、廉价）与 `ping()`（往返、带超时、永不抛异常）；
- 中断：向解释器发送 SIGINT，只打断当前求值；
- 关闭：shutdown 消息 → 等待 → SIGTERM → SIGKILL；幂等、永不抛异常。

说明：
- stdout 管道只承载 driver 协议（JSON lines）；stderr 管道上的原始输出（子孙进程、解释器崩溃信息等）
  作为当前执行的输出块转发，空闲时只写 debug 日志。
"""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
import os
import signal
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from kernel_runtime.core.errors import DeadKernelError, InterruptFailure, SpawnError
from kernel_runtime.kernel.coordinator import run_with_deadline
from kernel_runtime.kernel.display import render_display
from kernel_runtime.kernel.env import build_kernel_env
from kernel_runtime.kernel.protocol import (
    ChunkCallback,
    DisplayCallback,
    KernelExecuteOptions,
    KernelExecuteResult,
    KernelStartOptions,
    KernelState,
    emit_chunk,
    emit_display,
)

logger = logging.getLogger(__name__)

DRIVER_PATH = Path(__file__).with_name("driver.py")

_STREAM_LIMIT = 16 * 1024 * 1024
_TERMINATE_GRACE_S = 1.0


@dataclass
class _PendingExecution:
    """一次在途执行的父进程侧记录。"""

    on_chunk: Optional[ChunkCallback]
    on_display: Optional[DisplayCallback]
    done: "asyncio.Future[Dict[str, Any]]"
    started: asyncio.Event = field(default_factory=asyncio.Event)
    stdin_requested: bool = False


class KernelProcess:
    """
    父进程侧的 kernel 句柄（实现 `KernelHandle`）。

    使用方式：
    - 通过 `await KernelProcess.start(options)` 创建；不要直接调用构造函数。
    """

    def __init__(
        self,
        *,
        kernel_id: str,
        proc: asyncio.subprocess.Process,
        options: KernelStartOptions,
        python_path: str,
    ) -> None:
        loop = asyncio.get_running_loop()
        self.kernel_id = kernel_id
        self.python_path = python_path
        self.python_version: Optional[str] = None
        self.pid = proc.pid
        self._proc = proc
        self._options = options
        self._state = KernelState.STARTING
        self._dead_reason: Optional[str] = None
        self._exec_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()
        self._pending: Dict[str, _PendingExecution] = {}
        self._current_id: Optional[str] = None
        self._pongs: Dict[str, "asyncio.Future[bool]"] = {}
        self._ready: "asyncio.Future[Dict[str, Any]]" = loop.create_future()
        self._shutdown_started = False
        self._stdout_task: Optional["asyncio.Task[None]"] = None
        self._stderr_task: Optional["asyncio.Task[None]"] = None

    @classmethod
    async def start(cls, options: KernelStartOptions) -> "KernelProcess":
        """
        spawn 一个 kernel 并等待 readiness 握手。

        异常：
        - SpawnError：工作目录不存在、找不到解释器、spawn 失败、握手前退出或握手超时
        """

        cwd = Path(options.cwd)
        if not cwd.is_dir():
            raise SpawnError(f"cwd is not an existing directory: {cwd}")
        runtime = build_kernel_env(cwd, extra=options.env, python_path=options.python_path)
        kernel_id = uuid.uuid4().hex
        try:
            proc = await asyncio.create_subprocess_exec(
                runtime.python_path,
                "-u",
                str(DRIVER_PATH),
                cwd=str(cwd),
                env=runtime.env,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
                limit=_STREAM_LIMIT,
            )
        except OSError as exc:
            raise SpawnError(f"Failed to spawn python kernel ({runtime.python_path}): {exc}", kernel_id=kernel_id) from exc

        kernel = cls(kernel_id=kernel_id, proc=proc, options=options, python_path=runtime.python_path)
        kernel._start_readers()
        try:
            ready = await asyncio.wait_for(asyncio.shield(kernel._ready), timeout=options.startup_timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            await kernel.shutdown()
            raise SpawnError(
                f"Kernel did not complete readiness handshake within {options.startup_timeout_ms}ms",
                kernel_id=kernel_id,
            ) from None
        except DeadKernelError as exc:
            await kernel.shutdown()
            raise SpawnError(f"Kernel exited before readiness handshake: {exc}", kernel_id=kernel_id) from exc

        kernel.python_version = ready.get("python")
        kernel._state = KernelState.READY
        logger.debug(
            "Kernel %s started (pid=%s, python=%s %s)",
            kernel_id,
            proc.pid,
            runtime.python_path,
            kernel.python_version,
        )
        return kernel

    @property
    def state(self) -> KernelState:
        return self._state

    def is_alive(self) -> bool:
        """本地存活检查（不做往返）。"""

        if self._state in (KernelState.TERMINATING, KernelState.DEAD):
            return False
        return self._proc.returncode is None

    async def execute(self, code: str, options: Optional[KernelExecuteOptions] = None) -> KernelExecuteResult:
        """
        执行一段代码。

        参数：
        - code：源码（最后一个表达式的 repr 会像交互式解释器一样回显）
        - options：chunk 回调/取消令牌/超时/工作目录

        返回：
        - KernelExecuteResult（被执行代码的报错是 `status=error`，不是异常）

        说明：
        - 取消令牌在提交前已经触发时不发送代码，直接返回 cancelled 结果（kernel 与其状态不受影响）

        异常：
        - DeadKernelError：kernel 已退出，或执行过程中进程死亡（且不是由本次超时/取消引起）
        """

        opts = options or KernelExecuteOptions()
        async with self._exec_lock:
            if not self.is_alive():
                raise DeadKernelError(self._dead_reason or "kernel is not alive", kernel_id=self.kernel_id)

            if opts.cancel is not None and opts.cancel.cancelled:
                return KernelExecuteResult(cancelled=True, kernel_status="interrupted")

            msg_id = uuid.uuid4().hex
            pending = _PendingExecution(
                on_chunk=opts.on_chunk,
                on_display=opts.on_display,
                done=asyncio.get_running_loop().create_future(),
            )
            self._pending[msg_id] = pending
            self._current_id = msg_id
            self._state = KernelState.EXECUTING
            try:
                await self._send(
                    {
                        "type": "execute",
                        "id": msg_id,
                        "code": code,
                        "cwd": str(opts.cwd) if opts.cwd is not None else None,
                    }
                )
                outcome = await run_with_deadline(
                    pending.done,
                    interrupt=self.interrupt,
                    cancel=opts.cancel,
                    timeout_ms=opts.timeout_ms,
                    interrupt_grace_ms=self._options.interrupt_grace_ms,
                )
            finally:
                self._pending.pop(msg_id, None)
                self._current_id = None
                if self._state is KernelState.EXECUTING:
                    self._state = KernelState.READY

            if outcome.kernel_dead:
                self._mark_dead("kernel did not settle after interrupt")

        done_msg = outcome.value or {}
        if done_msg:
            kernel_status = str(done_msg.get("status") or "ok")
        else:
            kernel_status = "dead" if outcome.kernel_dead else "interrupted"
        return KernelExecuteResult(
            status="error" if kernel_status == "error" else "ok",
            cancelled=outcome.cancelled,
            timed_out=outcome.timed_out,
            stdin_requested=pending.stdin_requested,
            kernel_status=kernel_status,  # type: ignore[arg-type]
            error_name=done_msg.get("ename"),
            error_value=done_msg.get("evalue"),
            kernel_dead=outcome.kernel_dead,
        )

    async def ping(self, timeout_ms: Optional[int] = None) -> bool:
        """往返存活检查；超时/通道断开返回 False，不抛异常。"""

        if not self.is_alive():
            return False
        ping_id = uuid.uuid4().hex
        fut: "asyncio.Future[bool]" = asyncio.get_running_loop().create_future()
        self._pongs[ping_id] = fut
        timeout = (timeout_ms if timeout_ms is not None else self._options.ping_timeout_ms) / 1000.0
        try:
            await self._send({"type": "ping", "id": ping_id})
            return bool(await asyncio.wait_for(fut, timeout=timeout))
        except (asyncio.TimeoutError, DeadKernelError):
            return False
        finally:
            self._pongs.pop(ping_id, None)

    async def interrupt(self) -> None:
        """
        中断当前求值（SIGINT）。

        说明：
        - 执行中时先等待 driver 的 started 消息（最多 interrupt_grace_ms），driver 读到 execute 之前收到的
          SIGINT 会被当作空闲期信号忽略；
        - 等待期间执行已经结束则不再发送信号。

        异常：
        - InterruptFailure：进程已不存在，或 driver 在宽限时间内没有开始求值
        """

        if self._proc.returncode is not None or self._state is KernelState.DEAD:
            raise InterruptFailure("kernel process is not running", kernel_id=self.kernel_id)
        pending = self._pending.get(self._current_id) if self._current_id else None
        if pending is not None and not pending.started.is_set():
            started = asyncio.ensure_future(pending.started.wait())
            try:
                await asyncio.wait(
                    {started, pending.done},
                    timeout=self._options.interrupt_grace_ms / 1000.0,
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                started.cancel()
            if pending.done.done():
                return
            if not pending.started.is_set():
                raise InterruptFailure("kernel did not start evaluating before the interrupt", kernel_id=self.kernel_id)
        if self._proc.returncode is not None:
            raise InterruptFailure("kernel process is not running", kernel_id=self.kernel_id)
        try:
            self._proc.send_signal(signal.SIGINT)
        except ProcessLookupError as exc:
            self._mark_dead("kernel process disappeared")
            raise InterruptFailure("kernel process disappeared", kernel_id=self.kernel_id) from exc

    async def shutdown(self) -> None:
        """关闭 kernel（幂等；永不抛异常）。"""

        if self._shutdown_started:
            return
        self._shutdown_started = True
        self._state = KernelState.TERMINATING
        try:
            if self._proc.returncode is None:
                try:
                    await self._send({"type": "shutdown"}, allow_terminating=True)
                except DeadKernelError:
                    pass
                try:
                    await asyncio.wait_for(self._proc.wait(), timeout=self._options.shutdown_timeout_ms / 1000.0)
                except asyncio.TimeoutError:
                    await self._terminate()
        except Exception:
            logger.warning("Kernel %s shutdown failed", self.kernel_id, exc_info=True)
        finally:
            self._close_stdin()
            self._mark_dead("kernel shut down")
            for task in (self._stdout_task, self._stderr_task):
                if task is not None and not task.done():
                    task.cancel()
            logger.debug("Kernel %s shut down (returncode=%s)", self.kernel_id, self._proc.returncode)

    def _start_readers(self) -> None:
        self._stdout_task = asyncio.ensure_future(self._read_protocol())
        self._stderr_task = asyncio.ensure_future(self._relay_stderr())

    async def _send(self, msg: Dict[str, Any], *, allow_terminating: bool = False) -> None:
        stdin = self._proc.stdin
        if stdin is None or stdin.is_closing() or self._proc.returncode is not None:
            raise DeadKernelError("kernel stdin is closed", kernel_id=self.kernel_id)
        if not allow_terminating and not self.is_alive():
            raise DeadKernelError(self._dead_reason or "kernel is not alive", kernel_id=self.kernel_id)
        data = (json.dumps(msg, ensure_ascii=False) + "\n").encode("utf-8")
        async with self._write_lock:
            try:
                stdin.write(data)
                await stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as exc:
                self._mark_dead("kernel stdin pipe broken")
                raise DeadKernelError("kernel stdin pipe broken", kernel_id=self.kernel_id) from exc

    async def _read_protocol(self) -> None:
        stdout = self._proc.stdout
        assert stdout is not None
        try:
            while True:
                line = await stdout.readline()
                if not line:
                    break
                try:
                    msg = json.loads(line)
                except ValueError:
                    logger.debug("Ignoring non-protocol line from kernel %s: %r", self.kernel_id, line[:200])
                    continue
                if isinstance(msg, dict):
                    await self._dispatch(msg)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning("Kernel %s protocol reader failed", self.kernel_id, exc_info=True)
        finally:
            self._mark_dead("kernel process exited")

    async def _dispatch(self, msg: Dict[str, Any]) -> None:
        kind = msg.get("type")
        if kind == "stream":
            pending = self._pending.get(str(msg.get("id")))
            if pending is not None:
                await self._emit(pending, str(msg.get("text") or ""))
            else:
                logger.debug("Dropping stream output outside an execution on kernel %s", self.kernel_id)
        elif kind == "started":
            pending = self._pending.get(str(msg.get("id")))
            if pending is not None:
                pending.started.set()
        elif kind == "display":
            pending = self._pending.get(str(msg.get("id")))
            data = msg.get("data")
            if pending is not None and isinstance(data, dict):
                text, outputs = render_display(data)
                await self._emit(pending, text)
                for output in outputs:
                    try:
                        await emit_display(pending.on_display, output)
                    except Exception:
                        logger.warning("Display callback raised on kernel %s; continuing", self.kernel_id, exc_info=True)
        elif kind == "done":
            pending = self._pending.get(str(msg.get("id")))
            if pending is not None and not pending.done.done():
                pending.done.set_result(msg)
        elif kind == "input_request":
            pending = self._pending.get(str(msg.get("id")))
            if pending is not None:
                pending.stdin_requested = True
        elif kind == "pong":
            fut = self._pongs.get(str(msg.get("id")))
            if fut is not None and not fut.done():
                fut.set_result(True)
        elif kind == "ready":
            if not self._ready.done():
                self._ready.set_result(msg)
        elif kind == "bye":
            logger.debug("Kernel %s acknowledged shutdown", self.kernel_id)

    async def _relay_stderr(self) -> None:
        stderr = self._proc.stderr
        assert stderr is not None
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                chunk = await stderr.read(4096)
                if not chunk:
                    break
                text = decoder.decode(chunk)
                pending = self._pending.get(self._current_id) if self._current_id else None
                if pending is not None:
                    await self._emit(pending, text)
                elif text.strip():
                    logger.debug("Kernel %s stderr: %s", self.kernel_id, text.rstrip())
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning("Kernel %s stderr relay failed", self.kernel_id, exc_info=True)

    async def _emit(self, pending: _PendingExecution, text: str) -> None:
        if not text:
            return
        try:
            await emit_chunk(pending.on_chunk, text)
        except Exception:
            logger.warning("Chunk callback raised on kernel %s; continuing", self.kernel_id, exc_info=True)

    def _mark_dead(self, reason: str) -> None:
        if self._state is not KernelState.DEAD:
            self._state = KernelState.DEAD
            self._dead_reason = reason
        error = DeadKernelError(reason, kernel_id=self.kernel_id)
        if not self._ready.done():
            self._ready.set_exception(error)
        for pending in list(self._pending.values()):
            if not pending.done.done():
                pending.done.set_exception(error)
        for fut in list(self._pongs.values()):
            if not fut.done():
                fut.set_result(False)

    def _close_stdin(self) -> None:
        stdin = self._proc.stdin
        if stdin is not None and not stdin.is_closing():
            try:
                stdin.close()
            except (OSError, RuntimeError):
                pass

    async def _terminate(self) -> None:
        """SIGTERM → (grace) → SIGKILL；按进程组发送，回收子孙进程。"""

        for sig in (signal.SIGTERM, signal.SIGKILL):
            if self._proc.returncode is not None:
                return
            try:
                os.killpg(self._proc.pid, sig)
            except OSError:
                try:
                    self._proc.send_signal(sig)
                except ProcessLookupError:
                    return
            try:
                await asyncio.wait_for(self._proc.wait(), timeout=_TERMINATE_GRACE_S)
                return
            except asyncio.TimeoutError:
                continue
        logger.warning("Kernel %s (pid=%s) did not exit after SIGKILL", self.kernel_id, self.pid)

    def __repr__(self) -> str:
        return f"KernelProcess(kernel_id={self.kernel_id!r}, pid={self.pid}, state={self._state.value})"
