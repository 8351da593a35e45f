"""
一次性命令执行器（`shell_exec` 工具的引擎）。

定位：
- kernel 不可用或 tool mode 为 `bash` 时，Python 工具退化为 shell 执行，由本模块承载；
- 与 kernel 路径共用同一套“超时/取消”结果约定：
  - 超时：exit_code=None，timeout=True 且 cancelled=True，stdout 末尾追加 `Command timed out after N seconds`
  - 取消：exit_code=None，cancelled=True，error_kind=cancelled

实现要点：
- 每次调用起一个新进程组，结束后整组回收；不做池化，也不保留状态；
- stdout/stderr 由后台线程读入 `TailRingBuffer`，只保留尾部。
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import IO, Callable, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from kernel_runtime.core.buffers import TailRingBuffer, decode_bytes
from kernel_runtime.core.utils import append_annotation, format_timeout_annotation

logger = logging.getLogger(__name__)

_POLL_INTERVAL_SEC = 0.05
_READ_CHUNK = 4096


class CommandResult(BaseModel):
    """
    命令执行结果。

    - ok：仅当进程正常结束且 exit_code==0
    - exit_code：超时或取消时为 None
    - stdout/stderr：尾部截断后的文本；超时提示追加在 stdout 末尾
    - error_kind：timeout/cancelled/validation/not_found/exit_code/unknown
    """

    model_config = ConfigDict(extra="forbid")

    ok: bool
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = Field(default=0, ge=0)
    timeout: bool = False
    cancelled: bool = False
    truncated: bool = False
    error_kind: Optional[str] = None


class _Capture:
    """一个输出流的后台读取器：线程 + 尾部缓冲。"""

    def __init__(self, stream: Optional[IO[bytes]], limit: int) -> None:
        self.buffer = TailRingBuffer(limit)
        self._stream = stream
        self._thread: Optional[threading.Thread] = None
        if stream is not None:
            self._thread = threading.Thread(target=self._pump, daemon=True)
            self._thread.start()

    def _pump(self) -> None:
        assert self._stream is not None
        while True:
            try:
                chunk = self._stream.read(_READ_CHUNK)
            except (OSError, ValueError):
                return
            if not chunk:
                return
            self.buffer.append(chunk)

    def finish(self) -> None:
        if self._thread is not None:
            self._thread.join(timeout=1.0)
        if self._stream is not None:
            try:
                self._stream.close()
            except OSError:
                pass

    def text(self, marker: str) -> str:
        out = decode_bytes(self.buffer.get_bytes())
        if self.buffer.truncated and out:
            return marker + out
        return out


class Executor:
    """
    阻塞式命令执行器；异步调用方通过 `asyncio.to_thread` 使用。

    参数：
    - max_stdout_bytes/max_stderr_bytes：各流保留的尾部字节上限
    - terminate_grace_ms：SIGTERM 之后等待多久再 SIGKILL
    - truncate_marker：发生截断时加在输出开头的提示
    """

    def __init__(
        self,
        *,
        max_stdout_bytes: int = 64 * 1024,
        max_stderr_bytes: int = 64 * 1024,
        terminate_grace_ms: int = 200,
        truncate_marker: str = "...<truncated>\n",
    ) -> None:
        if min(max_stdout_bytes, max_stderr_bytes) < 0:
            raise ValueError("max_*_bytes must be >= 0")
        if terminate_grace_ms < 0:
            raise ValueError("terminate_grace_ms must be >= 0")
        self._limits = (max_stdout_bytes, max_stderr_bytes)
        self._grace_sec = terminate_grace_ms / 1000.0
        self._marker = truncate_marker

    def run_command(
        self,
        argv: list[str],
        *,
        cwd: Path,
        env: Optional[Mapping[str, str]] = None,
        timeout_ms: int = 60_000,
        cancel_checker: Optional[Callable[[], bool]] = None,
    ) -> CommandResult:
        """
        运行 argv 并等待结束、超时或取消。

        参数：
        - argv：非空的命令行
        - cwd：已存在的目录
        - env：叠加在当前进程环境之上的变量
        - timeout_ms：>=1；到期后整组终止
        - cancel_checker：每个轮询周期调用一次，返回 True 即终止

        返回：
        - CommandResult；参数非法、命令不存在也以结果返回而不抛异常
        """

        started = time.monotonic()

        def elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        problem = self._validate(argv, Path(cwd), timeout_ms)
        if problem is not None:
            return CommandResult(ok=False, stderr=problem, error_kind="validation")

        full_env = {**os.environ, **{str(k): str(v) for k, v in (env or {}).items()}}
        try:
            proc = subprocess.Popen(  # noqa: S603
                argv,
                cwd=str(cwd),
                env=full_env,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            return CommandResult(ok=False, stderr=str(e), duration_ms=elapsed_ms(), error_kind="not_found")
        except OSError as e:
            return CommandResult(ok=False, stderr=str(e), duration_ms=elapsed_ms(), error_kind="unknown")

        out = _Capture(proc.stdout, self._limits[0])
        err = _Capture(proc.stderr, self._limits[1])
        try:
            outcome = self._wait(proc, started + timeout_ms / 1000.0, cancel_checker)
            if outcome != "exited":
                self._kill_group(proc)
        finally:
            out.finish()
            err.finish()

        stdout_text = out.text(self._marker)
        fields = dict(
            stderr=err.text(self._marker),
            duration_ms=elapsed_ms(),
            truncated=out.buffer.truncated or err.buffer.truncated,
        )
        if outcome == "cancelled":
            return CommandResult(ok=False, stdout=stdout_text, cancelled=True, error_kind="cancelled", **fields)
        if outcome == "timeout":
            annotated = append_annotation(stdout_text, format_timeout_annotation(timeout_ms))
            return CommandResult(ok=False, stdout=annotated, timeout=True, cancelled=True, error_kind="timeout", **fields)

        code = proc.returncode
        return CommandResult(
            ok=code == 0,
            exit_code=code,
            stdout=stdout_text,
            error_kind=None if code == 0 else "exit_code",
            **fields,
        )

    def run_shell(
        self,
        command: str,
        *,
        shell: str = "/bin/bash",
        login: bool = False,
        cwd: Path,
        env: Optional[Mapping[str, str]] = None,
        timeout_ms: int = 60_000,
        cancel_checker: Optional[Callable[[], bool]] = None,
    ) -> CommandResult:
        """`shell [-l] -c command` 的便捷封装。"""

        argv = [shell, "-l", "-c", command] if login else [shell, "-c", command]
        return self.run_command(argv, cwd=cwd, env=env, timeout_ms=timeout_ms, cancel_checker=cancel_checker)

    @staticmethod
    def _validate(argv: list[str], cwd: Path, timeout_ms: int) -> Optional[str]:
        if not argv:
            return "argv must not be empty"
        if not cwd.is_dir():
            return f"cwd is not an existing directory: {cwd}"
        if timeout_ms < 1:
            return "timeout_ms must be >= 1"
        return None

    @staticmethod
    def _wait(
        proc: "subprocess.Popen[bytes]",
        deadline: float,
        cancel_checker: Optional[Callable[[], bool]],
    ) -> str:
        """轮询等待进程；返回 exited/timeout/cancelled。取消优先于同一周期内的超时。"""

        while True:
            if cancel_checker is not None:
                try:
                    if cancel_checker():
                        return "cancelled"
                except Exception:
                    logger.debug("cancel_checker raised; treated as not cancelled", exc_info=True)
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return "timeout"
            try:
                proc.wait(timeout=min(_POLL_INTERVAL_SEC, remaining))
            except subprocess.TimeoutExpired:
                continue
            return "exited"

    def _kill_group(self, proc: "subprocess.Popen[bytes]") -> None:
        """整组 SIGTERM，宽限期后仍存活则整组 SIGKILL。"""

        for sig, wait_sec in ((signal.SIGTERM, self._grace_sec), (signal.SIGKILL, 1.0)):
            try:
                os.killpg(proc.pid, sig)
            except OSError:
                try:
                    proc.send_signal(sig)
                except OSError:
                    pass
            try:
                proc.wait(timeout=wait_sec)
                return
            except subprocess.TimeoutExpired:
                continue
        logger.warning("process %s still alive after SIGKILL", proc.pid)
