"""
kernel 可用性检查。

结果是带标签的变体：
- `KernelAvailable(python_path, version)`
- `KernelUnavailable(reason)`

检查内容：解释器能被解析，且一次短暂的版本探测成功、版本满足下限。结果按 (cwd, python_path) 缓存。
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Literal, Optional, Tuple, Union

from kernel_runtime.core.errors import KernelUnavailableError, SpawnError
from kernel_runtime.kernel.env import build_kernel_env

logger = logging.getLogger(__name__)

SKIP_CHECK_ENV = "KERNEL_RUNTIME_PYTHON_SKIP_CHECK"
MIN_PYTHON_VERSION = (3, 8)

_VERSION_CODE = "import sys; print('%d.%d.%d' % sys.version_info[:3])"
_VERSION_TIMEOUT_S = 10.0


@dataclass(frozen=True)
class KernelAvailable:
    python_path: str
    version: str
    ok: Literal[True] = True


@dataclass(frozen=True)
class KernelUnavailable:
    reason: str
    ok: Literal[False] = False


KernelAvailability = Union[KernelAvailable, KernelUnavailable]

_cache: Dict[Tuple[str, Optional[str]], KernelAvailability] = {}


def clear_availability_cache() -> None:
    _cache.clear()


def _parse_version(text: str) -> Optional[Tuple[int, ...]]:
    try:
        return tuple(int(p) for p in text.strip().split("."))
    except ValueError:
        return None


async def _check_version(python_path: str, env: Dict[str, str], cwd: Path) -> KernelAvailability:
    try:
        proc = await asyncio.create_subprocess_exec(
            python_path,
            "-c",
            _VERSION_CODE,
            cwd=str(cwd),
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        return KernelUnavailable(reason=f"Failed to run python ({python_path}): {exc}")
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=_VERSION_TIMEOUT_S)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return KernelUnavailable(reason=f"Python version check timed out ({python_path})")
    if proc.returncode != 0:
        detail = stderr.decode("utf-8", errors="replace").strip()
        return KernelUnavailable(reason=f"Python version check failed ({python_path}): {detail or proc.returncode}")
    version = stdout.decode("utf-8", errors="replace").strip()
    parsed = _parse_version(version)
    if parsed is None:
        return KernelUnavailable(reason=f"Unrecognized python version output: {version!r}")
    if parsed[:2] < MIN_PYTHON_VERSION:
        required = ".".join(str(p) for p in MIN_PYTHON_VERSION)
        return KernelUnavailable(reason=f"Python >= {required} is required for the kernel; found {version}")
    return KernelAvailable(python_path=python_path, version=version)


async def check_kernel_availability(
    cwd: Path,
    *,
    python_path: Optional[str] = None,
    use_cache: bool = True,
) -> KernelAvailability:
    """
    检查 cwd 下 kernel 是否可用（不抛异常）。

    参数：
    - cwd：工作目录（决定 venv 的发现）
    - python_path：显式解释器
    - use_cache：是否复用之前的检查结果
    """

    cwd = Path(cwd)
    key = (str(cwd), python_path)
    if use_cache and key in _cache:
        return _cache[key]
    if not cwd.is_dir():
        result: KernelAvailability = KernelUnavailable(reason=f"cwd is not an existing directory: {cwd}")
    else:
        try:
            runtime = build_kernel_env(cwd, python_path=python_path)
        except SpawnError as exc:
            result = KernelUnavailable(reason=str(exc))
        else:
            result = await _check_version(runtime.python_path, runtime.env, cwd)
    if isinstance(result, KernelUnavailable):
        logger.info("Python kernel unavailable in %s: %s", cwd, result.reason)
    _cache[key] = result
    return result


async def ensure_kernel_available(cwd: Path, *, python_path: Optional[str] = None) -> KernelAvailable:
    """
    与 `check_kernel_availability` 相同，但不可用时抛出。

    异常：
    - KernelUnavailableError
    """

    result = await check_kernel_availability(cwd, python_path=python_path)
    if isinstance(result, KernelUnavailable):
        raise KernelUnavailableError(result.reason)
    return result
