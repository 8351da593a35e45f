"""
kernel 子进程的环境变量过滤与解释器解析。

规则：
- 只透传 allowlist 中的变量与少数前缀（`LC_`/`XDG_`/`KERNEL_RUNTIME_`）；
- denylist 中的 LLM provider API key 永远不透传给被执行代码；
- 解释器优先使用 `VIRTUAL_ENV`，其次工作目录下的 `.venv`/`venv`，最后是 PATH 上的 python/python3。
"""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional

from kernel_runtime.core.errors import SpawnError

DEFAULT_ENV_ALLOWLIST = frozenset(
    {
        "PATH",
        "HOME",
        "USER",
        "LOGNAME",
        "SHELL",
        "LANG",
        "LC_ALL",
        "LC_CTYPE",
        "LC_MESSAGES",
        "TERM",
        "TERM_PROGRAM",
        "TERM_PROGRAM_VERSION",
        "TMPDIR",
        "TEMP",
        "TMP",
        "XDG_CACHE_HOME",
        "XDG_CONFIG_HOME",
        "XDG_DATA_HOME",
        "XDG_RUNTIME_DIR",
        "SSH_AUTH_SOCK",
        "SSH_AGENT_PID",
        "CONDA_PREFIX",
        "CONDA_DEFAULT_ENV",
        "VIRTUAL_ENV",
        "PYTHONPATH",
    }
)

DEFAULT_ENV_ALLOW_PREFIXES = ("LC_", "XDG_", "KERNEL_RUNTIME_")

DEFAULT_ENV_DENYLIST = frozenset(
    {
        "OPENAI_API_KEY",
        "ANTHROPIC_API_KEY",
        "GOOGLE_API_KEY",
        "GEMINI_API_KEY",
        "OPENROUTER_API_KEY",
        "PERPLEXITY_API_KEY",
        "EXA_API_KEY",
        "AZURE_OPENAI_API_KEY",
        "MISTRAL_API_KEY",
    }
)


def filter_env(env: Mapping[str, Optional[str]]) -> Dict[str, str]:
    """
    按 allowlist/前缀/denylist 过滤环境变量。

    参数：
    - env：原始环境（通常是 `os.environ`）

    返回：
    - 新 dict；值为 None 的项被丢弃
    """

    filtered: Dict[str, str] = {}
    for key, value in env.items():
        if value is None:
            continue
        if key in DEFAULT_ENV_DENYLIST:
            continue
        if key in DEFAULT_ENV_ALLOWLIST or key.startswith(DEFAULT_ENV_ALLOW_PREFIXES):
            filtered[key] = str(value)
    return filtered


@dataclass(frozen=True)
class PythonRuntime:
    """解析后的解释器与其运行环境。"""

    python_path: str
    env: Dict[str, str]
    venv_path: Optional[str] = None


def resolve_venv_path(cwd: Path, env: Mapping[str, str]) -> Optional[str]:
    """查找 venv：`VIRTUAL_ENV` 优先，其次 `<cwd>/.venv`、`<cwd>/venv`。"""

    if env.get("VIRTUAL_ENV"):
        return env["VIRTUAL_ENV"]
    for name in (".venv", "venv"):
        candidate = Path(cwd) / name
        if candidate.exists():
            return str(candidate)
    return None


def resolve_python_runtime(
    cwd: Path,
    base_env: Mapping[str, str],
    *,
    python_path: Optional[str] = None,
) -> PythonRuntime:
    """
    解析 kernel 使用的解释器，并返回对应的环境（venv 的 bin 目录会前置到 PATH）。

    参数：
    - cwd：工作目录（用于发现项目内 venv）
    - base_env：已过滤的环境
    - python_path：显式指定的解释器；给定时跳过 venv/PATH 探测

    异常：
    - SpawnError：找不到任何可用的 python 可执行文件
    """

    env = dict(base_env)
    if python_path:
        resolved = shutil.which(python_path) or python_path
        if not Path(resolved).exists():
            raise SpawnError(f"Python executable not found: {python_path}")
        return PythonRuntime(python_path=resolved, env=env)

    venv_path = resolve_venv_path(cwd, env)
    if venv_path:
        bin_dir = Path(venv_path) / "bin"
        candidate = bin_dir / "python"
        if candidate.exists():
            env["VIRTUAL_ENV"] = venv_path
            current = env.get("PATH")
            env["PATH"] = f"{bin_dir}{os.pathsep}{current}" if current else str(bin_dir)
            return PythonRuntime(python_path=str(candidate), env=env, venv_path=venv_path)

    search_path = env.get("PATH")
    found = shutil.which("python", path=search_path) or shutil.which("python3", path=search_path)
    if not found:
        raise SpawnError("Python executable not found on PATH")
    return PythonRuntime(python_path=found, env=env)


def build_kernel_env(
    cwd: Path,
    *,
    extra: Optional[Mapping[str, str]] = None,
    python_path: Optional[str] = None,
    source: Optional[Mapping[str, str]] = None,
) -> PythonRuntime:
    """过滤 `source`（默认 `os.environ`）→ 解析解释器 → 叠加 `extra`，得到 spawn 所需的完整环境。"""

    base = filter_env(dict(source if source is not None else os.environ))
    runtime = resolve_python_runtime(cwd, base, python_path=python_path)
    env = dict(runtime.env)
    if extra:
        env.update({str(k): str(v) for k, v in extra.items()})
    # driver 协议依赖无缓冲输出与 UTF-8 编码
    env["PYTHONUNBUFFERED"] = "1"
    env["PYTHONIOENCODING"] = "utf-8"
    return PythonRuntime(python_path=runtime.python_path, env=env, venv_path=runtime.venv_path)
