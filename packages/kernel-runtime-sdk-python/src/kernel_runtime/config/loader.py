"""
YAML 配置的分层加载。

层次（后者覆盖前者）：内置 `assets/default.yaml` → 调用方给出的若干 overlay。
mapping 逐键递归合并，其余值（含 list）整体替换；合并结果交给 pydantic 校验，未知字段直接报错。
"""

from __future__ import annotations

from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Literal, Mapping, MutableMapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field

from kernel_runtime.config.defaults import load_default_config_dict

PythonToolMode = Literal["both", "ipy-only", "bash-only"]
PythonKernelMode = Literal["session", "per-call"]


def merge_layers(target: MutableMapping[str, Any], layer: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """把 layer 叠到 target 上（原地修改 target）。"""

    for key, value in layer.items():
        current = target.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            merge_layers(current, value)
        else:
            target[key] = deepcopy(value)
    return target

class KernelSettings(BaseModel):
    """kernel 进程与会话池参数。"""

    model_config = ConfigDict(extra="forbid")

    startup_timeout_ms: int = Field(default=30_000, ge=1)
    ping_timeout_ms: int = Field(default=3_000, ge=1)
    interrupt_grace_ms: int = Field(default=2_000, ge=0)
    shutdown_timeout_ms: int = Field(default=2_000, ge=0)
    heartbeat_interval_ms: int = Field(default=0, ge=0)
    max_restarts: int = Field(default=1, ge=0)
    python_path: Optional[str] = None


class ExecutionSettings(BaseModel):
    """python 执行的默认值。"""

    model_config = ConfigDict(extra="forbid")

    default_timeout_ms: Optional[int] = Field(default=30_000, ge=1)
    max_output_bytes: Optional[int] = Field(default=50 * 1024, ge=0)


class PythonSettings(BaseModel):
    """python 工具的模式选择。"""

    model_config = ConfigDict(extra="forbid")

    tool_mode: PythonToolMode = "both"
    kernel_mode: PythonKernelMode = "session"


class ShellSettings(BaseModel):
    """`shell_exec` 降级工具的默认值。"""

    model_config = ConfigDict(extra="forbid")

    default_timeout_ms: int = Field(default=60_000, ge=1)
    max_stdout_bytes: int = Field(default=64 * 1024, ge=0)
    max_stderr_bytes: int = Field(default=64 * 1024, ge=0)


class KernelRuntimeConfig(BaseModel):
    """SDK 配置根对象。"""

    model_config = ConfigDict(extra="forbid")

    config_version: int = Field(default=1, ge=1)
    kernel: KernelSettings = Field(default_factory=KernelSettings)
    execution: ExecutionSettings = Field(default_factory=ExecutionSettings)
    python: PythonSettings = Field(default_factory=PythonSettings)
    shell: ShellSettings = Field(default_factory=ShellSettings)


def read_yaml_mapping(path: Path) -> Dict[str, Any]:
    """
    读取一个 YAML overlay。

    返回：
    - 根节点 dict；空文件视为 `{}`

    异常：
    - FileNotFoundError：文件不存在
    - ValueError：根节点不是 mapping
    """

    if not path.is_file():
        raise FileNotFoundError(f"配置文件不存在：{path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"配置文件根节点必须是 mapping：{path}")
    return data


def load_config_dicts(config_dicts: list[Dict[str, Any]], *, include_defaults: bool = True) -> KernelRuntimeConfig:
    """把若干 dict 依次叠加（默认先铺内置默认值），校验后返回配置对象。"""

    merged: Dict[str, Any] = load_default_config_dict() if include_defaults else {}
    for layer in filter(None, config_dicts):
        merge_layers(merged, layer)
    return KernelRuntimeConfig.model_validate(merged)


def load_config(config_paths: list[Path]) -> KernelRuntimeConfig:
    """按给定顺序读取 YAML 文件并叠加到内置默认值上。"""

    return load_config_dicts([read_yaml_mapping(Path(p)) for p in config_paths])


def load_default_config() -> KernelRuntimeConfig:
    return load_config_dicts([])
