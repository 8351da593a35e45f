"""
SettingsManager：可修改、可持久化的用户设置。

- 生效配置 = 内置默认配置 + 用户覆盖项（只持久化覆盖项，默认值升级后自动生效）；
- 覆盖项以 YAML 保存；
- 每次修改都会整体重新校验（未知字段/非法值会 fail-fast，原设置保持不变）。
"""

from __future__ import annotations

import logging
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from kernel_runtime.config.loader import (
    KernelRuntimeConfig,
    PythonKernelMode,
    PythonToolMode,
    load_config_dicts,
    merge_layers,
    read_yaml_mapping,
)
from kernel_runtime.core.errors import UserError

logger = logging.getLogger(__name__)


def _set_dotted(target: Dict[str, Any], dotted_key: str, value: Any) -> None:
    parts = [p for p in dotted_key.split(".") if p]
    if not parts:
        raise UserError("settings key must not be empty", code="SETTINGS_KEY_INVALID")
    node = target
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = value


class SettingsManager:
    """
    设置管理器。

    参数：
    - overrides：用户覆盖项（嵌套 dict，结构同配置文件）
    - path：持久化路径；None 表示纯内存
    """

    def __init__(self, overrides: Optional[Dict[str, Any]] = None, *, path: Optional[Path] = None) -> None:
        self._overrides: Dict[str, Any] = deepcopy(overrides or {})
        self._path = Path(path) if path is not None else None
        self._config = self._build(self._overrides)

    @classmethod
    def in_memory(cls, overrides: Optional[Dict[str, Any]] = None) -> "SettingsManager":
        """创建不落盘的设置（测试与一次性调用方使用）。"""

        return cls(overrides)

    @classmethod
    def load(cls, path: Path) -> "SettingsManager":
        """从 YAML 加载覆盖项；文件不存在时使用默认值（首次 `save()` 时创建）。"""

        path = Path(path)
        overrides = read_yaml_mapping(path) if path.exists() else {}
        return cls(overrides, path=path)

    @staticmethod
    def _build(overrides: Dict[str, Any]) -> KernelRuntimeConfig:
        try:
            return load_config_dicts([overrides])
        except ValueError as exc:
            raise UserError(f"invalid settings: {exc}", code="SETTINGS_INVALID") from exc

    @property
    def config(self) -> KernelRuntimeConfig:
        return self._config

    @property
    def path(self) -> Optional[Path]:
        return self._path

    def get(self, dotted_key: str) -> Any:
        """按点分路径读取生效值（例如 `python.tool_mode`）。"""

        node: Any = self._config.model_dump()
        for part in dotted_key.split("."):
            if not isinstance(node, dict) or part not in node:
                raise UserError(f"unknown settings key: {dotted_key}", code="SETTINGS_KEY_INVALID")
            node = node[part]
        return node

    def set(self, dotted_key: str, value: Any) -> None:
        """按点分路径设置覆盖项（校验失败时原设置不变）。"""

        candidate = deepcopy(self._overrides)
        _set_dotted(candidate, dotted_key, value)
        self._config = self._build(candidate)
        self._overrides = candidate

    def update(self, overlay: Dict[str, Any]) -> None:
        """深度合并一组覆盖项。"""

        candidate = deepcopy(self._overrides)
        merge_layers(candidate, overlay)
        self._config = self._build(candidate)
        self._overrides = candidate

    def get_python_tool_mode(self) -> PythonToolMode:
        return self._config.python.tool_mode

    def set_python_tool_mode(self, mode: PythonToolMode) -> None:
        self.set("python.tool_mode", mode)

    def get_python_kernel_mode(self) -> PythonKernelMode:
        return self._config.python.kernel_mode

    def set_python_kernel_mode(self, mode: PythonKernelMode) -> None:
        self.set("python.kernel_mode", mode)

    def serialize(self) -> Dict[str, Any]:
        """返回覆盖项（可直接写回 YAML）。"""

        return deepcopy(self._overrides)

    def save(self) -> Path:
        """
        把覆盖项写入 YAML。

        异常：
        - UserError：纯内存设置没有持久化路径
        """

        if self._path is None:
            raise UserError("settings are in-memory; no path to save to", code="SETTINGS_NOT_PERSISTENT")
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_name(self._path.name + ".tmp")
        tmp.write_text(yaml.safe_dump(self._overrides, sort_keys=True, allow_unicode=True), encoding="utf-8")
        tmp.replace(self._path)
        logger.debug("Saved settings to %s", self._path)
        return self._path
