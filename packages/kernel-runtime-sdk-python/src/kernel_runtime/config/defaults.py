"""内置默认配置（随包分发的 `kernel_runtime/assets/default.yaml`）。"""

from __future__ import annotations

from importlib.resources import files
from pathlib import Path
from typing import Any, Dict

import yaml

_SOURCE_TREE_DEFAULT = Path(__file__).resolve().parents[1] / "assets" / "default.yaml"


def _read_default_text() -> str:
    try:
        return files("kernel_runtime.assets").joinpath("default.yaml").read_text(encoding="utf-8")
    except (ModuleNotFoundError, FileNotFoundError, TypeError):
        # 源码树直接运行（未安装）
        if not _SOURCE_TREE_DEFAULT.is_file():  # pragma: no cover
            raise RuntimeError("embedded default config is missing") from None
        return _SOURCE_TREE_DEFAULT.read_text(encoding="utf-8")


def load_default_config_dict() -> Dict[str, Any]:
    """
    返回默认配置的 dict 形式，作为所有 overlay 的最底层。

    异常：
    - RuntimeError：资源缺失或根节点不是 mapping
    """

    data = yaml.safe_load(_read_default_text()) or {}
    if not isinstance(data, dict):
        raise RuntimeError("embedded default config root must be a mapping")
    return data
