"""共享工具函数（消除跨模块重复）。"""
from __future__ import annotations

from typing import Optional


def timeout_seconds(timeout_ms: Optional[int]) -> Optional[int]:
    """把毫秒超时换算为整秒（四舍五入，0.5 向上）。"""

    if timeout_ms is None:
        return None
    return max(0, (int(timeout_ms) + 500) // 1000)


def format_timeout_annotation(timeout_ms: Optional[int]) -> Optional[str]:
    """
    生成超时提示文本（kernel 与 shell 共用同一措辞）。

    返回：
    - `"Command timed out after N seconds"`；未配置超时时返回 None
    """

    secs = timeout_seconds(timeout_ms)
    if secs is None:
        return None
    return f"Command timed out after {secs} seconds"


def append_annotation(text: str, annotation: Optional[str]) -> str:
    """在输出末尾追加一行提示（必要时先补换行）。"""

    if not annotation:
        return text
    if text and not text.endswith("\n"):
        return f"{text}\n{annotation}"
    return f"{text}{annotation}"
