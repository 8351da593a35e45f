"""
尾部保留的有界字节缓冲。

shell executor 的 stdout/stderr 与 kernel 的 OutputSink 都用它做截断：写满后丢弃最早的字节。
"""

from __future__ import annotations


class TailRingBuffer:
    """
    最多保存 `max_bytes` 字节的尾部。

    说明：
    - 任何一次丢弃都会把 `truncated` 置为 True；
    - `max_bytes=0` 时什么也不保存，但只要有输入就算截断。
    """

    def __init__(self, max_bytes: int) -> None:
        if max_bytes < 0:
            raise ValueError("max_bytes must be >= 0")
        self._limit = max_bytes
        self._data = bytearray()
        self.truncated = False

    def append(self, chunk: bytes) -> None:
        if not chunk:
            return
        self._data += chunk
        excess = len(self._data) - self._limit
        if excess > 0:
            del self._data[:excess]
            self.truncated = True

    def get_bytes(self) -> bytes:
        return bytes(self._data)

    def __len__(self) -> int:
        return len(self._data)


def decode_bytes(data: bytes) -> str:
    """UTF-8 解码；非法序列替换为 U+FFFD。"""

    return data.decode("utf-8", errors="replace")
