"""
OutputSink：kernel 输出的汇聚点。

- 每个输出块到达即转发给调用方回调（回调异常只记日志，不影响执行）；
- 按到达顺序保留输出，统计总行数/字节数；
- 超过 `max_output_bytes` 时只保留尾部（前置截断提示）；若配置了 `artifact_path`，完整输出落盘到该文件。
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import IO, List, Optional

from pydantic import BaseModel, ConfigDict

from kernel_runtime.core.buffers import TailRingBuffer, decode_bytes
from kernel_runtime.core.utils import append_annotation
from kernel_runtime.kernel.protocol import ChunkCallback, emit_chunk

logger = logging.getLogger(__name__)

DEFAULT_TRUNCATE_MARKER = "...<truncated>\n"


class OutputSummary(BaseModel):
    """`OutputSink.dump()` 的结果。"""

    model_config = ConfigDict(extra="forbid")

    output: str = ""
    truncated: bool = False
    total_lines: int = 0
    total_bytes: int = 0
    output_lines: int = 0
    output_bytes: int = 0
    artifact_path: Optional[str] = None


def count_lines(text: str) -> int:
    """按“最后一行无换行也算一行”的口径计数。"""

    if not text:
        return 0
    return text.count("\n") + (0 if text.endswith("\n") else 1)


class OutputSink:
    """
    输出汇聚器。

    参数：
    - on_chunk：调用方的 chunk 回调（同步或异步）
    - max_output_bytes：保留输出的上限；None 表示不截断
    - artifact_path：发生截断时完整输出的落盘路径（可选）
    - truncate_marker：截断提示（插入到输出最前部）
    """

    def __init__(
        self,
        *,
        on_chunk: Optional[ChunkCallback] = None,
        max_output_bytes: Optional[int] = None,
        artifact_path: Optional[Path] = None,
        truncate_marker: str = DEFAULT_TRUNCATE_MARKER,
    ) -> None:
        if max_output_bytes is not None and max_output_bytes < 0:
            raise ValueError("max_output_bytes must be >= 0")
        self._on_chunk = on_chunk
        self._tail = TailRingBuffer(max_output_bytes) if max_output_bytes is not None else None
        self._artifact_path = Path(artifact_path) if artifact_path is not None else None
        self._truncate_marker = truncate_marker
        self._chunks: List[str] = []
        self._spill: Optional[IO[str]] = None
        self._spilled = False
        self._total_bytes = 0
        self._newlines = 0
        self._ends_with_newline = True
        self._closed = False

    @property
    def truncated(self) -> bool:
        return bool(self._tail is not None and self._tail.truncated)

    async def push(self, text: str) -> None:
        """接收一个输出块：先转发，再记录。"""

        if not text or self._closed:
            return
        try:
            await emit_chunk(self._on_chunk, text)
        except Exception:
            logger.warning("on_chunk callback raised; output continues to be collected", exc_info=True)

        data = text.encode("utf-8", errors="replace")
        self._total_bytes += len(data)
        self._newlines += text.count("\n")
        self._ends_with_newline = text.endswith("\n")

        if self._tail is None:
            self._chunks.append(text)
            return

        self._tail.append(data)
        if self._spill is not None:
            self._spill.write(text)
            return
        if self._spilled:
            return
        self._chunks.append(text)
        if self._tail.truncated:
            self._start_spill()

    def _start_spill(self) -> None:
        self._spilled = True
        held, self._chunks = self._chunks, []
        if self._artifact_path is None:
            return
        try:
            self._artifact_path.parent.mkdir(parents=True, exist_ok=True)
            self._spill = self._artifact_path.open("w", encoding="utf-8")
            self._spill.writelines(held)
        except OSError:
            logger.warning("Failed to write output artifact %s", self._artifact_path, exc_info=True)
            self._close_spill()
            self._artifact_path = None

    def _close_spill(self) -> None:
        if self._spill is not None:
            try:
                self._spill.close()
            except OSError:
                logger.debug("Failed to close output artifact", exc_info=True)
            self._spill = None

    def text(self) -> str:
        """当前保留的输出（未截断时为全部输出）。"""

        if self._tail is None or not self._tail.truncated:
            return "".join(self._chunks)
        return f"{self._truncate_marker}{decode_bytes(self._tail.get_bytes())}"

    def dump(self, annotation: Optional[str] = None) -> OutputSummary:
        """
        结束收集并生成摘要。

        参数：
        - annotation：追加到输出末尾的一行提示（例如超时提示）；不计入 total_* 统计
        """

        self._closed = True
        self._close_spill()
        output = append_annotation(self.text(), annotation)
        total_lines = self._newlines + (0 if self._ends_with_newline or self._total_bytes == 0 else 1)
        return OutputSummary(
            output=output,
            truncated=self.truncated,
            total_lines=total_lines,
            total_bytes=self._total_bytes,
            output_lines=count_lines(output),
            output_bytes=len(output.encode("utf-8", errors="replace")),
            artifact_path=str(self._artifact_path) if self._spilled and self._artifact_path is not None else None,
        )
