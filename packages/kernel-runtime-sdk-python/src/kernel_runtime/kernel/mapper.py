"""
Result Mapper：把 kernel 原始结果映射为对外的 `PythonResult`。

映射表（自上而下，第一条命中者生效）：

| raw status | cancelled | timed_out | exit_code | output |
|---|---|---|---|---|
| 任意 | True | True | None | 输出 + `Command timed out after N seconds` |
| error | 任意 | False | 1 | 输出原样 |
| ok | True | False | None | 输出原样 |
| ok | False | False | 0 | 输出原样 |

说明：
- 解释器的真实完成状态保留在 `kernel_status`/`error_name`/`error_value` 中；exit_code=1 是对外契约；
- `stdin_requested` 原样透传；
- 富展示输出（图片/JSON）不进入 output 文本，按产生顺序放在 `display_outputs`。
"""

from __future__ import annotations

from typing import List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from kernel_runtime.core.utils import format_timeout_annotation
from kernel_runtime.kernel.protocol import DisplayOutput, DriverStatus, KernelExecuteResult
from kernel_runtime.kernel.sink import OutputSink


class PythonResult(BaseModel):
    """
    一次 python 执行的对外结果。

    字段：
    - exit_code：0（成功）/1（被执行代码报错）/None（被取消或超时）
    - output：按到达顺序拼接的输出（可能被尾部截断；超时时末尾带超时提示）
    - total_lines/total_bytes：截断前的完整输出规模
    - output_lines/output_bytes：实际返回的 output 规模
    - artifact_path：发生截断且配置了落盘路径时，完整输出所在文件
    - display_outputs：富展示输出（按产生顺序）
    """

    model_config = ConfigDict(extra="forbid")

    exit_code: Optional[int] = None
    output: str = ""
    cancelled: bool = False
    timed_out: bool = False
    stdin_requested: bool = False
    truncated: bool = False
    total_lines: int = Field(default=0, ge=0)
    total_bytes: int = Field(default=0, ge=0)
    output_lines: int = Field(default=0, ge=0)
    output_bytes: int = Field(default=0, ge=0)
    artifact_path: Optional[str] = None
    kernel_status: DriverStatus = "ok"
    error_name: Optional[str] = None
    error_value: Optional[str] = None
    display_outputs: List[DisplayOutput] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def resolve_exit_code(raw: KernelExecuteResult) -> Optional[int]:
    """按映射表计算 exit_code。"""

    if raw.cancelled and raw.timed_out:
        return None
    if raw.status == "error":
        return 1
    if raw.cancelled:
        return None
    return 0


def map_kernel_result(
    raw: KernelExecuteResult,
    sink: OutputSink,
    *,
    timeout_ms: Optional[int] = None,
    display_outputs: Optional[Sequence[DisplayOutput]] = None,
) -> PythonResult:
    """
    映射 kernel 原始结果。

    参数：
    - raw：kernel 层结果
    - sink：本次执行的输出汇聚器（调用后即结束收集）
    - timeout_ms：本次执行配置的超时（用于生成超时提示中的秒数）
    - display_outputs：执行期间收集到的富展示输出
    """

    annotation = format_timeout_annotation(timeout_ms) if raw.cancelled and raw.timed_out else None
    summary = sink.dump(annotation)
    return PythonResult(
        exit_code=resolve_exit_code(raw),
        output=summary.output,
        cancelled=raw.cancelled,
        timed_out=raw.timed_out,
        stdin_requested=raw.stdin_requested,
        truncated=summary.truncated,
        total_lines=summary.total_lines,
        total_bytes=summary.total_bytes,
        output_lines=summary.output_lines,
        output_bytes=summary.output_bytes,
        artifact_path=summary.artifact_path,
        kernel_status=raw.kernel_status,
        error_name=raw.error_name,
        error_value=raw.error_value,
        display_outputs=list(display_outputs or ()),
    )
