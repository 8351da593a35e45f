from __future__ import annotations

import asyncio

import pytest

from kernel_runtime.core.utils import format_timeout_annotation, timeout_seconds
from kernel_runtime.kernel.mapper import map_kernel_result, resolve_exit_code
from kernel_runtime.kernel.protocol import DisplayOutput, KernelExecuteResult
from kernel_runtime.kernel.sink import OutputSink


def _sink_with(*chunks: str) -> OutputSink:
    sink = OutputSink()

    async def _fill() -> None:
        for chunk in chunks:
            await sink.push(chunk)

    asyncio.run(_fill())
    return sink


@pytest.mark.parametrize(
    "raw, expected",
    [
        (KernelExecuteResult(), 0),
        (KernelExecuteResult(status="error", kernel_status="error"), 1),
        (KernelExecuteResult(cancelled=True, kernel_status="interrupted"), None),
        (KernelExecuteResult(cancelled=True, timed_out=True, kernel_status="interrupted"), None),
        # 超时行优先于 error 行
        (KernelExecuteResult(status="error", cancelled=True, timed_out=True), None),
        # 取消但代码已报错：error 行优先
        (KernelExecuteResult(status="error", cancelled=True), 1),
    ],
)
def test_resolve_exit_code_table(raw: KernelExecuteResult, expected: object) -> None:
    assert resolve_exit_code(raw) == expected


def test_timeout_appends_annotation_after_output() -> None:
    sink = _sink_with("tick\n", "tick")
    raw = KernelExecuteResult(cancelled=True, timed_out=True, kernel_status="interrupted")

    result = map_kernel_result(raw, sink, timeout_ms=1500)

    assert result.exit_code is None
    assert result.timed_out is True and result.cancelled is True
    assert result.output == "tick\ntick\nCommand timed out after 2 seconds"
    assert result.kernel_status == "interrupted"
    # 统计按原始输出口径，不含超时提示
    assert result.total_lines == 2
    assert result.output_lines == 3


def test_cancel_without_timeout_keeps_output_verbatim() -> None:
    sink = _sink_with("partial\n")
    raw = KernelExecuteResult(cancelled=True, kernel_status="interrupted")

    result = map_kernel_result(raw, sink, timeout_ms=5000)

    assert result.exit_code is None
    assert result.output == "partial\n"
    assert result.ok is False


def test_error_maps_to_exit_code_one_and_keeps_error_details() -> None:
    sink = _sink_with("Traceback (most recent call last):\n", "ZeroDivisionError: division by zero\n")
    raw = KernelExecuteResult(
        status="error",
        kernel_status="error",
        error_name="ZeroDivisionError",
        error_value="division by zero",
    )

    result = map_kernel_result(raw, sink)

    assert result.exit_code == 1
    assert "ZeroDivisionError" in result.output
    assert result.error_name == "ZeroDivisionError"
    assert result.error_value == "division by zero"


def test_stdin_requested_passes_through() -> None:
    result = map_kernel_result(KernelExecuteResult(stdin_requested=True), _sink_with("prompt> "))
    assert result.stdin_requested is True
    assert result.exit_code == 0
    assert result.output == "prompt> "


def test_display_outputs_stay_out_of_text_output() -> None:
    outputs = [DisplayOutput(type="json", data=[1, 2]), DisplayOutput(type="image", data="eA==", mime_type="image/jpeg")]
    result = map_kernel_result(KernelExecuteResult(), _sink_with("done\n"), display_outputs=outputs)
    assert result.output == "done\n"
    assert result.display_outputs == outputs
    assert map_kernel_result(KernelExecuteResult(), _sink_with()).display_outputs == []


def test_timeout_seconds_rounding() -> None:
    assert timeout_seconds(None) is None
    assert timeout_seconds(0) == 0
    assert timeout_seconds(499) == 0
    assert timeout_seconds(500) == 1
    assert timeout_seconds(2499) == 2
    assert format_timeout_annotation(30_000) == "Command timed out after 30 seconds"
    assert format_timeout_annotation(None) is None
