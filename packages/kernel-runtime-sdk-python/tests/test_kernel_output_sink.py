from __future__ import annotations

import asyncio
from pathlib import Path
from typing import List

import pytest

from kernel_runtime.kernel.sink import OutputSink, count_lines


def _push_all(sink: OutputSink, chunks: List[str]) -> None:
    async def _run() -> None:
        for chunk in chunks:
            await sink.push(chunk)

    asyncio.run(_run())


def test_chunks_are_forwarded_in_arrival_order_and_match_output() -> None:
    seen: List[str] = []
    sink = OutputSink(on_chunk=seen.append)

    _push_all(sink, ["a\n", "b", "c\n"])
    summary = sink.dump()

    assert seen == ["a\n", "b", "c\n"]
    assert "".join(seen) == summary.output
    assert summary.truncated is False
    assert summary.total_lines == 2
    assert summary.total_bytes == len("a\nbc\n")
    assert summary.artifact_path is None


def test_async_callback_is_awaited() -> None:
    seen: List[str] = []

    async def _on_chunk(text: str) -> None:
        await asyncio.sleep(0)
        seen.append(text)

    sink = OutputSink(on_chunk=_on_chunk)
    _push_all(sink, ["x", "y"])

    assert seen == ["x", "y"]
    assert sink.dump().output == "xy"


def test_callback_error_does_not_stop_collection() -> None:
    calls: List[str] = []

    def _broken(text: str) -> None:
        calls.append(text)
        raise RuntimeError("consumer failed")

    sink = OutputSink(on_chunk=_broken)
    _push_all(sink, ["one\n", "two\n"])

    assert calls == ["one\n", "two\n"]
    assert sink.dump().output == "one\ntwo\n"


def test_truncation_keeps_tail_and_spills_full_output(tmp_path: Path) -> None:
    artifact = tmp_path / "out" / "full.txt"
    sink = OutputSink(max_output_bytes=10, artifact_path=artifact, truncate_marker="[cut]\n")

    chunks = [f"line{i}\n" for i in range(6)]
    _push_all(sink, chunks)
    summary = sink.dump()

    assert summary.truncated is True
    assert summary.output.startswith("[cut]\n")
    assert summary.output.endswith("line5\n")
    assert summary.total_lines == 6
    assert summary.total_bytes == len("".join(chunks))
    assert summary.artifact_path == str(artifact)
    assert artifact.read_text(encoding="utf-8") == "".join(chunks)


def test_no_artifact_without_truncation(tmp_path: Path) -> None:
    artifact = tmp_path / "full.txt"
    sink = OutputSink(max_output_bytes=1024, artifact_path=artifact)

    _push_all(sink, ["small\n"])
    summary = sink.dump()

    assert summary.truncated is False
    assert summary.artifact_path is None
    assert not artifact.exists()


def test_pushes_after_dump_are_ignored() -> None:
    sink = OutputSink()
    _push_all(sink, ["first\n"])
    sink.dump()
    _push_all(sink, ["late\n"])
    assert sink.text() == "first\n"


def test_negative_limit_is_rejected() -> None:
    with pytest.raises(ValueError):
        OutputSink(max_output_bytes=-1)


def test_count_lines() -> None:
    assert count_lines("") == 0
    assert count_lines("a") == 1
    assert count_lines("a\n") == 1
    assert count_lines("a\nb") == 2
