from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

from kernel_runtime.core.errors import SpawnError
from kernel_runtime.kernel.env import build_kernel_env, filter_env, resolve_python_runtime, resolve_venv_path


def _fake_venv(root: Path) -> Path:
    bin_dir = root / "bin"
    bin_dir.mkdir(parents=True)
    python = bin_dir / "python"
    python.write_text("#!/bin/sh\n", encoding="utf-8")
    python.chmod(0o755)
    return python


def test_filter_env_keeps_allowlist_and_prefixes_only() -> None:
    env = filter_env(
        {
            "PATH": "/usr/bin",
            "HOME": "/home/u",
            "LC_TIME": "C",
            "KERNEL_RUNTIME_FLAG": "1",
            "AWS_SECRET_ACCESS_KEY": "secret",
            "OPENAI_API_KEY": "sk-test",
            "RANDOM_VAR": "x",
            "EMPTY": None,
        }
    )
    assert env == {"PATH": "/usr/bin", "HOME": "/home/u", "LC_TIME": "C", "KERNEL_RUNTIME_FLAG": "1"}


def test_resolve_venv_prefers_virtual_env(tmp_path: Path) -> None:
    (tmp_path / ".venv").mkdir()
    assert resolve_venv_path(tmp_path, {"VIRTUAL_ENV": "/opt/venv"}) == "/opt/venv"
    assert resolve_venv_path(tmp_path, {}) == str(tmp_path / ".venv")


def test_resolve_venv_falls_back_to_venv_dir(tmp_path: Path) -> None:
    assert resolve_venv_path(tmp_path, {}) is None
    (tmp_path / "venv").mkdir()
    assert resolve_venv_path(tmp_path, {}) == str(tmp_path / "venv")


def test_project_venv_python_is_used_and_prepended_to_path(tmp_path: Path) -> None:
    python = _fake_venv(tmp_path / ".venv")
    runtime = resolve_python_runtime(tmp_path, {"PATH": "/usr/bin"})
    assert runtime.python_path == str(python)
    assert runtime.venv_path == str(tmp_path / ".venv")
    assert runtime.env["PATH"].split(os.pathsep)[0] == str(python.parent)
    assert runtime.env["VIRTUAL_ENV"] == str(tmp_path / ".venv")


def test_explicit_python_path_skips_venv(tmp_path: Path) -> None:
    _fake_venv(tmp_path / ".venv")
    runtime = resolve_python_runtime(tmp_path, {"PATH": "/usr/bin"}, python_path=sys.executable)
    assert runtime.python_path == sys.executable
    assert runtime.venv_path is None


def test_missing_explicit_python_raises(tmp_path: Path) -> None:
    with pytest.raises(SpawnError):
        resolve_python_runtime(tmp_path, {}, python_path=str(tmp_path / "no-such-python"))


def test_no_python_on_path_raises(tmp_path: Path) -> None:
    empty = tmp_path / "empty-bin"
    empty.mkdir()
    with pytest.raises(SpawnError):
        resolve_python_runtime(tmp_path, {"PATH": str(empty)})


def test_build_kernel_env_layers_extra_and_forces_unbuffered(tmp_path: Path) -> None:
    runtime = build_kernel_env(
        tmp_path,
        extra={"ARTIFACTS": "/tmp/a"},
        python_path=sys.executable,
        source={"PATH": os.environ.get("PATH", ""), "ANTHROPIC_API_KEY": "k", "PYTHONUNBUFFERED": "0"},
    )
    assert runtime.env["ARTIFACTS"] == "/tmp/a"
    assert runtime.env["PYTHONUNBUFFERED"] == "1"
    assert runtime.env["PYTHONIOENCODING"] == "utf-8"
    assert "ANTHROPIC_API_KEY" not in runtime.env
