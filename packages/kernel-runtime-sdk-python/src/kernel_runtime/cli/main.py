"""
Kernel Runtime CLI（run/check/settings）。

约束：
- 使用 argparse（不引入第三方 CLI 依赖）
- stdout 输出机器可读 JSON；失败时也输出 JSON
- `run --stream` 时输出块实时写到 stderr（stdout 仍只有最终 JSON）

退出码：
- 0：成功；1：被执行代码报错；124：超时；130：被取消
- 2：参数错误；10：配置/运行时错误；11：kernel 不可用
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import yaml

from kernel_runtime.config.loader import KernelRuntimeConfig, load_config
from kernel_runtime.config.settings import SettingsManager
from kernel_runtime.core.errors import FrameworkError, FrameworkIssue, KernelError, KernelUnavailableError
from kernel_runtime.kernel.availability import KernelUnavailable, check_kernel_availability
from kernel_runtime.kernel.executor import PythonExecutorOptions, dispose_all_kernel_sessions, execute_python
from kernel_runtime.kernel.mapper import PythonResult

EXIT_TIMEOUT = 124
EXIT_CANCELLED = 130
EXIT_RUNTIME_ERROR = 10
EXIT_UNAVAILABLE = 11


def ensure_utf8_stdio() -> None:
    """best-effort 将 stdout/stderr reconfigure 为 UTF-8（`C` locale 下避免输出中文时崩溃）。"""

    for stream in (sys.stdout, sys.stderr):
        reconfigure = getattr(stream, "reconfigure", None)
        if not callable(reconfigure):
            continue
        try:
            reconfigure(encoding="utf-8", errors="replace")
        except (OSError, ValueError):
            continue


def _dump_json_to_stdout(obj: Dict[str, Any], *, pretty: bool) -> None:
    """
    将 dict 输出为 JSON 到 stdout（末尾包含换行）。

    参数：
    - obj：待输出对象
    - pretty：是否启用 pretty-print（indent=2）
    """

    if pretty:
        text = json.dumps(obj, ensure_ascii=False, indent=2)
    else:
        text = json.dumps(obj, ensure_ascii=False, separators=(",", ":"))
    print(text, flush=True)


def _issue(code: str, message: str, **details: Any) -> FrameworkIssue:
    return FrameworkIssue(code=code, message=message, details=dict(details))


def _issues_to_jsonable(issues: List[FrameworkIssue]) -> List[Dict[str, Any]]:
    return [{"code": i.code, "message": i.message, "details": i.details} for i in issues]


def _resolve_cwd(raw: str) -> Tuple[Optional[Path], Optional[FrameworkIssue]]:
    """解析 --cwd 为绝对路径；不存在或不是目录时返回 issue。"""

    cwd = Path(raw).expanduser().resolve()
    if not cwd.is_dir():
        return None, _issue("CLI_CWD_NOT_FOUND", "Working directory is not found or not a directory.", cwd=str(cwd))
    return cwd, None


def _load_effective_config(raw_paths: List[str], cwd: Path) -> Tuple[Optional[KernelRuntimeConfig], List[FrameworkIssue]]:
    """内置默认配置 + overlays（相对路径相对 cwd）。"""

    paths: List[Path] = []
    for raw in raw_paths:
        p = Path(raw).expanduser()
        paths.append(p if p.is_absolute() else (cwd / p))
    try:
        return load_config(paths), []
    except FileNotFoundError as exc:
        return None, [_issue("CLI_OVERLAY_NOT_FOUND", "Overlay config not found.", reason=str(exc))]
    except (ValueError, yaml.YAMLError) as exc:
        return None, [_issue("CLI_CONFIG_INVALID", "Config validation failed.", reason=str(exc))]


def _read_code(args: argparse.Namespace) -> Tuple[Optional[str], Optional[FrameworkIssue]]:
    if args.code is not None:
        return args.code, None
    if args.file == "-":
        return sys.stdin.read(), None
    path = Path(args.file).expanduser()
    try:
        return path.read_text(encoding="utf-8"), None
    except OSError as exc:
        return None, _issue("CLI_CODE_FILE_UNREADABLE", "Code file cannot be read.", path=str(path), reason=str(exc))


def _exit_code_for_result(result: PythonResult) -> int:
    if result.exit_code is not None:
        return result.exit_code
    if result.timed_out:
        return EXIT_TIMEOUT
    return EXIT_CANCELLED


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="kernel-runtime", description="Kernel Runtime SDK CLI")
    root_sub = parser.add_subparsers(dest="command", required=True)

    def _add_common_flags(p: argparse.ArgumentParser) -> None:
        p.add_argument("--cwd", default=".", help="Working directory of the kernel (default: .)")
        p.add_argument("--config", action="append", default=[], help="Overlay config YAML path (repeatable).")
        p.add_argument("--pretty", action="store_true", help="Pretty-print JSON output.")

    run = root_sub.add_parser("run", help="Execute python code in a kernel")
    _add_common_flags(run)
    source = run.add_mutually_exclusive_group(required=True)
    source.add_argument("--code", default=None, help="Python source to execute.")
    source.add_argument("--file", default=None, help="Python file to execute ('-' reads stdin).")
    run.add_argument("--timeout-ms", type=int, default=None, help="Timeout in ms (default: execution.default_timeout_ms).")
    run.add_argument("--kernel-mode", choices=["session", "per-call"], default=None, help="Kernel mode override.")
    run.add_argument("--session-id", default=None, help="Session key (session mode).")
    run.add_argument("--stream", action="store_true", help="Relay output chunks to stderr as they arrive.")

    check = root_sub.add_parser("check", help="Check python kernel availability")
    _add_common_flags(check)
    check.add_argument("--python", dest="python_path", default=None, help="Explicit python executable.")

    settings = root_sub.add_parser("settings", help="Show or change persisted settings")
    settings_sub = settings.add_subparsers(dest="settings_cmd", required=True)
    show = settings_sub.add_parser("show", help="Print effective settings")
    show.add_argument("--settings", dest="settings_path", required=True, help="Settings YAML path.")
    show.add_argument("--pretty", action="store_true", help="Pretty-print JSON output.")
    set_p = settings_sub.add_parser("set", help="Set one settings key (dotted path)")
    set_p.add_argument("--settings", dest="settings_path", required=True, help="Settings YAML path.")
    set_p.add_argument("--pretty", action="store_true", help="Pretty-print JSON output.")
    set_p.add_argument("key", help="Dotted key, e.g. python.tool_mode")
    set_p.add_argument("value", help="Value (parsed as YAML scalar)")

    return parser


async def _run_async(code: str, options: PythonExecutorOptions, config: KernelRuntimeConfig) -> PythonResult:
    try:
        return await execute_python(code, options, config=config)
    finally:
        await dispose_all_kernel_sessions()


def _handle_run(args: argparse.Namespace) -> int:
    cwd, issue = _resolve_cwd(args.cwd)
    if issue is not None or cwd is None:
        _dump_json_to_stdout({"ok": False, "errors": _issues_to_jsonable([issue] if issue else [])}, pretty=args.pretty)
        return EXIT_RUNTIME_ERROR
    config, issues = _load_effective_config(list(args.config), cwd)
    if config is None:
        _dump_json_to_stdout({"ok": False, "errors": _issues_to_jsonable(issues)}, pretty=args.pretty)
        return EXIT_RUNTIME_ERROR
    code, issue = _read_code(args)
    if issue is not None or code is None:
        _dump_json_to_stdout({"ok": False, "errors": _issues_to_jsonable([issue] if issue else [])}, pretty=args.pretty)
        return EXIT_RUNTIME_ERROR

    def _relay(text: str) -> None:
        sys.stderr.write(text)
        sys.stderr.flush()

    options = PythonExecutorOptions(
        cwd=cwd,
        timeout_ms=args.timeout_ms if args.timeout_ms is not None else config.execution.default_timeout_ms,
        on_chunk=_relay if args.stream else None,
        session_id=args.session_id,
        kernel_mode=args.kernel_mode or config.python.kernel_mode,
        max_output_bytes=config.execution.max_output_bytes,
    )
    try:
        result = asyncio.run(_run_async(code, options, config))
    except KernelUnavailableError as exc:
        issues = [_issue("KERNEL_UNAVAILABLE", "Python kernel is unavailable.", reason=exc.reason)]
        _dump_json_to_stdout({"ok": False, "errors": _issues_to_jsonable(issues)}, pretty=args.pretty)
        return EXIT_UNAVAILABLE
    except KernelError as exc:
        issues = [_issue("KERNEL_FAILED", "Python kernel failed.", reason=str(exc), kernel_id=exc.kernel_id)]
        _dump_json_to_stdout({"ok": False, "errors": _issues_to_jsonable(issues)}, pretty=args.pretty)
        return EXIT_RUNTIME_ERROR

    _dump_json_to_stdout({"ok": result.exit_code == 0, "result": result.model_dump()}, pretty=args.pretty)
    return _exit_code_for_result(result)


def _handle_check(args: argparse.Namespace) -> int:
    cwd, issue = _resolve_cwd(args.cwd)
    if issue is not None or cwd is None:
        _dump_json_to_stdout({"ok": False, "errors": _issues_to_jsonable([issue] if issue else [])}, pretty=args.pretty)
        return EXIT_RUNTIME_ERROR
    config, issues = _load_effective_config(list(args.config), cwd)
    if config is None:
        _dump_json_to_stdout({"ok": False, "errors": _issues_to_jsonable(issues)}, pretty=args.pretty)
        return EXIT_RUNTIME_ERROR
    python_path = args.python_path or config.kernel.python_path
    result = asyncio.run(check_kernel_availability(cwd, python_path=python_path, use_cache=False))
    if isinstance(result, KernelUnavailable):
        _dump_json_to_stdout({"ok": False, "reason": result.reason}, pretty=args.pretty)
        return EXIT_UNAVAILABLE
    _dump_json_to_stdout({"ok": True, "python_path": result.python_path, "version": result.version}, pretty=args.pretty)
    return 0


def _handle_settings(args: argparse.Namespace) -> int:
    try:
        manager = SettingsManager.load(Path(args.settings_path).expanduser())
        if args.settings_cmd == "set":
            value = yaml.safe_load(args.value)
            manager.set(args.key, value)
            manager.save()
    except FrameworkError as exc:
        _dump_json_to_stdout({"ok": False, "errors": _issues_to_jsonable([exc.to_issue()])}, pretty=args.pretty)
        return EXIT_RUNTIME_ERROR
    except (ValueError, OSError, yaml.YAMLError) as exc:
        issues = [_issue("CLI_SETTINGS_INVALID", "Settings file cannot be loaded.", reason=str(exc))]
        _dump_json_to_stdout({"ok": False, "errors": _issues_to_jsonable(issues)}, pretty=args.pretty)
        return EXIT_RUNTIME_ERROR

    _dump_json_to_stdout(
        {
            "ok": True,
            "path": str(manager.path),
            "overrides": manager.serialize(),
            "effective": manager.config.model_dump(),
        },
        pretty=args.pretty,
    )
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    CLI 入口函数（用于 console_scripts 与测试）。

    参数：
    - argv：命令行参数列表（不含程序名）；为 None 时读取 sys.argv[1:]。

    返回：
    - int：exit code（不会直接 sys.exit，便于测试）。
    """

    ensure_utf8_stdio()

    parser = _build_parser()
    try:
        args = parser.parse_args(list(argv) if argv is not None else None)
    except SystemExit as exc:
        code = getattr(exc, "code", 2)
        if code is None:
            return 2
        return int(code)

    if args.command == "run":
        return _handle_run(args)
    if args.command == "check":
        return _handle_check(args)
    if args.command == "settings":
        return _handle_settings(args)
    parser.print_help()
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
