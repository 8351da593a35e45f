"""
Kernel driver：在 kernel 子进程内运行的解释器循环（以脚本方式启动：`python -u driver.py`）。

约束：
- 只依赖标准库：目标解释器可能是项目自己的 venv，其中不一定安装了本 SDK；
- 兼容 Python >= 3.8。

协议（JSON lines）：
- stdin（父进程 → driver）：
  - `{"type":"execute","id":...,"code":...,"cwd":...}`
  - `{"type":"ping","id":...}`
  - `{"type":"shutdown"}`
- stdout（driver → 父进程）：
  - `{"type":"ready","pid":...,"python":...}`（握手）
  - `{"type":"started","id":...}`（已进入求值，此后的 SIGINT 一定落在本次执行上）
  - `{"type":"stream","id":...,"name":"stdout|stderr","text":...}`
  - `{"type":"display","id":...,"data":{mime: value}}`（富展示；图片为 base64）
  - `{"type":"input_request","id":...,"prompt":...}`
  - `{"type":"done","id":...,"status":"ok|error|interrupted","ename":...,"evalue":...}`
  - `{"type":"pong","id":...}`
  - `{"type":"bye"}`

中断：父进程向本进程发送 SIGINT；仅在执行期间转换为 KeyboardInterrupt，空闲期的迟到信号被忽略。
"""

import ast
import base64
import builtins
import io
import json
import os
import signal
import sys
import threading
import traceback

_STREAM_PIECE_CHARS = 32 * 1024

_proto_out = None
_proto_in = None
_send_lock = threading.Lock()
_current_id = None
_executing = False
_in_send = False
_interrupt_pending = False


def _send(msg):
    global _in_send, _interrupt_pending
    line = json.dumps(msg, ensure_ascii=False) + "\n"
    with _send_lock:
        _in_send = True
        try:
            _proto_out.write(line)
            _proto_out.flush()
        finally:
            _in_send = False
    if _interrupt_pending and _executing and threading.current_thread() is threading.main_thread():
        _interrupt_pending = False
        raise KeyboardInterrupt


def _on_sigint(signum, frame):
    global _interrupt_pending
    if not _executing:
        return
    if _in_send:
        # 协议行写到一半时不能抛出；写完后再补发
        _interrupt_pending = True
        return
    raise KeyboardInterrupt


class _StreamProxy(io.TextIOBase):
    """把 print/sys.stdout.write 转成 stream 消息。"""

    def __init__(self, name):
        super().__init__()
        self._name = name

    @property
    def encoding(self):
        return "utf-8"

    @property
    def errors(self):
        return "replace"

    def writable(self):
        return True

    def isatty(self):
        return False

    def write(self, text):
        if not isinstance(text, str):
            raise TypeError("write() argument must be str, not %s" % type(text).__name__)
        for start in range(0, len(text), _STREAM_PIECE_CHARS):
            piece = text[start : start + _STREAM_PIECE_CHARS]
            _send({"type": "stream", "id": _current_id, "name": self._name, "text": piece})
        return len(text)

    def flush(self):
        return None


class _StdinUnavailable(io.TextIOBase):
    """非交互模式的 stdin：任何读取都会上报 input_request 并抛出 EOFError。"""

    def readable(self):
        return True

    def isatty(self):
        return False

    def request(self, prompt=""):
        _send({"type": "input_request", "id": _current_id, "prompt": str(prompt)})
        raise EOFError("stdin is not available: the kernel runs in non-interactive mode")

    def read(self, size=-1):
        return self.request()

    def readline(self, size=-1):
        return self.request()

    def readlines(self, hint=-1):
        return self.request()


_stdin_unavailable = _StdinUnavailable()


def _input(prompt=""):
    if prompt:
        sys.stdout.write(str(prompt))
    return _stdin_unavailable.request(prompt)


def _setup_io():
    global _proto_out, _proto_in
    _proto_out = os.fdopen(os.dup(1), "w", encoding="utf-8", errors="replace")
    _proto_in = os.fdopen(os.dup(0), "rb")
    # 子进程继承的 fd 0/1 不能触碰协议通道：stdin 指向 /dev/null，stdout 并入 stderr。
    devnull = os.open(os.devnull, os.O_RDONLY)
    os.dup2(devnull, 0)
    os.close(devnull)
    os.dup2(2, 1)
    sys.stdout = _StreamProxy("stdout")
    sys.stderr = _StreamProxy("stderr")
    sys.stdin = _stdin_unavailable
    builtins.input = _input
    builtins.display = _display


def _user_traceback(exc):
    tb = exc.__traceback__
    while tb is not None and tb.tb_frame.f_code.co_filename == __file__:
        tb = tb.tb_next
    if isinstance(exc, SyntaxError):
        return "".join(traceback.format_exception_only(type(exc), exc))
    return "".join(traceback.format_exception(type(exc), exc, tb))


_RICH_REPRS = (
    ("image/png", "_repr_png_"),
    ("image/jpeg", "_repr_jpeg_"),
    ("application/json", "_repr_json_"),
    ("text/html", "_repr_html_"),
    ("text/markdown", "_repr_markdown_"),
)


def _mime_bundle(obj):
    bundle = {}
    for mime, attr in _RICH_REPRS:
        method = getattr(obj, attr, None)
        if not callable(method):
            continue
        try:
            value = method()
            if isinstance(value, tuple):
                value = value[0]
            if value is None:
                continue
            if isinstance(value, (bytes, bytearray)):
                value = base64.b64encode(bytes(value)).decode("ascii")
            elif mime == "application/json":
                json.dumps(value)
            elif not isinstance(value, str):
                continue
        except KeyboardInterrupt:
            raise
        except Exception as exc:
            sys.stderr.write("%s.%s() failed: %s: %s\n" % (type(obj).__name__, attr, type(exc).__name__, exc))
            continue
        bundle[mime] = value
    bundle["text/plain"] = repr(obj)
    return bundle


def _publish(obj):
    bundle = _mime_bundle(obj)
    if len(bundle) == 1:
        sys.stdout.write(bundle["text/plain"] + "\n")
    else:
        _send({"type": "display", "id": _current_id, "data": bundle})


def _display(*objs):
    """与 IPython 的 `display()` 对应：逐个发布对象的富展示。"""
    for obj in objs:
        _publish(obj)


def _run_code(code, namespace):
    tree = ast.parse(code, filename="<cell>", mode="exec")
    last_expr = None
    if tree.body and isinstance(tree.body[-1], ast.Expr):
        last_expr = ast.Expression(body=tree.body.pop().value)
    if tree.body:
        exec(compile(tree, "<cell>", "exec"), namespace)
    if last_expr is not None:
        value = eval(compile(last_expr, "<cell>", "eval"), namespace)
        if value is not None:
            namespace["_"] = value
            _publish(value)


def _execute(msg, namespace):
    global _current_id, _executing, _interrupt_pending
    _current_id = msg.get("id")
    status = "ok"
    ename = None
    evalue = None
    try:
        try:
            _interrupt_pending = False
            _executing = True
            # 父进程收到 started 之后才会发 SIGINT；写 started 期间到达的信号在 _send 返回时补发
            _send({"type": "started", "id": _current_id})
            cwd = msg.get("cwd")
            if cwd:
                os.chdir(cwd)
            _run_code(msg.get("code") or "", namespace)
        finally:
            _executing = False
    except KeyboardInterrupt:
        status = "interrupted"
    except SystemExit as exc:
        if exc.code not in (None, 0):
            status = "error"
            ename = "SystemExit"
            evalue = str(exc.code)
    except BaseException as exc:
        status = "error"
        ename = type(exc).__name__
        evalue = str(exc)
        try:
            sys.__stderr__.flush()
            _StreamProxy("stderr").write(_user_traceback(exc))
        except KeyboardInterrupt:
            status = "interrupted"
    _send({"type": "done", "id": _current_id, "status": status, "ename": ename, "evalue": evalue})
    _current_id = None


def main():
    _setup_io()
    signal.signal(signal.SIGINT, _on_sigint)
    namespace = {"__name__": "__main__", "__builtins__": builtins}
    _send({"type": "ready", "pid": os.getpid(), "python": sys.version.split()[0]})
    while True:
        line = _proto_in.readline()
        if not line:
            break
        try:
            msg = json.loads(line.decode("utf-8", errors="replace"))
        except ValueError:
            continue
        kind = msg.get("type")
        if kind == "execute":
            _execute(msg, namespace)
        elif kind == "ping":
            _send({"type": "pong", "id": msg.get("id")})
        elif kind == "shutdown":
            _send({"type": "bye"})
            break
    return 0


if __name__ == "__main__":
    sys.exit(main())
