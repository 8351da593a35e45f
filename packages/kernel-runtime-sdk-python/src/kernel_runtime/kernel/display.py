"""
富展示渲染：把 driver 发来的 mime bundle 拆成文本输出与结构化输出。

规则：
- 文本取 `text/markdown`，其次 `text/plain`，再次 `text/html`（转换为 markdown）；非空时补齐结尾换行；
- `image/png`、`image/jpeg` → `DisplayOutput(type="image")`（data 为 base64）；
- `application/json` → `DisplayOutput(type="json")`；
- 结构化输出按上述顺序排列，文本与结构化输出可以同时存在。
"""

from __future__ import annotations

import re
from html.parser import HTMLParser
from typing import Any, List, Mapping, Tuple

from kernel_runtime.kernel.protocol import DisplayOutput

_IMAGE_MIMES = ("image/png", "image/jpeg")

_INLINE_MARKS = {"strong": "**", "b": "**", "em": "*", "i": "*", "code": "`"}
_BLOCK_TAGS = {"p", "div", "section", "article", "table", "tr", "ul", "ol", "pre", "blockquote"}
_HEADING_TAGS = {"h1": "#", "h2": "##", "h3": "###", "h4": "####", "h5": "#####", "h6": "######"}
_SKIPPED_TAGS = {"script", "style", "head"}


class _MarkdownWriter(HTMLParser):
    """只覆盖 notebook 富展示常见的少量标签；其余标签保留文本、丢弃标记。"""

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self._parts: List[str] = []
        self._skip_depth = 0
        self._href: List[str] = []

    def handle_starttag(self, tag: str, attrs: List[Tuple[str, Any]]) -> None:
        if tag in _SKIPPED_TAGS:
            self._skip_depth += 1
        elif tag in _INLINE_MARKS:
            self._parts.append(_INLINE_MARKS[tag])
        elif tag in _HEADING_TAGS:
            self._block_break()
            self._parts.append(_HEADING_TAGS[tag] + " ")
        elif tag in _BLOCK_TAGS:
            self._block_break()
        elif tag == "br":
            self._parts.append("\n")
        elif tag == "li":
            self._line_break()
            self._parts.append("- ")
        elif tag in ("td", "th"):
            self._parts.append(" | ")
        elif tag == "a":
            self._href.append(str(dict(attrs).get("href") or ""))
            self._parts.append("[")

    def handle_endtag(self, tag: str) -> None:
        if tag in _SKIPPED_TAGS:
            self._skip_depth = max(0, self._skip_depth - 1)
        elif tag in _INLINE_MARKS:
            self._parts.append(_INLINE_MARKS[tag])
        elif tag in _HEADING_TAGS or tag in _BLOCK_TAGS:
            self._block_break()
        elif tag == "li":
            self._line_break()
        elif tag == "a":
            href = self._href.pop() if self._href else ""
            self._parts.append(f"]({href})" if href else "]")

    def handle_data(self, data: str) -> None:
        if self._skip_depth:
            return
        self._parts.append(re.sub(r"\s+", " ", data))

    def _line_break(self) -> None:
        if self._parts and not "".join(self._parts[-2:]).endswith("\n"):
            self._parts.append("\n")

    def _block_break(self) -> None:
        if self._parts:
            self._parts.append("\n\n")

    def markdown(self) -> str:
        text = "".join(self._parts)
        lines = [line.strip() for line in text.split("\n")]
        text = re.sub(r"\n{3,}", "\n\n", "\n".join(lines))
        return text.strip()


def html_to_markdown(html: str) -> str:
    """
    把简单 HTML 转成 markdown。

    例：`<p><strong>Hello</strong></p>` → `**Hello**`
    """

    writer = _MarkdownWriter()
    writer.feed(html)
    writer.close()
    return writer.markdown()


def _with_newline(text: str) -> str:
    if not text:
        return ""
    return text if text.endswith("\n") else text + "\n"


def render_display(data: Mapping[str, Any]) -> Tuple[str, List[DisplayOutput]]:
    """
    渲染一个 mime bundle。

    参数：
    - data：mime → 值（图片为 base64 字符串）

    返回：
    - (text, outputs)：text 可能为空串；outputs 只含图片与 JSON
    """

    text = ""
    if isinstance(data.get("text/markdown"), str):
        text = data["text/markdown"]
    elif isinstance(data.get("text/plain"), str):
        text = data["text/plain"]
    elif isinstance(data.get("text/html"), str):
        text = html_to_markdown(data["text/html"])

    outputs: List[DisplayOutput] = []
    for mime in _IMAGE_MIMES:
        if isinstance(data.get(mime), str):
            outputs.append(DisplayOutput(type="image", data=data[mime], mime_type=mime))
    if "application/json" in data:
        outputs.append(DisplayOutput(type="json", data=data["application/json"]))
    return _with_newline(text), outputs
