"""HCL 子集解析器与 HCL 值渲染工具。

支持的语法：属性赋值、带标签的块、三种注释、带转义与 ${} 插值的字符串、
heredoc（<<EOF / <<-EOF）、数字、布尔、null、列表、对象、属性/下标访问与函数调用。
不支持运算符、条件表达式、for 表达式与 %{} 模板指令。
"""  # 模块说明。
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from treeconf.resolver.expressions import (
    Call,
    GetAttr,
    Index,
    ListExpr,
    Literal,
    Node,
    ObjectExpr,
    TemplateExpr,
    Variable,
)
from treeconf.utils.errors import ParseError

_IDENT_START = re.compile(r"[A-Za-z_]")
_IDENT = re.compile(r"[A-Za-z_][A-Za-z0-9_-]*")
_NUMBER = re.compile(r"-?\d+(\.\d+)?([eE][+-]?\d+)?")
_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", '"': '"', "\\": "\\"}


@dataclass(frozen=True)
class Attribute:
    name: str
    expr: Node
    line: int


@dataclass(frozen=True)
class Block:
    type: str
    labels: Tuple[str, ...]
    body: "Body"
    line: int


@dataclass(frozen=True)
class Body:
    attributes: Dict[str, Attribute] = field(default_factory=dict)
    blocks: List[Block] = field(default_factory=list)


class _Parser:
    """无独立词法阶段的递归下降解析器，直接在字符上工作。"""  # 类说明。

    def __init__(self, text: str, location: str, line_offset: int = 0) -> None:
        self.text = text
        self.pos = 0
        self.location = location
        self.line_offset = line_offset

    # ---- 位置与报错 ----
    def _line_col(self, pos: Optional[int] = None) -> Tuple[int, int]:
        point = self.pos if pos is None else pos
        line = self.text.count("\n", 0, point) + 1
        column = point - (self.text.rfind("\n", 0, point) + 1) + 1
        return line + self.line_offset, column

    def line(self) -> int:
        return self._line_col()[0]

    def error(self, message: str, pos: Optional[int] = None) -> ParseError:
        line, column = self._line_col(pos)
        return ParseError(
            f"{self.location}:{line}:{column}: {message}",
            location=self.location,
            reference=f"{line}:{column}",
        )

    def peek(self, offset: int = 0) -> str:
        index = self.pos + offset
        return self.text[index] if index < len(self.text) else ""

    def at_end(self) -> bool:
        return self.pos >= len(self.text)

    # ---- 空白与注释 ----
    def skip(self, newlines: bool = True) -> None:
        """跳过空白与注释；newlines 为 False 时停在换行符前。"""  # 方法说明。
        while not self.at_end():
            char = self.peek()
            if char in " \t\r":
                self.pos += 1
            elif char == "\n":
                if not newlines:
                    return
                self.pos += 1
            elif char == "#" or self.text.startswith("//", self.pos):
                end = self.text.find("\n", self.pos)
                self.pos = len(self.text) if end == -1 else end
            elif self.text.startswith("/*", self.pos):
                end = self.text.find("*/", self.pos + 2)
                if end == -1:
                    raise self.error("unterminated block comment")
                self.pos = end + 2
            else:
                return

    def expect(self, char: str) -> None:
        if self.peek() != char:
            found = self.peek() or "end of input"
            raise self.error(f"expected '{char}' but found '{found}'")
        self.pos += 1

    def identifier(self) -> str:
        match = _IDENT.match(self.text, self.pos)
        if match is None:
            raise self.error("expected identifier")
        self.pos = match.end()
        return match.group(0)

    # ---- 正文 ----
    def parse_body(self, closing: Optional[str]) -> Body:
        """解析属性与块，直到遇到 closing 字符或输入结束。"""  # 方法说明。
        body = Body()
        while True:
            self.skip()
            if self.at_end():
                if closing is not None:
                    raise self.error(f"expected '{closing}' before end of input")
                return body
            if closing is not None and self.peek() == closing:
                return body
            start = self.pos
            line = self.line()
            name = self.identifier()
            self.skip(newlines=False)
            if self.peek() == "=" and self.peek(1) != "=":
                self.pos += 1
                expr = self.parse_expression()
                if name in body.attributes:
                    raise self.error(f"duplicate attribute '{name}'", start)
                body.attributes[name] = Attribute(name=name, expr=expr, line=line)
                self.skip(newlines=False)
                if not (self.at_end() or self.peek() == "\n" or (closing is not None and self.peek() == closing)):
                    raise self.error("expected newline after attribute")
                continue
            labels: List[str] = []
            while self.peek() != "{":
                if self.peek() == '"':
                    labels.append(self._block_label())
                elif _IDENT_START.match(self.peek()):
                    labels.append(self.identifier())
                else:
                    raise self.error(f"expected '=' or block for '{name}'")
                self.skip(newlines=False)
            self.expect("{")
            inner = self.parse_body("}")
            self.expect("}")
            body.blocks.append(Block(type=name, labels=tuple(labels), body=inner, line=line))

    def _block_label(self) -> str:
        start = self.pos
        node = self.parse_quoted()
        if isinstance(node, Literal) and isinstance(node.value, str):
            return node.value
        raise self.error("block labels cannot contain interpolation", start)

    # ---- 表达式 ----
    def parse_expression(self) -> Node:
        self.skip()
        return self._postfix(self._primary())

    def _primary(self) -> Node:
        line = self.line()
        char = self.peek()
        if char == '"':
            return self.parse_quoted()
        if self.text.startswith("<<", self.pos):
            return self._heredoc()
        if char == "[":
            return self._list()
        if char == "{":
            return self._object()
        if char == "(":
            self.pos += 1
            inner = self.parse_expression()
            self.skip()
            self.expect(")")
            return inner
        if char.isdigit() or (char == "-" and self.peek(1).isdigit()):
            match = _NUMBER.match(self.text, self.pos)
            assert match is not None
            self.pos = match.end()
            raw = match.group(0)
            value: Union[int, float] = float(raw) if (match.group(1) or match.group(2)) else int(raw)
            return Literal(line=line, value=value)
        if _IDENT_START.match(char or " "):
            name = self.identifier()
            if name == "true":
                return Literal(line=line, value=True)
            if name == "false":
                return Literal(line=line, value=False)
            if name == "null":
                return Literal(line=line, value=None)
            self.skip(newlines=False)
            if self.peek() == "(":
                return Call(line=line, name=name, args=self._arguments())
            return Variable(line=line, name=name)
        if self.at_end():
            raise self.error("unexpected end of input, expected expression")
        raise self.error(f"unexpected character '{char}'")

    def _postfix(self, node: Node) -> Node:
        while True:
            save = self.pos
            while self.peek() in (" ", "\t"):
                self.pos += 1
            if self.peek() == "." and _IDENT_START.match(self.peek(1) or " "):
                self.pos += 1
                node = GetAttr(line=node.line, target=node, name=self.identifier())
            elif self.peek() == "." and self.peek(1).isdigit():
                self.pos += 1
                match = re.compile(r"\d+").match(self.text, self.pos)
                assert match is not None
                self.pos = match.end()
                node = Index(line=node.line, target=node, key=Literal(line=node.line, value=int(match.group(0))))
            elif self.peek() == "[":
                self.pos += 1
                key = self.parse_expression()
                self.skip()
                self.expect("]")
                node = Index(line=node.line, target=node, key=key)
            else:
                self.pos = save
                return node

    def _arguments(self) -> Tuple[Node, ...]:
        self.expect("(")
        args: List[Node] = []
        while True:
            self.skip()
            if self.peek() == ")":
                self.pos += 1
                return tuple(args)
            args.append(self.parse_expression())
            self.skip()
            if self.peek() == ",":
                self.pos += 1
            elif self.peek() != ")":
                raise self.error("expected ',' or ')' in argument list")

    def _list(self) -> ListExpr:
        line = self.line()
        self.expect("[")
        items: List[Node] = []
        while True:
            self.skip()
            if self.at_end():
                raise self.error("expected ']' before end of input")
            if self.peek() == "]":
                self.pos += 1
                return ListExpr(line=line, items=tuple(items))
            items.append(self.parse_expression())
            self.skip()
            if self.peek() == ",":
                self.pos += 1
            elif self.peek() != "]":
                raise self.error("expected ',' or ']' in list")

    def _object(self) -> ObjectExpr:
        line = self.line()
        self.expect("{")
        items: List[Tuple[Union[str, Node], Node]] = []
        while True:
            self.skip()
            if self.at_end():
                raise self.error("expected '}' before end of input")
            if self.peek() == "}":
                self.pos += 1
                return ObjectExpr(line=line, items=tuple(items))
            key: Union[str, Node]
            if self.peek() == '"':
                start = self.pos
                quoted = self.parse_quoted()
                if not (isinstance(quoted, Literal) and isinstance(quoted.value, str)):
                    raise self.error("interpolated object keys must be wrapped in parentheses", start)
                key = quoted.value
            elif self.peek() == "(":
                self.pos += 1
                key = self.parse_expression()
                self.skip()
                self.expect(")")
            else:
                key = self.identifier()
            self.skip()
            if self.peek() not in ("=", ":"):
                raise self.error("expected '=' or ':' after object key")
            self.pos += 1
            items.append((key, self.parse_expression()))
            self.skip(newlines=False)
            if self.peek() == ",":
                self.pos += 1

    # ---- 字符串模板 ----
    def parse_quoted(self) -> Node:
        line = self.line()
        self.expect('"')
        return self._template(line, terminator='"', escapes=True)

    def parse_template_text(self) -> Node:
        """把整段文本当作模板解析（heredoc 与 YAML 字符串）。"""  # 方法说明。
        return self._template(self.line(), terminator=None, escapes=False)

    def _template(self, line: int, terminator: Optional[str], escapes: bool) -> Node:
        parts: List[Union[str, Node]] = []
        buffer: List[str] = []
        while True:
            if self.at_end():
                if terminator is not None:
                    raise self.error("unterminated string")
                break
            char = self.peek()
            if terminator is not None and char == terminator:
                self.pos += 1
                break
            if terminator is not None and char == "\n":
                raise self.error("unterminated string")
            if escapes and char == "\\":
                buffer.append(self._escape())
                continue
            if self.text.startswith("$${", self.pos):
                buffer.append("${")
                self.pos += 3
                continue
            if self.text.startswith("${", self.pos):
                if buffer:
                    parts.append("".join(buffer))
                    buffer = []
                self.pos += 2
                parts.append(self.parse_expression())
                self.skip()
                self.expect("}")
                continue
            buffer.append(char)
            self.pos += 1
        if buffer:
            parts.append("".join(buffer))
        if not parts:
            return Literal(line=line, value="")
        if all(isinstance(part, str) for part in parts):
            return Literal(line=line, value="".join(parts))  # type: ignore[arg-type]
        return TemplateExpr(line=line, parts=tuple(parts))

    def _escape(self) -> str:
        self.pos += 1
        char = self.peek()
        if char in _ESCAPES:
            self.pos += 1
            return _ESCAPES[char]
        width = {"u": 4, "U": 8}.get(char)
        if width is not None:
            digits = self.text[self.pos + 1 : self.pos + 1 + width]
            if len(digits) != width or not all(c in "0123456789abcdefABCDEF" for c in digits):
                raise self.error("invalid unicode escape")
            self.pos += 1 + width
            return chr(int(digits, 16))
        raise self.error(f"invalid escape sequence '\\{char}'")

    def _heredoc(self) -> Node:
        line = self.line()
        self.pos += 2
        strip_indent = False
        if self.peek() == "-":
            strip_indent = True
            self.pos += 1
        marker = self.identifier()
        while self.peek() in (" ", "\t", "\r"):
            self.pos += 1
        self.expect("\n")
        lines: List[str] = []
        while True:
            if self.at_end():
                raise self.error(f"unterminated heredoc, expected '{marker}'")
            end = self.text.find("\n", self.pos)
            raw = self.text[self.pos :] if end == -1 else self.text[self.pos : end]
            self.pos = len(self.text) if end == -1 else end
            if raw.strip() == marker:
                break
            lines.append(raw.rstrip("\r"))
            self.pos += 1  # 跳过换行符。
        if strip_indent:
            indents = [len(item) - len(item.lstrip(" \t")) for item in lines if item.strip()]
            width = min(indents) if indents else 0
            lines = [item[width:] for item in lines]
        content = "\n".join(lines) + ("\n" if lines else "")
        sub = _Parser(content, self.location, line_offset=line)
        return sub.parse_template_text()


def parse_hcl(text: str, location: str) -> Body:
    """解析 HCL 文本为 Body；语法错误抛出带行列号的 ParseError。"""  # 函数说明。
    parser = _Parser(text, location)
    body = parser.parse_body(None)
    if not parser.at_end():
        raise parser.error("unexpected trailing content")
    return body


def parse_template(text: str, location: str) -> Node:
    """把普通字符串解析为模板节点，用于 YAML/JSON 片段。"""  # 函数说明。
    return _Parser(text, location).parse_template_text()


def parse_expression(text: str, location: str = "<expression>") -> Node:
    """解析单个表达式，主要供测试与调试使用。"""  # 函数说明。
    parser = _Parser(text, location)
    node = parser.parse_expression()
    parser.skip()
    if not parser.at_end():
        raise parser.error("unexpected trailing content")
    return node


# ---- 渲染 ----
def _quote(value: str) -> str:
    text = json.dumps(value, ensure_ascii=False)
    return text.replace("${", "$${").replace("%{", "%%{")


def _key(name: str) -> str:
    return name if _IDENT.fullmatch(name) and name not in ("true", "false", "null") else _quote(name)


def dumps_value(value: Any, indent: int = 0) -> str:
    """把 Python 值渲染为 HCL 表达式文本。"""  # 函数说明。
    pad = "  " * indent
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, str):
        return _quote(value)
    if isinstance(value, Mapping):
        if not value:
            return "{}"
        lines = ["{"]
        for key in sorted(value):
            lines.append(f"{pad}  {_key(str(key))} = {dumps_value(value[key], indent + 1)}")
        lines.append(f"{pad}}}")
        return "\n".join(lines)
    if isinstance(value, (list, tuple)):
        if not value:
            return "[]"
        if all(not isinstance(item, (Mapping, list, tuple)) for item in value):
            return "[" + ", ".join(dumps_value(item, indent) for item in value) + "]"
        lines = ["["]
        for item in value:
            lines.append(f"{pad}  {dumps_value(item, indent + 1)},")
        lines.append(f"{pad}]")
        return "\n".join(lines)
    raise TypeError(f"cannot render {type(value).__name__} as HCL")


def dumps_attributes(values: Mapping[str, Any], indent: int = 0) -> str:
    """渲染块体内的 `key = value` 行，按键排序。"""  # 函数说明。
    pad = "  " * indent
    return "".join(f"{pad}{_key(str(key))} = {dumps_value(values[key], indent)}\n" for key in sorted(values))


def render_backend_block(backend: str, config: Mapping[str, Any]) -> str:
    """根据远程状态声明渲染 terraform backend 文件内容。"""  # 函数说明。
    return (
        "terraform {\n"
        f"  backend {_quote(backend)} {{\n"
        f"{dumps_attributes(config, indent=2)}"
        "  }\n"
        "}\n"
    )
