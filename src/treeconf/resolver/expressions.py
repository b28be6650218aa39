"""表达式语法树节点与引用分析工具。"""  # 模块说明。
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterator, Set, Tuple, Union


@dataclass(frozen=True)
class Node:
    """所有表达式节点的基类，line 为片段内的行号。"""  # 类说明。

    line: int


@dataclass(frozen=True)
class Literal(Node):
    value: Any


@dataclass(frozen=True)
class TemplateExpr(Node):
    """带 ${...} 插值的字符串模板，parts 由字面量与表达式交替组成。"""  # 类说明。

    parts: Tuple[Union[str, Node], ...]


@dataclass(frozen=True)
class ListExpr(Node):
    items: Tuple[Node, ...]


@dataclass(frozen=True)
class ObjectExpr(Node):
    """对象字面量；键为字符串或括号包裹的表达式。"""  # 类说明。

    items: Tuple[Tuple[Union[str, Node], Node], ...]


@dataclass(frozen=True)
class Variable(Node):
    name: str


@dataclass(frozen=True)
class GetAttr(Node):
    target: Node
    name: str


@dataclass(frozen=True)
class Index(Node):
    target: Node
    key: Node


@dataclass(frozen=True)
class Call(Node):
    name: str
    args: Tuple[Node, ...]


def walk(node: Node) -> Iterator[Node]:
    """深度优先遍历表达式树。"""  # 函数说明。
    yield node
    if isinstance(node, TemplateExpr):
        for part in node.parts:
            if isinstance(part, Node):
                yield from walk(part)
    elif isinstance(node, ListExpr):
        for item in node.items:
            yield from walk(item)
    elif isinstance(node, ObjectExpr):
        for key, value in node.items:
            if isinstance(key, Node):
                yield from walk(key)
            yield from walk(value)
    elif isinstance(node, GetAttr):
        yield from walk(node.target)
    elif isinstance(node, Index):
        yield from walk(node.target)
        yield from walk(node.key)
    elif isinstance(node, Call):
        for arg in node.args:
            yield from walk(arg)


def referenced_locals(node: Node) -> Set[str]:
    """返回表达式中静态引用的 local 名称集合。"""  # 函数说明。
    names: Set[str] = set()
    for item in walk(node):
        if isinstance(item, GetAttr) and isinstance(item.target, Variable) and item.target.name == "local":
            names.add(item.name)
        elif (
            isinstance(item, Index)
            and isinstance(item.target, Variable)
            and item.target.name == "local"
            and isinstance(item.key, Literal)
        ):
            names.add(str(item.key.value))
    return names


def describe(node: Node) -> str:
    """将引用类节点还原为源码形式，用于错误消息。"""  # 函数说明。
    if isinstance(node, Variable):
        return node.name
    if isinstance(node, GetAttr):
        return f"{describe(node.target)}.{node.name}"
    if isinstance(node, Index):
        key = node.key.value if isinstance(node.key, Literal) else "..."
        return f"{describe(node.target)}[{key!r}]"
    if isinstance(node, Call):
        return f"{node.name}(...)"
    if isinstance(node, Literal):
        return repr(node.value)
    return type(node).__name__
