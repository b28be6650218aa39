"""表达式求值器：在给定作用域内把语法树计算为 Python 值。"""  # 模块说明。
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

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
    describe,
)
from treeconf.resolver.fragment import FragmentRef
from treeconf.resolver.functions import FunctionContext, call_function, to_template_string
from treeconf.utils.errors import EvaluationError


@dataclass
class Scope:
    """一次求值可见的绑定：函数上下文、已求值的 locals 与 include 引用。

    includes 中值为 None 的标签表示已声明但未 expose。
    """  # 类说明。

    context: FunctionContext
    locals: Mapping[str, Any] = field(default_factory=dict)
    includes: Mapping[str, Optional[FragmentRef]] = field(default_factory=dict)

    @property
    def location(self) -> str:
        return str(self.context.fragment)


class Evaluator:
    """无状态求值器，所有状态来自 Scope。"""  # 类说明。

    def evaluate(self, node: Node, scope: Scope) -> Any:
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, TemplateExpr):
            return self._template(node, scope)
        if isinstance(node, ListExpr):
            return [self.evaluate(item, scope) for item in node.items]
        if isinstance(node, ObjectExpr):
            return self._object(node, scope)
        if isinstance(node, Variable):
            return self._variable(node, scope)
        if isinstance(node, GetAttr):
            return self._get_attr(node, scope)
        if isinstance(node, Index):
            return self._index(node, scope)
        if isinstance(node, Call):
            args = [self.evaluate(arg, scope) for arg in node.args]
            return call_function(scope.context, node.name, args)
        raise EvaluationError(f"unsupported expression {type(node).__name__}", location=scope.location)

    def _fail(self, message: str, node: Node, scope: Scope) -> EvaluationError:
        suffix = f" at line {node.line}" if node.line else ""
        return EvaluationError(f"{message}{suffix}", location=scope.location, reference=describe(node))

    def _template(self, node: TemplateExpr, scope: Scope) -> Any:
        # 仅含一个插值的模板返回原始值，保留列表与映射类型。
        if len(node.parts) == 1 and isinstance(node.parts[0], Node):
            return self.evaluate(node.parts[0], scope)
        pieces: List[str] = []
        for part in node.parts:
            if isinstance(part, str):
                pieces.append(part)
                continue
            value = self.evaluate(part, scope)
            pieces.append(to_template_string(value, location=scope.location, reference=describe(part)))
        return "".join(pieces)

    def _object(self, node: ObjectExpr, scope: Scope) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        for key, value in node.items:
            if isinstance(key, Node):
                evaluated = self.evaluate(key, scope)
                if isinstance(evaluated, (dict, list)) or evaluated is None:
                    raise self._fail("object key must be a string", key, scope)
                name = to_template_string(evaluated, location=scope.location)
            else:
                name = key
            result[name] = self.evaluate(value, scope)
        return result

    def _variable(self, node: Variable, scope: Scope) -> Any:
        if node.name == "local":
            return scope.locals
        if node.name == "include":
            return {label: ref for label, ref in scope.includes.items() if ref is not None}
        raise self._fail(f"unknown variable '{node.name}'", node, scope)

    def _get_attr(self, node: GetAttr, scope: Scope) -> Any:
        target = node.target
        if isinstance(target, Variable) and target.name == "local":
            if node.name not in scope.locals:
                raise self._fail(f"undefined local '{node.name}'", node, scope)
            return scope.locals[node.name]
        if isinstance(target, Variable) and target.name == "include":
            return self._include(node, scope)
        return self._attribute(self.evaluate(target, scope), node.name, node, scope)

    def _include(self, node: GetAttr, scope: Scope) -> Any:
        label = node.name
        if label not in scope.includes:
            # 无标签 include 可以直接以 include.locals / include.inputs 访问。
            if "" in scope.includes and label in ("locals", "inputs"):
                ref = scope.includes[""]
                if ref is None:
                    raise self._fail("include is not exposed", node, scope)
                return ref.attribute(label)
            raise self._fail(f"unknown include label '{label}'", node, scope)
        ref = scope.includes[label]
        if ref is None:
            raise self._fail(f"include '{label}' is not exposed", node, scope)
        return ref

    def _attribute(self, value: Any, name: str, node: Node, scope: Scope) -> Any:
        if isinstance(value, FragmentRef):
            try:
                return value.attribute(name)
            except KeyError:
                raise self._fail(f"fragment reference has no attribute '{name}'", node, scope) from None
        if isinstance(value, Mapping):
            if name not in value:
                raise self._fail(f"missing key '{name}'", node, scope)
            return value[name]
        raise self._fail(f"cannot read attribute '{name}' of {type(value).__name__}", node, scope)

    def _index(self, node: Index, scope: Scope) -> Any:
        if isinstance(node.target, Variable) and node.target.name == "local":
            key = self.evaluate(node.key, scope)
            if not isinstance(key, str) or key not in scope.locals:
                raise self._fail(f"undefined local '{key}'", node, scope)
            return scope.locals[key]
        value = self.evaluate(node.target, scope)
        key = self.evaluate(node.key, scope)
        if isinstance(value, (list, tuple)):
            if isinstance(key, bool) or not isinstance(key, (int, float)) or int(key) != key:
                raise self._fail(f"list index must be an integer, got {key!r}", node, scope)
            position = int(key)
            if not 0 <= position < len(value):
                raise self._fail(f"index {position} out of range", node, scope)
            return value[position]
        if isinstance(value, (Mapping, FragmentRef)) and isinstance(key, str):
            return self._attribute(value, key, node, scope)
        raise self._fail(f"cannot index {type(value).__name__} with {key!r}", node, scope)
