"""按依赖顺序求值片段的 locals，检测未定义与循环引用。"""  # 模块说明。
from __future__ import annotations

from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping

from treeconf.resolver.evaluator import Evaluator, Scope
from treeconf.resolver.expressions import Node, referenced_locals
from treeconf.utils.errors import EvaluationError


class LocalsEvaluator:
    """对单个片段的 locals 做深度优先求值。

    声明顺序无关紧要：每个 local 求值前先求出它静态引用的其他 local。
    make_scope 接收当前已求得的 locals，返回用于求值的作用域。
    """  # 类说明。

    def __init__(
        self,
        declarations: Mapping[str, Node],
        make_scope: Callable[[Mapping[str, Any]], Scope],
        location: str,
        evaluator: Evaluator | None = None,
    ) -> None:
        self.declarations = declarations
        self.make_scope = make_scope
        self.location = location
        self.evaluator = evaluator if evaluator is not None else Evaluator()

    def evaluate(self) -> Mapping[str, Any]:
        """返回只读的 locals 映射。"""  # 方法说明。
        values: Dict[str, Any] = {}
        for name in self.declarations:
            self._visit(name, [], values)
        # 结果按声明顺序排列，保证输出稳定。
        ordered = {name: values[name] for name in self.declarations}
        return MappingProxyType(ordered)

    def _visit(self, name: str, stack: List[str], values: Dict[str, Any]) -> None:
        if name in values:
            return
        if name in stack:
            cycle = stack[stack.index(name):] + [name]
            raise EvaluationError(
                f"circular reference between locals: {' -> '.join(cycle)}",
                location=self.location,
                reference=f"local.{name}",
            )
        expression = self.declarations[name]
        stack.append(name)
        for dependency in sorted(referenced_locals(expression)):
            if dependency not in self.declarations:
                raise EvaluationError(
                    f"local '{name}' references undefined local '{dependency}'",
                    location=self.location,
                    reference=f"local.{dependency}",
                )
            self._visit(dependency, stack, values)
        stack.pop()
        values[name] = self.evaluator.evaluate(expression, self.make_scope(MappingProxyType(values)))
