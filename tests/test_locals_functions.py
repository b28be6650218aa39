"""locals 求值顺序、错误路径与内置函数的测试。"""  # 模块说明。
from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Dict, Mapping

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))  # 将 src 目录加入 sys.path 以导入 treeconf。

import pytest

from treeconf.resolver.evaluator import Evaluator, Scope
from treeconf.resolver.functions import FunctionContext
from treeconf.resolver.hcl import parse_expression, parse_hcl
from treeconf.resolver.locals import LocalsEvaluator
from treeconf.resolver.paths import PathResolver
from treeconf.utils.errors import EvaluationError, NotFoundError


def _context(tmp_path: Path, environ: Mapping[str, str] | None = None) -> FunctionContext:
    """构造以 tmp_path/live/qa/app-1/bucket 为调用点的函数上下文。"""  # 函数说明。
    root = tmp_path / "live"
    leaf_dir = root / "qa" / "app-1" / "bucket"
    leaf_dir.mkdir(parents=True, exist_ok=True)
    return FunctionContext(
        leaf_dir=leaf_dir.resolve(),
        fragment=(leaf_dir / "terragrunt.hcl").resolve(),
        paths=PathResolver(root),
        environ=dict(environ or {}),
    )


def _locals(text: str, context: FunctionContext) -> Mapping[str, Any]:
    body = parse_hcl(text, str(context.fragment))
    declarations = body.blocks[0].body.attributes
    nodes = {name: attribute.expr for name, attribute in declarations.items()}
    return LocalsEvaluator(nodes, lambda values: Scope(context=context, locals=values), str(context.fragment)).evaluate()


def _eval(text: str, context: FunctionContext, **local_values: Any) -> Any:
    return Evaluator().evaluate(parse_expression(text), Scope(context=context, locals=local_values))


def test_locals_any_declaration_order(tmp_path: Path) -> None:
    """local 可以引用声明在后面的 local。"""  # 测试说明。
    values = _locals(
        """
locals {
  bucket = "${local.env}-${local.app}-assets"
  app    = parent_dir_name()
  env    = "qa"
}
""",
        _context(tmp_path),
    )
    assert values["bucket"] == "qa-app-1-assets"
    assert list(values) == ["bucket", "app", "env"]
    with pytest.raises(TypeError):
        values["env"] = "prod"  # type: ignore[index]


def test_locals_cycle_lists_path(tmp_path: Path) -> None:
    """循环引用报错并列出环路。"""  # 测试说明。
    with pytest.raises(EvaluationError) as excinfo:
        _locals("locals {\n  a = local.b\n  b = local.a\n}\n", _context(tmp_path))
    assert "a -> b -> a" in str(excinfo.value)


def test_locals_undefined_reference(tmp_path: Path) -> None:
    with pytest.raises(EvaluationError) as excinfo:
        _locals("locals {\n  a = \"${local.missing}-x\"\n}\n", _context(tmp_path))
    assert excinfo.value.reference == "local.missing"


def test_single_interpolation_keeps_type(tmp_path: Path) -> None:
    """只有一个插值的模板返回原始值。"""  # 测试说明。
    context = _context(tmp_path)
    assert _eval('"${local.members}"', context, members=["a", "b"]) == ["a", "b"]
    assert _eval('"n=${local.count}"', context, count=3.0) == "n=3"
    with pytest.raises(EvaluationError):
        _eval('"x ${local.members}"', context, members=["a"])
    with pytest.raises(EvaluationError):
        _eval('"x ${local.nothing}"', context, nothing=None)


def test_traversal_errors(tmp_path: Path) -> None:
    context = _context(tmp_path)
    data: Dict[str, Any] = {"a": {"b": [10, 20]}}
    assert _eval("local.data.a.b[1]", context, data=data) == 20
    assert _eval('local.data["a"]["b"].0', context, data=data) == 10
    with pytest.raises(EvaluationError):
        _eval("local.data.a.c", context, data=data)
    with pytest.raises(EvaluationError):
        _eval("local.data.a.b[5]", context, data=data)
    with pytest.raises(EvaluationError):
        _eval("var.region", context)


def test_path_functions_use_call_site(tmp_path: Path) -> None:
    """路径函数以调用点为准，相对路径以片段目录为准。"""  # 测试说明。
    context = _context(tmp_path)
    env_file = tmp_path / "live" / "qa" / "env.hcl"
    env_file.write_text("locals {}\n", encoding="utf-8")
    assert _eval('find_in_parent_folders("env.hcl")', context) == str(env_file.resolve())
    assert _eval('find_in_parent_folders("absent.hcl", "fallback")', context) == "fallback"
    with pytest.raises(NotFoundError):
        _eval('find_in_parent_folders("absent.hcl")', context)
    assert _eval("get_terragrunt_dir()", context) == str(context.leaf_dir)
    assert _eval("get_repo_root()", context) == str((tmp_path / "live").resolve())
    assert _eval("path_relative_to_include()", context) == "."
    assert _eval("grandparent_dir_name()", context) == "qa"
    (context.leaf_dir / "policy.json").write_text('{"a": 1}', encoding="utf-8")
    assert _eval('file("policy.json")', context) == '{"a": 1}'
    assert _eval('read_terragrunt_config("missing.hcl", { locals = {} })', context) == {"locals": {}}


def test_string_and_collection_functions(tmp_path: Path) -> None:
    context = _context(tmp_path, environ={"REGION": "eu"})
    assert _eval('get_env("REGION")', context) == "eu"
    assert _eval('get_env("ZONE", "b")', context) == "b"
    assert _eval('format("%s-%d-%v%%", "a", 3, [1])', context) == "a-3-[1]%"
    assert _eval('join(",", split("/", "a/b/c"))', context) == "a,b,c"
    assert _eval('upper(trimspace("  x "))', context) == "X"
    assert _eval('replace(lower("A-B"), "-", "_")', context) == "a_b"
    assert _eval('concat(["a"], ["b", "c"])', context) == ["a", "b", "c"]
    assert _eval('merge({ a = 1, b = 1 }, { b = 2 })', context) == {"a": 1, "b": 2}
    assert _eval('lookup({ a = 1 }, "z", 0)', context) == 0
    assert _eval('jsonencode({ b = [1], a = "x" })', context) == '{"a":"x","b":[1]}'
    assert _eval('basename("/a/b/c.hcl")', context) == "c.hcl"
    assert _eval('dirname("/a/b/c.hcl")', context) == "/a/b"


def test_unknown_function_and_arity(tmp_path: Path) -> None:
    context = _context(tmp_path)
    with pytest.raises(EvaluationError) as excinfo:
        _eval("run_cmd(\"ls\")", context)
    assert "unknown function 'run_cmd'" in str(excinfo.value)
    with pytest.raises(EvaluationError):
        _eval('lower("a", "b")', context)
    with pytest.raises(EvaluationError):
        _eval('format("%s %s", "only-one")', context)
