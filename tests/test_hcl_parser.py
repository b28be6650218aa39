"""HCL 子集解析器与渲染工具的测试。"""  # 模块说明。
from __future__ import annotations

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))  # 将 src 目录加入 sys.path 以导入 treeconf。

import pytest

from treeconf.resolver.expressions import Call, GetAttr, Index, ListExpr, Literal, ObjectExpr, TemplateExpr, Variable
from treeconf.resolver.hcl import dumps_value, parse_expression, parse_hcl, parse_template, render_backend_block
from treeconf.utils.errors import ParseError


def test_attributes_blocks_and_comments() -> None:
    """属性、带标签的块与三种注释都能被识别。"""  # 测试说明。
    body = parse_hcl(
        """
# 行注释
// 另一种行注释
/* 块注释
   跨行 */
include "root" {
  path = find_in_parent_folders()  # 行尾注释
}

inputs = {
  name = "bucket"
}
""",
        "t.hcl",
    )
    assert list(body.attributes) == ["inputs"]
    assert len(body.blocks) == 1
    block = body.blocks[0]
    assert block.type == "include"
    assert block.labels == ("root",)
    path_expr = block.body.attributes["path"].expr
    assert isinstance(path_expr, Call)
    assert path_expr.name == "find_in_parent_folders"
    assert path_expr.args == ()


def test_string_escapes_and_literal_interpolation_marker() -> None:
    """转义序列与 $${ 字面量。"""  # 测试说明。
    node = parse_expression(r'"a\tb\n\"q\" é $${keep}"')
    assert isinstance(node, Literal)
    assert node.value == 'a\tb\n"q" é ${keep}'


def test_template_parts() -> None:
    """插值字符串拆分为字面量与表达式片段。"""  # 测试说明。
    node = parse_expression('"${local.env}-${local.app_name}-assets"')
    assert isinstance(node, TemplateExpr)
    assert isinstance(node.parts[0], GetAttr)
    assert node.parts[1] == "-"
    assert node.parts[3] == "-assets"


def test_heredoc_with_indent_strip() -> None:
    """<<- heredoc 去除公共缩进并保留插值。"""  # 测试说明。
    body = parse_hcl(
        "locals {\n  text = <<-EOT\n    line one\n      line ${local.x}\n    EOT\n}\n",
        "t.hcl",
    )
    text = body.blocks[0].body.attributes["text"].expr
    assert isinstance(text, TemplateExpr)
    assert text.parts[0] == "line one\n  line "
    assert text.parts[-1] == "\n"


def test_plain_heredoc_keeps_content_verbatim() -> None:
    body = parse_hcl('contents = <<EOF\nprovider "google" {}\nEOF\n', "t.hcl")
    # contents 不是合法的顶层属性，但解析阶段只关心语法。
    node = body.attributes["contents"].expr
    assert isinstance(node, Literal)
    assert node.value == 'provider "google" {}\n'


def test_collections_numbers_and_traversal() -> None:
    """列表、对象（= 与 : 两种分隔符）、数字与下标访问。"""  # 测试说明。
    node = parse_expression('{ a = [1, -2, 3.5], "b": true, (local.k) = null }')
    assert isinstance(node, ObjectExpr)
    keys = [key for key, _ in node.items]
    assert keys[:2] == ["a", "b"]
    assert isinstance(keys[2], GetAttr)
    values = node.items[0][1]
    assert isinstance(values, ListExpr)
    assert [item.value for item in values.items] == [1, -2, 3.5]

    indexed = parse_expression('local.members[0].name')
    assert isinstance(indexed, GetAttr)
    assert isinstance(indexed.target, Index)
    legacy = parse_expression("local.members.0")
    assert isinstance(legacy, Index)
    assert legacy.key.value == 0


def test_postfix_does_not_cross_newlines() -> None:
    """换行后的 [ 不会被当作下标，属性之间互不干扰。"""  # 测试说明。
    body = parse_hcl('locals {\n  a = local.b\n  c = [1]\n}\n', "t.hcl")
    attrs = body.blocks[0].body.attributes
    assert isinstance(attrs["a"].expr, GetAttr)
    assert isinstance(attrs["c"].expr, ListExpr)


def test_variable_reference() -> None:
    node = parse_expression("include.root.locals")
    assert isinstance(node, GetAttr)
    assert isinstance(node.target.target, Variable)


@pytest.mark.parametrize(
    "text, fragment",
    [
        ("inputs = {\n", "expected '}'"),
        ('inputs = "unterminated\n', "unterminated string"),
        ("a = 1\na = 2\n", "duplicate attribute 'a'"),
        ("inputs = { a = 1 } extra\n", "expected newline after attribute"),
        ("locals {\n  a = @\n}\n", "unexpected character '@'"),
    ],
)
def test_syntax_errors_report_position(text: str, fragment: str) -> None:
    """语法错误包含 path:line:col 定位。"""  # 测试说明。
    with pytest.raises(ParseError) as excinfo:
        parse_hcl(text, "bad.hcl")
    message = str(excinfo.value)
    assert fragment in message
    assert message.startswith("bad.hcl:")
    assert excinfo.value.location == "bad.hcl"


def test_parse_template_for_plain_strings() -> None:
    assert parse_template("no interpolation", "x.yaml") == Literal(line=1, value="no interpolation")
    node = parse_template("${local.region}", "x.yaml")
    assert isinstance(node, TemplateExpr)
    assert len(node.parts) == 1


def test_dumps_value_and_backend_block() -> None:
    """HCL 值渲染使用排序键，backend 块结构固定。"""  # 测试说明。
    assert dumps_value({"b": [1, "x"], "a": None}) == '{\n  a = null\n  b = [1, "x"]\n}'
    assert dumps_value("${raw}") == '"$${raw}"'
    text = render_backend_block("gcs", {"prefix": "qa/app", "bucket": "state"})
    assert text == (
        "terraform {\n"
        '  backend "gcs" {\n'
        '    bucket = "state"\n'
        '    prefix = "qa/app"\n'
        "  }\n"
        "}\n"
    )
