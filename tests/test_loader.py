"""片段加载器测试：HCL/YAML/JSON 三种语法与结构校验。"""  # 模块说明。
from __future__ import annotations

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))  # 将 src 目录加入 sys.path 以导入 treeconf。

import pytest

from treeconf.resolver.expressions import Literal, ObjectExpr, TemplateExpr
from treeconf.resolver.loader import FragmentCache, load_fragment
from treeconf.utils.errors import NotFoundError, ParseError


def _write(path: Path, text: str) -> Path:
    """辅助函数：创建父目录并写入文本。"""  # 函数说明。
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def test_hcl_fragment_structure(tmp_path: Path) -> None:
    """顶层块被拆分到 Fragment 的各个字段。"""  # 测试说明。
    path = _write(
        tmp_path / "terragrunt.hcl",
        """
locals {
  env = "qa"
}

include "root" {
  path   = find_in_parent_folders()
  expose = true
}

include "env" {
  path           = "../env.hcl"
  merge_strategy = "no_merge"
}

terraform {
  source = "git::https://example.com/modules.git//bucket?ref=v1.2.0"
}

remote_state {
  backend = "gcs"
  config = {
    bucket = "state"
  }
}

generate "provider" {
  path      = "provider.tf"
  if_exists = "overwrite"
  contents  = "provider {}"
}

inputs = {
  name = "bucket"
}
""",
    )
    fragment = load_fragment(path)
    assert fragment.location == path.resolve()
    assert list(fragment.locals) == ["env"]
    assert [item.label for item in fragment.includes] == ["root", "env"]
    assert fragment.includes[0].expose is not None
    assert fragment.includes[1].merge_strategy.value == "no_merge"
    assert isinstance(fragment.terraform_source, Literal)
    assert isinstance(fragment.remote_state, ObjectExpr)
    assert set(fragment.generate["provider"]) == {"path", "if_exists", "contents"}
    assert isinstance(fragment.inputs, ObjectExpr)


def test_missing_fragment_is_not_found(tmp_path: Path) -> None:
    with pytest.raises(NotFoundError):
        load_fragment(tmp_path / "absent.hcl")


def test_duplicate_include_labels_rejected(tmp_path: Path) -> None:
    """同一片段内 include 标签必须唯一。"""  # 测试说明。
    path = _write(
        tmp_path / "terragrunt.hcl",
        'include "root" {\n  path = "a.hcl"\n}\ninclude "root" {\n  path = "b.hcl"\n}\n',
    )
    with pytest.raises(ParseError) as excinfo:
        load_fragment(path)
    assert "duplicate include label 'root'" in str(excinfo.value)


@pytest.mark.parametrize(
    "text, fragment",
    [
        ("input = {}\n", "unknown top-level attribute 'input'"),
        ("dependency \"vpc\" {\n  config_path = \"../vpc\"\n}\n", "unknown top-level block 'dependency'"),
        ('include {\n  expose = true\n}\n', "is missing 'path'"),
        ('generate "x" {\n  path = "x.tf"\n}\n', "generate 'x' is missing 'contents'"),
        ('terraform {\n  sourc = "x"\n}\n', "unknown attribute 'sourc'"),
    ],
)
def test_structural_errors(tmp_path: Path, text: str, fragment: str) -> None:
    """拼写错误的条目不会被静默忽略。"""  # 测试说明。
    path = _write(tmp_path / "terragrunt.hcl", text)
    with pytest.raises(ParseError) as excinfo:
        load_fragment(path)
    assert fragment in str(excinfo.value)


def test_yaml_fragment_strings_are_templates(tmp_path: Path) -> None:
    """YAML 片段中的字符串按模板解析。"""  # 测试说明。
    path = _write(
        tmp_path / "common.yaml",
        """
locals:
  region: eu-west1
include:
  root:
    path: ${find_in_parent_folders("root.hcl")}
    expose: true
inputs:
  location: ${local.region}
  tags: [a, b]
""",
    )
    fragment = load_fragment(path)
    assert isinstance(fragment.locals["region"], Literal)
    assert fragment.includes[0].label == "root"
    assert isinstance(fragment.includes[0].path, TemplateExpr)
    assert isinstance(fragment.inputs, ObjectExpr)


def test_json_fragment_and_errors(tmp_path: Path) -> None:
    good = _write(tmp_path / "a.json", '{"inputs": {"size": 3}}')
    assert isinstance(load_fragment(good).inputs, ObjectExpr)
    bad = _write(tmp_path / "b.json", '{"inputs": ')
    with pytest.raises(ParseError):
        load_fragment(bad)
    unknown = _write(tmp_path / "c.json", '{"outputs": {}}')
    with pytest.raises(ParseError) as excinfo:
        load_fragment(unknown)
    assert "unknown top-level key 'outputs'" in str(excinfo.value)


@pytest.mark.parametrize(
    "name, text",
    [
        ("terragrunt.yaml", "include:\n  root: ../a.hcl\n  root: ../b.hcl\n"),
        ("terragrunt.yaml", "locals:\n  env: qa\n  env: prod\n"),
        ("terragrunt.json", '{"include": {"root": "../a.hcl", "root": "../b.hcl"}}'),
        ("terragrunt.json", '{"inputs": {"size": 1}, "inputs": {"size": 2}}'),
    ],
)
def test_duplicate_keys_in_data_fragments_rejected(tmp_path: Path, name: str, text: str) -> None:
    """YAML/JSON 片段中的重复键与 HCL 中的重复标签一样报错，不会后者静默覆盖前者。"""  # 测试说明。
    path = _write(tmp_path / name, text)
    with pytest.raises(ParseError) as excinfo:
        load_fragment(path)
    assert "duplicate key" in str(excinfo.value)


def test_yaml_duplicate_key_reports_line(tmp_path: Path) -> None:
    path = _write(tmp_path / "terragrunt.yaml", "include:\n  root: ../a.hcl\n  root: ../b.hcl\n")
    with pytest.raises(ParseError) as excinfo:
        load_fragment(path)
    assert f"{path.resolve()}:3:" in str(excinfo.value)
    assert "'root'" in str(excinfo.value)


def test_unsupported_suffix(tmp_path: Path) -> None:
    path = _write(tmp_path / "config.toml", "a = 1\n")
    with pytest.raises(ParseError):
        load_fragment(path)


def test_cache_parses_once(tmp_path: Path) -> None:
    """同一位置只解析一次，后续返回同一个对象。"""  # 测试说明。
    path = _write(tmp_path / "terragrunt.hcl", "inputs = {}\n")
    cache = FragmentCache()
    first = cache.get(path)
    path.write_text("inputs = { changed = true }\n", encoding="utf-8")
    assert cache.get(tmp_path / "." / "terragrunt.hcl") is first
    assert len(cache) == 1
