"""表达式内置函数。

路径类函数总是以调用点（正在解析的叶子）为准，即使表达式写在被 include 的片段里；
file 与 read_terragrunt_config 的相对路径则以表达式所在片段的目录为基准。
"""  # 模块说明。
from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from treeconf.resolver.fragment import to_plain
from treeconf.resolver.paths import PathResolver, relative_posix
from treeconf.utils.errors import EvaluationError, NotFoundError

_MISSING = object()


@dataclass(frozen=True)
class FunctionContext:
    """一次函数调用可见的上下文。"""  # 类说明。

    leaf_dir: Path  # 调用点目录，即正在解析的叶子所在目录。
    fragment: Path  # 表达式所在片段的位置。
    paths: PathResolver
    leaf_name: str = "terragrunt.hcl"
    environ: Mapping[str, str] = field(default_factory=dict)
    read_reference: Optional[Callable[[Path], Any]] = None

    def fail(self, name: str, message: str) -> EvaluationError:
        return EvaluationError(f"{name}(): {message}", location=str(self.fragment), reference=name)

    def relative_to_fragment(self, value: str) -> Path:
        path = Path(value)
        return path if path.is_absolute() else self.fragment.parent / path


def to_template_string(value: Any, *, location: str = "", reference: Optional[str] = None) -> str:
    """把标量转换为插值用的字符串；null、列表与映射不能插值。"""  # 函数说明。
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    kind = "null" if value is None else type(value).__name__
    raise EvaluationError(
        f"cannot interpolate {kind} value into a string",
        location=location or None,
        reference=reference,
    )


def _string(ctx: FunctionContext, name: str, value: Any) -> str:
    if not isinstance(value, str):
        raise ctx.fail(name, f"expected string argument, got {type(value).__name__}")
    return value


def _sequence(ctx: FunctionContext, name: str, value: Any) -> List[Any]:
    if not isinstance(value, (list, tuple)):
        raise ctx.fail(name, f"expected list argument, got {type(value).__name__}")
    return list(value)


def _mapping(ctx: FunctionContext, name: str, value: Any) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ctx.fail(name, f"expected map argument, got {type(value).__name__}")
    return value


# ---- 路径与上下文 ----
def _find_in_parent_folders(ctx: FunctionContext, name: Any = _MISSING, fallback: Any = _MISSING) -> Any:
    target = ctx.leaf_name if name is _MISSING else _string(ctx, "find_in_parent_folders", name)
    try:
        # 叶子自身也被跳过，include 的片段调用时不会找回正在解析的叶子。
        excluded = (ctx.fragment, ctx.leaf_dir / ctx.leaf_name)
        found = ctx.paths.find_in_parent_folders(ctx.leaf_dir, target, exclude=excluded)
    except NotFoundError as exc:
        if fallback is not _MISSING:
            return fallback
        raise NotFoundError(exc.message, location=str(ctx.fragment), reference=target) from exc
    return str(found)


def _get_terragrunt_dir(ctx: FunctionContext) -> str:
    return str(ctx.leaf_dir)


def _get_parent_terragrunt_dir(ctx: FunctionContext) -> str:
    return str(ctx.fragment.parent)


def _get_repo_root(ctx: FunctionContext) -> str:
    return str(ctx.paths.root)


def _path_relative_to_include(ctx: FunctionContext) -> str:
    return relative_posix(ctx.leaf_dir, ctx.fragment.parent)


def _read_terragrunt_config(ctx: FunctionContext, path: Any, default: Any = _MISSING) -> Any:
    target = ctx.relative_to_fragment(_string(ctx, "read_terragrunt_config", path))
    if not target.is_file():
        if default is not _MISSING:
            return default
        raise NotFoundError(f"referenced fragment not found: {target}", location=str(ctx.fragment), reference=str(path))
    if ctx.read_reference is None:
        raise ctx.fail("read_terragrunt_config", "fragment references are not available here")
    return ctx.read_reference(target)


def _parent_dir_name(ctx: FunctionContext) -> str:
    return ctx.paths.derived_names(ctx.leaf_dir)[0]


def _grandparent_dir_name(ctx: FunctionContext) -> str:
    return ctx.paths.derived_names(ctx.leaf_dir)[1]


# ---- 文件 ----
def _basename(ctx: FunctionContext, path: Any) -> str:
    return os.path.basename(_string(ctx, "basename", path).rstrip("/"))


def _dirname(ctx: FunctionContext, path: Any) -> str:
    return os.path.dirname(_string(ctx, "dirname", path).rstrip("/")) or "."


def _file(ctx: FunctionContext, path: Any) -> str:
    target = ctx.relative_to_fragment(_string(ctx, "file", path))
    if not target.is_file():
        raise NotFoundError(f"file not found: {target}", location=str(ctx.fragment), reference=str(path))
    return target.read_text(encoding="utf-8")


def _get_env(ctx: FunctionContext, name: Any, default: Any = "") -> Any:
    return ctx.environ.get(_string(ctx, "get_env", name), default)


# ---- 字符串 ----
def _lower(ctx: FunctionContext, value: Any) -> str:
    return _string(ctx, "lower", value).lower()


def _upper(ctx: FunctionContext, value: Any) -> str:
    return _string(ctx, "upper", value).upper()


def _trimspace(ctx: FunctionContext, value: Any) -> str:
    return _string(ctx, "trimspace", value).strip()


def _replace(ctx: FunctionContext, value: Any, old: Any, new: Any) -> str:
    return _string(ctx, "replace", value).replace(_string(ctx, "replace", old), _string(ctx, "replace", new))


def _format(ctx: FunctionContext, spec: Any, *args: Any) -> str:
    template = _string(ctx, "format", spec)
    pieces: List[str] = []
    remaining = list(args)
    index = 0
    while index < len(template):
        char = template[index]
        if char != "%":
            pieces.append(char)
            index += 1
            continue
        verb = template[index + 1] if index + 1 < len(template) else ""
        index += 2
        if verb == "%":
            pieces.append("%")
            continue
        if verb not in ("s", "d", "v"):
            raise ctx.fail("format", f"unsupported verb '%{verb}'")
        if not remaining:
            raise ctx.fail("format", "not enough arguments for format string")
        value = remaining.pop(0)
        if verb == "d":
            if isinstance(value, bool) or not isinstance(value, (int, float)) or float(value) != int(value):
                raise ctx.fail("format", f"%d expects an integer, got {value!r}")
            pieces.append(str(int(value)))
        elif verb == "v" and not isinstance(value, (str, bool, int, float)):
            pieces.append(_jsonencode(ctx, value))
        else:
            pieces.append(to_template_string(value, location=str(ctx.fragment), reference="format"))
    if remaining:
        raise ctx.fail("format", "too many arguments for format string")
    return "".join(pieces)


def _join(ctx: FunctionContext, separator: Any, values: Any) -> str:
    items = _sequence(ctx, "join", values)
    return _string(ctx, "join", separator).join(
        to_template_string(item, location=str(ctx.fragment), reference="join") for item in items
    )


def _split(ctx: FunctionContext, separator: Any, value: Any) -> List[str]:
    return _string(ctx, "split", value).split(_string(ctx, "split", separator))


# ---- 集合 ----
def _concat(ctx: FunctionContext, *lists: Any) -> List[Any]:
    result: List[Any] = []
    for item in lists:
        result.extend(_sequence(ctx, "concat", item))
    return result


def _merge(ctx: FunctionContext, *maps: Any) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for item in maps:
        result.update(_mapping(ctx, "merge", item))
    return result


def _lookup(ctx: FunctionContext, mapping: Any, key: Any, default: Any = _MISSING) -> Any:
    source = _mapping(ctx, "lookup", mapping)
    name = _string(ctx, "lookup", key)
    if name in source:
        return source[name]
    if default is _MISSING:
        raise ctx.fail("lookup", f"key '{name}' not found and no default given")
    return default


def _jsonencode(ctx: FunctionContext, value: Any) -> str:
    return json.dumps(to_plain(value), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


# 函数名 -> (实现, 最少参数, 最多参数；None 表示不限)。
FUNCTIONS: Dict[str, Tuple[Callable[..., Any], int, Optional[int]]] = {
    "find_in_parent_folders": (_find_in_parent_folders, 0, 2),
    "get_terragrunt_dir": (_get_terragrunt_dir, 0, 0),
    "get_parent_terragrunt_dir": (_get_parent_terragrunt_dir, 0, 0),
    "get_repo_root": (_get_repo_root, 0, 0),
    "path_relative_to_include": (_path_relative_to_include, 0, 0),
    "read_terragrunt_config": (_read_terragrunt_config, 1, 2),
    "parent_dir_name": (_parent_dir_name, 0, 0),
    "grandparent_dir_name": (_grandparent_dir_name, 0, 0),
    "basename": (_basename, 1, 1),
    "dirname": (_dirname, 1, 1),
    "file": (_file, 1, 1),
    "get_env": (_get_env, 1, 2),
    "lower": (_lower, 1, 1),
    "upper": (_upper, 1, 1),
    "trimspace": (_trimspace, 1, 1),
    "replace": (_replace, 3, 3),
    "format": (_format, 1, None),
    "join": (_join, 2, 2),
    "split": (_split, 2, 2),
    "concat": (_concat, 1, None),
    "merge": (_merge, 1, None),
    "lookup": (_lookup, 2, 3),
    "jsonencode": (_jsonencode, 1, 1),
}


def call_function(ctx: FunctionContext, name: str, args: List[Any]) -> Any:
    """按名称调用内置函数并检查参数个数。"""  # 函数说明。
    entry = FUNCTIONS.get(name)
    if entry is None:
        raise EvaluationError(f"unknown function '{name}'", location=str(ctx.fragment), reference=name)
    func, minimum, maximum = entry
    if len(args) < minimum or (maximum is not None and len(args) > maximum):
        expected = f"{minimum}" if minimum == maximum else f"{minimum}..{maximum if maximum is not None else 'n'}"
        raise ctx.fail(name, f"expected {expected} argument(s), got {len(args)}")
    return func(ctx, *args)
