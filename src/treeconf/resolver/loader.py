"""片段加载器：按后缀选择 HCL、YAML 或 JSON 语法并构造 Fragment。"""  # 模块说明。
from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from treeconf.resolver.expressions import ListExpr, Literal, Node, ObjectExpr
from treeconf.resolver.fragment import Fragment, IncludeDeclaration
from treeconf.resolver.hcl import Block, Body, parse_hcl, parse_template
from treeconf.utils.errors import NotFoundError, ParseError

# 各后缀对应的语法名称。
SUFFIX_SYNTAX = {".hcl": "hcl", ".yaml": "yaml", ".yml": "yaml", ".json": "json"}
# 顶层允许出现的条目。
TOP_LEVEL_KEYS = ("locals", "include", "terraform", "inputs", "remote_state", "generate")
_INCLUDE_ATTRIBUTES = ("path", "expose", "merge_strategy")
_GENERATE_ATTRIBUTES = ("path", "if_exists", "contents")
_REMOTE_STATE_ATTRIBUTES = ("backend", "config", "generate")


def load_fragment(path: Path) -> Fragment:
    """读取并解析单个片段；文件缺失抛 NotFoundError，语法错误抛 ParseError。"""  # 函数说明。

    location = Path(path).resolve()
    if not location.is_file():
        raise NotFoundError(f"fragment not found: {location}", location=str(location))
    syntax = SUFFIX_SYNTAX.get(location.suffix.lower())
    if syntax is None:
        raise ParseError(
            f"unsupported fragment syntax '{location.suffix or '<none>'}'",
            location=str(location),
        )
    try:
        text = location.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ParseError(f"fragment is not valid UTF-8: {exc}", location=str(location)) from exc
    if syntax == "hcl":
        return _fragment_from_body(parse_hcl(text, str(location)), location)
    return _fragment_from_mapping(_load_data(text, syntax, location), location)


class FragmentCache:
    """运行期内的片段解析缓存，按绝对路径键控，首次写入生效。"""  # 类说明。

    def __init__(self) -> None:
        self._items: Dict[Path, Fragment] = {}
        self._lock = threading.Lock()

    def get(self, path: Path) -> Fragment:
        location = Path(path).resolve()
        with self._lock:
            cached = self._items.get(location)
        if cached is not None:
            return cached
        # 解析在锁外进行，并发重复解析时保留第一份结果。
        fragment = load_fragment(location)
        with self._lock:
            return self._items.setdefault(location, fragment)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


def _error(message: str, location: Path, line: int = 0) -> ParseError:
    prefix = f"{location}:{line}" if line else str(location)
    return ParseError(f"{prefix}: {message}", location=str(location), reference=str(line) if line else None)


# ---- HCL ----
def _fragment_from_body(body: Body, location: Path) -> Fragment:
    locals_map: Dict[str, Node] = {}
    includes: List[IncludeDeclaration] = []
    generate: Dict[str, Dict[str, Node]] = {}
    terraform_source: Optional[Node] = None
    remote_state: Optional[Node] = None
    inputs: Optional[Node] = None

    for name, attribute in body.attributes.items():
        if name == "inputs":
            inputs = attribute.expr
        elif name == "remote_state":
            remote_state = attribute.expr
        else:
            raise _error(f"unknown top-level attribute '{name}'", location, attribute.line)

    seen_terraform = False
    for block in body.blocks:
        if block.type == "locals":
            _expect_labels(block, 0, location)
            _reject_nested(block, location)
            for key, attribute in block.body.attributes.items():
                if key in locals_map:
                    raise _error(f"duplicate local '{key}'", location, attribute.line)
                locals_map[key] = attribute.expr
        elif block.type == "include":
            if len(block.labels) > 1:
                raise _error("include accepts at most one label", location, block.line)
            label = block.labels[0] if block.labels else ""
            attrs = _attributes(block, _INCLUDE_ATTRIBUTES, location)
            if "path" not in attrs:
                raise _error(f"include '{label}' is missing 'path'", location, block.line)
            includes.append(
                IncludeDeclaration(
                    label=label,
                    path=attrs["path"],
                    expose=attrs.get("expose"),
                    merge_strategy=attrs.get("merge_strategy"),
                    line=block.line,
                )
            )
        elif block.type == "terraform":
            _expect_labels(block, 0, location)
            if seen_terraform:
                raise _error("duplicate terraform block", location, block.line)
            seen_terraform = True
            terraform_source = _attributes(block, ("source",), location).get("source")
        elif block.type == "remote_state":
            _expect_labels(block, 0, location)
            if remote_state is not None:
                raise _error("duplicate remote_state declaration", location, block.line)
            attrs = _attributes(block, _REMOTE_STATE_ATTRIBUTES, location)
            remote_state = ObjectExpr(line=block.line, items=tuple(attrs.items()))
        elif block.type == "generate":
            _expect_labels(block, 1, location)
            label = block.labels[0]
            if label in generate:
                raise _error(f"duplicate generate block '{label}'", location, block.line)
            generate[label] = _generate_attributes(_attributes(block, _GENERATE_ATTRIBUTES, location), label, location, block.line)
        else:
            raise _error(f"unknown top-level block '{block.type}'", location, block.line)

    _check_include_labels(includes, location)
    return Fragment(
        location=location,
        locals=locals_map,
        includes=tuple(includes),
        terraform_source=terraform_source,
        inputs=inputs,
        remote_state=remote_state,
        generate=generate,
    )


def _expect_labels(block: Block, count: int, location: Path) -> None:
    if len(block.labels) != count:
        raise _error(f"block '{block.type}' expects {count} label(s), got {len(block.labels)}", location, block.line)


def _reject_nested(block: Block, location: Path) -> None:
    if block.body.blocks:
        nested = block.body.blocks[0]
        raise _error(f"unexpected block '{nested.type}' inside '{block.type}'", location, nested.line)


def _attributes(block: Block, allowed: Tuple[str, ...], location: Path) -> Dict[str, Node]:
    _reject_nested(block, location)
    attrs: Dict[str, Node] = {}
    for key, attribute in block.body.attributes.items():
        if key not in allowed:
            raise _error(f"unknown attribute '{key}' in '{block.type}' block", location, attribute.line)
        attrs[key] = attribute.expr
    return attrs


def _generate_attributes(attrs: Mapping[str, Node], label: str, location: Path, line: int) -> Dict[str, Node]:
    for required in ("path", "contents"):
        if required not in attrs:
            raise _error(f"generate '{label}' is missing '{required}'", location, line)
    return dict(attrs)


def _check_include_labels(includes: List[IncludeDeclaration], location: Path) -> None:
    seen = set()
    for declaration in includes:
        if declaration.label in seen:
            name = declaration.label or "<unlabelled>"
            raise _error(f"duplicate include label '{name}'", location, declaration.line)
        seen.add(declaration.label)


# ---- YAML / JSON ----
class _UniqueKeyLoader(yaml.SafeLoader):
    """拒绝同一映射内重复键的 SafeLoader，重复的 include 标签不会被静默覆盖。"""  # 类说明。

    def construct_mapping(self, node: yaml.MappingNode, deep: bool = False) -> Dict[Any, Any]:
        seen = set()
        for key_node, _ in node.value:
            # << 合并键按 YAML 语义允许覆盖。
            if key_node.tag == "tag:yaml.org,2002:merge":
                continue
            key = self.construct_object(key_node, deep=deep)
            try:
                duplicate = key in seen
            except TypeError:
                continue  # 不可哈希的键交给父类报错。
            if duplicate:
                raise yaml.constructor.ConstructorError(
                    "while constructing a mapping", node.start_mark, f"duplicate key '{key}'", key_node.start_mark
                )
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


class _DuplicateJSONKey(ValueError):
    pass


def _unique_pairs(pairs: List[Tuple[str, Any]]) -> Dict[str, Any]:
    data: Dict[str, Any] = {}
    for key, value in pairs:
        if key in data:
            raise _DuplicateJSONKey(key)
        data[key] = value
    return data


def _load_data(text: str, syntax: str, location: Path) -> Mapping[str, Any]:
    if syntax == "yaml":
        try:
            data = yaml.load(text, Loader=_UniqueKeyLoader)
        except yaml.YAMLError as exc:
            mark = getattr(exc, "problem_mark", None)
            line = mark.line + 1 if mark is not None else 0
            raise _error(f"invalid YAML: {getattr(exc, 'problem', None) or exc}", location, line) from exc
    else:
        try:
            data = json.loads(text, object_pairs_hook=_unique_pairs)
        except json.JSONDecodeError as exc:
            raise _error(f"invalid JSON: {exc.msg}", location, exc.lineno) from exc
        except _DuplicateJSONKey as exc:
            raise _error(f"invalid JSON: duplicate key '{exc.args[0]}'", location) from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise _error("fragment document must be a mapping", location)
    return data


def _fragment_from_mapping(data: Mapping[str, Any], location: Path) -> Fragment:
    for key in data:
        if key not in TOP_LEVEL_KEYS:
            raise _error(f"unknown top-level key '{key}'", location)

    locals_data = _section(data, "locals", location)
    locals_map = {str(key): _to_node(value, location) for key, value in locals_data.items()}

    includes: List[IncludeDeclaration] = []
    for label, spec in _section(data, "include", location).items():
        if isinstance(spec, str):
            spec = {"path": spec}
        if not isinstance(spec, dict):
            raise _error(f"include '{label}' must be a mapping or a path string", location)
        unknown = set(spec) - set(_INCLUDE_ATTRIBUTES)
        if unknown:
            raise _error(f"unknown attribute '{sorted(unknown)[0]}' in include '{label}'", location)
        if "path" not in spec:
            raise _error(f"include '{label}' is missing 'path'", location)
        includes.append(
            IncludeDeclaration(
                label=str(label),
                path=_to_node(spec["path"], location),
                expose=_to_node(spec["expose"], location) if "expose" in spec else None,
                merge_strategy=_to_node(spec["merge_strategy"], location) if "merge_strategy" in spec else None,
            )
        )

    terraform = _section(data, "terraform", location)
    unknown_tf = set(terraform) - {"source"}
    if unknown_tf:
        raise _error(f"unknown attribute '{sorted(unknown_tf)[0]}' in terraform", location)

    remote_state = data.get("remote_state")
    if remote_state is not None and not isinstance(remote_state, dict):
        raise _error("'remote_state' must be a mapping", location)

    generate: Dict[str, Dict[str, Node]] = {}
    for label, spec in _section(data, "generate", location).items():
        if not isinstance(spec, dict):
            raise _error(f"generate '{label}' must be a mapping", location)
        unknown = set(spec) - set(_GENERATE_ATTRIBUTES)
        if unknown:
            raise _error(f"unknown attribute '{sorted(unknown)[0]}' in generate '{label}'", location)
        attrs = {str(key): _to_node(value, location) for key, value in spec.items()}
        generate[str(label)] = _generate_attributes(attrs, str(label), location, 0)

    inputs = data.get("inputs")
    return Fragment(
        location=location,
        locals=locals_map,
        includes=tuple(includes),
        terraform_source=_to_node(terraform["source"], location) if "source" in terraform else None,
        inputs=_to_node(inputs, location) if inputs is not None else None,
        remote_state=_to_node(remote_state, location) if remote_state is not None else None,
        generate=generate,
    )


def _section(data: Mapping[str, Any], key: str, location: Path) -> Dict[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise _error(f"'{key}' must be a mapping", location)
    return value


def _to_node(value: Any, location: Path) -> Node:
    """把 YAML/JSON 数据转换为表达式树，字符串按模板解析。"""  # 函数说明。
    if isinstance(value, str):
        return parse_template(value, str(location))
    if isinstance(value, dict):
        return ObjectExpr(line=0, items=tuple((str(key), _to_node(item, location)) for key, item in value.items()))
    if isinstance(value, list):
        return ListExpr(line=0, items=tuple(_to_node(item, location) for item in value))
    if value is None or isinstance(value, (bool, int, float)):
        return Literal(line=0, value=value)
    # 日期等 YAML 扩展类型按字符串处理。
    return Literal(line=0, value=str(value))
