"""工具自身的分层配置：默认值、用户文件、.env、环境变量与命令行覆盖，附带来源追踪。"""  # 模块说明。
from __future__ import annotations

import copy
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple  # 导入类型注解辅助代码可读性。

import yaml

from treeconf.utils.errors import ConfigError  # 统一的配置异常类型。
from treeconf.utils.io import atomic_write_text  # 复用原子写入工具以保存配置快照。

ENV_PREFIX = "TREECONF_"  # 所有环境变量需以此前缀开头才会被解析。
DEFAULT_USER_FILE = "treeconf.yaml"  # 未显式指定时在当前目录查找的用户配置文件。
OUTPUT_FORMATS = ("json", "yaml", "hcl")
LOG_FORMATS = ("human", "jsonl")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class ConfigBundle:
    """封装配置加载结果，包含配置体、来源映射与用户配置文件位置。"""  # 数据类说明。

    config: Dict[str, Any]  # 合并、规范化并通过校验后的设置。
    sources: Dict[str, Any]  # 与 config 同构的来源标签树，如 "env:TREECONF_LOG_LEVEL"。
    user_path: Optional[Path] = None  # 实际读取的用户配置文件，未读取时为 None。


def default_config_path() -> Path:
    """返回随包分发的默认配置文件路径。"""  # 工具函数说明。

    return Path(__file__).resolve().parents[1] / "default.yaml"  # config.py 位于 treeconf/utils，上一级即包目录。


def _load_yaml(path: Path) -> Dict[str, Any]:
    """读取设置文件；空文件视为空映射，非映射或语法错误抛出 ConfigError。"""  # 工具函数说明。

    try:
        with path.open("r", encoding="utf-8") as handle:  # 打开文件读取 UTF-8 文本。
            data = yaml.safe_load(handle)  # 使用 safe_load 避免执行任意代码。
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):  # 顶层必须是映射。
        raise ConfigError(f"Config file {path} must contain a mapping")
    return data


def _build_source_tree(node: Any, label: str) -> Any:
    """为一层设置生成同构的来源树，每个叶子都是该层的标签。"""  # 工具函数说明。

    if isinstance(node, dict):
        return {key: _build_source_tree(value, label) for key, value in node.items()}
    return label


def _deep_merge(base: Dict[str, Any], incoming: Dict[str, Any], sources: Dict[str, Any], incoming_sources: Any) -> None:
    """把一层设置深合并进 base，同时把对应键的来源改为该层标签。"""  # 工具函数说明。

    for key, value in incoming.items():
        source_info = incoming_sources.get(key) if isinstance(incoming_sources, dict) else incoming_sources
        if isinstance(value, dict):  # 映射递归合并，列表与标量整体替换。
            base_child = base.get(key)
            source_child = sources.get(key)
            if not isinstance(base_child, dict):
                base_child = {}
            if not isinstance(source_child, dict):
                source_child = {}
            base[key] = base_child
            sources[key] = source_child
            if isinstance(source_info, str):
                source_info = _build_source_tree(value, source_info)
            _deep_merge(base_child, value, source_child, source_info)
            continue
        base[key] = copy.deepcopy(value)
        sources[key] = source_info


def _parse_scalar(value: str) -> Any:
    """将字符串尝试解析为布尔、空值、整数、浮点或逗号分隔的列表。"""  # 工具函数说明。

    stripped = value.strip()
    lowered = stripped.lower()
    if lowered in {"true", "false"}:
        return lowered == "true"
    if lowered in {"null", "none"}:
        return None
    if stripped.startswith("[") and stripped.endswith("]"):  # 列表写作 [a,b]。
        inner = stripped[1:-1]
        return [_parse_scalar(item) for item in inner.split(",") if item.strip()]
    try:
        if lowered.startswith("0") and lowered not in {"0", "0.0"}:  # 以 0 开头的字符串保持原样。
            raise ValueError
        return int(lowered)
    except ValueError:
        try:
            return float(lowered)
        except ValueError:
            return stripped


def _keypath_to_tree(keypath: Iterable[str], value: Any) -> Dict[str, Any]:
    """把 ["batch", "num_workers"] 这样的键路径展开为嵌套字典。"""  # 工具函数说明。

    result: Dict[str, Any] = {}
    cursor = result
    components = list(keypath)
    for index, part in enumerate(components):
        if index == len(components) - 1:
            cursor[part] = value
        else:
            cursor = cursor.setdefault(part, {})
    return result


def _collect_env_from_mapping(env: Mapping[str, str], source_prefix: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """从映射中提取 TREECONF_* 变量，双下划线分隔层级。"""  # 工具函数说明。

    values: Dict[str, Any] = {}
    value_sources: Dict[str, Any] = {}
    for key in sorted(env):
        if not key.startswith(ENV_PREFIX):
            continue
        path = [segment.lower() for segment in key[len(ENV_PREFIX):].split("__") if segment]
        if not path:
            continue
        tree = _keypath_to_tree(path, _parse_scalar(env[key]))
        source_tree = _keypath_to_tree(path, f"env:{source_prefix}{key}")
        _deep_merge(values, tree, value_sources, source_tree)
    return values, value_sources


def _parse_dotenv_file(path: Path) -> Dict[str, str]:
    """读取 .env 中的 KEY=VALUE 行，忽略注释并允许 export 前缀。"""  # 工具函数说明。

    result: Dict[str, str] = {}
    if not path.is_file():
        return result
    with path.open("r", encoding="utf-8") as handle:
        for line in handle:
            stripped = line.strip()
            if not stripped or stripped.startswith("#") or "=" not in stripped:
                continue
            key, _, raw_value = stripped.partition("=")
            result[key.strip().removeprefix("export ").strip()] = raw_value.strip().strip("\"'")
    return result


def _normalize_path(value: str) -> str:
    """展开 ~ 与环境变量引用并去掉末尾斜杠。"""  # 工具函数说明。

    expanded = os.path.expanduser(os.path.expandvars(value.strip()))
    if expanded not in {"/", ""}:
        expanded = expanded.rstrip("/\\")
    return expanded


def _normalize_config(config: Dict[str, Any]) -> None:
    """就地规范化：格式小写、等级大写、路径展开、逗号字符串转列表。"""  # 工具函数说明。

    for key in ("log_format",):
        value = config.get(key)
        if isinstance(value, str):
            config[key] = value.strip().lower()
    level = config.get("log_level")
    if isinstance(level, str):
        config["log_level"] = level.strip().upper()
    output = config.get("output")
    if isinstance(output, dict) and isinstance(output.get("format"), str):
        output["format"] = output["format"].strip().lower()
    path_like_keys = [
        ["resolver", "root"],
        ["generate", "output_dir"],
        ["log_file"],
        ["report_file"],
    ]
    for path in path_like_keys:
        parent: Any = config
        for part in path[:-1]:
            parent = parent.get(part) if isinstance(parent, dict) else None
        if not isinstance(parent, dict):
            continue
        value = parent.get(path[-1])
        if isinstance(value, str):
            parent[path[-1]] = _normalize_path(value) or None
    for path in (["resolver", "root_markers"], ["resolver", "exclude_dirs"]):  # 单个字符串视为单元素列表。
        section = config.get(path[0])
        if isinstance(section, dict) and isinstance(section.get(path[1]), str):
            section[path[1]] = [item.strip() for item in section[path[1]].split(",") if item.strip()]
    batch = config.get("batch")
    if isinstance(batch, dict) and isinstance(batch.get("num_workers"), int) and not isinstance(batch["num_workers"], bool):
        batch["num_workers"] = max(1, batch["num_workers"])
    sample = config.get("log_sample_rate")
    if isinstance(sample, (int, float)) and not isinstance(sample, bool):
        config["log_sample_rate"] = max(min(float(sample), 1.0), 1e-6)


def _source_for_path(path: Iterable[str], sources: Dict[str, Any]) -> str:
    """返回键路径对应的来源标签，找不到时为 unknown。"""  # 工具函数说明。

    cursor: Any = sources
    for part in path:
        if not isinstance(cursor, dict):
            return "unknown"
        cursor = cursor.get(part)
        if cursor is None:
            return "unknown"
    return cursor if isinstance(cursor, str) else "unknown"


def _lookup(config: Dict[str, Any], path: List[str]) -> Any:
    cursor: Any = config
    for part in path:
        if not isinstance(cursor, dict):
            return None
        cursor = cursor.get(part)
    return cursor


def _assert_condition(condition: bool, path: List[str], message: str, value: Any, sources: Dict[str, Any]) -> None:
    """条件不成立时抛出 ConfigError，消息包含键路径、取值与来源。"""  # 工具函数说明。

    if condition:
        return
    dotted = ".".join(path)
    origin = _source_for_path(path, sources)
    raise ConfigError(f"Invalid value for {dotted}: {message} (value={value!r}, source={origin})")


def _is_bool(value: Any) -> bool:
    return isinstance(value, bool)


def _is_optional_str(value: Any) -> bool:
    return value is None or isinstance(value, str)


def _is_str_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(item, str) and item for item in value)


def _validate_config(config: Dict[str, Any], sources: Dict[str, Any]) -> None:
    """逐项校验 resolver、batch、generate、output 与日志相关设置。"""  # 工具函数说明。

    checks = [
        (["resolver", "root"], _is_optional_str, "root must be a path or null"),
        (["resolver", "root_markers"], lambda v: _is_str_list(v) and bool(v), "root_markers must be a non-empty list of names"),
        (["resolver", "leaf_name"], lambda v: isinstance(v, str) and bool(v) and "/" not in v, "leaf_name must be a plain file name"),
        (["resolver", "exclude_dirs"], _is_str_list, "exclude_dirs must be a list of names"),
        (["batch", "num_workers"], lambda v: isinstance(v, int) and not isinstance(v, bool) and v >= 1, "num_workers must be >= 1"),
        (["batch", "fail_fast"], _is_bool, "fail_fast must be a boolean"),
        (["generate", "enabled"], _is_bool, "enabled must be a boolean"),
        (["generate", "output_dir"], _is_optional_str, "output_dir must be a path or null"),
        (["output", "format"], lambda v: v in OUTPUT_FORMATS, f"format must be one of {OUTPUT_FORMATS}"),
        (["output", "show_sources"], _is_bool, "show_sources must be a boolean"),
        (["log_format"], lambda v: v in LOG_FORMATS, f"log_format must be one of {LOG_FORMATS}"),
        (["log_level"], lambda v: v in LOG_LEVELS, f"log_level must be one of {LOG_LEVELS}"),
        (["log_file"], _is_optional_str, "log_file must be a path or null"),
        (
            ["log_sample_rate"],
            lambda v: isinstance(v, (int, float)) and not isinstance(v, bool) and 0.0 < float(v) <= 1.0,
            "log_sample_rate must be within (0, 1]",
        ),
        (["quiet"], _is_bool, "quiet must be a boolean"),
        (["progress"], _is_bool, "progress must be a boolean"),
        (["report_file"], _is_optional_str, "report_file must be a path or null"),
    ]
    for path, predicate, message in checks:
        value = _lookup(config, path)
        _assert_condition(predicate(value), path, message, value, sources)


def parse_cli_set_items(items: Iterable[str]) -> Dict[str, Any]:
    """把 --set batch.num_workers=4 之类的条目解析为嵌套覆盖字典。"""  # 公共函数说明。

    overrides: Dict[str, Any] = {}
    for raw in items:
        if "=" not in raw:
            raise ConfigError(f"Invalid --set entry '{raw}', expected KEY=VALUE")
        key, value = raw.split("=", 1)  # 仅拆分首个等号以允许值中包含等号。
        path = [segment.strip().lower() for segment in key.split(".") if segment.strip()]
        if not path:
            continue
        tree = _keypath_to_tree(path, _parse_scalar(value))
        _deep_merge(overrides, tree, {}, tree)
    return overrides


def load_and_merge_config(
    cli_overrides: Dict[str, Any] | None = None,
    cli_set_overrides: Dict[str, Any] | None = None,
    config_path: str | None = None,
    environ: Mapping[str, str] | None = None,
    search_dir: str | os.PathLike[str] | None = None,
) -> ConfigBundle:
    """按照默认→用户文件→.env→环境变量→CLI→--set 顺序加载配置。"""  # 主函数说明。

    default_path = default_config_path()
    if not default_path.exists():
        raise ConfigError(f"Default config not found: {default_path}")
    config = _load_yaml(default_path)
    sources = _build_source_tree(config, f"default:{default_path}")
    base_dir = Path(search_dir) if search_dir is not None else Path.cwd()
    user_path: Optional[Path] = None
    if config_path:
        user_path = Path(config_path)
        if not user_path.is_file():  # 显式指定的文件必须存在。
            raise ConfigError(f"Config file not found: {user_path}")
    elif (base_dir / DEFAULT_USER_FILE).is_file():
        user_path = base_dir / DEFAULT_USER_FILE
    if user_path is not None:
        user_config = _load_yaml(user_path)
        _deep_merge(config, user_config, sources, _build_source_tree(user_config, f"user:{user_path}"))
    environ = os.environ if environ is None else environ
    dotenv_candidates = [base_dir / ".env"]
    if user_path is not None and user_path.parent.resolve() != base_dir.resolve():
        dotenv_candidates.append(user_path.parent / ".env")
    env_layers = []
    for dotenv_path in dotenv_candidates:
        env_map = _parse_dotenv_file(dotenv_path)
        if env_map:
            env_layers.append(_collect_env_from_mapping(env_map, f"{dotenv_path}:"))
    env_layers.append(_collect_env_from_mapping(environ, ""))  # 真实环境变量优先于 .env。
    for values, source_tree in env_layers:
        if values:
            _deep_merge(config, values, sources, source_tree)
    if cli_overrides:
        _deep_merge(config, cli_overrides, sources, _build_source_tree(cli_overrides, "cli:args"))
    if cli_set_overrides:
        _deep_merge(config, cli_set_overrides, sources, _build_source_tree(cli_set_overrides, "cli:set"))
    _normalize_config(config)
    _validate_config(config, sources)
    return ConfigBundle(config=config, sources=sources, user_path=user_path)


def _dump_inline(value: Any) -> str:
    """把标量或列表渲染为单行 YAML。"""  # 工具函数说明。

    text = yaml.safe_dump(value, default_flow_style=True, allow_unicode=True, width=10**6).strip()
    if text.endswith("\n..."):  # 标量文档会带有结束标记。
        text = text[: -len("\n...")]
    return text


def render_annotated(node: Any, sources: Any, include_sources: bool = True, indent: int = 0) -> str:
    """将嵌套映射渲染为 YAML 文本，可在每行末尾附加来源注释。"""  # 导出函数说明。

    def _render(value: Any, source_node: Any, depth: int) -> List[str]:
        lines: List[str] = []
        prefix = " " * depth
        if not isinstance(value, dict):
            line = prefix + _dump_inline(value)
            if include_sources and isinstance(source_node, str):
                line += f"  # {source_node}"
            return [line]
        for key in sorted(value, key=str):
            child = value[key]
            child_source = source_node.get(key) if isinstance(source_node, dict) else source_node
            label = _dump_inline(str(key))
            if isinstance(child, dict) and child:
                header = f"{prefix}{label}:"
                if include_sources and isinstance(child_source, str):
                    header += f"  # {child_source}"
                lines.append(header)
                lines.extend(_render(child, child_source, depth + 2))
            else:
                line = f"{prefix}{label}: {_dump_inline(child)}"
                if include_sources and isinstance(child_source, str):
                    line += f"  # {child_source}"
                lines.append(line)
        return lines

    return "\n".join(_render(node, sources, indent)) + "\n"


def render_effective_config(bundle: ConfigBundle, include_sources: bool = True) -> str:
    """将工具配置与来源以 YAML 文本渲染。"""  # 导出函数说明。

    return render_annotated(bundle.config, bundle.sources, include_sources=include_sources)


def save_config(bundle: ConfigBundle, path: str | os.PathLike[str], include_sources: bool = True) -> None:
    """把带来源注释的设置快照原子写入 path。"""  # 导出函数说明。

    atomic_write_text(path, render_effective_config(bundle, include_sources=include_sources))
