"""有效配置与解析报告的 JSON Schema 校验，附带 schema 无法表达的一致性检查。"""  # 模块说明。
# 导入 json 以解析 schema 文件内容。
import json
# 导入 deque 以构造 ValidationError 的路径信息。
from collections import deque
from pathlib import Path
from typing import Dict

# 从 jsonschema 导入校验器、格式检查器与异常类型。
from jsonschema import Draft202012Validator, FormatChecker, ValidationError

# schema 文件随包分发，位于 treeconf/schemas。
SCHEMA_DIR = Path(__file__).resolve().parents[1] / "schemas"
# 支持的 schema 名称到文件名的映射。
SCHEMA_FILES = {
    "effective_config": "effective_config.schema.json",
    "report_record": "report_record.schema.json",
}
# 已加载的 schema 与编译后的校验器，按名称缓存。
_SCHEMA_CACHE: Dict[str, dict] = {}
_VALIDATOR_CACHE: Dict[str, Draft202012Validator] = {}
# 格式检查器负责 date-time 等内置格式。
_FORMAT_CHECKER = FormatChecker()


def load_schema(name: str) -> dict:
    """按名称加载 schema 并缓存；未知名称抛出 KeyError。"""  # 函数说明。
    key = name.strip().lower()
    if key not in SCHEMA_FILES:
        raise KeyError(f"Unknown schema: {name}")
    if key not in _SCHEMA_CACHE:
        # 首次使用时读取文件。
        with (SCHEMA_DIR / SCHEMA_FILES[key]).open("r", encoding="utf-8") as handle:
            _SCHEMA_CACHE[key] = json.load(handle)
    return _SCHEMA_CACHE[key]


def _get_validator(name: str) -> Draft202012Validator:
    key = name.strip().lower()
    schema = load_schema(key)
    if key not in _VALIDATOR_CACHE:
        _VALIDATOR_CACHE[key] = Draft202012Validator(schema, format_checker=_FORMAT_CHECKER)
    return _VALIDATOR_CACHE[key]


def _enforce_provenance(payload: dict) -> None:
    """每个 input 键都有来源，且来源只能是叶子本身或 include 链上的片段。"""  # 函数说明。
    inputs = payload.get("inputs", {})
    sources = payload.get("input_sources", {})
    # 合法来源：include 链上的片段加上叶子本身。
    known = set(payload.get("include_chain", [])) | {payload.get("leaf")}
    if set(inputs) != set(sources):
        # 对称差即缺少来源或多出来源的键。
        missing = sorted(set(inputs) ^ set(sources))
        raise ValidationError(
            f"inputs and input_sources disagree on keys: {', '.join(missing)}",
            path=deque(("input_sources",)),
        )
    for key, origin in sources.items():
        if origin not in known:
            raise ValidationError(
                f"input {key!r} sourced from {origin} which is outside the include chain",
                path=deque(("input_sources", key)),
            )


def validate_effective_config(payload: dict) -> None:
    """校验 EffectiveConfig.to_dict() 的结构与来源一致性，失败抛出 ValidationError。"""  # 函数说明。
    # 先做结构校验，再做来源一致性检查。
    _get_validator("effective_config").validate(payload)
    _enforce_provenance(payload)


def validate_report_record(record: dict) -> None:
    _get_validator("report_record").validate(record)
