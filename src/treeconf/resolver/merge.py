"""合并引擎：inputs 的浅层覆盖合并与继承块的首个非空声明选择。"""  # 模块说明。
from __future__ import annotations

import copy
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple, TypeVar

T = TypeVar("T")


def shallow_merge(
    layers: Iterable[Tuple[Mapping[str, Any], Mapping[str, str]]],
) -> Tuple[Dict[str, Any], Dict[str, str]]:
    """按顺序合并 (inputs, sources) 层，后出现的层覆盖同名键。

    嵌套的映射与列表整体替换，不做深合并也不拼接；值会被深拷贝，
    共享片段的结果不会被后续修改影响。
    """  # 函数说明。

    merged: Dict[str, Any] = {}
    sources: Dict[str, str] = {}
    for values, origin in layers:
        for key, value in values.items():
            merged[key] = copy.deepcopy(value)
            sources[key] = origin[key]
    return merged, sources


def first_declared(candidates: Iterable[Optional[T]]) -> Optional[T]:
    """返回第一个非空声明；全部为空时返回 None。"""  # 函数说明。
    for candidate in candidates:
        if candidate:
            return candidate
    return None
