"""定义片段、include 声明、片段引用与有效配置等数据结构。"""  # 模块说明。
from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from treeconf.utils.io import sha256_text
from treeconf.resolver.expressions import Node

# 生成目标已存在时允许的冲突策略。
IF_EXISTS_POLICIES = ("skip", "overwrite", "error")
# include 支持的合并策略。
MERGE_STRATEGIES = ("shallow", "no_merge")


@dataclass(frozen=True)
class IncludeDeclaration:
    """片段中的一条 include 声明，按声明顺序处理。"""  # 类说明。

    label: str  # 片段内唯一的标签，无标签 include 为空串。
    path: Node  # 目标路径表达式。
    expose: Optional[Node] = None  # 是否允许通过 include.<label> 访问目标的 locals/inputs。
    merge_strategy: Optional[Node] = None  # shallow 或 no_merge。
    line: int = 0  # 声明所在行，便于报错。


@dataclass(frozen=True)
class Fragment:
    """一个已解析但尚未求值的配置片段。"""  # 类说明。

    location: Path
    locals: Mapping[str, Node] = field(default_factory=dict)  # 保留声明顺序。
    includes: Tuple[IncludeDeclaration, ...] = ()
    terraform_source: Optional[Node] = None
    inputs: Optional[Node] = None
    remote_state: Optional[Node] = None
    generate: Mapping[str, Mapping[str, Node]] = field(default_factory=dict)

    @property
    def directory(self) -> Path:
        return self.location.parent


@dataclass(frozen=True)
class FragmentRef:
    """通过 read_terragrunt_config 或 expose 的 include 访问到的片段值。

    locals 与 inputs 在片段自身的上下文中求值，运行期间按位置缓存并只读共享。
    """  # 类说明。

    location: Path
    locals: Mapping[str, Any]
    inputs: Mapping[str, Any]

    def attribute(self, name: str) -> Any:
        """按名称返回暴露的属性，未知属性返回 KeyError。"""  # 方法说明。
        if name == "locals":
            return self.locals
        if name == "inputs":
            return self.inputs
        if name == "location":
            return str(self.location)
        raise KeyError(name)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "locals": to_plain(self.locals),
            "inputs": to_plain(self.inputs),
        }


@dataclass(frozen=True)
class RemoteState:
    """远程状态后端声明，只做透传与继承，不解释 config 内容。"""  # 类说明。

    backend: str
    config: Mapping[str, Any]
    generate: Optional[Mapping[str, Any]] = None  # 可选的 backend 文件生成指令。
    declared_in: str = ""

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "backend": self.backend,
            "config": to_plain(self.config),
            "declared_in": self.declared_in,
        }
        if self.generate is not None:
            payload["generate"] = to_plain(self.generate)
        return payload


@dataclass(frozen=True)
class GenerateDirective:
    """一条生成指令：目标路径、冲突策略与字面内容。"""  # 类说明。

    name: str
    path: str
    if_exists: str
    contents: str
    declared_in: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "if_exists": self.if_exists,
            "contents": self.contents,
            "declared_in": self.declared_in,
        }


@dataclass
class EffectiveConfig:
    """叶子片段的完整有效配置，交给外部编排工具消费。"""  # 类说明。

    leaf: Path
    inputs: Dict[str, Any]
    input_sources: Dict[str, str]
    locals: Mapping[str, Any] = field(default_factory=dict)
    terraform_source: Optional[str] = None
    remote_state: Optional[RemoteState] = None
    generate: Dict[str, GenerateDirective] = field(default_factory=dict)
    include_chain: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """转换为纯字典；同一输入树总是得到相同的结构。"""  # 方法说明。
        return {
            "leaf": str(self.leaf),
            "inputs": to_plain(self.inputs),
            "input_sources": dict(self.input_sources),
            "locals": to_plain(self.locals),
            "terraform": {"source": self.terraform_source} if self.terraform_source is not None else None,
            "remote_state": self.remote_state.to_dict() if self.remote_state is not None else None,
            "generate": {name: directive.to_dict() for name, directive in self.generate.items()},
            "include_chain": list(self.include_chain),
        }

    def to_json(self) -> str:
        """使用排序键序列化，重复运行输出逐字节一致。"""  # 方法说明。
        return json.dumps(self.to_dict(), sort_keys=True, indent=2, ensure_ascii=False) + "\n"

    def digest(self) -> str:
        """基于规范化 JSON 计算 SHA-256 摘要。"""  # 方法说明。
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)
        return sha256_text(canonical)


def to_plain(value: Any) -> Any:
    """将只读映射、片段引用与元组递归转换为普通 dict/list。"""  # 函数说明。
    if isinstance(value, FragmentRef):
        return value.as_dict()
    if isinstance(value, (dict, MappingProxyType)):
        return {str(key): to_plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_plain(item) for item in value]
    return value
