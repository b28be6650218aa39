"""解析核心：片段加载、路径解析、locals 求值、合并与生成。"""  # 包说明。
from treeconf.resolver.engine import BatchReport, LeafResult, Resolver
from treeconf.resolver.fragment import EffectiveConfig, FragmentRef
from treeconf.resolver.loader import load_fragment
from treeconf.resolver.paths import PathResolver, discover_leaves, discover_root

__all__ = [
    "BatchReport",
    "EffectiveConfig",
    "FragmentRef",
    "LeafResult",
    "PathResolver",
    "Resolver",
    "discover_leaves",
    "discover_root",
    "load_fragment",
]
