"""路径解析：祖先搜索、根相对路径、根目录发现与派生目录名。

所有函数都显式接收起点与根目录，不读取进程工作目录。
"""  # 模块说明。
from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

from treeconf.utils.errors import NotFoundError

# 默认的根目录标记。
DEFAULT_ROOT_MARKERS = (".treeconf-root", ".git")
# 发现叶子时默认跳过的目录。
DEFAULT_EXCLUDE_DIRS = (".terragrunt-cache", ".git", ".terraform")


def _within(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
    except ValueError:
        return False
    return True


def relative_posix(target: Path, base: Path) -> str:
    """返回 target 相对 base 的 posix 风格路径，相同目录返回 "."。"""  # 函数说明。
    return Path(os.path.relpath(target, base)).as_posix()


class PathResolver:
    """以显式根目录为边界的路径解析器。"""  # 类说明。

    def __init__(self, root: Path) -> None:
        self.root = Path(root).resolve()

    def find_in_parent_folders(
        self,
        start_dir: Path,
        name: str,
        exclude: Path | Iterable[Path] | None = None,
    ) -> Path:
        """从 start_dir 向上逐级查找名为 name 的文件，返回第一个匹配。

        exclude 为一个或多个要跳过的文件（通常是发起调用的片段与叶子自身），命中时继续向上。
        检查完根目录（起点不在根目录内时为文件系统根）后仍未找到则抛出 NotFoundError。
        """  # 方法说明。

        start = Path(start_dir).resolve()
        if exclude is None:
            excluded = set()
        elif isinstance(exclude, (str, os.PathLike)):
            excluded = {Path(exclude).resolve()}
        else:
            excluded = {Path(item).resolve() for item in exclude}
        boundary = self.root if _within(start, self.root) else None
        current = start
        while True:
            candidate = current / name
            if candidate.is_file() and candidate.resolve() not in excluded:
                return candidate.resolve()
            if current == boundary or current.parent == current:
                break
            current = current.parent
        raise NotFoundError(
            f"could not find '{name}' in any parent folder of {start}",
            reference=name,
        )

    def resolve_from_root(self, relative: str) -> Path:
        """解析根相对路径；目标不存在时抛出 NotFoundError。"""  # 方法说明。
        target = (self.root / relative).resolve()
        if not target.exists():
            raise NotFoundError(
                f"root-relative path '{relative}' does not exist under {self.root}",
                reference=relative,
            )
        return target

    @staticmethod
    def derived_names(directory: Path) -> Tuple[str, str]:
        """返回 directory 上一级与上两级目录的名称。"""  # 方法说明。
        path = Path(directory).resolve()
        return path.parent.name, path.parent.parent.name


def discover_root(start: Path, markers: Sequence[str] = DEFAULT_ROOT_MARKERS) -> Path:
    """从 start 向上查找包含任一标记的目录作为树根。"""  # 函数说明。
    current = Path(start).resolve()
    if current.is_file():
        current = current.parent
    while True:
        for marker in markers:
            if (current / marker).exists():
                return current
        if current.parent == current:
            break
        current = current.parent
    raise NotFoundError(
        f"no root marker ({', '.join(markers)}) found above {Path(start).resolve()}",
        reference=",".join(markers),
    )


def discover_leaves(
    root: Path,
    leaf_name: str = "terragrunt.hcl",
    exclude_dirs: Iterable[str] = DEFAULT_EXCLUDE_DIRS,
) -> List[Path]:
    """找出根目录下所有叶子片段，排除根目录自身的片段与指定目录，结果排序。"""  # 函数说明。
    base = Path(root).resolve()
    skipped = set(exclude_dirs)
    leaves: List[Path] = []
    for dirpath, dirnames, filenames in os.walk(base):
        dirnames[:] = sorted(name for name in dirnames if name not in skipped)
        if Path(dirpath) == base:
            continue
        if leaf_name in filenames:
            leaves.append(Path(dirpath) / leaf_name)
    return sorted(leaves)
