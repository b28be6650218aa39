"""生成器：把有效配置中的生成指令落盘，遵循 skip/overwrite/error 冲突策略。"""  # 模块说明。
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from treeconf.resolver.fragment import IF_EXISTS_POLICIES, EffectiveConfig, GenerateDirective
from treeconf.resolver.hcl import render_backend_block
from treeconf.utils.errors import ConflictError, EvaluationError
from treeconf.utils.io import atomic_write_text, safe_mkdirs, with_file_lock

# 单个目标文件锁的最长等待时间。
LOCK_TIMEOUT_SEC = 30.0


@dataclass(frozen=True)
class GenerationOutcome:
    """一条指令的执行结果，action 为 written/overwritten/skipped。"""  # 类说明。

    name: str
    target: Path
    action: str


def directives_for(config: EffectiveConfig) -> List[GenerateDirective]:
    """汇总 generate 块与 remote_state.generate 派生的 backend 指令。"""  # 函数说明。
    directives = [config.generate[name] for name in sorted(config.generate)]
    remote = config.remote_state
    if remote is not None and remote.generate is not None:
        spec = remote.generate
        path = spec.get("path")
        if not isinstance(path, str) or not path:
            raise EvaluationError(
                "remote_state.generate requires a 'path'",
                location=remote.declared_in or None,
                reference="remote_state.generate.path",
            )
        directives.append(
            GenerateDirective(
                name="remote_state",
                path=path,
                if_exists=str(spec.get("if_exists", "error")),
                contents=render_backend_block(remote.backend, remote.config),
                declared_in=remote.declared_in,
            )
        )
    return directives


def _target(directive: GenerateDirective, output_dir: Path) -> Path:
    if directive.if_exists not in IF_EXISTS_POLICIES:
        raise EvaluationError(
            f"unknown if_exists policy '{directive.if_exists}' (expected one of {', '.join(IF_EXISTS_POLICIES)})",
            location=directive.declared_in or None,
            reference=f"generate.{directive.name}.if_exists",
        )
    return Path(output_dir) / directive.path


def _conflict(directive: GenerateDirective, target: Path) -> ConflictError:
    return ConflictError(
        f"generation target already exists: {target}",
        location=directive.declared_in or None,
        reference=f"generate.{directive.name}",
    )


def materialize(directive: GenerateDirective, output_dir: Path) -> GenerationOutcome:
    """执行单条指令；目标存在时按策略处理，写入为临时文件加原子替换。"""  # 函数说明。
    target = _target(directive, output_dir)
    safe_mkdirs(target.parent)
    lock_path = target.with_name(target.name + ".lock")
    with with_file_lock(lock_path, LOCK_TIMEOUT_SEC):
        existed = target.exists()
        if existed:
            if directive.if_exists == "skip":
                return GenerationOutcome(directive.name, target, "skipped")
            if directive.if_exists == "error":
                raise _conflict(directive, target)
        atomic_write_text(target, directive.contents)
    return GenerationOutcome(directive.name, target, "overwritten" if existed else "written")


def generate_all(config: EffectiveConfig, output_dir: Optional[Path] = None) -> List[GenerationOutcome]:
    """落盘叶子的全部生成指令，默认输出到叶子所在目录。

    写入前先检查全部 error 策略的冲突，任何冲突都不会留下部分写入的结果。
    """  # 函数说明。

    destination = Path(output_dir) if output_dir is not None else config.leaf.parent
    directives = directives_for(config)
    for directive in directives:
        target = _target(directive, destination)
        if directive.if_exists == "error" and target.exists():
            raise _conflict(directive, target)
    return [materialize(directive, destination) for directive in directives]
