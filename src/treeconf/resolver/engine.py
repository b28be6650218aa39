"""解析编排：把片段、include 链与 locals 组合为叶子的有效配置，并支持批量扇出。"""  # 模块说明。
from __future__ import annotations

import functools
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from treeconf.resolver.evaluator import Evaluator, Scope
from treeconf.resolver.fragment import (
    IF_EXISTS_POLICIES,
    MERGE_STRATEGIES,
    EffectiveConfig,
    Fragment,
    FragmentRef,
    GenerateDirective,
    RemoteState,
    to_plain,
)
from treeconf.resolver.functions import FunctionContext
from treeconf.resolver.generator import GenerationOutcome, generate_all
from treeconf.resolver.loader import FragmentCache
from treeconf.resolver.locals import LocalsEvaluator
from treeconf.resolver.merge import first_declared, shallow_merge
from treeconf.resolver.paths import PathResolver, relative_posix
from treeconf.utils.concurrency import fan_out
from treeconf.utils.errors import EvaluationError, NotFoundError, TreeconfError, classify_exception
from treeconf.utils.logging import LeafLogger, ProgressPrinter, StructuredLogger, get_logger
from treeconf.utils.schema import validate_effective_config

DEFAULT_LEAF_NAME = "terragrunt.hcl"


@dataclass
class _Resolved:
    """单个片段在某个调用点上下文中的求值结果。"""  # 类说明。

    fragment: Fragment
    locals: Mapping[str, Any]
    inputs: Dict[str, Any]
    input_sources: Dict[str, str]
    terraform_source: Optional[str]
    remote_state: Optional[RemoteState]
    generate: Dict[str, GenerateDirective]
    include_chain: List[str]

    def ref(self) -> FragmentRef:
        return FragmentRef(
            location=self.fragment.location,
            locals=self.locals,
            inputs=MappingProxyType(self.inputs),
        )


class Resolver:
    """以显式根目录与环境映射为输入的解析器，不读取任何进程级状态。

    同一个实例在一次运行内共享片段解析缓存与 read_terragrunt_config 的引用缓存，
    两者都由锁保护且每个键只写入一次，可以安全地被多个线程同时使用。
    """  # 类说明。

    def __init__(
        self,
        root: Path,
        *,
        leaf_name: str = DEFAULT_LEAF_NAME,
        environ: Optional[Mapping[str, str]] = None,
        logger: Optional[StructuredLogger] = None,
        cache: Optional[FragmentCache] = None,
    ) -> None:
        self.root = Path(root).resolve()
        self.paths = PathResolver(self.root)
        self.leaf_name = leaf_name
        self.environ: Dict[str, str] = dict(environ or {})
        self.logger = logger or get_logger(level="WARNING")
        self.fragments = cache if cache is not None else FragmentCache()
        self.evaluator = Evaluator()
        self._references: Dict[Path, FragmentRef] = {}
        self._lock = threading.Lock()

    # ---- 单叶解析 ----
    def leaf_path(self, leaf: Path) -> Path:
        """接受叶子文件或其所在目录，返回叶子片段的绝对路径。"""  # 方法说明。
        path = Path(leaf)
        if not path.is_absolute():
            path = self.root / path
        if path.is_dir():
            path = path / self.leaf_name
        return path.resolve()

    def resolve(self, leaf: Path) -> EffectiveConfig:
        """解析单个叶子，返回其有效配置。"""  # 方法说明。
        location = self.leaf_path(leaf)
        resolved = self._resolve_fragment(location, location.parent, chain=(), reading=(location,))
        config = EffectiveConfig(
            leaf=location,
            inputs=resolved.inputs,
            input_sources=resolved.input_sources,
            locals=resolved.locals,
            terraform_source=resolved.terraform_source,
            remote_state=resolved.remote_state,
            generate=resolved.generate,
            include_chain=resolved.include_chain,
        )
        validate_effective_config(config.to_dict())
        return config

    def read_reference(self, path: Path, reading: Tuple[Path, ...] = ()) -> FragmentRef:
        """在目标片段自身的目录上下文中解析它，返回按位置缓存的 FragmentRef。"""  # 方法说明。
        target = Path(path).resolve()
        with self._lock:
            cached = self._references.get(target)
        if cached is not None:
            return cached
        if target in reading:
            cycle = [str(item) for item in reading[reading.index(target):]] + [str(target)]
            raise EvaluationError(
                f"circular read_terragrunt_config: {' -> '.join(cycle)}",
                location=str(reading[-1]),
                reference=str(target),
            )
        if not target.is_file():
            raise NotFoundError(f"referenced fragment not found: {target}", reference=str(target))
        resolved = self._resolve_fragment(target, target.parent, chain=(), reading=reading + (target,))
        ref = resolved.ref()
        with self._lock:
            return self._references.setdefault(target, ref)

    def _context(self, location: Path, leaf_dir: Path, reading: Tuple[Path, ...]) -> FunctionContext:
        return FunctionContext(
            leaf_dir=leaf_dir,
            fragment=location,
            paths=self.paths,
            leaf_name=self.leaf_name,
            environ=self.environ,
            read_reference=functools.partial(self.read_reference, reading=reading),
        )

    def _resolve_fragment(
        self,
        location: Path,
        leaf_dir: Path,
        chain: Tuple[Path, ...],
        reading: Tuple[Path, ...],
    ) -> _Resolved:
        if location in chain:
            cycle = [str(item) for item in chain[chain.index(location):]] + [str(location)]
            raise EvaluationError(
                f"include cycle: {' -> '.join(cycle)}",
                location=str(chain[-1]),
                reference=str(location),
            )
        fragment = self.fragments.get(location)
        context = self._context(location, leaf_dir, reading)
        # include 路径先于 locals 求值，因此路径表达式不能引用 local。
        path_scope = Scope(context=context)

        children: List[Tuple[str, _Resolved, bool, str]] = []
        for declaration in fragment.includes:
            reference = f"include.{declaration.label}" if declaration.label else "include"
            value = self.evaluator.evaluate(declaration.path, path_scope)
            if not isinstance(value, str) or not value:
                raise EvaluationError("include path must be a non-empty string", location=str(location), reference=reference)
            target = (fragment.directory / value).resolve()
            if not target.is_file():
                raise NotFoundError(f"included fragment not found: {target}", location=str(location), reference=reference)
            expose = self._expose(declaration.expose, path_scope, reference)
            strategy = self._merge_strategy(declaration.merge_strategy, path_scope, reference)
            child = self._resolve_fragment(target, leaf_dir, chain + (location,), reading)
            children.append((declaration.label, child, expose, strategy))

        includes = {label: (child.ref() if expose else None) for label, child, expose, _ in children}

        def make_scope(values: Mapping[str, Any]) -> Scope:
            return Scope(context=context, locals=values, includes=includes)

        locals_values = LocalsEvaluator(fragment.locals, make_scope, str(location), self.evaluator).evaluate()
        scope = make_scope(locals_values)

        merged = [child for _, child, _, strategy in children if strategy == "shallow"]
        own_inputs = self._inputs(fragment, scope)
        layers = [(child.inputs, child.input_sources) for child in merged]
        layers.append((own_inputs, {key: str(location) for key in own_inputs}))
        inputs, sources = shallow_merge(layers)

        include_chain: List[str] = []
        for _, child, _, _ in children:
            for item in child.include_chain + [str(child.fragment.location)]:
                if item not in include_chain:
                    include_chain.append(item)

        return _Resolved(
            fragment=fragment,
            locals=locals_values,
            inputs=inputs,
            input_sources=sources,
            terraform_source=first_declared(
                [self._terraform_source(fragment, scope)] + [child.terraform_source for child in merged]
            ),
            remote_state=first_declared([self._remote_state(fragment, scope)] + [child.remote_state for child in merged]),
            generate=first_declared([self._generate(fragment, scope)] + [child.generate for child in merged]) or {},
            include_chain=include_chain,
        )

    # ---- 块求值 ----
    def _expose(self, node: Any, scope: Scope, reference: str) -> bool:
        if node is None:
            return False
        value = self.evaluator.evaluate(node, scope)
        if not isinstance(value, bool):
            raise EvaluationError("expose must be a boolean", location=scope.location, reference=f"{reference}.expose")
        return value

    def _merge_strategy(self, node: Any, scope: Scope, reference: str) -> str:
        if node is None:
            return "shallow"
        value = self.evaluator.evaluate(node, scope)
        if value not in MERGE_STRATEGIES:
            raise EvaluationError(
                f"unsupported merge_strategy {value!r} (expected one of {', '.join(MERGE_STRATEGIES)})",
                location=scope.location,
                reference=f"{reference}.merge_strategy",
            )
        return value

    def _inputs(self, fragment: Fragment, scope: Scope) -> Dict[str, Any]:
        if fragment.inputs is None:
            return {}
        value = self.evaluator.evaluate(fragment.inputs, scope)
        if not isinstance(value, Mapping):
            raise EvaluationError("inputs must evaluate to a map", location=scope.location, reference="inputs")
        return to_plain(value)

    def _terraform_source(self, fragment: Fragment, scope: Scope) -> Optional[str]:
        if fragment.terraform_source is None:
            return None
        value = self.evaluator.evaluate(fragment.terraform_source, scope)
        if not isinstance(value, str):
            raise EvaluationError("terraform.source must be a string", location=scope.location, reference="terraform.source")
        return value

    def _remote_state(self, fragment: Fragment, scope: Scope) -> Optional[RemoteState]:
        if fragment.remote_state is None:
            return None
        value = self.evaluator.evaluate(fragment.remote_state, scope)
        if not isinstance(value, Mapping):
            raise EvaluationError("remote_state must be a map", location=scope.location, reference="remote_state")
        backend = value.get("backend")
        if not isinstance(backend, str) or not backend:
            raise EvaluationError("remote_state.backend must be a non-empty string", location=scope.location, reference="remote_state.backend")
        config = value.get("config", {})
        if not isinstance(config, Mapping):
            raise EvaluationError("remote_state.config must be a map", location=scope.location, reference="remote_state.config")
        generate = value.get("generate")
        if generate is not None and not isinstance(generate, Mapping):
            raise EvaluationError("remote_state.generate must be a map", location=scope.location, reference="remote_state.generate")
        return RemoteState(
            backend=backend,
            config=to_plain(config),
            generate=to_plain(generate) if generate is not None else None,
            declared_in=scope.location,
        )

    def _generate(self, fragment: Fragment, scope: Scope) -> Dict[str, GenerateDirective]:
        directives: Dict[str, GenerateDirective] = {}
        for name, attributes in fragment.generate.items():
            values = {key: self.evaluator.evaluate(node, scope) for key, node in attributes.items()}
            if_exists = values.get("if_exists", "error")
            if if_exists not in IF_EXISTS_POLICIES:
                raise EvaluationError(
                    f"unknown if_exists policy {if_exists!r} (expected one of {', '.join(IF_EXISTS_POLICIES)})",
                    location=scope.location,
                    reference=f"generate.{name}.if_exists",
                )
            for key in ("path", "contents"):
                if not isinstance(values.get(key), str):
                    raise EvaluationError(
                        f"generate.{name}.{key} must be a string",
                        location=scope.location,
                        reference=f"generate.{name}.{key}",
                    )
            directives[name] = GenerateDirective(
                name=name,
                path=values["path"],
                if_exists=if_exists,
                contents=values["contents"],
                declared_in=scope.location,
            )
        return directives

    # ---- 批量 ----
    def output_dir_for(self, config: EffectiveConfig, output_dir: Optional[Path]) -> Path:
        """返回生成指令的输出目录：默认叶子目录，否则为 output_dir 下的同构路径。"""  # 方法说明。
        if output_dir is None:
            return config.leaf.parent
        return Path(output_dir) / relative_posix(config.leaf.parent, self.root)

    def resolve_many(
        self,
        leaves: Sequence[Path],
        *,
        num_workers: int = 1,
        fail_fast: bool = False,
        generate: bool = False,
        output_dir: Optional[Path] = None,
        progress: bool = False,
        verbose: bool = False,
    ) -> "BatchReport":
        """并行解析多个叶子；单个失败不影响其他叶子，fail_fast 时停止提交剩余叶子。"""  # 方法说明。

        leaf_paths = [self.leaf_path(leaf) for leaf in leaves]
        leaf_logger = LeafLogger(self.logger, verbose)
        printer = ProgressPrinter(len(leaf_paths), "resolve", progress, self.logger)
        started = time.monotonic()

        def worker(location: Path) -> LeafResult:
            name = relative_posix(location, self.root)
            leaf_logger.start(name)
            begin = time.monotonic()
            try:
                config = self.resolve(location)
                outcomes: List[GenerationOutcome] = []
                if generate:
                    outcomes = generate_all(config, self.output_dir_for(config, output_dir))
            except Exception as exc:
                leaf_logger.failure(name, exc)
                raise
            duration = time.monotonic() - begin
            leaf_logger.resolved(name, duration, config.digest(), config.include_chain)
            for outcome in outcomes:
                leaf_logger.generated(name, str(outcome.target), outcome.action)
            return LeafResult(leaf=location, config=config, generated=outcomes, duration_sec=duration)

        def on_done(index: int, result: Any) -> None:
            printer.update(relative_posix(leaf_paths[index], self.root))

        try:
            fanned = fan_out(
                leaf_paths,
                worker,
                max_workers=num_workers,
                fail_fast=fail_fast,
                on_done=on_done,
            )
        finally:
            printer.close()

        report = BatchReport(root=self.root, elapsed_sec=time.monotonic() - started)
        for location, result in zip(leaf_paths, fanned.outcomes):
            if isinstance(result, LeafResult):
                report.results.append(result)
            elif isinstance(result, BaseException):
                report.results.append(LeafResult(leaf=location, error=result))
            else:
                report.results.append(LeafResult(leaf=location, cancelled=True))
        return report


@dataclass
class LeafResult:
    """单个叶子的批处理结果。"""  # 类说明。

    leaf: Path
    config: Optional[EffectiveConfig] = None
    error: Optional[BaseException] = None
    generated: List[GenerationOutcome] = field(default_factory=list)
    duration_sec: float = 0.0
    cancelled: bool = False

    @property
    def status(self) -> str:
        if self.cancelled:
            return "cancelled"
        return "failed" if self.error is not None else "ok"

    def error_record(self, root: Path) -> Dict[str, Any]:
        """失败叶子的汇总记录：叶子、分类、原因、失败片段与引用。"""  # 方法说明。
        exc = self.error
        if isinstance(exc, TreeconfError):
            record = exc.as_record()
        else:
            record = {"category": classify_exception(exc) if exc else "unknown", "reason": str(exc), "location": None, "reference": None}
        record["leaf"] = relative_posix(self.leaf, root)
        return record


@dataclass
class BatchReport:
    """批处理汇总，results 与输入叶子顺序一致。"""  # 类说明。

    root: Path
    results: List[LeafResult] = field(default_factory=list)
    elapsed_sec: float = 0.0

    def _count(self, status: str) -> int:
        return sum(1 for result in self.results if result.status == status)

    @property
    def succeeded(self) -> int:
        return self._count("ok")

    @property
    def failed(self) -> int:
        return self._count("failed")

    @property
    def cancelled(self) -> int:
        return self._count("cancelled")

    @property
    def errors(self) -> List[Dict[str, Any]]:
        return [result.error_record(self.root) for result in self.results if result.status == "failed"]

    def first_failure(self) -> Optional[LeafResult]:
        """按输入顺序返回第一个失败的叶子。"""  # 方法说明。
        for result in self.results:
            if result.status == "failed":
                return result
        return None

    def summary(self) -> Dict[str, Any]:
        return {
            "total": len(self.results),
            "succeeded": self.succeeded,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "elapsed_sec": self.elapsed_sec,
            "errors": self.errors,
        }
