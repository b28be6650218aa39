"""命令行入口，负责加载分层配置、解析叶子并输出有效配置。"""  # 模块说明。
import argparse
import json
import os
import sys
from pathlib import Path  # 导入 Path 以处理叶子与输出路径。
from typing import Any, Dict, List, Mapping, Optional

from treeconf.resolver.engine import BatchReport, LeafResult, Resolver
from treeconf.resolver.hcl import dumps_value
from treeconf.resolver.paths import discover_leaves, discover_root, relative_posix
from treeconf.utils.config import (  # 导入配置工具以支持分层加载与快照。
    OUTPUT_FORMATS,
    load_and_merge_config,
    parse_cli_set_items,
    render_annotated,
    render_effective_config,
    save_config,
)
from treeconf.utils.errors import ConfigError, TreeconfError, exit_code_for
from treeconf.utils.logging import StructuredLogger, bind_context, get_logger, new_trace_id, print_summary
from treeconf.utils.report import append_record, build_record, failed_leaves


def parse_bool(value: str) -> bool:
    """argparse 的布尔类型：只接受 true 或 false（不区分大小写）。"""  # 函数说明。

    if isinstance(value, bool):
        return value
    normalized = value.lower()
    if normalized == "true":
        return True
    if normalized == "false":
        return False
    raise argparse.ArgumentTypeError("Expected 'true' or 'false'")


def build_parser() -> argparse.ArgumentParser:
    """声明叶子选择、设置覆盖、输出、生成、批处理与日志相关的选项。"""  # 函数说明。

    parser = argparse.ArgumentParser(
        prog="treeconf",
        description="Resolve layered configuration trees into one effective configuration per leaf",
    )
    parser.add_argument("leaves", nargs="*", help="叶子片段文件或其所在目录，可传多个")
    parser.add_argument("--all", action="store_true", help="解析根目录下发现的全部叶子")
    parser.add_argument("--root", default=None, help="树根目录，留空时向上查找根标记")
    parser.add_argument("--leaf-name", default=None, help="叶子片段文件名，默认 terragrunt.hcl")
    parser.add_argument("--config", default=None, help="可选用户配置 YAML 路径，默认查找 ./treeconf.yaml")
    parser.add_argument(
        "--set",
        dest="set_items",
        action="append",
        default=[],
        help="通过 KEY=VALUE 覆盖任意配置，可重复使用",
    )
    parser.add_argument(
        "--print-config",
        type=parse_bool,
        default="false",
        help="打印最终配置快照后退出 (true/false)",
    )
    parser.add_argument("--save-config", default=None, help="保存最终配置快照到指定路径后退出")
    parser.add_argument("--format", dest="output_format", choices=OUTPUT_FORMATS, default=None, help="输出格式")
    parser.add_argument(
        "--show-sources",
        type=parse_bool,
        nargs="?",
        const=True,
        default=None,
        help="yaml 输出时标注每个输入键的来源片段 (true/false)",
    )
    parser.add_argument("--generate", type=parse_bool, default=None, help="是否落盘生成指令 (true/false)")
    parser.add_argument("--output-dir", default=None, help="生成文件的输出根目录，留空写入叶子目录")
    parser.add_argument("--num-workers", type=int, default=None, help="并发解析的 worker 数量")
    parser.add_argument(
        "--fail-fast",
        type=parse_bool,
        default=None,
        help="出现失败时是否立即停止提交剩余叶子 (true/false)",
    )
    parser.add_argument("--report-file", default=None, help="每个叶子追加一条 JSONL 记录的报告路径")
    parser.add_argument(
        "--rerun-failed",
        action="store_true",
        help="重新解析报告中最近一次失败的叶子",
    )
    parser.add_argument(
        "--log-format",
        choices=["human", "jsonl"],
        default=None,
        help="日志格式，human 适合调试，jsonl 适合机器消费",
    )
    parser.add_argument("--log-level", default=None, help="日志等级（DEBUG/INFO/WARNING/ERROR）")
    parser.add_argument("--log-file", default=None, help="可选日志文件路径，追加写入")
    parser.add_argument("--log-sample-rate", type=float, default=None, help="信息级日志采样率 (0-1]")
    parser.add_argument("--quiet", type=parse_bool, default=None, help="静默模式，控制台不输出日志 (true/false)")
    parser.add_argument("--progress", type=parse_bool, default=None, help="是否显示进度条 (true/false)")
    parser.add_argument(
        "--verbose",
        type=parse_bool,
        nargs="?",
        const=True,
        default=False,
        help="输出详细日志与失败堆栈",
    )
    parser.add_argument("--force-flush", action="store_true", help="每条文件日志写入后立即 fsync")
    return parser


def _build_cli_overrides(args: argparse.Namespace) -> dict:
    """把显式传入的命令行选项映射到设置键，未传入的选项不产生覆盖。"""  # 工具函数说明。

    overrides: Dict[str, Any] = {}
    resolver: Dict[str, Any] = {}
    if args.root is not None:
        resolver["root"] = args.root
    if args.leaf_name is not None:
        resolver["leaf_name"] = args.leaf_name
    if resolver:
        overrides["resolver"] = resolver
    batch: Dict[str, Any] = {}
    if args.num_workers is not None:
        batch["num_workers"] = max(1, args.num_workers)
    if args.fail_fast is not None:
        batch["fail_fast"] = args.fail_fast
    if batch:
        overrides["batch"] = batch
    generate: Dict[str, Any] = {}
    if args.generate is not None:
        generate["enabled"] = args.generate
    if args.output_dir is not None:
        generate["output_dir"] = args.output_dir
    if generate:
        overrides["generate"] = generate
    output: Dict[str, Any] = {}
    if args.output_format is not None:
        output["format"] = args.output_format
    if args.show_sources is not None:
        output["show_sources"] = args.show_sources
    if output:
        overrides["output"] = output
    if args.log_format is not None:
        overrides["log_format"] = args.log_format
    if args.log_level is not None:
        overrides["log_level"] = args.log_level
    if args.log_file is not None:
        overrides["log_file"] = args.log_file
    if args.log_sample_rate is not None:
        overrides["log_sample_rate"] = max(min(float(args.log_sample_rate), 1.0), 1e-6)
    if args.quiet is not None:
        overrides["quiet"] = args.quiet
    if args.progress is not None:
        overrides["progress"] = args.progress
    if args.report_file is not None:
        overrides["report_file"] = args.report_file
    return overrides


def _locate_root(config: Mapping[str, Any], leaves: List[Path], cwd: Path) -> Path:
    """确定树根：显式配置优先，否则从第一个叶子（或当前目录）向上查找标记。"""  # 工具函数说明。

    resolver_cfg = config["resolver"]
    if resolver_cfg.get("root"):
        return Path(resolver_cfg["root"]).resolve()
    start = leaves[0] if leaves else cwd
    return discover_root(start, resolver_cfg["root_markers"])


def render_results(results: List[LeafResult], root: Path, output_format: str, show_sources: bool) -> str:
    """把成功解析的叶子渲染为 json、yaml 或 hcl 文本。"""  # 函数说明。

    configs = [result.config for result in results if result.config is not None]
    if output_format == "json":
        if len(configs) == 1:
            return configs[0].to_json()
        payload = {relative_posix(config.leaf, root): config.to_dict() for config in configs}
        return json.dumps(payload, sort_keys=True, indent=2, ensure_ascii=False) + "\n"
    chunks: List[str] = []
    for config in configs:
        name = relative_posix(config.leaf, root)
        if output_format == "yaml":
            data = config.to_dict()
            sources: Dict[str, Any] = {
                "inputs": {key: relative_posix(Path(origin), root) for key, origin in config.input_sources.items()}
            }
            body = render_annotated(data, sources, include_sources=show_sources)
            chunks.append(f"# {name}\n{body}" if len(configs) > 1 else body)
        else:
            lines = [f"# {name}\n"]
            if config.terraform_source is not None:
                lines.append(f"terraform {{\n  source = {dumps_value(config.terraform_source)}\n}}\n")
            lines.append(f"inputs = {dumps_value(config.inputs)}\n" if config.inputs else "inputs = {}\n")
            chunks.append("".join(lines))
    separator = "---\n" if output_format == "yaml" else "\n"
    return separator.join(chunks)


def _write_report(report_path: str, report: BatchReport, trace_id: str) -> None:
    """把批处理结果逐叶写入 JSONL 报告。"""  # 工具函数说明。

    for result in report.results:
        leaf = relative_posix(result.leaf, report.root)
        if result.status == "ok" and result.config is not None:
            record = build_record(
                leaf,
                "ok",
                trace_id=trace_id,
                digest=result.config.digest(),
                include_chain=result.config.include_chain,
                generated=[
                    {"name": outcome.name, "target": str(outcome.target), "action": outcome.action}
                    for outcome in result.generated
                ],
                duration_sec=result.duration_sec,
            )
        elif result.status == "failed":
            error = result.error_record(report.root)
            error.pop("leaf", None)
            record = build_record(leaf, "failed", trace_id=trace_id, error=error, duration_sec=result.duration_sec)
        else:
            record = build_record(leaf, "cancelled", trace_id=trace_id)
        append_record(report_path, record)


def main(argv: Optional[List[str]] = None, environ: Optional[Mapping[str, str]] = None) -> int:
    """解析参数并执行解析，返回退出状态码。"""  # 函数说明。

    parser = build_parser()
    args = parser.parse_args(argv)
    environ = dict(os.environ if environ is None else environ)
    cwd = Path.cwd()
    try:
        bundle = load_and_merge_config(
            cli_overrides=_build_cli_overrides(args),
            cli_set_overrides=parse_cli_set_items(args.set_items) if args.set_items else {},
            config_path=args.config,
            environ=environ,
            search_dir=cwd,
        )
    except ConfigError as exc:
        sys.stderr.write(f"configuration error: {exc}\n")
        return 2
    config = bundle.config
    if args.print_config:  # 打印快照到 stdout 后退出。
        sys.stdout.write(render_effective_config(bundle, include_sources=True))
        if args.save_config:
            save_config(bundle, args.save_config)
        return 0
    if args.save_config:
        save_config(bundle, args.save_config)
        return 0

    if not args.leaves and not args.all and not args.rerun_failed:
        parser.error("no leaves given; pass LEAF paths or --all")

    trace_id = new_trace_id()
    logger: StructuredLogger = bind_context(
        get_logger(
            format=config["log_format"],
            level=config["log_level"],
            log_file=config.get("log_file"),
            sample_rate=float(config.get("log_sample_rate", 1.0)),
            quiet=bool(config["quiet"]),
            force_flush=args.force_flush,
        ),
        trace_id=trace_id,
    )
    resolver_cfg = config["resolver"]
    explicit = [Path(item).resolve() for item in args.leaves]
    try:
        root = _locate_root(config, explicit, cwd)
    except TreeconfError as exc:
        logger.exception("cannot determine tree root", exc=exc, with_trace=bool(args.verbose))
        return exit_code_for(exc)

    leaves: List[Path] = list(explicit)
    if args.all:
        leaves.extend(discover_leaves(root, resolver_cfg["leaf_name"], resolver_cfg["exclude_dirs"]))
    report_file = config.get("report_file")
    if args.rerun_failed:
        if not report_file:
            parser.error("--rerun-failed requires --report-file")
        leaves.extend(root / name for name in failed_leaves(report_file))
    unique: List[Path] = []
    for leaf in leaves:
        if leaf not in unique:
            unique.append(leaf)
    if not unique:
        logger.info("no leaves to resolve", root=str(root), report_file=report_file)
        return 0

    logger.debug("effective settings", root=str(root), leaves=len(unique), settings_file=str(bundle.user_path or ""))
    resolver = Resolver(root, leaf_name=resolver_cfg["leaf_name"], environ=environ, logger=logger)
    output_dir = config["generate"].get("output_dir")
    report = resolver.resolve_many(
        unique,
        num_workers=config["batch"]["num_workers"],
        fail_fast=config["batch"]["fail_fast"],
        generate=config["generate"]["enabled"],
        output_dir=Path(output_dir) if output_dir else None,
        progress=config["progress"],
        verbose=bool(args.verbose),
    )

    rendered = render_results(report.results, root, config["output"]["format"], config["output"]["show_sources"])
    if rendered.strip():
        sys.stdout.write(rendered)
        sys.stdout.flush()
    if report_file:
        _write_report(report_file, report, trace_id)
    if len(report.results) > 1 or report.failed:
        print_summary(report.summary(), logger)
    failure = report.first_failure()
    if failure is not None and failure.error is not None:
        return exit_code_for(failure.error)
    return 0


if __name__ == "__main__":
    sys.exit(main())
