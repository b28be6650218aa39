"""结构化日志：human/jsonl 两种格式、上下文绑定、叶子生命周期事件与批处理汇总。

控制台日志一律写入 stderr，stdout 只留给有效配置输出。
"""  # 模块文档说明。
from __future__ import annotations

import json
import logging
import os
import sys
import threading
import traceback
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from tqdm import tqdm

from treeconf.utils.io import jsonl_append, safe_mkdirs, with_file_lock

_LEVELS = {
    "DEBUG": 10,
    "INFO": 20,
    "WARNING": 30,
    "ERROR": 40,
    "CRITICAL": 50,
}
# human 格式在消息行之后追加的错误字段，按此顺序输出。
_ERROR_FIELDS = ("error_type", "category", "error", "fragment", "reference")


def new_trace_id() -> str:
    """生成 12 位十六进制 TraceID，一次运行内的全部日志共享同一个值。"""  # 函数说明。
    return uuid.uuid4().hex[:12]


def _level_value(level: str) -> int:
    name = level.upper()
    if name not in _LEVELS:
        raise ValueError(f"Unsupported log level: {level}")
    return _LEVELS[name]


def _append_line(path: Path, text: str, *, force_flush: bool = False) -> None:
    """在 <path>.lock 保护下向文本日志追加一行。"""  # 函数说明。
    safe_mkdirs(path.parent)
    with with_file_lock(path.with_name(path.name + ".lock"), timeout_sec=30):
        with path.open("a", encoding="utf-8") as handle:
            handle.write(text + "\n")
            handle.flush()
            if force_flush:
                os.fsync(handle.fileno())


class _LoggerCore:
    """日志输出端：阈值过滤、INFO 采样、格式化并写往 stderr 与可选文件。"""  # 类说明。

    def __init__(
        self,
        log_format: str,
        level: str,
        log_file: str | None,
        sample_rate: float,
        quiet: bool,
        *,
        force_flush: bool = False,
    ) -> None:
        self.format = log_format.lower()
        if self.format not in ("human", "jsonl"):
            raise ValueError(f"Unsupported log format: {log_format}")
        self.threshold = _level_value(level)
        self.log_file = Path(log_file) if log_file else None
        self.sample_rate = max(min(sample_rate, 1.0), 0.0)
        self.quiet = quiet
        self.force_flush = force_flush
        self._sampled = 0
        self._console = sys.stderr
        # 工作线程共享同一输出端：采样计数与控制台写入都在锁内进行。
        self._lock = threading.Lock()
        if self.log_file is not None:
            safe_mkdirs(self.log_file.parent)

    def _admit(self, value: int) -> bool:
        if value < self.threshold:
            return False
        # 只对 INFO 及以下做采样，警告与错误总是输出。
        if value > _LEVELS["INFO"] or self.sample_rate >= 1.0:
            return True
        if self.sample_rate <= 0:
            return False
        period = max(1, int(round(1.0 / self.sample_rate)))
        keep = self._sampled % period == 0
        self._sampled += 1
        return keep

    def human(self, record: Dict[str, Any]) -> str:
        """渲染 human 格式：首行为等级、时间、trace、叶子与消息，错误细节缩进在下方。"""  # 方法说明。
        head = [f"[{record['level']}]", record["ts"]]
        if record.get("trace_id"):
            head.append(f"trace={record['trace_id']}")
        if record.get("leaf"):
            head.append(f"leaf={record['leaf']}")
        head.append(record["msg"])
        lines = [" ".join(head)]
        details = [f"{key}={record[key]}" for key in _ERROR_FIELDS if record.get(key)]
        if details:
            lines.append("    " + " ".join(details))
        trace_text = record.get("trace")
        if isinstance(trace_text, str) and trace_text.strip():
            lines.extend("    " + line for line in trace_text.rstrip().splitlines())
        return "\n".join(lines)

    def emit(self, level: str, message: str, fields: Dict[str, Any]) -> None:
        value = _level_value(level)
        with self._lock:
            admitted = self._admit(value)
        if not admitted:
            return
        stamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
        record: Dict[str, Any] = {"ts": stamp, "level": level.upper(), "msg": message}
        record.update(fields)
        if self.format == "human":
            text = self.human(record)
            if self.log_file is not None:
                _append_line(self.log_file, text, force_flush=self.force_flush)
        else:
            text = json.dumps(record, ensure_ascii=False, default=str)
            if self.log_file is not None:
                jsonl_append(self.log_file, record, force_flush=self.force_flush)
        if not self.quiet:
            with self._lock:
                self._console.write(text + "\n")
                self._console.flush()


class StructuredLogger:
    """带上下文的日志器；bind 返回共享输出端的子日志器。"""  # 类说明。

    def __init__(self, core: _LoggerCore, context: Optional[Dict[str, Any]] = None, parent: Optional["StructuredLogger"] = None) -> None:
        self._core = core
        self._context = context or {}
        self._parent = parent

    def _context_fields(self) -> Dict[str, Any]:
        fields = self._parent._context_fields() if self._parent is not None else {}
        fields.update(self._context)
        return fields

    def bind(self, **kwargs: Any) -> "StructuredLogger":
        return StructuredLogger(self._core, context=kwargs, parent=self)

    def log(self, level: str, message: str, **fields: Any) -> None:
        payload = self._context_fields()
        payload.update(fields)
        self._core.emit(level, message, payload)

    def debug(self, message: str, **fields: Any) -> None:
        self.log("DEBUG", message, **fields)

    def info(self, message: str, **fields: Any) -> None:
        self.log("INFO", message, **fields)

    def warning(self, message: str, **fields: Any) -> None:
        self.log("WARNING", message, **fields)

    def error(self, message: str, **fields: Any) -> None:
        self.log("ERROR", message, **fields)

    def exception(self, message: str, exc: BaseException | None = None, *, with_trace: bool = True, **fields: Any) -> None:
        """记录 ERROR 日志并附带异常类型与消息；with_trace 时附带堆栈。"""  # 方法说明。
        error = exc if exc is not None else sys.exc_info()[1]
        if error is not None:
            fields.setdefault("error", str(error))
            fields.setdefault("error_type", type(error).__name__)
            if with_trace:
                fields.setdefault("trace", "".join(traceback.format_exception(type(error), error, error.__traceback__)))
        self.log("ERROR", message, **fields)

    def human(self, record: Dict[str, Any]) -> str:
        return self._core.human(record)


def get_logger(
    format: str = "human",
    level: str = "INFO",
    log_file: str | None = None,
    sample_rate: float = 1.0,
    quiet: bool = False,
    *,
    force_flush: bool = False,
) -> StructuredLogger:
    """按设置创建日志器；格式或等级非法时抛出 ValueError。"""  # 函数说明。
    return StructuredLogger(_LoggerCore(format, level, log_file, sample_rate, quiet, force_flush=force_flush))


def bind_context(logger: StructuredLogger, **kwargs: Any) -> StructuredLogger:
    return logger.bind(**kwargs)


class ProgressPrinter:
    """批量解析进度：TTY 上显示 tqdm 进度条，否则每完成一个叶子记一条 progress 日志。"""  # 类说明。

    def __init__(
        self,
        total: int,
        description: str,
        enabled: bool,
        logger: Optional[StructuredLogger] = None,
        *,
        is_tty: Optional[bool] = None,
    ) -> None:
        self.enabled = enabled and total > 0
        self.description = description
        self.total = total
        self.count = 0
        self.logger = logger
        interactive = sys.stderr.isatty() if is_tty is None else is_tty
        self._bar = tqdm(total=total, desc=description, leave=False, file=sys.stderr) if self.enabled and interactive else None

    def update(self, message: Optional[str] = None) -> None:
        if not self.enabled:
            return
        self.count += 1
        if self._bar is not None:
            self._bar.update(1)
            if message:
                self._bar.set_postfix_str(message)
            return
        percent = self.count / self.total * 100
        if self.logger is not None:
            self.logger.info(
                "progress",
                progress={"completed": self.count, "total": self.total, "percent": percent, "message": message},
            )
        else:
            logging.getLogger("treeconf").info(
                "%s %d/%d (%.1f%%)%s", self.description, self.count, self.total, percent, f" - {message}" if message else ""
            )

    def close(self) -> None:
        if self._bar is not None:
            self._bar.close()


class LeafLogger:
    """单个叶子的生命周期日志：开始、解析完成、生成落盘与失败。"""  # 类说明。

    def __init__(self, logger: StructuredLogger, verbose: bool) -> None:
        self.logger = logger
        self.verbose = verbose

    def start(self, leaf: str) -> None:
        if self.verbose:
            self.logger.debug("leaf started", leaf=leaf)

    def resolved(self, leaf: str, duration: float, digest: str, includes: Iterable[str]) -> None:
        self.logger.info("leaf resolved", leaf=leaf, duration_sec=round(duration, 6), digest=digest, includes=list(includes))

    def generated(self, leaf: str, target: str, action: str) -> None:
        self.logger.info("artifact generated", leaf=leaf, target=target, action=action)

    def failure(self, leaf: str, exc: BaseException) -> None:
        """记录失败的叶子、错误类别、失败片段与引用；verbose 时附带堆栈。"""  # 方法说明。
        fields: Dict[str, Any] = {"leaf": leaf, "category": getattr(exc, "category", "unknown")}
        if getattr(exc, "location", None):
            fields["fragment"] = exc.location  # type: ignore[attr-defined]
        if getattr(exc, "reference", None):
            fields["reference"] = exc.reference  # type: ignore[attr-defined]
        self.logger.exception("leaf failed", exc=exc, with_trace=self.verbose, **fields)


def print_summary(summary: dict, logger: StructuredLogger | logging.Logger | None = None) -> None:
    """输出批处理汇总；结构化日志器额外为每个失败叶子记一条 leaf failure。"""  # 函数说明。
    counts = {key: summary.get(key, 0) for key in ("total", "succeeded", "failed", "cancelled")}
    elapsed = float(summary.get("elapsed_sec", 0.0))
    text = "Summary total={total} succeeded={succeeded} failed={failed} cancelled={cancelled}".format(**counts)
    text += f" elapsed={elapsed:.2f}s"
    if isinstance(logger, StructuredLogger):
        logger.info("batch summary", summary={**counts, "elapsed_sec": elapsed}, text=text)
        for item in summary.get("errors", []):
            logger.error(
                "leaf failure",
                leaf=item.get("leaf"),
                category=item.get("category"),
                error=item.get("reason"),
                fragment=item.get("location"),
                reference=item.get("reference"),
            )
        return
    (logger or logging.getLogger("treeconf")).info(text)
