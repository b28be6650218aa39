"""解析报告：每个叶子一条 JSONL 记录，支持按叶子索引最近结果。"""  # 模块说明。
from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from treeconf.utils.io import jsonl_append, jsonl_read
from treeconf.utils.schema import validate_report_record


def build_record(
    leaf: str,
    status: str,
    *,
    trace_id: str,
    digest: Optional[str] = None,
    include_chain: Optional[List[str]] = None,
    generated: Optional[List[Dict[str, str]]] = None,
    error: Optional[Dict[str, Any]] = None,
    duration_sec: float = 0.0,
) -> Dict[str, Any]:
    """构造单条报告记录。"""  # 函数说明。
    record: Dict[str, Any] = {
        "leaf": leaf,
        "status": status,
        "trace_id": trace_id,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "duration_sec": round(duration_sec, 6),
    }
    if digest is not None:
        record["digest"] = digest
    if include_chain is not None:
        record["include_chain"] = include_chain
    if generated:
        record["generated"] = generated
    if error is not None:
        record["error"] = error
    return record


def append_record(report_path: str | Path, record: Dict[str, Any]) -> None:
    """校验后向报告追加一条记录，内部负责加锁与创建目录。"""  # 函数说明。
    validate_report_record(record)
    jsonl_append(str(report_path), record)


def load_index(report_path: str | Path) -> Dict[str, Dict[str, Any]]:
    """读取报告并返回以叶子为键的最新记录索引。"""  # 函数说明。
    path = Path(report_path)
    if not path.exists():
        return {}
    index: Dict[str, Dict[str, Any]] = {}
    for data in jsonl_read(path):
        leaf = data.get("leaf")
        if leaf:
            index[str(leaf)] = data  # 同一叶子保留最后一条。
    return index


def failed_leaves(report_path: str | Path) -> List[str]:
    """返回最近一次记录为失败的叶子，按名称排序。"""  # 函数说明。
    return sorted(leaf for leaf, record in load_index(report_path).items() if record.get("status") == "failed")
