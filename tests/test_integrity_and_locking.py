"""验证文件锁、原子写入、JSONL 追加与报告索引的一致性。"""  # 模块说明。
# 导入 threading 以并行触发同一目标的写入。
import threading
# 导入 time 以在持锁期间制造等待。
import time
# 导入 sys 以调整模块搜索路径。
import sys
# 导入 pathlib.Path 以构造测试用的临时路径。
from pathlib import Path

import pytest
from jsonschema import ValidationError

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))  # 将 src 目录加入 sys.path 以导入 treeconf。

# 导入 I/O 工具函数。
from treeconf.utils.io import atomic_write_text, jsonl_append, jsonl_read, sha256_text, with_file_lock
# 导入报告工具以验证索引逻辑。
from treeconf.utils.report import append_record, build_record, failed_leaves, load_index


# 验证原子写入不会留下临时文件。
def test_atomic_write_replaces_content(tmp_path: Path) -> None:
    """重复写入同一目标时内容被整体替换且不残留 .tmp。"""  # 函数说明。
    target = tmp_path / "nested" / "backend.tf"  # 目标位于尚不存在的目录。
    atomic_write_text(target, "first")  # 第一次写入。
    atomic_write_text(target, "second")  # 第二次写入覆盖。
    assert target.read_text(encoding="utf-8") == "second"  # 内容为最后一次写入。
    assert not (target.parent / "backend.tf.tmp").exists()  # 临时文件已清理。


# 验证文件锁的互斥与超时。
def test_file_lock_serializes_and_times_out(tmp_path: Path) -> None:
    """持锁期间其他线程等待，超时抛出 TimeoutError。"""  # 函数说明。
    lock_path = tmp_path / "provider.tf.lock"  # 锁文件路径。
    events: list[str] = []  # 记录进入与离开的顺序。

    def _worker(name: str) -> None:
        """在锁内追加进入与离开事件。"""  # 内部函数说明。
        with with_file_lock(lock_path, timeout_sec=5):
            events.append(f"{name}:enter")
            time.sleep(0.1)
            events.append(f"{name}:exit")

    threads = [threading.Thread(target=_worker, args=(name,)) for name in ("a", "b")]  # 创建两个并行线程。
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    # 进入与离开成对出现，说明临界区没有交错。
    assert [event.split(":")[1] for event in events] == ["enter", "exit", "enter", "exit"]
    assert not lock_path.exists()  # 释放后锁文件被删除。

    with with_file_lock(lock_path, timeout_sec=5):
        holder_error: list[BaseException] = []

        def _contender() -> None:
            try:
                with with_file_lock(lock_path, timeout_sec=0.2):
                    pass
            except TimeoutError as exc:
                holder_error.append(exc)

        contender = threading.Thread(target=_contender)
        contender.start()
        contender.join()
    assert holder_error and isinstance(holder_error[0], TimeoutError)  # 竞争者超时。


# 验证 JSONL 追加与读取。
def test_jsonl_roundtrip_skips_corrupt_lines(tmp_path: Path) -> None:
    """损坏的行被跳过，其余记录按顺序返回。"""  # 函数说明。
    path = tmp_path / "report.jsonl"  # 报告路径。
    jsonl_append(path, {"leaf": "a", "status": "ok"})
    with path.open("a", encoding="utf-8") as handle:
        handle.write("{not json\n")  # 人为写入一行损坏数据。
    jsonl_append(path, {"leaf": "b", "status": "failed"}, force_flush=True)
    assert [record["leaf"] for record in jsonl_read(path)] == ["a", "b"]
    assert jsonl_read(tmp_path / "absent.jsonl") == []  # 文件不存在时返回空列表。


# 验证报告索引只保留每个叶子的最后一条记录。
def test_report_index_and_failed_leaves(tmp_path: Path) -> None:
    report = tmp_path / "report.jsonl"
    parse_error = {"category": "parse", "reason": "unexpected token", "location": "qa/a/terragrunt.hcl", "reference": None}
    append_record(report, build_record("qa/a/terragrunt.hcl", "failed", trace_id="t1", error=parse_error))
    append_record(report, build_record("qa/b/terragrunt.hcl", "failed", trace_id="t1", error=parse_error))
    append_record(
        report,
        build_record("qa/a/terragrunt.hcl", "ok", trace_id="t2", digest=sha256_text("{}"), include_chain=[]),
    )
    index = load_index(report)
    assert index["qa/a/terragrunt.hcl"]["status"] == "ok"
    assert index["qa/a/terragrunt.hcl"]["trace_id"] == "t2"
    assert failed_leaves(report) == ["qa/b/terragrunt.hcl"]
    assert load_index(tmp_path / "absent.jsonl") == {}


def test_sha256_text_known_digest() -> None:
    assert sha256_text("") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


# 验证报告记录在写入前经过 schema 校验。
def test_report_rejects_invalid_records(tmp_path: Path) -> None:
    report = tmp_path / "report.jsonl"
    with pytest.raises(ValidationError):
        append_record(report, build_record("qa/a/terragrunt.hcl", "failed", trace_id="t1"))  # 失败记录缺少 error。
    with pytest.raises(ValidationError):
        append_record(report, build_record("qa/a/terragrunt.hcl", "ok", trace_id="t1", digest="nothex", include_chain=[]))
    assert not report.exists()  # 校验失败时不落盘。
