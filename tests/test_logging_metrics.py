"""验证结构化日志、叶子生命周期日志与批处理汇总输出的单元测试。"""  # 模块说明，解释测试目标。
import json  # 导入 json 以解析 JSONL 日志。
import logging  # 导入 logging 以验证标准日志器兼容。
import sys  # 导入 sys 以在测试中调整模块搜索路径。
import threading  # 导入 threading 以从多个线程同时写日志。
from pathlib import Path  # 导入 Path 以便构造临时文件路径。

import pytest  # 导入 pytest 以使用 capsys 与 caplog 夹具。

ROOT = Path(__file__).resolve().parents[1] / "src"  # 计算 src 目录路径。
if str(ROOT) not in sys.path:  # 若 src 未在 sys.path 中。
    sys.path.insert(0, str(ROOT))  # 将其加入模块搜索路径以导入 treeconf。

from treeconf.resolver import Resolver  # 导入解析器以执行端到端流程。
from treeconf.utils.errors import EvaluationError  # 导入错误类型以构造失败日志。
from treeconf.utils.logging import LeafLogger, ProgressPrinter, bind_context, get_logger, print_summary  # 导入日志工具。


def _read_json_lines(path: Path) -> list[dict]:
    """读取 JSONL 文件并返回字典列表。"""  # 辅助函数说明。
    lines: list[dict] = []  # 初始化结果列表。
    with path.open("r", encoding="utf-8") as handle:  # 以文本模式打开文件。
        for raw in handle:  # 遍历每一行原始文本。
            raw = raw.strip()  # 去除首尾空白字符。
            if not raw:  # 跳过空行。
                continue
            lines.append(json.loads(raw))  # 解析 JSON 并追加到结果。
    return lines  # 返回解析结果。


def test_batch_writes_jsonl_logs(tmp_path: Path) -> None:
    """批量解析写出的 jsonl 日志共享 TraceID 并包含摘要与 include 链。"""  # 测试说明。
    (tmp_path / "common.hcl").write_text("inputs = {\n  a = 1\n}\n", encoding="utf-8")  # 写入公共片段。
    for name in ("x", "y"):  # 创建两个叶子。
        leaf = tmp_path / name / "terragrunt.hcl"
        leaf.parent.mkdir()
        leaf.write_text('include {\n  path = "../common.hcl"\n}\n', encoding="utf-8")
    log_file = tmp_path / "logs" / "run.jsonl"  # 日志文件位于尚不存在的目录。
    logger = bind_context(get_logger(format="jsonl", log_file=str(log_file), quiet=True), trace_id="abc123")  # 创建日志器。
    report = Resolver(tmp_path, logger=logger).resolve_many(["x", "y"], num_workers=2)  # 执行批量解析。
    print_summary(report.summary(), logger)  # 输出汇总日志。
    records = _read_json_lines(log_file)  # 读取日志记录。
    assert records, "expected non-empty log records"  # 至少存在一条日志。
    for record in records:  # 遍历每条日志进行字段校验。
        assert record["trace_id"] == "abc123"  # 所有日志共享同一 TraceID。
        assert {"ts", "level", "msg"} <= set(record)  # 基础字段齐全。
    resolved = [record for record in records if record["msg"] == "leaf resolved"]  # 筛选成功日志。
    assert len(resolved) == 2  # 两个叶子均有记录。
    assert all(len(record["digest"]) == 64 for record in resolved)  # 摘要为 SHA-256。
    assert resolved[0]["includes"] == [str((tmp_path / "common.hcl").resolve())]  # 记录 include 链。
    summary = [record for record in records if record["msg"] == "batch summary"]  # 筛选汇总日志。
    assert summary[0]["summary"]["succeeded"] == 2  # 汇总计数正确。


def test_human_failure_log_names_fragment(capsys: pytest.CaptureFixture[str]) -> None:
    """human 格式的失败日志包含分类、失败片段与引用。"""  # 测试说明。
    logger = get_logger(level="INFO")  # 默认 human 格式写入 stderr。
    error = EvaluationError("undefined local 'env'", location="/live/_envcommon/bucket.hcl", reference="local.env")
    LeafLogger(logger, verbose=False).failure("qa/bucket/terragrunt.hcl", error)  # 记录失败。
    err = capsys.readouterr().err
    assert "[ERROR]" in err  # 等级标记。
    assert "leaf=qa/bucket/terragrunt.hcl" in err  # 叶子上下文。
    assert "category=evaluation" in err  # 错误分类。
    assert "fragment=/live/_envcommon/bucket.hcl" in err  # 失败片段。
    assert "reference=local.env" in err  # 无法解析的引用。
    assert "Traceback" not in err  # 非 verbose 模式不输出堆栈。


def test_level_filter_and_sampling(capsys: pytest.CaptureFixture[str]) -> None:
    """低于阈值的日志被过滤，INFO 日志按采样率输出。"""  # 测试说明。
    logger = get_logger(format="jsonl", level="WARNING")
    logger.info("hidden")
    logger.warning("shown")
    lines = [json.loads(line) for line in capsys.readouterr().err.splitlines()]
    assert [line["msg"] for line in lines] == ["shown"]
    sampled = get_logger(format="jsonl", level="INFO", sample_rate=0.5)
    for index in range(4):
        sampled.info("tick", index=index)
    lines = [json.loads(line) for line in capsys.readouterr().err.splitlines()]
    assert [line["index"] for line in lines] == [0, 2]


def test_sampling_and_console_are_thread_safe(capsys: pytest.CaptureFixture[str]) -> None:
    """多个工作线程共用日志器时采样计数准确，控制台行不交错。"""  # 测试说明。
    logger = get_logger(format="jsonl", level="INFO", sample_rate=0.5)  # 每两条 INFO 保留一条。

    def _worker(worker: int) -> None:
        for index in range(50):  # 每个线程写 50 条。
            logger.bind(worker=worker).info("tick", index=index, payload="x" * 200)

    threads = [threading.Thread(target=_worker, args=(worker,)) for worker in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    lines = [json.loads(line) for line in capsys.readouterr().err.splitlines()]  # 每行都是完整的 JSON。
    assert len(lines) == 200  # 400 条中恰好保留一半。
    assert all(line["msg"] == "tick" for line in lines)


def test_invalid_logger_settings() -> None:
    with pytest.raises(ValueError):
        get_logger(format="xml")
    with pytest.raises(ValueError):
        get_logger(level="LOUD")


def test_progress_falls_back_to_logs(capsys: pytest.CaptureFixture[str]) -> None:
    """非 TTY 环境下进度以日志形式输出。"""  # 测试说明。
    logger = get_logger(format="jsonl")
    printer = ProgressPrinter(2, "resolve", True, logger, is_tty=False)
    printer.update("a/terragrunt.hcl")
    printer.update("b/terragrunt.hcl")
    printer.close()
    lines = [json.loads(line) for line in capsys.readouterr().err.splitlines()]
    assert [line["progress"]["completed"] for line in lines] == [1, 2]
    assert lines[-1]["progress"]["percent"] == 100.0


def test_print_summary_with_standard_logger(caplog: pytest.LogCaptureFixture) -> None:
    """传入标准 logging.Logger 时输出单行摘要。"""  # 测试说明。
    caplog.set_level(logging.INFO, logger="treeconf.test")
    print_summary({"total": 3, "succeeded": 2, "failed": 1, "elapsed_sec": 0.5}, logging.getLogger("treeconf.test"))
    assert "Summary total=3 succeeded=2 failed=1 cancelled=0 elapsed=0.50s" in caplog.text
