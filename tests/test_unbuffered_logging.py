"""验证 CLI 在远程/非交互环境下的实时日志特性。"""

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1] / "src"
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from treeconf.cli.main import main  # noqa: E402  # 延迟导入以确保 sys.path 已更新。


def test_cli_log_file_flushes_immediately(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """--force-flush 时日志文件在命令返回前已写入，stdout 只包含有效配置。"""

    leaf = tmp_path / "app" / "terragrunt.hcl"
    leaf.parent.mkdir()
    leaf.write_text('inputs = {\n  name = "app"\n}\n', encoding="utf-8")
    log_file = tmp_path / "run.log"
    exit_code = main(
        [
            str(leaf),
            "--root",
            str(tmp_path),
            "--log-file",
            str(log_file),
            "--quiet",
            "true",
            "--force-flush",
        ],
        environ={},
    )
    assert exit_code == 0
    captured = capsys.readouterr()
    assert '"name": "app"' in captured.out
    assert "leaf resolved" not in captured.out
    assert log_file.exists()
    assert "leaf resolved" in log_file.read_text(encoding="utf-8")
