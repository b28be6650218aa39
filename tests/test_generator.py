"""生成器测试：冲突策略、预检查与 backend 文件渲染。"""  # 模块说明。
from __future__ import annotations

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))  # 将 src 目录加入 sys.path 以导入 treeconf。

import pytest

from treeconf.resolver.fragment import EffectiveConfig, GenerateDirective, RemoteState
from treeconf.resolver.generator import directives_for, generate_all, materialize
from treeconf.utils.errors import ConflictError, EvaluationError


def _config(tmp_path: Path, *directives: GenerateDirective, remote_state: RemoteState | None = None) -> EffectiveConfig:
    leaf_dir = tmp_path / "leaf"
    leaf_dir.mkdir(exist_ok=True)
    return EffectiveConfig(
        leaf=leaf_dir / "terragrunt.hcl",
        inputs={},
        input_sources={},
        remote_state=remote_state,
        generate={directive.name: directive for directive in directives},
    )


def _directive(name: str, path: str, policy: str, contents: str = "new") -> GenerateDirective:
    return GenerateDirective(name=name, path=path, if_exists=policy, contents=contents, declared_in="root.hcl")


@pytest.mark.parametrize(
    "policy, action, expected",
    [("skip", "skipped", "old"), ("overwrite", "overwritten", "new")],
)
def test_existing_target_policies(tmp_path: Path, policy: str, action: str, expected: str) -> None:
    """目标已存在时 skip 保留旧内容，overwrite 替换内容。"""  # 测试说明。
    target = tmp_path / "provider.tf"
    target.write_text("old", encoding="utf-8")
    outcome = materialize(_directive("provider", "provider.tf", policy), tmp_path)
    assert outcome.action == action
    assert outcome.target == target
    assert target.read_text(encoding="utf-8") == expected
    assert not (tmp_path / "provider.tf.lock").exists()


def test_new_target_written(tmp_path: Path) -> None:
    outcome = materialize(_directive("versions", "nested/versions.tf", "error"), tmp_path)
    assert outcome.action == "written"
    assert (tmp_path / "nested" / "versions.tf").read_text(encoding="utf-8") == "new"


def test_error_policy_conflict_writes_nothing(tmp_path: Path) -> None:
    """任一 error 策略冲突时，其他指令也不会落盘。"""  # 测试说明。
    config = _config(
        tmp_path,
        _directive("a_provider", "provider.tf", "overwrite"),
        _directive("b_versions", "versions.tf", "error"),
    )
    (tmp_path / "leaf" / "versions.tf").write_text("existing", encoding="utf-8")
    with pytest.raises(ConflictError) as excinfo:
        generate_all(config)
    assert excinfo.value.reference == "generate.b_versions"
    assert excinfo.value.location == "root.hcl"
    assert not (tmp_path / "leaf" / "provider.tf").exists()
    assert (tmp_path / "leaf" / "versions.tf").read_text(encoding="utf-8") == "existing"


def test_unknown_policy_rejected(tmp_path: Path) -> None:
    with pytest.raises(EvaluationError):
        materialize(_directive("provider", "provider.tf", "merge"), tmp_path)
    assert not (tmp_path / "provider.tf").exists()


def test_remote_state_backend_file(tmp_path: Path) -> None:
    """remote_state.generate 渲染 backend 块并与 generate 指令一起落盘。"""  # 测试说明。
    remote = RemoteState(
        backend="gcs",
        config={"bucket": "company-tf-state", "prefix": "qa/apps/app-1/bucket"},
        generate={"path": "backend.tf", "if_exists": "overwrite"},
        declared_in="root.hcl",
    )
    config = _config(tmp_path, _directive("provider", "provider.tf", "skip"), remote_state=remote)
    assert [directive.name for directive in directives_for(config)] == ["provider", "remote_state"]
    outcomes = generate_all(config, tmp_path / "out")
    assert [outcome.action for outcome in outcomes] == ["written", "written"]
    backend = (tmp_path / "out" / "backend.tf").read_text(encoding="utf-8")
    assert 'backend "gcs" {' in backend
    assert 'prefix = "qa/apps/app-1/bucket"' in backend


def test_remote_state_generate_requires_path(tmp_path: Path) -> None:
    remote = RemoteState(backend="s3", config={}, generate={"if_exists": "skip"})
    with pytest.raises(EvaluationError):
        directives_for(_config(tmp_path, remote_state=remote))
