"""公共 fixture"""

from __future__ import annotations

from pathlib import Path

import pytest
from support import FakeCommandExecutor, Harness, make_harness

import stagerun.core.config as cfgmod
from stagerun.services.container import reset_container
from stagerun.utils.logger import bind_run_id


@pytest.fixture(autouse=True)
def _isolate_globals(monkeypatch: pytest.MonkeyPatch):
    """每个用例使用独立的全局配置与服务容器"""
    monkeypatch.setattr(cfgmod, "_current", None)
    reset_container()
    yield
    reset_container()
    bind_run_id("")


@pytest.fixture()
def fake_executor() -> FakeCommandExecutor:
    return FakeCommandExecutor()


@pytest.fixture()
def harness(tmp_path: Path, fake_executor: FakeCommandExecutor) -> Harness:
    return make_harness(tmp_path, fake_executor)


@pytest.fixture()
def test_config(tmp_path: Path) -> cfgmod.Config:
    """所有目录指向临时目录的配置"""
    return cfgmod.Config(
        workspace_root=str(tmp_path / "workspaces"),
        result_dir=str(tmp_path / "results"),
        report_dir=str(tmp_path / "results" / "reports"),
        history_file=str(tmp_path / "data" / "history.json"),
        credentials_file=str(tmp_path / "credentials.yml"),
        default_action_timeout=30,
        kill_grace_period=0.5,
    )
