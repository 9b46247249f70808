"""执行上下文申请/释放测试"""

from __future__ import annotations

import logging
from pathlib import Path

import pytest
from support import FakeCommandExecutor

from stagerun.core.exceptions import AgentProvisionError
from stagerun.core.models import AgentSpec, ContextStatus, WorkspacePolicy
from stagerun.services.agent import AgentProvisioner, DockerAgentHandler

REUSE = WorkspacePolicy.REUSE
FRESH = WorkspacePolicy.FRESH


@pytest.fixture()
def docker_exec() -> FakeCommandExecutor:
    return FakeCommandExecutor().script("docker run", stdout="c0ffee1234567890\n")


@pytest.fixture()
def provisioner(tmp_path: Path, docker_exec: FakeCommandExecutor) -> AgentProvisioner:
    return AgentProvisioner(
        str(tmp_path / "ws"), handlers={"docker": DockerAgentHandler(docker_exec)},
    )


class TestLocal:
    def test_root_context(self, provisioner: AgentProvisioner, tmp_path: Path) -> None:
        root = provisioner.open_root()
        assert root.workspace == str(tmp_path / "ws")
        assert root.handle.startswith("local:")
        assert Path(root.workspace).is_dir()
        assert provisioner.stats == {"acquired": 1, "released": 0, "active": 1}

    def test_reuse_shares_parent_workspace(self, provisioner: AgentProvisioner) -> None:
        root = provisioner.open_root()
        ctx = provisioner.acquire(AgentSpec(workspace_policy=REUSE), root, owner="build")
        assert ctx.shared
        assert ctx.workspace == root.workspace
        assert ctx.parent_id == root.context_id
        assert not ctx.owns_handle

    def test_fresh_gets_isolated_workspace(self, provisioner: AgentProvisioner) -> None:
        root = provisioner.open_root()
        ctx = provisioner.acquire(AgentSpec(workspace_policy=FRESH), root, owner="lint")
        assert not ctx.shared
        assert ctx.workspace != root.workspace
        assert Path(ctx.workspace).name.startswith("lint-")
        assert Path(ctx.workspace).is_dir()

    def test_reuse_with_released_parent_falls_back_to_fresh(self, provisioner: AgentProvisioner) -> None:
        root = provisioner.open_root()
        provisioner.release(root)
        ctx = provisioner.acquire(AgentSpec(workspace_policy=REUSE), root, owner="x")
        assert not ctx.shared
        assert ctx.workspace != root.workspace

    def test_fresh_workspace_removed_on_release(self, provisioner: AgentProvisioner) -> None:
        ctx = provisioner.acquire(AgentSpec(), owner="tmp")
        (Path(ctx.workspace) / "out.txt").write_text("x", encoding="utf-8")
        provisioner.release(ctx)
        assert not Path(ctx.workspace).exists()
        assert ctx.status == ContextStatus.RELEASED

    def test_keep_workspace(self, tmp_path: Path) -> None:
        p = AgentProvisioner(str(tmp_path / "ws"), cleanup=False)
        ctx = p.acquire(AgentSpec(), owner="keep")
        p.release(ctx)
        assert Path(ctx.workspace).is_dir()

    def test_shared_workspace_kept_on_release(self, provisioner: AgentProvisioner) -> None:
        root = provisioner.open_root()
        ctx = provisioner.acquire(AgentSpec(workspace_policy=REUSE), root)
        provisioner.release(ctx)
        assert Path(root.workspace).is_dir()


class TestReleaseOnce:
    def test_double_release_warns(
        self, provisioner: AgentProvisioner, caplog: pytest.LogCaptureFixture,
    ) -> None:
        ctx = provisioner.acquire(AgentSpec(), owner="a")
        provisioner.release(ctx)
        with caplog.at_level(logging.WARNING):
            provisioner.release(ctx)
        assert "已释放" in caplog.text
        assert provisioner.stats == {"acquired": 1, "released": 1, "active": 0}

    def test_lease_releases_on_error(self, provisioner: AgentProvisioner) -> None:
        with pytest.raises(RuntimeError):
            with provisioner.lease(AgentSpec(), owner="boom"):
                raise RuntimeError("stage crashed")
        assert provisioner.active() == []
        assert provisioner.stats["released"] == 1


class TestDocker:
    def test_provision_and_teardown(
        self, provisioner: AgentProvisioner, docker_exec: FakeCommandExecutor,
    ) -> None:
        spec = AgentSpec(runtime_image="node:20", extra_args=("--network", "host"))
        ctx = provisioner.acquire(spec, owner="e2e")
        assert ctx.handle == "c0ffee1234567890"
        run = docker_exec.call_for("docker run")
        assert "node:20 sleep infinity" in run.command
        assert "--network host" in run.command
        assert ":/workspace" in run.command

        provisioner.release(ctx)
        assert docker_exec.ran("docker rm -f c0ffee1234567890")

    def test_reuse_same_image_shares_container(
        self, provisioner: AgentProvisioner, docker_exec: FakeCommandExecutor,
    ) -> None:
        parent = provisioner.acquire(AgentSpec(runtime_image="node:20"), owner="p")
        child = provisioner.acquire(
            AgentSpec(runtime_image="node:20", workspace_policy=REUSE), parent, owner="c",
        )
        assert child.handle == parent.handle
        assert not child.owns_handle
        provisioner.release(child)
        assert not docker_exec.ran("docker rm")
        provisioner.release(parent)
        assert len([c for c in docker_exec.commands() if "docker run" in c]) == 1
        assert docker_exec.ran("docker rm -f")

    def test_reuse_other_image_starts_new_container(
        self, provisioner: AgentProvisioner, docker_exec: FakeCommandExecutor,
    ) -> None:
        root = provisioner.open_root()
        ctx = provisioner.acquire(
            AgentSpec(runtime_image="python:3.12", workspace_policy=REUSE), root, owner="py",
        )
        assert ctx.shared
        assert ctx.owns_handle
        assert ctx.handle == "c0ffee1234567890"
        assert ctx.workspace == root.workspace

    def test_provision_failure(self, tmp_path: Path) -> None:
        failing = FakeCommandExecutor().script("docker run", rc=125, stderr="no such image")
        p = AgentProvisioner(str(tmp_path / "ws"), handlers={"docker": DockerAgentHandler(failing)})
        with pytest.raises(AgentProvisionError, match="容器启动失败"):
            p.acquire(AgentSpec(runtime_image="nope:1"), owner="x")
        assert p.active() == []

    def test_unknown_provider(self, tmp_path: Path) -> None:
        from stagerun.services.agent import get_agent_handler
        with pytest.raises(AgentProvisionError, match="不支持"):
            get_agent_handler("k8s")
