"""流水线编排器测试"""

from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest
from support import JUNIT_ONE_FAILED, FakeCommandExecutor, leaf, par, seq

from stagerun.core.config import Config
from stagerun.core.models import AgentSpec, Pipeline, PostHook, RunContext, StageStatus
from stagerun.services.container import ServiceContainer

S = StageStatus


@pytest.fixture()
def container(test_config: Config, fake_executor: FakeCommandExecutor) -> ServiceContainer:
    return ServiceContainer(config=test_config, command_executor=fake_executor)


def _ctx(cfg: Config, branch: str = "main", **creds: str) -> RunContext:
    return RunContext.create(branch, cfg.workspace_root, creds)


class TestRun:
    def test_success_report(self, container: ServiceContainer, test_config: Config) -> None:
        pipeline = Pipeline("demo", seq("demo", leaf("build", "make"), leaf("test", "make test")))
        ctx = _ctx(test_config)
        report = container.orchestrator().run(pipeline, ctx)

        assert report.status == S.SUCCESS
        assert report.exit_code == 0
        assert report.run_id == ctx.run_id
        assert [s.stage_id for s in report.stages] == ["demo", "build", "test"]
        assert report.stages[1].parent_id == "demo"
        assert report.started_at and report.finished_at

    def test_published_artifacts(self, container: ServiceContainer, test_config: Config) -> None:
        report = container.orchestrator().run(Pipeline("demo", leaf("demo", "true")), _ctx(test_config))
        saved = json.loads(Path(report.paths["report_json"]).read_text(encoding="utf-8"))
        assert saved["run_id"] == report.run_id
        assert Path(report.paths["report_path"]).exists()
        assert container.history.get(report.run_id)["status"] == "success"

    def test_publish_disabled(self, container: ServiceContainer, test_config: Config) -> None:
        report = container.orchestrator().run(
            Pipeline("demo", leaf("demo", "true")), _ctx(test_config), publish=False,
        )
        assert report.paths == {}
        assert container.history.query() == []

    def test_workspace_removed_and_contexts_released(
        self, container: ServiceContainer, test_config: Config,
    ) -> None:
        pipeline = Pipeline("demo", par("demo", leaf("a", "x", agent=AgentSpec()), leaf("b", "y")))
        ctx = _ctx(test_config)
        orch = container.orchestrator()
        orch.run(pipeline, ctx)
        assert orch.context_stats["active"] == 0
        assert orch.context_stats["acquired"] == orch.context_stats["released"] == 2
        assert not (Path(test_config.workspace_root) / ctx.run_id).exists()

    def test_keep_workspace(self, test_config: Config, fake_executor: FakeCommandExecutor) -> None:
        test_config.keep_workspace = True
        c = ServiceContainer(config=test_config, command_executor=fake_executor)
        ctx = _ctx(test_config)
        c.orchestrator().run(Pipeline("demo", leaf("demo", "true")), ctx)
        assert (Path(test_config.workspace_root) / ctx.run_id).is_dir()

    def test_report_summary_aggregated(
        self, container: ServiceContainer, test_config: Config, fake_executor: FakeCommandExecutor,
    ) -> None:
        fake_executor.script("unit", files={"r/junit.xml": JUNIT_ONE_FAILED})
        hook = (PostHook("junit", "r/*.xml"),)
        pipeline = Pipeline("demo", par(
            "demo",
            leaf("frontend", "unit-fe", post_hooks=hook),
            leaf("backend", "unit-be", post_hooks=hook, agent=AgentSpec()),
        ))
        report = container.orchestrator().run(pipeline, _ctx(test_config))

        assert report.status == S.UNSTABLE
        assert report.exit_code == 2
        assert set(report.stage_summaries) == {"frontend", "backend"}
        assert report.report_summary.total == 6
        published = Path(test_config.report_dir) / report.run_id
        assert (published / "frontend" / "junit" / "junit.xml").exists()
        assert (published / "backend" / "junit" / "junit.xml").exists()

    def test_abort(self, container: ServiceContainer, test_config: Config,
                   fake_executor: FakeCommandExecutor) -> None:
        fake_executor.script("long", block=True)
        pipeline = Pipeline("demo", seq("demo", leaf("a", "long"), leaf("b", "after")))
        orch = container.orchestrator()
        timer = threading.Timer(0.1, orch.abort)
        timer.start()
        try:
            report = orch.run(pipeline, _ctx(test_config))
        finally:
            timer.cancel()
        assert orch.aborted
        assert report.status == S.ABORTED
        assert report.exit_code == 130
        assert not fake_executor.ran("after")
