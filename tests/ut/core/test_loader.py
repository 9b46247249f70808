"""流水线定义加载测试"""

from __future__ import annotations

from pathlib import Path

import pytest

from stagerun.core.exceptions import PipelineDefinitionError
from stagerun.core.loader import load_pipeline, parse_pipeline
from stagerun.core.models import WorkspacePolicy

WEBAPP_YAML = """\
pipeline:
  name: webapp
  agent:
    image: node:20
    workspace: reuse
  environment:
    CI: "true"
  stages:
    - id: checkout
      steps: ["git clone repo ."]
    - id: unit-tests
      fail_fast: true
      parallel:
        - id: frontend
          steps: ["npm test"]
          post:
            - junit: "reports/frontend/*.xml"
              name: frontend
        - id: backend
          steps:
            - run: ./gradlew test
              dir: backend
              timeout: 300
    - id: deploy
      when: branch == "main"
      credentials:
        DEPLOY_TOKEN: deploy-token
      steps: ./deploy.sh
      post:
        - sh: ./notify.sh
          on: failure
"""


def _stage(**body):
    return {"name": "p", "stages": [{"id": "a", **body}]}


class TestLoadFile:
    def test_full_definition(self, tmp_path: Path) -> None:
        f = tmp_path / "webapp.yml"
        f.write_text(WEBAPP_YAML, encoding="utf-8")
        p = load_pipeline(f)

        assert p.name == "webapp"
        assert p.root.id == "webapp"
        assert p.root.kind == "sequential"
        assert [s.id for s in p.root.children] == ["checkout", "unit-tests", "deploy"]
        assert p.root.agent.runtime_image == "node:20"  # type: ignore[union-attr]
        assert p.root.agent.workspace_policy == WorkspacePolicy.REUSE  # type: ignore[union-attr]
        assert p.root.env.variables == {"CI": "true"}

        unit = p.find("unit-tests")
        assert unit.kind == "parallel"  # type: ignore[union-attr]
        assert unit.body.fail_fast is True  # type: ignore[union-attr]

        backend = p.find("backend").body.actions[0]  # type: ignore[union-attr]
        assert backend.command == "./gradlew test"
        assert backend.working_dir == "backend"
        assert backend.timeout == 300

        hook = p.find("frontend").post_hooks[0]  # type: ignore[union-attr]
        assert (hook.kind, hook.target, hook.name) == ("junit", "reports/frontend/*.xml", "frontend")

        deploy = p.find("deploy")
        assert deploy.condition == 'branch == "main"'  # type: ignore[union-attr]
        assert dict(deploy.env.secrets) == {"DEPLOY_TOKEN": "deploy-token"}  # type: ignore[union-attr]
        assert deploy.body.actions[0].command == "./deploy.sh"  # type: ignore[union-attr]
        assert deploy.post_hooks[0].on == ("failure",)  # type: ignore[union-attr]

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(PipelineDefinitionError, match="不存在"):
            load_pipeline(tmp_path / "nope.yml")

    def test_bad_yaml(self, tmp_path: Path) -> None:
        f = tmp_path / "bad.yml"
        f.write_text("pipeline: [unclosed", encoding="utf-8")
        with pytest.raises(PipelineDefinitionError):
            load_pipeline(f)


class TestParse:
    def test_unwrapped(self) -> None:
        p = parse_pipeline({"name": "p", "steps": ["echo hi"]})
        assert p.root.kind == "leaf"
        assert p.root.body.actions[0].command == "echo hi"  # type: ignore[union-attr]

    def test_agent_shorthand(self) -> None:
        p = parse_pipeline({"name": "p", "agent": "python:3.12", "steps": ["x"]})
        assert p.root.agent.runtime_image == "python:3.12"  # type: ignore[union-attr]
        assert p.root.agent.workspace_policy == WorkspacePolicy.FRESH  # type: ignore[union-attr]

    def test_hook_defaults(self) -> None:
        p = parse_pipeline(_stage(steps=["x"], post=[{"html": "site", "required": True}]))
        hook = p.find("a").post_hooks[0]  # type: ignore[union-attr]
        assert hook.kind == "html"
        assert hook.required is True
        assert hook.on == ("always",)
        assert hook.index == "index.html"


class TestInvalid:
    @pytest.mark.parametrize(("data", "fragment"), [
        ({"steps": ["x"]}, "缺少 name"),
        (_stage(steps=["x"], stages=[]), "之一"),
        (_stage(), "之一"),
        (_stage(parallel=[]), "非空列表"),
        (_stage(steps=["x"], fail_fast=True), "fail_fast"),
        (_stage(steps=["x"], when="branch = main"), "when"),
        (_stage(steps=["x"], colour="red"), "未知字段"),
        (_stage(steps=[{"run": "x", "timeout": -1}]), "timeout"),
        (_stage(steps=[{"dir": "x"}]), "steps[0]"),
        (_stage(steps=["x"], agent={"image": "a", "workspace": "shared"}), "reuse 或 fresh"),
        (_stage(steps=["x"], post=[{"junit": "a", "html": "b"}]), "post[0]"),
        (_stage(steps=["x"], post=[{"sh": "a", "on": "sometimes"}]), "触发条件"),
        (_stage(steps=["x"], environment=["A=1"]), "environment"),
        (_stage(steps=["x"], post=[{"junit": ""}]), "post[0].junit 必须是非空字符串"),
        (_stage(steps=["x"], post=[{"archive": None}]), "post[0].archive 必须是非空字符串"),
        (_stage(steps=["x"], post=[{"html": ["a"]}]), "post[0].html 必须是非空字符串"),
        (_stage(steps=["x"], post=[{"junit": "r/*.xml", "required": "yes"}]), "required 必须是布尔值"),
        (_stage(parallel=[{"id": "b", "steps": ["x"]}], fail_fast="false"), "fail_fast 必须是布尔值"),
    ])
    def test_rejected(self, data: dict, fragment: str) -> None:
        with pytest.raises(PipelineDefinitionError) as exc:
            parse_pipeline(data)
        assert any(fragment in d for d in exc.value.details)

    def test_fail_fast_false_stays_false(self) -> None:
        p = parse_pipeline(_stage(parallel=[{"id": "b", "steps": ["x"]}], fail_fast=False))
        assert p.find("a").body.fail_fast is False  # type: ignore[union-attr]

    def test_duplicate_ids(self) -> None:
        data = {"name": "p", "parallel": [
            {"id": "x", "steps": ["a"]},
            {"id": "x", "steps": ["b"]},
        ]}
        with pytest.raises(PipelineDefinitionError) as exc:
            parse_pipeline(data)
        assert any("重复" in d for d in exc.value.details)

    def test_all_problems_reported_together(self) -> None:
        data = {"name": "p", "stages": [
            {"id": "a", "steps": ["x"], "when": "???"},
            {"steps": ["y"]},
        ]}
        with pytest.raises(PipelineDefinitionError) as exc:
            parse_pipeline(data)
        assert len(exc.value.details) == 2

    @pytest.mark.parametrize("data", [None, {}, [], "text"])
    def test_empty_or_non_mapping(self, data) -> None:  # noqa: ANN001
        with pytest.raises(PipelineDefinitionError):
            parse_pipeline(data)
