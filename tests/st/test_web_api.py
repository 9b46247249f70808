"""JSON API 端点测试"""

from __future__ import annotations

import pytest
from support import FakeCommandExecutor

from stagerun.core.config import Config
from stagerun.services.container import ServiceContainer, set_container
from stagerun.web.app import app

DEFINITION = {
    "name": "api-demo",
    "stages": [
        {"id": "build", "steps": ["make"]},
        {"id": "release", "when": 'branch == "main"', "steps": ["make release"]},
    ],
}


@pytest.fixture()
def client(test_config: Config, fake_executor: FakeCommandExecutor):
    """注入使用临时目录与脚本化执行器的服务容器"""
    set_container(ServiceContainer(config=test_config, command_executor=fake_executor))
    app.config["TESTING"] = True
    with app.test_client() as c:
        yield c


class TestGlobalErrorHandlers:
    def test_404_returns_json(self, client) -> None:
        resp = client.get("/api/nonexistent")
        assert resp.status_code == 404
        assert "error" in resp.get_json()

    def test_405_returns_json(self, client) -> None:
        resp = client.delete("/api/runs")
        assert resp.status_code == 405
        assert "error" in resp.get_json()

    def test_health(self, client) -> None:
        assert client.get("/api/health").get_json()["status"] == "ok"


class TestSubmitRun:
    def test_wait_returns_report(self, client) -> None:
        resp = client.post("/api/runs", json={"branch": "dev", "definition": DEFINITION, "wait": True})
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["status"] == "success"
        statuses = {s["stage_id"]: s["status"] for s in data["stages"]}
        assert statuses == {"api-demo": "success", "build": "success", "release": "skipped"}

    def test_yaml_body(self, client) -> None:
        body = {"branch": "main", "wait": True,
                "yaml": "pipeline:\n  name: y\n  steps: ['echo hi']\n"}
        resp = client.post("/api/runs", json=body)
        assert resp.get_json()["pipeline"] == "y"

    def test_background_then_query(self, client) -> None:
        resp = client.post("/api/runs", json={"branch": "main", "definition": DEFINITION})
        assert resp.status_code == 202
        run_id = resp.get_json()["run_id"]

        from stagerun.services.container import get_container
        get_container().runs.wait(run_id, timeout=10)

        data = client.get(f"/api/runs/{run_id}").get_json()
        assert data["status"] == "success"
        listing = client.get("/api/runs?pipeline=api-demo").get_json()
        assert [r["run_id"] for r in listing["records"]] == [run_id]
        assert listing["active"] == []

    def test_missing_branch(self, client) -> None:
        resp = client.post("/api/runs", json={"definition": DEFINITION})
        assert resp.status_code == 400
        assert "branch" in resp.get_json()["error"]

    def test_bad_credentials_type(self, client) -> None:
        resp = client.post("/api/runs", json={"branch": "main", "definition": DEFINITION,
                                              "credentials": ["a"]})
        assert resp.status_code == 400

    def test_invalid_definition(self, client) -> None:
        resp = client.post("/api/runs", json={"branch": "main", "definition": {"name": "x"}})
        assert resp.status_code == 400
        data = resp.get_json()
        assert data["code"] == "PIPELINE_DEFINITION_ERROR"
        assert data["details"]

    def test_no_definition(self, client) -> None:
        resp = client.post("/api/runs", json={"branch": "main"})
        assert resp.status_code == 400


class TestAbort:
    def test_abort_running(self, client, fake_executor: FakeCommandExecutor) -> None:
        fake_executor.script("long", block=True)
        definition = {"name": "slow", "stages": [
            {"id": "a", "steps": ["long"]}, {"id": "b", "steps": ["after"]},
        ]}
        run_id = client.post("/api/runs", json={"branch": "main", "definition": definition}).get_json()["run_id"]

        resp = client.post(f"/api/runs/{run_id}/abort")
        assert resp.status_code == 202

        from stagerun.services.container import get_container
        result = get_container().runs.wait(run_id, timeout=10)
        assert result["status"] == "aborted"  # type: ignore[index]

    def test_abort_unknown(self, client) -> None:
        assert client.post("/api/runs/nope/abort").status_code == 404

    def test_get_unknown(self, client) -> None:
        assert client.get("/api/runs/nope").status_code == 404


class TestStagesAndValidation:
    def test_stage_summary(self, client) -> None:
        client.post("/api/runs", json={"branch": "main", "definition": DEFINITION, "wait": True})
        client.post("/api/runs", json={"branch": "dev", "definition": DEFINITION, "wait": True})
        summary = client.get("/api/stages/release/summary").get_json()["summary"]
        assert summary["total_runs"] == 2
        assert summary["success"] == 1
        assert summary["skipped"] == 1

    def test_validate(self, client) -> None:
        resp = client.post("/api/pipelines/validate", json={"definition": DEFINITION})
        data = resp.get_json()
        assert data["valid"] is True
        assert data["stages"][2] == {
            "id": "release", "kind": "leaf", "parent_id": "api-demo", "condition": 'branch == "main"',
        }

    def test_validate_malformed_condition(self, client) -> None:
        bad = {"name": "x", "steps": ["a"], "when": "branch ="}
        resp = client.post("/api/pipelines/validate", json={"definition": bad})
        assert resp.status_code == 400
        assert any("when" in d for d in resp.get_json()["details"])
