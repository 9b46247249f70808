"""流水线运行 API Blueprint

职责:
- 提交运行（后台或同步）、查询、中止
- 阶段历史汇总
- 流水线定义校验
"""

from __future__ import annotations

from typing import Any

import yaml
from flask import Blueprint, request

from stagerun.core.exceptions import PipelineDefinitionError
from stagerun.services.container import get_container
from stagerun.web.responses import bad_request, not_found, ok

runs_bp = Blueprint("runs", __name__, url_prefix="/api")


def _safe_int(value: Any, default: int, lo: int = 1, hi: int = 10000) -> int:
    """安全解析整数"""
    try:
        n = int(value)
    except (TypeError, ValueError):
        return default
    return max(lo, min(n, hi))


def _pipeline_from_body(body: dict[str, Any]) -> Any:
    """从请求体解析流水线：definition (JSON 对象) / yaml (文本) / pipeline_file (服务端路径)"""
    from stagerun.core.loader import load_pipeline, parse_pipeline

    if isinstance(body.get("definition"), dict):
        return parse_pipeline(body["definition"], source="<request>")
    if isinstance(body.get("yaml"), str):
        try:
            data = yaml.safe_load(body["yaml"])
        except yaml.YAMLError as e:
            raise PipelineDefinitionError(f"YAML 格式错误: {e}") from e
        return parse_pipeline(data if isinstance(data, dict) else {}, source="<request>")
    if body.get("pipeline_file"):
        return load_pipeline(str(body["pipeline_file"]))
    raise PipelineDefinitionError("需要提供 definition、yaml 或 pipeline_file 之一")


# ---- 运行 ----

@runs_bp.route("/runs", methods=["POST"])
def api_run_submit():
    """提交一次流水线运行（wait=true 时同步等待结果）"""
    from stagerun.services.run_service import RunRequest

    body = request.get_json(silent=True) or {}
    branch = str(body.get("branch", "")).strip()
    if not branch:
        return bad_request("需要提供 branch")
    credentials = body.get("credentials") or {}
    if not isinstance(credentials, dict):
        return bad_request("credentials 必须是对象 (凭据 ID -> 值)")

    pipeline = _pipeline_from_body(body)
    req = RunRequest(branch=branch, credentials={str(k): str(v) for k, v in credentials.items()})
    runs = get_container().runs
    if body.get("wait"):
        return ok(runs.run(pipeline, req).to_dict())
    run_id = runs.submit(pipeline, req)
    return ok({"run_id": run_id, "status": "running"}, 202)


@runs_bp.route("/runs", methods=["GET"])
def api_run_list():
    """运行中的任务 + 历史记录"""
    c = get_container()
    return ok({
        "active": c.runs.active(),
        "records": c.history.query(
            pipeline=request.args.get("pipeline"),
            branch=request.args.get("branch"),
            status=request.args.get("status"),
            limit=_safe_int(request.args.get("limit", 50), default=50),
        ),
    })


@runs_bp.route("/runs/<run_id>", methods=["GET"])
def api_run_get(run_id: str):
    record = get_container().runs.get(run_id)
    if record is None:
        return not_found(f"运行 {run_id} ")
    return ok(record)


@runs_bp.route("/runs/<run_id>/abort", methods=["POST"])
def api_run_abort(run_id: str):
    """中止运行中的流水线"""
    if not get_container().runs.abort(run_id, "通过 API 中止"):
        return not_found(f"运行中的任务 {run_id} ")
    return ok({"run_id": run_id, "message": "已发送中止信号"}, 202)


# ---- 阶段 ----

@runs_bp.route("/stages/<stage_id>/summary", methods=["GET"])
def api_stage_summary(stage_id: str):
    """获取阶段历史汇总"""
    return ok({"summary": get_container().history.stage_summary(stage_id)})


# ---- 定义校验 ----

@runs_bp.route("/pipelines/validate", methods=["POST"])
def api_pipeline_validate():
    """校验流水线定义，返回阶段列表"""
    body = request.get_json(silent=True) or {}
    pipeline = _pipeline_from_body(body)
    parents = pipeline.parent_map()
    return ok({
        "valid": True,
        "name": pipeline.name,
        "stages": [
            {"id": s.id, "kind": s.kind, "parent_id": parents.get(s.id, ""),
             "condition": s.condition}
            for s in pipeline.stages()
        ],
    })
