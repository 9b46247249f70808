"""流水线定义加载器

把 YAML 声明反序列化为不可变阶段树。格式示例::

    pipeline:
      name: webapp
      agent: {image: node:20, workspace: reuse}
      environment: {CI: "true"}
      stages:
        - id: unit-tests
          parallel:
            - id: frontend
              steps: ["npm test"]
              post:
                - junit: "reports/frontend/*.xml"
        - id: deploy
          when: branch == "main"
          credentials: {DEPLOY_TOKEN: deploy-token}
          steps:
            - run: ./deploy.sh
              timeout: 600

每个阶段必须且只能包含 stages（顺序）、parallel（并行）、steps（叶子）之一。
所有问题收集完毕后一次性抛出 PipelineDefinitionError（details 为问题列表）。
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from stagerun.core import condition as cond
from stagerun.core.exceptions import ConditionEvaluationError, PipelineDefinitionError
from stagerun.core.models import (
    HOOK_TRIGGER_ALWAYS,
    Action,
    AgentSpec,
    EnvOverlay,
    HookKind,
    Leaf,
    Parallel,
    Pipeline,
    PostHook,
    Sequential,
    Stage,
    StageStatus,
    WorkspacePolicy,
)
from stagerun.utils.yaml_io import load_yaml

logger = logging.getLogger(__name__)

_BODY_KEYS = ("stages", "parallel", "steps")
_HOOK_KINDS = tuple(k.value for k in HookKind)
_TRIGGERS = (HOOK_TRIGGER_ALWAYS, *(s.value for s in StageStatus))
_STAGE_KEYS = {
    "id", "agent", "environment", "credentials", "when", "post",
    "fail_fast", *_BODY_KEYS,
}


class _Collector:
    """遍历过程中收集错误与已出现的 id"""

    def __init__(self) -> None:
        self.errors: list[str] = []
        self.seen: set[str] = set()

    def add(self, where: str, msg: str) -> None:
        self.errors.append(f"{where}: {msg}")


def load_pipeline(path: str | Path) -> Pipeline:
    """从 YAML 文件加载流水线"""
    p = Path(path)
    if not p.exists():
        raise PipelineDefinitionError(f"流水线文件不存在: {p}")
    try:
        data = load_yaml(p)
    except (yaml.YAMLError, ValueError) as e:
        raise PipelineDefinitionError(f"流水线文件无法解析: {p}: {e}") from e
    pipeline = parse_pipeline(data, source=str(p))
    logger.info("流水线已加载: %s (%d 个阶段)", pipeline.name, len(pipeline.stages()))
    return pipeline


def parse_pipeline(data: dict[str, Any], *, source: str = "<dict>") -> Pipeline:
    """从字典解析流水线（顶层可带或不带 pipeline: 包装）"""
    if isinstance(data, dict) and isinstance(data.get("pipeline"), dict):
        data = data["pipeline"]
    if not isinstance(data, dict) or not data:
        raise PipelineDefinitionError(f"流水线定义为空或格式错误: {source}")

    name = str(data.get("name") or "").strip()
    col = _Collector()
    if not name:
        col.add("pipeline", "缺少 name")
    root_data = dict(data)
    root_data.setdefault("id", name or "pipeline")
    root_data.pop("name", None)
    root = _parse_stage(root_data, "pipeline", col)
    if col.errors:
        raise PipelineDefinitionError(
            f"流水线定义无效: {source} ({len(col.errors)} 个问题)", details=col.errors,
        )
    return Pipeline(name=name, root=root)  # type: ignore[arg-type]


def _parse_stage(data: Any, where: str, col: _Collector) -> Stage | None:
    if not isinstance(data, dict):
        col.add(where, "阶段必须是映射")
        return None

    sid = str(data.get("id") or "").strip()
    if not sid:
        col.add(where, "缺少 id")
        sid = where
    where = f"{where}[{sid}]" if where != sid else sid
    if sid in col.seen:
        col.add(where, f"阶段 id 重复: {sid}")
    col.seen.add(sid)

    unknown = sorted(set(data) - _STAGE_KEYS)
    if unknown:
        col.add(where, f"未知字段: {unknown}")

    present = [k for k in _BODY_KEYS if k in data]
    if len(present) != 1:
        col.add(where, f"必须且只能包含 {list(_BODY_KEYS)} 之一（实际: {present}）")
        return None

    key = present[0]
    if key == "steps":
        body: Sequential | Parallel | Leaf = Leaf(actions=_parse_steps(data["steps"], where, col))
    else:
        items = data[key]
        if not isinstance(items, list) or not items:
            col.add(where, f"{key} 必须是非空列表")
            items = []
        children = tuple(
            c for c in (_parse_stage(item, where, col) for item in items) if c is not None
        )
        if key == "parallel":
            body = Parallel(
                children=children, fail_fast=_flag(data, "fail_fast", where, col),
            )
        else:
            body = Sequential(children=children)
    if "fail_fast" in data and key != "parallel":
        col.add(where, "fail_fast 只能用于 parallel 阶段")

    when = str(data.get("when") or "").strip()
    if when:
        try:
            cond.parse(when)
        except ConditionEvaluationError as e:
            col.add(where, f"when 表达式无效: {e}")

    return Stage(
        id=sid,
        body=body,
        agent=_parse_agent(data.get("agent"), where, col),
        env=_parse_env(data, where, col),
        condition=when,
        post_hooks=_parse_hooks(data.get("post"), where, col),
    )


def _flag(data: dict[str, Any], key: str, where: str, col: _Collector) -> bool:
    """读取布尔字段，只接受 YAML 布尔值（"false" 之类的字符串报错）"""
    value = data.get(key, False)
    if not isinstance(value, bool):
        col.add(where, f"{key} 必须是布尔值 (true/false)，实际: {value!r}")
        return False
    return value


def _parse_steps(raw: Any, where: str, col: _Collector) -> tuple[Action, ...]:
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, list) or not raw:
        col.add(where, "steps 必须是非空列表")
        return ()
    actions: list[Action] = []
    for i, step in enumerate(raw):
        if isinstance(step, str):
            actions.append(Action(command=step))
            continue
        if not isinstance(step, dict) or not step.get("run"):
            col.add(where, f"steps[{i}] 必须是字符串或包含 run 的映射")
            continue
        timeout = step.get("timeout")
        if timeout is not None and (not isinstance(timeout, int) or timeout <= 0):
            col.add(where, f"steps[{i}].timeout 必须是正整数")
            timeout = None
        actions.append(Action(
            command=str(step["run"]),
            working_dir=str(step.get("dir", "")),
            timeout=timeout,
            name=str(step.get("name", "")),
        ))
    return tuple(actions)


def _parse_agent(raw: Any, where: str, col: _Collector) -> AgentSpec | None:
    if raw is None:
        return None
    if isinstance(raw, str):
        raw = {"image": raw}
    if not isinstance(raw, dict):
        col.add(where, "agent 必须是映射或镜像名")
        return None
    policy = str(raw.get("workspace", WorkspacePolicy.FRESH.value))
    if policy not in (p.value for p in WorkspacePolicy):
        col.add(where, f"agent.workspace 必须是 reuse 或 fresh: {policy}")
        policy = WorkspacePolicy.FRESH.value
    args = raw.get("args", [])
    if isinstance(args, str):
        args = args.split()
    return AgentSpec(
        runtime_image=str(raw.get("image", "")),
        workspace_policy=WorkspacePolicy(policy),
        extra_args=tuple(str(a) for a in args),
    )


def _parse_env(data: dict[str, Any], where: str, col: _Collector) -> EnvOverlay:
    variables = data.get("environment") or {}
    secrets = data.get("credentials") or {}
    if not isinstance(variables, dict):
        col.add(where, "environment 必须是映射")
        variables = {}
    if not isinstance(secrets, dict):
        col.add(where, "credentials 必须是映射 (变量名 -> 凭据 ID)")
        secrets = {}
    return EnvOverlay(
        variables={str(k): str(v) for k, v in variables.items()},
        secrets={str(k): str(v) for k, v in secrets.items()},
    )


def _parse_hooks(raw: Any, where: str, col: _Collector) -> tuple[PostHook, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        col.add(where, "post 必须是列表")
        return ()
    hooks: list[PostHook] = []
    for i, item in enumerate(raw):
        if not isinstance(item, dict):
            col.add(where, f"post[{i}] 必须是映射")
            continue
        kinds = [k for k in _HOOK_KINDS if k in item]
        if len(kinds) != 1:
            col.add(where, f"post[{i}] 必须且只能包含 {list(_HOOK_KINDS)} 之一")
            continue
        on = item.get("on", [HOOK_TRIGGER_ALWAYS])
        if isinstance(on, str):
            on = [on]
        bad = [t for t in on if t not in _TRIGGERS]
        if bad:
            col.add(where, f"post[{i}].on 含未知触发条件: {bad}")
        kind = kinds[0]
        target = item[kind]
        if not isinstance(target, str) or not target.strip():
            col.add(where, f"post[{i}].{kind} 必须是非空字符串")
            continue
        hooks.append(PostHook(
            kind=kind,
            target=target.strip(),
            name=str(item.get("name", "")),
            required=_flag(item, "required", f"{where}.post[{i}]", col),
            on=tuple(str(t) for t in on),
            index=str(item.get("index", "index.html")),
        ))
    return tuple(hooks)
