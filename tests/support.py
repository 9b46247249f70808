"""测试辅助：脚本化命令执行器、计数钩子运行器、阶段树构造函数"""

from __future__ import annotations

import threading
import time
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from stagerun.core.cancel import CancelToken
from stagerun.core.models import (
    Action,
    ExecutionContext,
    ExecutionResult,
    Leaf,
    Parallel,
    ReportSummary,
    RunContext,
    Sequential,
    Stage,
    StageStatus,
)
from stagerun.core.scope import EnvironmentScope
from stagerun.services.action_executor import ActionExecutor
from stagerun.services.agent import AgentProvisioner, DockerAgentHandler, LocalAgentHandler
from stagerun.services.orchestrator.graph import StageGraphExecutor
from stagerun.services.orchestrator.models import PipelineReport, StageRecord
from stagerun.services.posthooks import PostHookRunner
from stagerun.services.report.aggregator import ReportAggregator
from stagerun.services.report.sink import LocalReportSink
from stagerun.utils.shell import CommandResult

JUNIT_PASS = (
    '<?xml version="1.0"?>\n'
    '<testsuite name="s" tests="2">'
    '<testcase name="a"/><testcase name="b"/>'
    "</testsuite>\n"
)

JUNIT_ONE_FAILED = (
    '<?xml version="1.0"?>\n'
    '<testsuite name="s" tests="3">'
    '<testcase name="a"/>'
    '<testcase name="b"><failure message="boom"/></testcase>'
    '<testcase name="c"><skipped/></testcase>'
    "</testsuite>\n"
)


# =========================================================================
# 阶段树构造
# =========================================================================


def leaf(sid: str, *commands: str, **kw: Any) -> Stage:
    return Stage(id=sid, body=Leaf(actions=tuple(Action(command=c) for c in commands)), **kw)


def seq(sid: str, *children: Stage, **kw: Any) -> Stage:
    return Stage(id=sid, body=Sequential(children=tuple(children)), **kw)


def par(sid: str, *children: Stage, fail_fast: bool = False, **kw: Any) -> Stage:
    return Stage(id=sid, body=Parallel(children=tuple(children), fail_fast=fail_fast), **kw)


# =========================================================================
# 脚本化命令执行器
# =========================================================================


@dataclass
class _Rule:
    pattern: str
    rc: int = 0
    stdout: str | Callable[[dict[str, str]], str] = ""
    stderr: str = ""
    files: dict[str, str] = field(default_factory=dict)
    block: bool = False
    timed_out: bool = False
    delay: float = 0.0


@dataclass
class Call:
    command: str
    cwd: str
    env: dict[str, str]
    thread: str


class FakeCommandExecutor:
    """按命令子串匹配脚本规则；未匹配的命令返回 rc=0"""

    def __init__(self) -> None:
        self.rules: list[_Rule] = []
        self.calls: list[Call] = []
        self._lock = threading.Lock()

    def script(self, pattern: str, **kw: Any) -> FakeCommandExecutor:
        self.rules.append(_Rule(pattern, **kw))
        return self

    def execute(
        self, cmd: str | list[str], *, cwd: str = ".",
        env: dict[str, str] | None = None, timeout: float | None = None,
        cancel: CancelToken | None = None,
    ) -> CommandResult:
        text = cmd if isinstance(cmd, str) else " ".join(cmd)
        env = dict(env or {})
        with self._lock:
            self.calls.append(Call(text, cwd, env, threading.current_thread().name))
        rule = next((r for r in self.rules if r.pattern in text), _Rule(""))

        for rel, content in rule.files.items():
            p = Path(cwd) / rel
            p.parent.mkdir(parents=True, exist_ok=True)
            p.write_text(content, encoding="utf-8")

        if rule.block:
            # 模拟长时间运行的进程：直到收到取消信号
            if cancel is not None and cancel.wait(5):
                return CommandResult(-15, "", "terminated", cancelled=True)
            return CommandResult(0, "", "")
        if rule.delay:
            time.sleep(rule.delay)
        if rule.timed_out:
            return CommandResult(-9, "", "partial", timed_out=True)
        stdout = rule.stdout(env) if callable(rule.stdout) else rule.stdout
        return CommandResult(rule.rc, stdout, rule.stderr, duration_ms=1)

    def commands(self) -> list[str]:
        with self._lock:
            return [c.command for c in self.calls]

    def ran(self, pattern: str) -> bool:
        return any(pattern in c for c in self.commands())

    def call_for(self, pattern: str) -> Call:
        with self._lock:
            return next(c for c in self.calls if pattern in c.command)


# =========================================================================
# 计数钩子运行器
# =========================================================================


class CountingHookRunner:
    """记录每个阶段的钩子调用次数与当时观察到的状态，再委托给真实运行器"""

    def __init__(self, inner: PostHookRunner | None = None) -> None:
        self.inner = inner
        self.calls: dict[str, int] = defaultdict(int)
        self.observed: dict[str, StageStatus] = {}
        self.order: list[str] = []
        self._lock = threading.Lock()

    def run(self, hooks, result, *, context, scope):  # noqa: ANN001
        with self._lock:
            self.calls[result.stage_id] += 1
            self.observed[result.stage_id] = result.status
            self.order.append(result.stage_id)
        if self.inner is not None:
            return self.inner.run(hooks, result, context=context, scope=scope)
        return result


# =========================================================================
# 运行报告构造
# =========================================================================


def make_report(
    run_id: str = "r1",
    status: StageStatus = StageStatus.SUCCESS,
    stages: list[tuple[str, str, str, StageStatus]] | None = None,
    *,
    pipeline: str = "webapp",
    branch: str = "main",
) -> PipelineReport:
    """按 (stage_id, parent_id, kind, status) 列表构造运行报告"""
    stages = stages if stages is not None else [
        ("webapp", "", "sequential", status),
        ("build", "webapp", "leaf", status),
    ]
    records = [StageRecord(sid, parent, kind, st, duration_ms=1200) for sid, parent, kind, st in stages]
    return PipelineReport(
        run_id=run_id, pipeline=pipeline, branch=branch, status=status,
        result=ExecutionResult(stage_id=pipeline, status=status, kind="sequential"),
        stages=records, report_summary=ReportSummary(3, 2, 1, 0),
    )


# =========================================================================
# 图执行器组装
# =========================================================================


@dataclass
class Harness:
    graph: StageGraphExecutor
    provisioner: AgentProvisioner
    hooks: CountingHookRunner
    aggregator: ReportAggregator
    root: ExecutionContext
    run_context: RunContext
    cancel: CancelToken
    published: Path

    def run(self, stage: Stage, scope: EnvironmentScope | None = None):  # noqa: ANN201
        scope = scope or EnvironmentScope.root(self.run_context)
        return self.graph.execute(stage, scope, context=self.root, cancel=self.cancel)


def make_harness(
    tmp_path: Path,
    executor: FakeCommandExecutor,
    *,
    branch: str = "main",
    credentials: dict[str, str] | None = None,
    max_workers: int = 8,
) -> Harness:
    run_context = RunContext.create(branch, str(tmp_path / "ws"), credentials)
    # docker 命令同样交给脚本化执行器，测试中不会真正启动容器
    handlers = {"local": LocalAgentHandler(), "docker": DockerAgentHandler(executor)}
    provisioner = AgentProvisioner(str(tmp_path / "ws"), handlers=handlers)
    actions = ActionExecutor(executor, default_timeout=60, handlers=handlers)
    aggregator = ReportAggregator()
    published = tmp_path / "published"
    hooks = CountingHookRunner(PostHookRunner(aggregator, LocalReportSink(published), actions))
    graph = StageGraphExecutor(run_context, provisioner, actions, hooks, max_workers=max_workers)
    root = provisioner.open_root(str(tmp_path / "ws"))
    return Harness(graph, provisioner, hooks, aggregator, root, run_context, CancelToken(), published)
