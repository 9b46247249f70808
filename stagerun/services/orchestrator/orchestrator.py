"""流水线运行编排器

职责：
- 按 RunContext 创建运行工作区与根执行上下文
- 组装本次运行的执行器、钩子运行器、报告汇总与存储
- 执行阶段树，try/finally 保证上下文释放与工作区清理
- 把运行报告交给结果管线（持久化、历史、报告渲染）
"""

from __future__ import annotations

import logging
import shutil
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from stagerun.core.cancel import CancelToken
from stagerun.core.exceptions import AgentProvisionError
from stagerun.core.scope import EnvironmentScope
from stagerun.services.action_executor import ActionExecutor
from stagerun.services.agent.provisioner import AgentProvisioner
from stagerun.services.orchestrator.graph import StageGraphExecutor
from stagerun.services.orchestrator.models import PipelineReport, TraceRecorder
from stagerun.services.posthooks import PostHookRunner
from stagerun.services.report.aggregator import ReportAggregator
from stagerun.utils.logger import bind_run_id

if TYPE_CHECKING:
    from stagerun.core.models import ExecutionContext, Pipeline, RunContext
    from stagerun.services.container import ServiceContainer

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


class PipelineOrchestrator:
    """单次流水线运行的编排器（一个实例对应一次 run）"""

    def __init__(self, container: ServiceContainer | None = None) -> None:
        if container is None:
            from stagerun.services.container import ServiceContainer
            container = ServiceContainer()
        self.c = container
        self._cancel = CancelToken()
        self.context_stats: dict[str, int] = {}

    def abort(self, reason: str = "用户中止") -> None:
        """中止运行：未派发的动作不再启动，运行中的动作被终止"""
        logger.warning("流水线中止: %s", reason)
        self._cancel.cancel(reason)

    @property
    def aborted(self) -> bool:
        return self._cancel.cancelled

    def run(
        self, pipeline: Pipeline, run_context: RunContext, *, publish: bool = True,
    ) -> PipelineReport:
        """执行流水线并返回报告（阶段失败不抛异常，体现在报告状态中）"""
        cfg = self.c.config
        bind_run_id(run_context.run_id)
        workspace = Path(run_context.workspace_root) / run_context.run_id
        logger.info("流水线开始: %s (run_id=%s, branch=%s, workspace=%s)",
                    pipeline.name, run_context.run_id, run_context.branch, workspace)

        handlers = self.c.agent_handlers()
        provisioner = AgentProvisioner(
            str(workspace), handlers=handlers, cleanup=not cfg.keep_workspace,
        )
        actions = ActionExecutor(
            self.c.command_executor,
            default_timeout=cfg.default_action_timeout,
            handlers=handlers,
        )
        aggregator = ReportAggregator()
        hooks = PostHookRunner(aggregator, self.c.report_sink(run_context.run_id), actions)
        recorder = TraceRecorder(pipeline)
        graph = StageGraphExecutor(
            run_context, provisioner, actions, hooks,
            max_workers=cfg.max_parallel, recorder=recorder,
        )

        started_at, start = _now(), time.monotonic()
        root_ctx: ExecutionContext | None = None
        try:
            try:
                root_ctx = provisioner.open_root(str(workspace))
            except AgentProvisionError as e:
                logger.error("运行工作区申请失败: %s", e)
            result = graph.execute(
                pipeline.root, EnvironmentScope.root(run_context),
                context=root_ctx, cancel=self._cancel,
            )
        finally:
            if root_ctx is not None:
                provisioner.release(root_ctx)
            for leftover in provisioner.active():
                logger.warning("释放遗留执行上下文: %s (stage=%s)", leftover.context_id, leftover.owner)
                provisioner.release(leftover)
            self.context_stats = provisioner.stats
            if not cfg.keep_workspace:
                shutil.rmtree(workspace, ignore_errors=True)

        report = PipelineReport(
            run_id=run_context.run_id,
            pipeline=pipeline.name,
            branch=run_context.branch,
            status=result.status,
            result=result,
            stages=recorder.records(),
            stage_summaries=aggregator.summaries(),
            report_summary=aggregator.total(),
            started_at=started_at,
            finished_at=_now(),
            duration_ms=int((time.monotonic() - start) * 1000),
            message=result.message,
        )
        logger.info("流水线结束: %s [%s] 阶段=%d, 测试=%s, 上下文=%s",
                    pipeline.name, report.status.value, len(report.stages),
                    report.report_summary.to_dict(), self.context_stats)

        if publish:
            report.paths = self.c.result_pipeline.process(report)
        bind_run_id("")
        return report
