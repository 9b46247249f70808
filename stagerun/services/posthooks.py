"""后置钩子运行器

每个阶段在主体执行完毕后（成功、失败、跳过、中止）恰好调用一次，按声明顺序执行钩子：
- junit:   汇总工作区内匹配的 JUnit XML 并发布；存在失败用例时 success -> unstable
- html:    把报告目录作为可浏览制品发布
- archive: 发布匹配的文件
- sh:      运行清理命令

钩子自身出错只记录日志，不中断流水线，也不覆盖已计算出的阶段状态；
唯一例外是 required 钩子失败会把 success 升级为 unstable。
报告类钩子在阶段被跳过（或没有执行上下文）时不做任何事。
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

from stagerun.core.exceptions import ActionFailure, ReportIngestError, StageRunError
from stagerun.core.models import (
    Action,
    HookKind,
    Report,
    ReportKind,
    ReportSummary,
    StageStatus,
)

if TYPE_CHECKING:
    from stagerun.core.models import ExecutionContext, ExecutionResult, PostHook
    from stagerun.core.protocols import ActionRunner, ReportSink
    from stagerun.core.scope import EnvironmentScope
    from stagerun.services.report.aggregator import ReportAggregator

logger = logging.getLogger(__name__)

_REPORT_KINDS = (HookKind.JUNIT.value, HookKind.HTML.value, HookKind.ARCHIVE.value)


def _glob(workspace: str, pattern: str) -> list[Path]:
    if not pattern.strip():
        raise ReportIngestError("报告路径为空")
    if Path(pattern).is_absolute():
        raise ReportIngestError(f"报告路径必须相对工作区: {pattern}")
    root = Path(workspace)
    files = sorted(p for p in root.glob(pattern) if p.is_file())
    if not files:
        raise ReportIngestError(f"未找到匹配的文件: {pattern} (工作区 {workspace})")
    return files


class PostHookRunner:
    """阶段后置钩子运行器"""

    def __init__(
        self,
        aggregator: ReportAggregator,
        sink: ReportSink,
        action_executor: ActionRunner,
    ) -> None:
        self.aggregator = aggregator
        self.sink = sink
        self.action_executor = action_executor

    def run(
        self,
        hooks: tuple[PostHook, ...],
        result: ExecutionResult,
        *,
        context: ExecutionContext | None,
        scope: EnvironmentScope,
    ) -> ExecutionResult:
        outcome_status = result.status
        for hook in hooks:
            entry: dict[str, Any] = {"kind": hook.kind, "name": hook.report_name}
            if not hook.applies_to(outcome_status):
                entry["status"] = "skipped"
            elif hook.kind in _REPORT_KINDS and (
                result.status == StageStatus.SKIPPED or context is None
            ):
                entry["status"] = "noop"
            elif hook.kind == HookKind.SHELL and context is None:
                entry["status"] = "noop"
            else:
                try:
                    self._dispatch(hook, result, context, scope)  # type: ignore[arg-type]
                    entry["status"] = "ok"
                except (StageRunError, OSError) as e:
                    entry["status"] = "error"
                    entry["message"] = scope.redact(str(e))
                    logger.warning("后置钩子失败: stage=%s, hook=%s: %s",
                                   result.stage_id, hook.report_name, entry["message"])
                    if hook.required:
                        result.escalate(
                            StageStatus.UNSTABLE, f"必需的后置钩子失败: {hook.report_name}",
                        )
            result.hooks.append(entry)
        return result

    def _dispatch(
        self, hook: PostHook, result: ExecutionResult,
        context: ExecutionContext, scope: EnvironmentScope,
    ) -> None:
        if hook.kind == HookKind.JUNIT:
            self._junit(hook, result, context)
        elif hook.kind == HookKind.HTML:
            self._html(hook, result, context)
        elif hook.kind == HookKind.ARCHIVE:
            self._archive(hook, result, context)
        elif hook.kind == HookKind.SHELL:
            r = self.action_executor.run(Action(command=hook.target), context, scope)
            if not r.success:
                raise ActionFailure(
                    f"清理命令失败 (rc={r.exit_code}): {r.stderr[-300:]}",
                    exit_code=r.exit_code, timed_out=r.timed_out,
                )
        else:
            raise ReportIngestError(f"不支持的后置钩子类型: {hook.kind}")

    def _publish(self, source: Path, result: ExecutionResult, name: str) -> str:
        location = self.sink.publish(str(source), stage_id=result.stage_id, name=name)
        if location not in result.artifacts:
            result.artifacts.append(location)
        return location

    def _junit(self, hook: PostHook, result: ExecutionResult, context: ExecutionContext) -> None:
        summary = ReportSummary()
        for path in _glob(context.workspace, hook.target):
            report = Report(
                kind=ReportKind.JUNIT_XML, source_path=str(path),
                stage_id=result.stage_id, name=hook.report_name,
            )
            summary = summary.merge(self.aggregator.ingest(report))
            report.published_as = self._publish(path, result, hook.report_name)
            result.reports.append(report)
        if summary.has_failures:
            result.escalate(
                StageStatus.UNSTABLE, f"测试报告含 {summary.failed} 个失败用例",
            )

    def _html(self, hook: PostHook, result: ExecutionResult, context: ExecutionContext) -> None:
        bundle = Path(context.workspace) / hook.target
        report = Report(
            kind=ReportKind.HTML_BUNDLE, source_path=str(bundle),
            stage_id=result.stage_id, name=hook.report_name,
        )
        self.aggregator.ingest(report)
        location = self._publish(bundle, result, hook.report_name)
        report.published_as = f"{location}/{hook.index}"
        result.reports.append(report)

    def _archive(self, hook: PostHook, result: ExecutionResult, context: ExecutionContext) -> None:
        for path in _glob(context.workspace, hook.target):
            self._publish(path, result, hook.report_name)
