"""阶段图执行器 - 编排核心

遍历阶段树，按节点类型应用执行语义：
  - Leaf:       门控 -> 申请执行上下文 -> 叠加环境 -> 顺序执行动作（首个失败即停止）
  - Sequential: 按声明顺序执行子阶段；failure/aborted 之后的兄弟阶段记为 skipped
  - Parallel:   子阶段并发执行，父节点等待全部结束；fail_fast 时首个失败取消整组

每个阶段（包括被跳过、未启动的阶段）结束时恰好调用一次后置钩子，
然后写入执行轨迹。执行上下文在 try/finally 中释放。

状态组合: failure > aborted > unstable > success（skipped 视为 success）。
门控表达式格式错误、凭据缺失、执行环境申请失败都记为 failure，不会记为 skipped。
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import TYPE_CHECKING

from stagerun.core.cancel import CancelToken
from stagerun.core.condition import ConditionEvaluator
from stagerun.core.exceptions import (
    AgentProvisionError,
    CancellationError,
    ConditionEvaluationError,
    CredentialNotFoundError,
    StageRunError,
)
from stagerun.core.models import (
    ExecutionResult,
    Leaf,
    Parallel,
    StageStatus,
    combine_statuses,
)
from stagerun.utils.logger import bind_run_id, current_run_id

if TYPE_CHECKING:
    from stagerun.core.models import ExecutionContext, RunContext, Sequential, Stage
    from stagerun.core.protocols import ActionRunner, ContextProvider, HookRunner
    from stagerun.core.scope import EnvironmentScope
    from stagerun.services.orchestrator.models import TraceRecorder

logger = logging.getLogger(__name__)

_HALTING = (StageStatus.FAILURE, StageStatus.ABORTED)


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class StageGraphExecutor:
    """阶段树执行器（单次运行内使用）"""

    def __init__(
        self,
        run_context: RunContext,
        provisioner: ContextProvider,
        action_executor: ActionRunner,
        hook_runner: HookRunner,
        *,
        evaluator: ConditionEvaluator | None = None,
        max_workers: int = 8,
        recorder: TraceRecorder | None = None,
    ) -> None:
        self.run_context = run_context
        self.provisioner = provisioner
        self.action_executor = action_executor
        self.hook_runner = hook_runner
        self.evaluator = evaluator or ConditionEvaluator()
        self.max_workers = max_workers
        self.recorder = recorder

    # ------------------------------------------------------------------
    # 入口
    # ------------------------------------------------------------------

    def execute(
        self,
        stage: Stage,
        inherited_scope: EnvironmentScope,
        *,
        context: ExecutionContext | None = None,
        cancel: CancelToken | None = None,
    ) -> ExecutionResult:
        """执行阶段（含整棵子树），返回其结果；不会因阶段失败抛异常"""
        cancel = cancel or CancelToken()
        if cancel.cancelled:
            return self._skip(stage, inherited_scope, StageStatus.ABORTED,
                              f"未启动: {cancel.reason}")

        start = time.monotonic()
        try:
            enabled = self.evaluator.evaluate(stage.condition, self.run_context)
        except ConditionEvaluationError as e:
            return self._fail_early(stage, inherited_scope, start, f"门控表达式无效: {e}")
        if not enabled:
            logger.info("阶段跳过: %s (条件不满足: %s)", stage.id, stage.condition)
            return self._skip(stage, inherited_scope, StageStatus.SKIPPED,
                              f"条件不满足: {stage.condition}")

        try:
            scope = inherited_scope.overlay(stage.env, self.run_context)
        except CredentialNotFoundError as e:
            return self._fail_early(stage, inherited_scope, start, str(e))

        if stage.agent is None:
            return self._run(stage, scope, context, cancel, start)

        try:
            own = self.provisioner.acquire(stage.agent, context, owner=stage.id)
        except AgentProvisionError as e:
            logger.error("阶段执行环境申请失败: %s: %s", stage.id, e)
            return self._fail_early(stage, scope, start, str(e))
        try:
            return self._run(stage, scope, own, cancel, start)
        finally:
            self.provisioner.release(own)

    # ------------------------------------------------------------------
    # 节点语义
    # ------------------------------------------------------------------

    def _run(
        self, stage: Stage, scope: EnvironmentScope,
        context: ExecutionContext | None, cancel: CancelToken, start: float,
    ) -> ExecutionResult:
        logger.info("阶段开始: %s (%s)", stage.id, stage.kind)
        body = stage.body
        if isinstance(body, Leaf):
            result = self._run_leaf(stage, body, scope, context, cancel)
        elif isinstance(body, Parallel):
            result = self._run_parallel(stage, body, scope, context, cancel)
        else:
            result = self._run_sequential(stage, body, scope, context, cancel)
        return self._finish(stage, result, context, scope, start)

    def _run_leaf(
        self, stage: Stage, body: Leaf, scope: EnvironmentScope,
        context: ExecutionContext | None, cancel: CancelToken,
    ) -> ExecutionResult:
        result = ExecutionResult(stage_id=stage.id, status=StageStatus.SUCCESS, kind=stage.kind)
        if context is None:
            result.status = StageStatus.FAILURE
            result.message = "没有可用的执行上下文"
            return result

        for action in body.actions:
            try:
                ar = self.action_executor.run(action, context, scope, cancel=cancel)
            except CancellationError as e:
                result.status = StageStatus.ABORTED
                result.message = f"动作未派发 ({action.label}): {e}"
                break
            result.actions.append(ar)
            result.exit_code = ar.exit_code
            if ar.cancelled:
                result.status = StageStatus.ABORTED
                result.message = f"动作被中止: {action.label}"
                break
            if not ar.success:
                result.status = StageStatus.FAILURE
                reason = "超时" if ar.timed_out else f"rc={ar.exit_code}"
                result.message = f"动作失败 ({reason}): {action.label}"
                break
        return result

    def _run_sequential(
        self, stage: Stage, body: Sequential, scope: EnvironmentScope,
        context: ExecutionContext | None, cancel: CancelToken,
    ) -> ExecutionResult:
        result = ExecutionResult(stage_id=stage.id, status=StageStatus.SUCCESS, kind=stage.kind)
        halted_by = ""
        for child in body.children:
            if halted_by:
                child_result = self._skip(child, scope, StageStatus.SKIPPED, halted_by)
            else:
                child_result = self.execute(child, scope, context=context, cancel=cancel)
                if child_result.status in _HALTING:
                    halted_by = f"前序阶段 {child.id} 结果为 {child_result.status.value}"
            result.children.append(child_result)
        return self._combine(result)

    def _run_parallel(
        self, stage: Stage, body: Parallel, scope: EnvironmentScope,
        context: ExecutionContext | None, cancel: CancelToken,
    ) -> ExecutionResult:
        result = ExecutionResult(stage_id=stage.id, status=StageStatus.SUCCESS, kind=stage.kind)
        if not body.children:
            return result
        group = cancel.child()
        run_id = current_run_id()
        finished: dict[str, ExecutionResult] = {}
        workers = min(self.max_workers, len(body.children))

        def branch(child: Stage) -> ExecutionResult:
            bind_run_id(run_id)
            return self.execute(child, scope, context=context, cancel=group)

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"stage-{stage.id}") as pool:
            futures = {pool.submit(branch, child): child for child in body.children}
            for fut in as_completed(futures):
                child = futures[fut]
                child_result = fut.result()
                finished[child.id] = child_result
                if (body.fail_fast and child_result.status == StageStatus.FAILURE
                        and not group.cancelled):
                    logger.warning("并行分支失败，取消同组分支: %s (fail_fast)", child.id)
                    group.cancel(f"并行分支 {child.id} 失败 (fail_fast)")

        result.children = [finished[c.id] for c in body.children]
        return self._combine(result)

    @staticmethod
    def _combine(result: ExecutionResult) -> ExecutionResult:
        result.status = combine_statuses(c.status for c in result.children)
        for c in result.children:
            for a in c.artifacts:
                if a not in result.artifacts:
                    result.artifacts.append(a)
        failed = [c.stage_id for c in result.children if c.status == StageStatus.FAILURE]
        if failed:
            result.message = f"失败的子阶段: {', '.join(failed)}"
        return result

    # ------------------------------------------------------------------
    # 未执行主体的阶段
    # ------------------------------------------------------------------

    def _skip(
        self, stage: Stage, scope: EnvironmentScope, status: StageStatus, reason: str,
    ) -> ExecutionResult:
        """整棵子树不执行，但每个节点的后置钩子仍被调用一次"""
        start = time.monotonic()
        result = ExecutionResult(stage_id=stage.id, status=status, kind=stage.kind, message=reason)
        result.children = [self._skip(c, scope, status, reason) for c in stage.children]
        return self._finish(stage, result, None, scope, start)

    def _fail_early(
        self, stage: Stage, scope: EnvironmentScope, start: float, reason: str,
    ) -> ExecutionResult:
        result = ExecutionResult(
            stage_id=stage.id, status=StageStatus.FAILURE, kind=stage.kind, message=reason,
        )
        result.children = [
            self._skip(c, scope, StageStatus.SKIPPED, f"父阶段 {stage.id} 失败")
            for c in stage.children
        ]
        return self._finish(stage, result, None, scope, start)

    # ------------------------------------------------------------------
    # 收尾
    # ------------------------------------------------------------------

    def _finish(
        self, stage: Stage, result: ExecutionResult,
        context: ExecutionContext | None, scope: EnvironmentScope, start: float,
    ) -> ExecutionResult:
        try:
            self.hook_runner.run(stage.post_hooks, result, context=context, scope=scope)
        except (StageRunError, OSError):
            logger.exception("后置钩子运行器异常: %s", stage.id)
        result.duration_ms = _elapsed_ms(start)
        if self.recorder is not None:
            self.recorder.record(result)
        log = logger.info if result.status in (StageStatus.SUCCESS, StageStatus.SKIPPED) else logger.warning
        log("阶段结束: %s [%s] %dms%s", stage.id, result.status.value, result.duration_ms,
            f" - {result.message}" if result.message else "")
        return result
