"""动作执行器

在已申请的执行上下文中运行单个外部动作：
- 作用域变量作为进程环境（叠加在宿主环境之上）
- 工作目录为上下文工作区内的相对路径
- stdout/stderr 在返回前脱敏（机密值替换为 ****）
- 单动作超时（动作声明 → 全局默认）记为失败并带 [timeout] 标记

同一叶子阶段内的动作按顺序执行，前一个动作留在工作区的文件
（测试结果、覆盖率等）就是后续动作和后置钩子的输入。
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from stagerun.core.exceptions import CancellationError, StageRunError
from stagerun.core.models import ActionResult
from stagerun.services.agent.handlers import BaseAgentHandler, get_agent_handler
from stagerun.utils.shell import CommandExecutor, get_executor

if TYPE_CHECKING:
    from stagerun.core.cancel import CancelToken
    from stagerun.core.models import Action, ExecutionContext
    from stagerun.core.scope import EnvironmentScope

logger = logging.getLogger(__name__)

TIMEOUT_MARKER = "[timeout]"
CANCEL_MARKER = "[cancelled]"


class ActionExecutor:
    """单个动作的执行器"""

    def __init__(
        self,
        command_executor: CommandExecutor | None = None,
        default_timeout: int | None = None,
        handlers: dict[str, BaseAgentHandler] | None = None,
    ) -> None:
        self._executor = command_executor
        self.default_timeout = default_timeout
        self._handlers = dict(handlers or {})

    @property
    def executor(self) -> CommandExecutor:
        return self._executor or get_executor()

    def _handler(self, provider: str) -> BaseAgentHandler:
        if provider not in self._handlers:
            self._handlers[provider] = get_agent_handler(provider)
        return self._handlers[provider]

    def run(
        self,
        action: Action,
        context: ExecutionContext,
        scope: EnvironmentScope,
        *,
        cancel: CancelToken | None = None,
    ) -> ActionResult:
        """执行动作并返回结果

        Raises:
            CancellationError: 派发前已收到取消信号（动作不会启动）
        """
        if cancel is not None and cancel.cancelled:
            raise CancellationError(cancel.reason)

        shown = scope.redact(action.command)
        try:
            cmd, cwd, env = self._handler(context.provider).wrap(
                context, action.command, action.working_dir, scope,
            )
        except StageRunError as e:
            logger.error("动作无法派发: %s: %s", shown, e)
            return ActionResult(command=shown, exit_code=None, stderr=str(e))

        timeout = action.timeout or self.default_timeout
        logger.info("执行动作: %s (cwd=%s, timeout=%s)", shown, cwd, timeout)
        try:
            r = self.executor.execute(cmd, cwd=cwd, env=env, timeout=timeout, cancel=cancel)
        except OSError as e:
            logger.error("动作启动失败: %s: %s", shown, e)
            return ActionResult(command=shown, exit_code=None, stderr=scope.redact(str(e)))

        stderr = scope.redact(r.stderr)
        if r.timed_out:
            stderr = f"{stderr}\n{TIMEOUT_MARKER} 动作超时 ({timeout}s)".lstrip()
            logger.warning("动作超时: %s (%ss)", shown, timeout)
        elif r.cancelled:
            stderr = f"{stderr}\n{CANCEL_MARKER} {cancel.reason if cancel else ''}".lstrip()
            logger.warning("动作被中止: %s", shown)

        result = ActionResult(
            command=shown,
            exit_code=r.returncode,
            stdout=scope.redact(r.stdout),
            stderr=stderr,
            duration_ms=r.duration_ms,
            timed_out=r.timed_out,
            cancelled=r.cancelled,
        )
        if not result.success and not r.timed_out and not r.cancelled:
            logger.warning("动作失败: %s (rc=%s)", shown, r.returncode)
        return result
