"""领域协议定义

集中定义引擎各层之间的接口契约（Protocol），
上层依赖抽象而非具体实现，测试时可注入替身。

使用 typing.Protocol 而非 ABC，使得现有类无需修改继承关系即可满足协议。
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from stagerun.core.cancel import CancelToken
    from stagerun.core.models import (
        Action,
        ActionResult,
        AgentSpec,
        ExecutionContext,
        ExecutionResult,
        PostHook,
    )
    from stagerun.core.scope import EnvironmentScope


# =========================================================================
# 执行上下文协议
# =========================================================================

class ContextProvider(Protocol):
    """执行上下文提供者协议

    抽象 acquire/release 生命周期，使图执行器不依赖 AgentProvisioner 具体实现。
    """

    def acquire(
        self, spec: AgentSpec, parent: ExecutionContext | None = None, *, owner: str = "",
    ) -> ExecutionContext:
        """申请执行上下文，失败抛 AgentProvisionError"""
        ...

    def release(self, context: ExecutionContext) -> None:
        """释放执行上下文（每次成功 acquire 恰好对应一次）"""
        ...


# =========================================================================
# 动作执行协议
# =========================================================================

class ActionRunner(Protocol):
    """在执行上下文中运行单个动作"""

    def run(
        self, action: Action, context: ExecutionContext, scope: EnvironmentScope,
        *, cancel: CancelToken | None = None,
    ) -> ActionResult:
        ...


# =========================================================================
# 后置钩子协议
# =========================================================================

class HookRunner(Protocol):
    """阶段后置钩子运行器协议"""

    def run(
        self, hooks: tuple[PostHook, ...], result: ExecutionResult, *,
        context: ExecutionContext | None, scope: EnvironmentScope,
    ) -> ExecutionResult:
        ...


# =========================================================================
# 报告存储协议
# =========================================================================

class ReportSink(Protocol):
    """报告发布目标协议

    按 stage_id + 报告名发布报告，返回可访问的位置（路径或 URL）。
    """

    def publish(self, source: str, *, stage_id: str, name: str) -> str:
        ...
