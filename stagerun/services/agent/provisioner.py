"""执行上下文生命周期管理

职责:
- 上下文申请 (acquire): reuse 策略且父上下文存活时共享父工作区，否则新建隔离工作区
- 上下文释放 (release): 每次成功 acquire 恰好释放一次，重复释放只告警
- lease(): acquire/release 的 with 语法封装
- 活跃上下文登记与计数（供验证和中止时排查）

多个并行分支会同时调用 acquire/release，内部状态由锁保护。
"""

from __future__ import annotations

import logging
import shutil
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from stagerun.core.exceptions import AgentProvisionError, StageRunError
from stagerun.core.models import (
    AgentSpec,
    ContextStatus,
    ExecutionContext,
    WorkspacePolicy,
)
from stagerun.services.agent.handlers import BaseAgentHandler, get_agent_handler

logger = logging.getLogger(__name__)


class AgentProvisioner:
    """执行上下文申请/释放管理器"""

    def __init__(
        self,
        workspace_root: str,
        *,
        handlers: dict[str, BaseAgentHandler] | None = None,
        cleanup: bool = True,
    ) -> None:
        self.workspace_root = Path(workspace_root)
        self.cleanup = cleanup
        self._handlers: dict[str, BaseAgentHandler] = dict(handlers or {})
        self._active: dict[str, ExecutionContext] = {}
        self._lock = threading.Lock()
        self._acquired = 0
        self._released = 0

    def _handler(self, provider: str) -> BaseAgentHandler:
        with self._lock:
            if provider not in self._handlers:
                self._handlers[provider] = get_agent_handler(provider)
            return self._handlers[provider]

    def open_root(self, workspace: str | None = None) -> ExecutionContext:
        """为整个运行申请根上下文（本机进程，工作区为运行根目录）"""
        ctx = ExecutionContext(
            context_id=f"root-{uuid.uuid4().hex[:6]}",
            workspace=str(workspace or self.workspace_root),
            spec=AgentSpec(workspace_policy=WorkspacePolicy.REUSE),
            owner="<run>",
        )
        return self._provision(ctx)

    def acquire(
        self, spec: AgentSpec, parent: ExecutionContext | None = None, *, owner: str = "",
    ) -> ExecutionContext:
        """申请执行上下文

        Raises:
            AgentProvisionError: 执行环境无法申请（调用方不执行任何动作）
        """
        context_id = uuid.uuid4().hex[:8]
        if spec.workspace_policy == WorkspacePolicy.REUSE and parent is not None and parent.active:
            same_runtime = spec.runtime_image == parent.spec.runtime_image
            ctx = ExecutionContext(
                context_id=context_id,
                workspace=parent.workspace,
                spec=spec,
                shared=True,
                parent_id=parent.context_id,
                handle=parent.handle if same_runtime else "",
                owns_handle=not same_runtime,
                owner=owner,
            )
            if same_runtime:
                # 同一运行时直接复用父上下文，无需再次 provision
                self._register(ctx)
                logger.info("复用父执行上下文: %s -> %s (stage=%s)",
                            ctx.context_id, parent.context_id, owner)
                return ctx
        else:
            workspace = self.workspace_root / f"{owner or 'ctx'}-{context_id}"
            ctx = ExecutionContext(
                context_id=context_id,
                workspace=str(workspace),
                spec=spec,
                parent_id=parent.context_id if parent else "",
                owner=owner,
            )
        return self._provision(ctx)

    def _provision(self, ctx: ExecutionContext) -> ExecutionContext:
        try:
            self._handler(ctx.provider).provision(ctx)
        except AgentProvisionError:
            ctx.status = ContextStatus.FAILED
            raise
        except (StageRunError, OSError) as e:
            ctx.status = ContextStatus.FAILED
            raise AgentProvisionError(f"执行上下文申请失败 ({ctx.provider}): {e}") from e
        self._register(ctx)
        return ctx

    def _register(self, ctx: ExecutionContext) -> None:
        with self._lock:
            self._active[ctx.context_id] = ctx
            self._acquired += 1

    def release(self, context: ExecutionContext) -> None:
        """释放执行上下文；回收失败只记录日志，不向上抛出"""
        with self._lock:
            if self._active.pop(context.context_id, None) is None:
                logger.warning("执行上下文已释放或不存在: %s", context.context_id)
                return
            self._released += 1

        if context.owns_handle:
            try:
                self._handler(context.provider).teardown(context)
            except (StageRunError, OSError) as e:
                logger.warning("执行上下文回收失败: %s: %s", context.context_id, e)
                context.status = ContextStatus.FAILED
                return
        context.status = ContextStatus.RELEASED

        if self.cleanup and not context.shared and self._is_ephemeral(context):
            shutil.rmtree(context.workspace, ignore_errors=True)

    def _is_ephemeral(self, context: ExecutionContext) -> bool:
        ws = Path(context.workspace)
        return ws != self.workspace_root and self.workspace_root in ws.parents

    @contextmanager
    def lease(
        self, spec: AgentSpec, parent: ExecutionContext | None = None, *, owner: str = "",
    ) -> Iterator[ExecutionContext]:
        """with 语法：离开作用域时保证释放"""
        ctx = self.acquire(spec, parent, owner=owner)
        try:
            yield ctx
        finally:
            self.release(ctx)

    def active(self) -> list[ExecutionContext]:
        with self._lock:
            return list(self._active.values())

    @property
    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "acquired": self._acquired,
                "released": self._released,
                "active": len(self._active),
            }
