"""运行服务 - CLI 和 Web 共享的运行入口

把「加载定义 → 构造 RunContext → 编排执行 → 结果管线」从 CLI/Web 中提取出来，
并为 Web 提供后台运行表（提交、查询、中止）。
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from stagerun.core.models import RunContext

if TYPE_CHECKING:
    from stagerun.core.models import Pipeline
    from stagerun.services.container import ServiceContainer
    from stagerun.services.orchestrator.models import PipelineReport
    from stagerun.services.orchestrator.orchestrator import PipelineOrchestrator

logger = logging.getLogger(__name__)

RUNNING = "running"


@dataclass
class RunRequest:
    """运行请求 DTO"""

    branch: str
    credentials: dict[str, str] = field(default_factory=dict)
    workspace_root: str = ""


@dataclass
class _ActiveRun:
    run_id: str
    pipeline: str
    branch: str
    orchestrator: PipelineOrchestrator
    thread: threading.Thread | None = None
    report: PipelineReport | None = None
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        if self.report is not None:
            return self.report.to_dict()
        return {
            "run_id": self.run_id,
            "pipeline": self.pipeline,
            "branch": self.branch,
            "status": "error" if self.error else RUNNING,
            "message": self.error,
        }


class RunService:
    """流水线运行服务"""

    def __init__(self, container: ServiceContainer) -> None:
        self.c = container
        self._runs: dict[str, _ActiveRun] = {}
        self._lock = threading.Lock()

    def make_context(self, req: RunRequest) -> RunContext:
        """合并凭据文件与请求中的凭据（请求优先），创建 RunContext"""
        credentials = {**self.c.credentials, **req.credentials}
        return RunContext.create(
            branch=req.branch,
            workspace_root=req.workspace_root or self.c.config.workspace_root,
            credentials=credentials,
        )

    def run(self, pipeline: Pipeline, req: RunRequest) -> PipelineReport:
        """同步执行"""
        return self.c.orchestrator().run(pipeline, self.make_context(req))

    def submit(self, pipeline: Pipeline, req: RunRequest) -> str:
        """后台执行，立即返回 run_id"""
        ctx = self.make_context(req)
        entry = _ActiveRun(
            run_id=ctx.run_id, pipeline=pipeline.name, branch=ctx.branch,
            orchestrator=self.c.orchestrator(),
        )

        def work() -> None:
            try:
                entry.report = entry.orchestrator.run(pipeline, ctx)
            except Exception as e:
                logger.exception("后台运行异常: %s", ctx.run_id)
                entry.error = str(e)

        entry.thread = threading.Thread(target=work, name=f"run-{ctx.run_id}", daemon=True)
        with self._lock:
            self._runs[ctx.run_id] = entry
        entry.thread.start()
        logger.info("流水线已提交: %s (run_id=%s)", pipeline.name, ctx.run_id)
        return ctx.run_id

    def get(self, run_id: str) -> dict[str, Any] | None:
        """运行中的返回实时状态，已结束的从历史读取"""
        with self._lock:
            entry = self._runs.get(run_id)
        if entry is not None:
            return entry.to_dict()
        return self.c.history.get(run_id)

    def active(self) -> list[dict[str, Any]]:
        with self._lock:
            entries = list(self._runs.values())
        return [e.to_dict() for e in entries if e.report is None and not e.error]

    def abort(self, run_id: str, reason: str = "用户中止") -> bool:
        with self._lock:
            entry = self._runs.get(run_id)
        if entry is None or entry.report is not None:
            return False
        entry.orchestrator.abort(reason)
        return True

    def wait(self, run_id: str, timeout: float | None = None) -> dict[str, Any] | None:
        """等待后台运行结束（测试与脚本使用）"""
        with self._lock:
            entry = self._runs.get(run_id)
        if entry is not None and entry.thread is not None:
            entry.thread.join(timeout)
        return self.get(run_id)
