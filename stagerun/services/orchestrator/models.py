"""编排器数据模型

数据类：
- StageRecord: 单个阶段的执行轨迹（扁平化，带父阶段 id）
- PipelineReport: 一次流水线运行的报告
- TraceRecorder: 并行分支共享的轨迹记录器
"""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any

from stagerun.core.models import ReportSummary, StageStatus

if TYPE_CHECKING:
    from stagerun.core.models import ExecutionResult, Pipeline

# 进程退出码（CLI 使用）
EXIT_CODES = {
    StageStatus.SUCCESS: 0,
    StageStatus.SKIPPED: 0,
    StageStatus.FAILURE: 1,
    StageStatus.UNSTABLE: 2,
    StageStatus.ABORTED: 130,
}


@dataclass
class StageRecord:
    """阶段执行轨迹"""

    stage_id: str
    parent_id: str
    kind: str
    status: StageStatus
    exit_code: int | None = None
    duration_ms: int = 0
    message: str = ""
    artifacts: list[str] = field(default_factory=list)
    reports: list[dict[str, Any]] = field(default_factory=list)
    hooks: list[dict[str, Any]] = field(default_factory=list)
    actions: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_result(cls, result: ExecutionResult, parent_id: str) -> StageRecord:
        return cls(
            stage_id=result.stage_id,
            parent_id=parent_id,
            kind=result.kind,
            status=result.status,
            exit_code=result.exit_code,
            duration_ms=result.duration_ms,
            message=result.message,
            artifacts=list(result.artifacts),
            reports=[asdict(r) for r in result.reports],
            hooks=list(result.hooks),
            actions=[asdict(a) for a in result.actions],
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


class TraceRecorder:
    """阶段轨迹记录器 - 阶段结束时记录一次，按流水线声明顺序输出"""

    def __init__(self, pipeline: Pipeline) -> None:
        self._parents = pipeline.parent_map()
        self._order = {s.id: i for i, s in enumerate(pipeline.stages())}
        self._records: dict[str, StageRecord] = {}
        self._lock = threading.Lock()

    def record(self, result: ExecutionResult) -> None:
        rec = StageRecord.from_result(result, self._parents.get(result.stage_id, ""))
        with self._lock:
            self._records[result.stage_id] = rec

    def records(self) -> list[StageRecord]:
        with self._lock:
            recs = list(self._records.values())
        return sorted(recs, key=lambda r: self._order.get(r.stage_id, len(self._order)))


@dataclass
class PipelineReport:
    """流水线运行报告"""

    run_id: str
    pipeline: str
    branch: str
    status: StageStatus
    result: ExecutionResult
    stages: list[StageRecord] = field(default_factory=list)
    stage_summaries: dict[str, ReportSummary] = field(default_factory=dict)
    report_summary: ReportSummary = field(default_factory=ReportSummary)
    started_at: str = ""
    finished_at: str = ""
    duration_ms: int = 0
    message: str = ""
    paths: dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status in (StageStatus.SUCCESS, StageStatus.SKIPPED)

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.status]

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "pipeline": self.pipeline,
            "branch": self.branch,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_ms": self.duration_ms,
            "message": self.message,
            "report_summary": self.report_summary.to_dict(),
            "stage_summaries": {k: v.to_dict() for k, v in self.stage_summaries.items()},
            "stages": [s.to_dict() for s in self.stages],
            "result": self.result.to_dict(),
        }
