"""流水线编排模块

- models.py: 阶段轨迹与运行报告
- graph.py: 阶段图执行器（顺序 / 并行 / 叶子语义）
- orchestrator.py: 单次运行的组装与收尾
"""

from stagerun.services.orchestrator.graph import StageGraphExecutor
from stagerun.services.orchestrator.models import PipelineReport, StageRecord, TraceRecorder
from stagerun.services.orchestrator.orchestrator import PipelineOrchestrator

__all__ = [
    "PipelineOrchestrator",
    "PipelineReport",
    "StageGraphExecutor",
    "StageRecord",
    "TraceRecorder",
]
