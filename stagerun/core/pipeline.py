"""运行结果处理管线（Observer 模式）

内置 save_report + generate_report + record_history 三个核心步骤，
同时支持通过 subscribe() 注册自定义观察者钩子（通知、指标、告警等）。

用法:
    results = RunResultPipeline()
    results.subscribe(my_notifier)
    results.process(pipeline_report)
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Any

from stagerun.core.exceptions import StageRunError
from stagerun.core.history import HistoryManager
from stagerun.core.reporter import REPORT_JSON, generate_report
from stagerun.utils.yaml_io import atomic_write

if TYPE_CHECKING:
    from stagerun.services.orchestrator.models import PipelineReport

logger = logging.getLogger(__name__)


def save_report(report: dict[str, Any], output_dir: str) -> str:
    """持久化运行报告 JSON，返回文件路径"""
    out = Path(output_dir) / report["run_id"]
    out.mkdir(parents=True, exist_ok=True)
    path = out / REPORT_JSON
    atomic_write(path, json.dumps(report, indent=2, ensure_ascii=False))
    logger.info("运行报告已保存: %s", path)
    return str(path)


class RunHook(ABC):
    """管线观察者钩子基类，实现 on_run 即可接入管线"""

    @abstractmethod
    def on_run(self, report: PipelineReport, context: dict[str, Any]) -> None:
        """接收运行报告和产物路径"""


class RunResultPipeline:
    """流水线运行结果后处理管线"""

    def __init__(
        self,
        history_file: str = "",
        result_dir: str = "",
        report_format: str = "",
    ) -> None:
        from stagerun.core.config import get_config
        cfg = get_config()
        self.history = HistoryManager(history_file=history_file)
        self.result_dir = result_dir or cfg.result_dir
        self.report_format = report_format or cfg.report_format
        self._hooks: list[RunHook] = []

    def subscribe(self, hook: RunHook) -> None:
        self._hooks.append(hook)

    def process(self, report: PipelineReport, *, fmt: str = "") -> dict[str, str]:
        """对一次运行结果执行全部后处理步骤，返回产物路径"""
        data = report.to_dict()

        # 1. 持久化运行报告 JSON
        json_path = save_report(data, self.result_dir)

        # 2. 渲染流水线报告
        run_dir = str(Path(json_path).parent)
        report_path = generate_report(data, run_dir, fmt or self.report_format)
        data["report_path"] = report_path

        # 3. 记录到运行历史
        self.history.record_run(data)

        # 4. 通知所有观察者
        context = {"report_json": json_path, "report_path": report_path}
        for hook in self._hooks:
            try:
                hook.on_run(report, context)
            except (StageRunError, ValueError, RuntimeError, OSError, TypeError):
                logger.exception("结果管线钩子执行失败: %s", type(hook).__name__)

        logger.info(
            "结果管线完成: pipeline=%s, run_id=%s, status=%s",
            report.pipeline, report.run_id, report.status.value,
        )
        return context
