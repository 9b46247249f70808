"""运行历史 - 流水线运行结果的历史记录与聚合查询

每次运行完成后追加一条记录到历史文件，支持：
  - 按流水线名、分支、最终状态查询
  - 按阶段 id 聚合历史通过率
  - 为 CLI / HTTP API 提供数据源
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from stagerun.core.models import StageStatus, summarize_statuses
from stagerun.utils.yaml_io import atomic_write

logger = logging.getLogger(__name__)

# 写入历史的阶段字段（完整的动作输出只保留在 report.json 中）
_STAGE_FIELDS = ("stage_id", "parent_id", "kind", "status", "exit_code", "duration_ms", "message")


class HistoryManager:
    """运行历史管理器"""

    def __init__(self, history_file: str = "") -> None:
        if not history_file:
            from stagerun.core.config import get_config
            history_file = get_config().history_file
        self.history_file = Path(history_file)
        self.history_file.parent.mkdir(parents=True, exist_ok=True)

    def _load(self) -> list[dict]:
        if not self.history_file.exists():
            return []
        with open(self.history_file, encoding="utf-8") as f:
            data = json.load(f)
        return data if isinstance(data, list) else []

    def _save(self, records: list[dict]) -> None:
        content = json.dumps(records, indent=2, ensure_ascii=False)
        atomic_write(self.history_file, content)

    def record_run(self, report: dict[str, Any]) -> dict[str, Any]:
        """记录一次流水线运行（report 为 PipelineReport.to_dict() 的结果）"""
        stages = [
            {k: s.get(k) for k in _STAGE_FIELDS}
            for s in report.get("stages", [])
        ]
        entry: dict[str, Any] = {
            "run_id": report.get("run_id", ""),
            "timestamp": datetime.now(tz=timezone.utc).isoformat(),
            "pipeline": report.get("pipeline", ""),
            "branch": report.get("branch", ""),
            "status": report.get("status", ""),
            "duration_ms": report.get("duration_ms", 0),
            "summary": summarize_statuses(stages),
            "report_summary": report.get("report_summary", {}),
            "stages": stages,
        }
        if report.get("report_path"):
            entry["report_path"] = report["report_path"]

        records = self._load()
        records.append(entry)
        self._save(records)
        logger.info("运行历史已记录: run_id=%s, pipeline=%s, status=%s",
                    entry["run_id"], entry["pipeline"], entry["status"])
        return entry

    def query(
        self,
        *,
        pipeline: str | None = None,
        branch: str | None = None,
        status: str | None = None,
        limit: int = 50,
    ) -> list[dict]:
        """查询历史记录，按时间倒序"""
        records = self._load()

        if pipeline:
            records = [r for r in records if r.get("pipeline") == pipeline]
        if branch:
            records = [r for r in records if r.get("branch") == branch]
        if status:
            records = [r for r in records if r.get("status") == status]

        records.sort(key=lambda x: x.get("timestamp", ""), reverse=True)
        return records[:limit]

    def get(self, run_id: str) -> dict | None:
        for r in self._load():
            if r.get("run_id") == run_id:
                return r
        return None

    def stage_summary(self, stage_id: str) -> dict:
        """获取单个阶段的历史执行汇总"""
        runs: list[dict] = []
        for r in self._load():
            for s in r.get("stages", []):
                if s.get("stage_id") == stage_id:
                    runs.append({
                        "run_id": r.get("run_id", ""),
                        "timestamp": r.get("timestamp", ""),
                        "branch": r.get("branch", ""),
                        "status": s.get("status", ""),
                        "duration_ms": s.get("duration_ms", 0),
                        "message": s.get("message", ""),
                    })

        counts = summarize_statuses(runs)
        # 跳过的运行不计入通过率
        executed = counts["total"] - counts[StageStatus.SKIPPED.value]
        passed = counts[StageStatus.SUCCESS.value]
        pass_rate = (passed / executed * 100) if executed > 0 else 0

        return {
            "stage_id": stage_id,
            "total_runs": counts.pop("total"),
            **counts,
            "pass_rate": round(pass_rate, 1),
            "recent": runs[-10:],
        }
