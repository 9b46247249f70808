"""报告聚合

- JUnit XML（testsuites / testsuite / testcase）解析为 {total, passed, failed, skipped}
  计数，failure 与 error 都计为失败
- HTML 报告目录登记为按 (stage_id, 报告名) 可浏览的制品
- 流水线级汇总 = 各阶段汇总按 stage_id 求并集，避免同名报告互相覆盖

多个并行分支的后置钩子会同时调用 ingest，内部状态由锁保护。
"""

from __future__ import annotations

import logging
import threading
import xml.etree.ElementTree as ET
from pathlib import Path

from stagerun.core.exceptions import ReportIngestError
from stagerun.core.models import Report, ReportKind, ReportSummary

logger = logging.getLogger(__name__)


def _int_attr(elem: ET.Element, name: str) -> int:
    try:
        return int(float(elem.get(name, "0") or 0))
    except ValueError:
        return 0


def _count_suite(suite: ET.Element) -> ReportSummary:
    cases = suite.findall("testcase")
    if not cases and suite.find("testsuite") is not None:
        # 外层 suite 的统计属性已包含嵌套 suite，用例由嵌套 suite 各自计数
        return ReportSummary()
    if not cases:
        # 没有 testcase 子节点时退回 testsuite 上的统计属性
        total = _int_attr(suite, "tests")
        failed = _int_attr(suite, "failures") + _int_attr(suite, "errors")
        skipped = _int_attr(suite, "skipped")
        return ReportSummary(total, max(total - failed - skipped, 0), failed, skipped)
    failed = skipped = 0
    for case in cases:
        if case.find("failure") is not None or case.find("error") is not None:
            failed += 1
        elif case.find("skipped") is not None:
            skipped += 1
    total = len(cases)
    return ReportSummary(total, total - failed - skipped, failed, skipped)


def parse_junit(path: str | Path) -> ReportSummary:
    """解析单个 JUnit XML 文件

    Raises:
        ReportIngestError: 文件缺失或 XML 格式错误
    """
    try:
        root = ET.parse(path).getroot()
    except (ET.ParseError, OSError) as e:
        raise ReportIngestError(f"JUnit 报告无法解析: {path}: {e}") from e

    if root.tag in ("testsuite", "testsuites"):
        suites = root.iter("testsuite")
    else:
        raise ReportIngestError(f"不是 JUnit 报告 (根节点 <{root.tag}>): {path}")

    summary = ReportSummary()
    for suite in suites:
        summary = summary.merge(_count_suite(suite))
    return summary


class ReportAggregator:
    """流水线报告汇总器"""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._summaries: dict[str, dict[str, ReportSummary]] = {}
        self._bundles: dict[str, dict[str, Report]] = {}

    def ingest(self, report: Report) -> ReportSummary:
        """登记一份报告，返回其计数（HTML 报告计数为零）"""
        key = report.name or report.kind
        if report.kind == ReportKind.JUNIT_XML:
            summary = parse_junit(report.source_path)
            with self._lock:
                stage = self._summaries.setdefault(report.stage_id, {})
                stage[key] = stage.get(key, ReportSummary()).merge(summary)
            logger.info("JUnit 报告已汇总: stage=%s, %s", report.stage_id, summary.to_dict())
            return summary
        if report.kind == ReportKind.HTML_BUNDLE:
            if not Path(report.source_path).is_dir():
                raise ReportIngestError(f"HTML 报告目录不存在: {report.source_path}")
            with self._lock:
                self._bundles.setdefault(report.stage_id, {})[key] = report
            logger.info("HTML 报告已登记: stage=%s, name=%s", report.stage_id, key)
            return ReportSummary()
        raise ReportIngestError(f"不支持的报告类型: {report.kind}")

    def stage_summary(self, stage_id: str) -> ReportSummary:
        with self._lock:
            total = ReportSummary()
            for s in self._summaries.get(stage_id, {}).values():
                total = total.merge(s)
            return total

    def summaries(self) -> dict[str, ReportSummary]:
        """stage_id -> 该阶段所有 JUnit 报告的合计"""
        with self._lock:
            stage_ids = list(self._summaries)
        return {sid: self.stage_summary(sid) for sid in stage_ids}

    def total(self) -> ReportSummary:
        total = ReportSummary()
        for s in self.summaries().values():
            total = total.merge(s)
        return total

    def bundles(self) -> dict[str, dict[str, Report]]:
        with self._lock:
            return {sid: dict(b) for sid, b in self._bundles.items()}
