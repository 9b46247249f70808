"""报告服务 - JUnit/HTML 报告汇总与发布"""

from stagerun.services.report.aggregator import ReportAggregator, parse_junit
from stagerun.services.report.sink import HttpReportSink, LocalReportSink, create_sink

__all__ = [
    "HttpReportSink",
    "LocalReportSink",
    "ReportAggregator",
    "create_sink",
    "parse_junit",
]
