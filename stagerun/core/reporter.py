"""流水线报告生成器 - Strategy 模式

每种报告格式实现 ResultFormatter 接口，通过注册制工厂调用。
输入为 PipelineReport.to_dict() 的结果（含扁平化的阶段轨迹 stages）。
"""

from __future__ import annotations

import html
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from xml.sax.saxutils import quoteattr as xml_quoteattr

from stagerun.core.exceptions import ValidationError
from stagerun.core.models import summarize_statuses

logger = logging.getLogger(__name__)

REPORT_JSON = "report.json"


def load_run_report(result_dir: str, run_id: str) -> dict:
    """读取某次运行持久化的 report.json"""
    path = Path(result_dir) / run_id / REPORT_JSON
    if not path.exists():
        raise ValidationError(f"运行报告不存在: {path}")
    with open(path, encoding="utf-8") as f:
        return json.load(f)


# =========================================================================
# Strategy: ResultFormatter
# =========================================================================


class ResultFormatter(ABC):
    """报告格式化策略基类"""

    @abstractmethod
    def format(self, report: dict, summary: dict) -> str:
        """将流水线报告格式化为字符串"""

    @abstractmethod
    def extension(self) -> str:
        """输出文件扩展名（不含 .）"""


class JSONFormatter(ResultFormatter):
    def format(self, report: dict, summary: dict) -> str:
        return json.dumps(
            {"summary": summary, **report}, indent=2, ensure_ascii=False,
        )

    def extension(self) -> str:
        return "json"


class HTMLFormatter(ResultFormatter):
    def format(self, report: dict, summary: dict) -> str:
        depth = _depths(report.get("stages", []))
        rows = ""
        for stage in report.get("stages", []):
            status = stage.get("status", "unknown")
            sid = str(stage.get("stage_id", ""))
            indent = "&nbsp;" * 4 * depth.get(sid, 0)
            links = "".join(
                f'<a href="{html.escape(r.get("published_as", ""))}">'
                f'{html.escape(r.get("name", ""))}</a> '
                for r in stage.get("reports", []) if r.get("published_as")
            )
            rows += (
                f'<tr class="{html.escape(status)}">'
                f"<td>{indent}{html.escape(sid)}</td>"
                f"<td>{html.escape(str(stage.get('kind', '')))}</td>"
                f"<td>{html.escape(status)}</td>"
                f'<td>{stage.get("duration_ms", 0) / 1000:.1f}s</td>'
                f"<td>{links}</td>"
                f"<td>{html.escape(str(stage.get('message', '')))}</td>"
                f"</tr>\n"
            )

        tests = report.get("report_summary", {})
        title = html.escape(f"{report.get('pipeline', '')} #{report.get('run_id', '')}")
        return (
            "<!DOCTYPE html>\n"
            '<html><head><meta charset="utf-8">'
            f"<title>stagerun 运行报告 {title}</title>\n<style>\n"
            "  body { font-family: monospace; margin: 2em; }\n"
            "  table { border-collapse: collapse; width: 100%; }\n"
            "  th, td { border: 1px solid #ccc; padding: 6px 12px;"
            " text-align: left; }\n"
            "  .success { background: #d4edda; }\n"
            "  .failure { background: #f8d7da; }\n"
            "  .unstable { background: #fff3cd; }\n"
            "  .aborted { background: #e2e3e5; }\n"
            "  .skipped { color: #888; }\n"
            "</style></head><body>\n"
            f"<h1>stagerun 运行报告 {title}</h1>\n"
            f"<p>分支: {html.escape(str(report.get('branch', '')))}"
            f" | 状态: {html.escape(str(report.get('status', '')))}</p>\n"
            f"<p>阶段: {summary['total']} | 成功: {summary['success']}"
            f" | 失败: {summary['failure']} | 不稳定: {summary['unstable']}"
            f" | 跳过: {summary['skipped']} | 中止: {summary['aborted']}</p>\n"
            f"<p>测试: {tests.get('total', 0)} | 通过: {tests.get('passed', 0)}"
            f" | 失败: {tests.get('failed', 0)} | 跳过: {tests.get('skipped', 0)}</p>\n"
            "<table>\n"
            "<tr><th>阶段</th><th>类型</th><th>状态</th><th>耗时</th>"
            "<th>报告</th><th>信息</th></tr>\n"
            f"{rows}"
            "</table></body></html>"
        )

    def extension(self) -> str:
        return "html"


class JUnitFormatter(ResultFormatter):
    """每个叶子阶段输出为一个 testcase"""

    def format(self, report: dict, summary: dict) -> str:
        leaves = [s for s in report.get("stages", []) if s.get("kind") == "leaf"]
        failures = sum(1 for s in leaves if s.get("status") in ("failure", "unstable"))
        errors = sum(1 for s in leaves if s.get("status") == "aborted")
        skipped = sum(1 for s in leaves if s.get("status") == "skipped")
        testcases = ""
        for stage in leaves:
            name_attr = xml_quoteattr(str(stage.get("stage_id", "unknown")))
            cls_attr = xml_quoteattr(str(stage.get("parent_id", "")))
            duration = stage.get("duration_ms", 0) / 1000
            status = stage.get("status", "unknown")
            msg_attr = xml_quoteattr(str(stage.get("message", "")))
            head = f"    <testcase classname={cls_attr} name={name_attr} time=\"{duration:.1f}\""

            if status == "success":
                testcases += f"{head}/>\n"
            elif status in ("failure", "unstable"):
                testcases += f"{head}>\n      <failure message={msg_attr}/>\n    </testcase>\n"
            elif status == "skipped":
                testcases += f"{head}>\n      <skipped/>\n    </testcase>\n"
            else:
                testcases += f"{head}>\n      <error message={msg_attr}/>\n    </testcase>\n"

        name_attr = xml_quoteattr(str(report.get("pipeline", "stagerun")))
        return (
            '<?xml version="1.0" encoding="UTF-8"?>\n'
            f'<testsuite name={name_attr} tests="{len(leaves)}" '
            f'failures="{failures}" errors="{errors}" skipped="{skipped}">\n'
            f"{testcases}"
            "</testsuite>\n"
        )

    def extension(self) -> str:
        return "xml"


def _depths(stages: list[dict]) -> dict[str, int]:
    parents = {s.get("stage_id", ""): s.get("parent_id", "") for s in stages}
    depths: dict[str, int] = {}
    for sid in parents:
        d, cur = 0, parents.get(sid, "")
        while cur and d < len(parents):
            d += 1
            cur = parents.get(cur, "")
        depths[sid] = d
    return depths


# =========================================================================
# 注册制工厂
# =========================================================================

_formatters: dict[str, type[ResultFormatter]] = {
    "html": HTMLFormatter,
    "json": JSONFormatter,
    "junit": JUnitFormatter,
}


def register_formatter(name: str, cls: type[ResultFormatter]) -> None:
    """注册自定义报告格式"""
    _formatters[name] = cls


def available_formats() -> list[str]:
    return list(_formatters)


def generate_report(report: dict, output_dir: str, fmt: str = "html") -> str:
    """根据运行报告生成指定格式文件，返回生成的文件路径"""
    formatter_cls = _formatters.get(fmt)
    if formatter_cls is None:
        raise ValidationError(f"不支持的格式: {fmt}（可用: {list(_formatters)}）")

    formatter = formatter_cls()
    summary = summarize_statuses(report.get("stages", []))
    content = formatter.format(report, summary)

    output = Path(output_dir) / f"pipeline-report.{formatter.extension()}"
    output.parent.mkdir(parents=True, exist_ok=True)
    with open(output, "w", encoding="utf-8") as f:
        f.write(content)

    logger.info("流水线报告已生成: %s", output)
    return str(output)
