"""报告存储端 - 把阶段产出的报告发布到命名存储

按 (run_id, stage_id, 报告名) 组织，同名报告不会跨阶段覆盖：
  - local: 复制到 report_dir/<run_id>/<stage_id>/<name>/
  - http:  打包为 tar.gz 后 POST 到报告服务
"""

from __future__ import annotations

import io
import json
import logging
import re
import shutil
import tarfile
import urllib.error
import urllib.parse
import urllib.request
from pathlib import Path
from typing import TYPE_CHECKING

from stagerun.core.exceptions import ReportPublishError
from stagerun.utils.net import validate_url_scheme

if TYPE_CHECKING:
    from stagerun.core.config import Config
    from stagerun.core.protocols import ReportSink

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def safe_name(name: str) -> str:
    """把报告名转换为可用作目录名的形式"""
    return _UNSAFE.sub("_", name).strip("._") or "report"


class LocalReportSink:
    """本地目录存储"""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def publish(self, source: str, *, stage_id: str, name: str) -> str:
        src = Path(source)
        if not src.exists():
            raise ReportPublishError(f"待发布的报告不存在: {src}")
        dest = self.root / safe_name(stage_id) / safe_name(name)
        try:
            dest.mkdir(parents=True, exist_ok=True)
            if src.is_dir():
                shutil.copytree(src, dest, dirs_exist_ok=True)
            else:
                shutil.copy2(src, dest / src.name)
        except OSError as e:
            raise ReportPublishError(f"报告复制失败: {src} -> {dest}: {e}") from e
        logger.info("报告已发布: %s -> %s", src, dest)
        return str(dest)


class HttpReportSink:
    """HTTP 报告服务存储（tar.gz 上传）"""

    def __init__(self, url: str, token: str = "", run_id: str = "", timeout: float = 60) -> None:
        validate_url_scheme(url, context="report sink")
        self.url = url.rstrip("/")
        self.token = token
        self.run_id = run_id
        self.timeout = timeout

    @staticmethod
    def _pack(src: Path) -> bytes:
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w:gz") as tar:
            tar.add(src, arcname=src.name)
        return buf.getvalue()

    def publish(self, source: str, *, stage_id: str, name: str) -> str:
        src = Path(source)
        if not src.exists():
            raise ReportPublishError(f"待发布的报告不存在: {src}")
        query = urllib.parse.urlencode({"run_id": self.run_id, "stage_id": stage_id, "name": name})
        req = urllib.request.Request(
            f"{self.url}?{query}", data=self._pack(src), method="POST",
            headers={"Content-Type": "application/gzip"},
        )
        if self.token:
            req.add_header("Authorization", f"Bearer {self.token}")

        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:  # nosec B310
                body = resp.read().decode("utf-8", errors="replace")
        except urllib.error.HTTPError as e:
            raise ReportPublishError(f"HTTP 错误 {e.code}: {e.reason}") from e
        except urllib.error.URLError as e:
            raise ReportPublishError(f"网络错误: {e.reason}") from e
        except OSError as e:
            raise ReportPublishError(str(e)) from e

        location = f"{self.url}/{self.run_id}/{safe_name(stage_id)}/{safe_name(name)}"
        if body:
            try:
                location = json.loads(body).get("url", location)
            except (json.JSONDecodeError, AttributeError):
                logger.debug("报告服务响应不是 JSON 对象: %s", body[:200])
        logger.info("报告已上传: %s -> %s", src, location)
        return location


def create_sink(config: Config, run_id: str) -> ReportSink:
    """根据配置创建本次运行的报告存储"""
    if config.report_sink == "http":
        return HttpReportSink(config.report_sink_url, config.report_sink_token, run_id=run_id)
    return LocalReportSink(Path(config.report_dir) / run_id)
