"""JSON API 服务（基于 Flask，无页面）

提供：提交/查询/中止流水线运行、阶段历史汇总、流水线定义校验。

启动方式: stagerun serve --port 8888
"""

from __future__ import annotations

import logging

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

from stagerun.core.exceptions import StageRunError
from stagerun.web.responses import domain_error
from stagerun.web.routes import runs_bp

logger = logging.getLogger(__name__)

MAX_CONTENT_LENGTH = 10 * 1024 * 1024  # 10 MB

app = Flask(__name__)
app.config["MAX_CONTENT_LENGTH"] = MAX_CONTENT_LENGTH
app.register_blueprint(runs_bp)


# =========================================================================
# 全局 JSON 错误处理
# =========================================================================


@app.errorhandler(StageRunError)
def handle_domain_error(exc: StageRunError):
    """业务异常统一返回 400"""
    logger.warning("请求处理失败: %s", exc)
    return domain_error(exc)


@app.errorhandler(HTTPException)
def handle_http_exception(exc: HTTPException):
    """将所有 HTTP 异常统一返回 JSON"""
    return jsonify(error=exc.description), exc.code


@app.errorhandler(Exception)
def handle_generic_exception(exc):  # noqa: ARG001
    """捕获未处理异常，返回 500 JSON"""
    logger.exception("未处理的异常")
    return jsonify(error="服务器内部错误"), 500


@app.route("/api/health")
def api_health():
    from stagerun import __version__
    return jsonify(status="ok", version=__version__)


def run_server(port: int = 8888, debug: bool = False, host: str = "127.0.0.1") -> None:
    logger.info("stagerun API 服务已启动: http://%s:%d", host, port)
    app.run(host=host, port=port, debug=debug, threaded=True)
