"""CLI - 杂项命令（报告、HTTP 服务）"""

from __future__ import annotations

import sys

import click

from stagerun.cli import EXIT_INVALID, _echo_error, _svc
from stagerun.core.exceptions import StageRunError
from stagerun.core.reporter import available_formats


def register(group: click.Group) -> None:
    group.add_command(report)
    group.add_command(serve)


# ---- 报告 ----

@click.command()
@click.argument("run_id")
@click.option("--format", "-f", "fmt", default="html", type=click.Choice(available_formats()))
@click.option("--output", "-o", default="", help="输出目录（默认为该运行的结果目录）")
def report(run_id: str, fmt: str, output: str) -> None:
    """根据已保存的运行结果重新生成流水线报告"""
    from pathlib import Path

    from stagerun.core.reporter import generate_report, load_run_report

    result_dir = _svc().config.result_dir
    try:
        data = load_run_report(result_dir, run_id)
    except StageRunError as e:
        _echo_error(e)
        sys.exit(EXIT_INVALID)
    path = generate_report(data, output or str(Path(result_dir) / run_id), fmt)
    click.echo(f"报告已生成: {path}")


# ---- HTTP 服务 ----

@click.command()
@click.option("--host", default="127.0.0.1", help="监听地址")
@click.option("--port", default=8888, help="监听端口")
def serve(host: str, port: int) -> None:
    """启动 JSON API 服务"""
    from stagerun.web.app import run_server
    run_server(host=host, port=port)
