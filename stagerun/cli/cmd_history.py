"""CLI - 运行历史查询命令"""

from __future__ import annotations

import sys

import click

from stagerun.cli import _svc


def register(group: click.Group) -> None:
    group.add_command(history_group)


@click.group(name="history")
def history_group() -> None:
    """运行历史查询"""


@history_group.command(name="list")
@click.option("--pipeline", default=None, help="按流水线名过滤")
@click.option("--branch", default=None, help="按分支过滤")
@click.option("--status", default=None,
              type=click.Choice(["success", "unstable", "failure", "aborted"]),
              help="按最终状态过滤")
@click.option("--limit", default=20, help="最大记录数")
def history_list(pipeline: str | None, branch: str | None, status: str | None, limit: int) -> None:
    """列出运行历史"""
    records = _svc().history.query(pipeline=pipeline, branch=branch, status=status, limit=limit)
    if not records:
        click.echo("没有运行历史。")
        return
    for r in records:
        s = r.get("summary", {})
        click.echo(
            f"  {r['run_id']}  {r['timestamp'][:19]}  {r.get('pipeline', ''):16s}  "
            f"branch={r.get('branch') or '-':12s}  {r.get('status', ''):9s}  "
            f"阶段={s.get('total', 0)} 失败={s.get('failure', 0)} 跳过={s.get('skipped', 0)}"
        )


@history_group.command(name="show")
@click.argument("run_id")
def history_show(run_id: str) -> None:
    """查看单次运行的阶段轨迹"""
    record = _svc().history.get(run_id)
    if record is None:
        click.echo(f"运行记录不存在: {run_id}", err=True)
        sys.exit(1)
    click.echo(f"运行: {record['run_id']}  流水线: {record.get('pipeline', '')}  "
               f"分支: {record.get('branch', '')}  状态: {record.get('status', '')}")
    for s in record.get("stages", []):
        parent = f" <- {s['parent_id']}" if s.get("parent_id") else ""
        msg = f"  {s['message']}" if s.get("message") else ""
        click.echo(f"  {s['stage_id']:24s} {s.get('status', ''):9s}"
                   f" {(s.get('duration_ms') or 0) / 1000:6.1f}s{parent}{msg}")


@history_group.command(name="stage")
@click.argument("stage_id")
def history_stage(stage_id: str) -> None:
    """查看单个阶段的历史执行汇总"""
    summary = _svc().history.stage_summary(stage_id)
    click.echo(f"阶段: {summary['stage_id']}")
    click.echo(f"总运行次数: {summary['total_runs']}  成功: {summary['success']}  "
               f"失败: {summary['failure']}  跳过: {summary['skipped']}  "
               f"通过率: {summary['pass_rate']}%")
    if summary["recent"]:
        click.echo("\n最近执行:")
        for r in summary["recent"]:
            click.echo(
                f"  {r['run_id']}  {r['timestamp'][:19]}"
                f"  {r['status']:9s}  {(r['duration_ms'] or 0) / 1000:.1f}s"
            )
