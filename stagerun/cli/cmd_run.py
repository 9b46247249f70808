"""CLI - 运行与校验命令"""

from __future__ import annotations

import sys
import threading
from typing import Any

import click

from stagerun.cli import EXIT_INVALID, _echo_error, _parse_kv_pairs, _svc
from stagerun.core.exceptions import StageRunError
from stagerun.core.reporter import available_formats


def register(group: click.Group) -> None:
    group.add_command(run)
    group.add_command(validate)


def _load_or_exit(path: str) -> Any:
    from stagerun.core.loader import load_pipeline
    try:
        return load_pipeline(path)
    except StageRunError as e:
        _echo_error(e)
        sys.exit(EXIT_INVALID)


def _echo_tree(stage: Any, depth: int = 0) -> None:
    extra = []
    if stage.condition:
        extra.append(f"when: {stage.condition}")
    if stage.agent is not None:
        extra.append(f"agent: {stage.agent.runtime_image or 'local'}/{stage.agent.workspace_policy.value}")
    if getattr(stage.body, "fail_fast", False):
        extra.append("fail_fast")
    if stage.kind == "leaf":
        extra.append(f"{len(stage.body.actions)} 个动作")
    if stage.post_hooks:
        extra.append("post: " + ",".join(h.report_name for h in stage.post_hooks))
    suffix = f"  ({'; '.join(extra)})" if extra else ""
    click.echo(f"{'  ' * depth}- {stage.id} [{stage.kind}]{suffix}")
    for child in stage.children:
        _echo_tree(child, depth + 1)


@click.command()
@click.argument("pipeline_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--branch", "-b", required=True, help="运行的源码分支")
@click.option("--credential", multiple=True, help="凭据绑定，格式: id=value（可多次指定）")
@click.option("--credentials-file", default="", help="凭据绑定 YAML 文件（覆盖配置中的路径）")
@click.option("--workspace", default="", help="工作区根目录（覆盖配置）")
@click.option("--keep-workspace", is_flag=True, help="运行结束后保留工作区")
@click.option("--format", "-f", "fmt", default=None, type=click.Choice(available_formats()),
              help="流水线报告格式")
def run(
    pipeline_file: str, branch: str, credential: tuple[str, ...], credentials_file: str,
    workspace: str, keep_workspace: bool, fmt: str | None,
) -> None:
    """执行流水线

    退出码: success=0, failure=1, unstable=2, aborted=130, 定义无效=3
    """
    from stagerun.services.run_service import RunRequest

    pipeline = _load_or_exit(pipeline_file)
    svc = _svc()
    cfg = svc.config
    if credentials_file:
        cfg.credentials_file = credentials_file
    if keep_workspace:
        cfg.keep_workspace = True
    if fmt:
        cfg.report_format = fmt

    ctx = svc.runs.make_context(RunRequest(
        branch=branch,
        credentials=_parse_kv_pairs(credential),
        workspace_root=workspace,
    ))
    orchestrator = svc.orchestrator()
    outcome: dict[str, Any] = {}

    def work() -> None:
        try:
            outcome["report"] = orchestrator.run(pipeline, ctx)
        except Exception as e:  # noqa: BLE001
            outcome["error"] = e

    click.echo(f"运行 {pipeline.name} (run_id={ctx.run_id}, branch={branch})")
    t = threading.Thread(target=work, name=f"run-{ctx.run_id}")
    t.start()
    try:
        while t.is_alive():
            t.join(0.2)
    except KeyboardInterrupt:
        click.echo("\n收到中断信号，正在中止流水线（等待后置钩子与清理）...", err=True)
        orchestrator.abort("用户中断 (Ctrl-C)")
        t.join()

    if "error" in outcome:
        _echo_error(outcome["error"])
        sys.exit(1)

    report = outcome["report"]
    parents = {s.stage_id: s.parent_id for s in report.stages}
    for s in report.stages:
        depth, cur = 0, s.parent_id
        while cur:
            depth += 1
            cur = parents.get(cur, "")
        msg = f"  {s.message}" if s.message else ""
        click.echo(f"  {'  ' * depth}{s.stage_id:24s} {s.status.value:9s} {s.duration_ms / 1000:6.1f}s{msg}")
    summary = report.report_summary
    click.echo(
        f"结果: {report.status.value}  测试: 总计={summary.total} 通过={summary.passed} "
        f"失败={summary.failed} 跳过={summary.skipped}"
    )
    if report.paths.get("report_path"):
        click.echo(f"报告: {report.paths['report_path']}")
    sys.exit(report.exit_code)


@click.command()
@click.argument("pipeline_file", type=click.Path(exists=True, dir_okay=False))
def validate(pipeline_file: str) -> None:
    """校验流水线定义并打印阶段树"""
    pipeline = _load_or_exit(pipeline_file)
    click.echo(f"流水线定义有效: {pipeline.name} ({len(pipeline.stages())} 个阶段)")
    _echo_tree(pipeline.root)
