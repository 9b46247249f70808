"""stagerun 命令行接口

CLI 按领域拆分为子模块，每个模块注册自己的命令到 main group。
"""

import os
from typing import Any

import click

from stagerun import __version__
from stagerun.core.config import init_config
from stagerun.services.container import get_container, reset_container
from stagerun.utils.logger import setup_logging

# 定义/配置无效时的退出码（与流水线状态退出码 0/1/2/130 区分）
EXIT_INVALID = 3


def _svc() -> Any:
    """获取全局服务容器的快捷方式"""
    return get_container()


def _parse_kv_pairs(pairs: tuple[str, ...]) -> dict[str, str]:
    """解析 key=value 参数对"""
    result: dict[str, str] = {}
    for p in pairs:
        if "=" in p:
            k, v = p.split("=", 1)
            result[k.strip()] = v.strip()
    return result


def _echo_error(e: Exception) -> None:
    click.echo(f"错误: {e}", err=True)
    for d in getattr(e, "details", []):
        click.echo(f"  - {d}", err=True)


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "-c", "config_path", default="configs/default.yml",
              envvar="STAGERUN_CONFIG", help="配置文件路径")
def main(config_path: str) -> None:
    """stagerun - 构建/测试/部署流水线编排引擎"""
    setup_logging(
        level=os.getenv("STAGERUN_LOG_LEVEL", "INFO"),
        json_output=os.getenv("STAGERUN_LOG_JSON", "") == "1",
    )
    init_config(config_path)
    reset_container()


# 注册各领域子命令
from stagerun.cli.cmd_run import register as _reg_run  # noqa: E402
from stagerun.cli.cmd_history import register as _reg_history  # noqa: E402
from stagerun.cli.cmd_misc import register as _reg_misc  # noqa: E402

_reg_run(main)
_reg_history(main)
_reg_misc(main)
