"""执行上下文处理器 - Strategy Pattern

职责:
- 定义 provision / teardown / wrap 公共接口
- 实现本机进程与 docker 容器两类执行环境
- 提供处理器注册表

provider 类型:
- local:  直接在宿主机的工作目录中运行命令
- docker: 启动常驻容器（挂载工作目录），每个动作通过 docker exec 执行，
          释放时 docker rm -f
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING

from stagerun.core.exceptions import AgentProvisionError, ExecutionError, ValidationError
from stagerun.utils.shell import CommandExecutor, get_executor, run_cmd

if TYPE_CHECKING:
    from stagerun.core.models import ExecutionContext
    from stagerun.core.scope import EnvironmentScope

logger = logging.getLogger(__name__)

CONTAINER_WORKSPACE = "/workspace"


def resolve_working_dir(workspace: str, working_dir: str) -> str:
    """解析动作工作目录（相对工作区），禁止逃逸出工作区"""
    root = Path(workspace).resolve()
    target = (root / working_dir).resolve() if working_dir else root
    if target != root and root not in target.parents:
        raise ValidationError(f"工作目录超出工作区: {working_dir}")
    return str(target)


# =========================================================================
# 处理器抽象基类
# =========================================================================


class BaseAgentHandler(ABC):
    """执行上下文处理器公共接口"""

    @abstractmethod
    def provision(self, context: ExecutionContext) -> ExecutionContext:
        """申请执行环境，设置 context.handle；失败抛 AgentProvisionError"""

    @abstractmethod
    def teardown(self, context: ExecutionContext) -> None:
        """回收执行环境"""

    @abstractmethod
    def wrap(
        self, context: ExecutionContext, command: str, working_dir: str,
        scope: EnvironmentScope,
    ) -> tuple[str | list[str], str, dict[str, str]]:
        """把动作转换为 (命令, 宿主机 cwd, 进程环境)"""


class LocalAgentHandler(BaseAgentHandler):
    """本机进程执行环境"""

    def provision(self, context: ExecutionContext) -> ExecutionContext:
        try:
            Path(context.workspace).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise AgentProvisionError(f"创建工作目录失败: {context.workspace}: {e}") from e
        context.handle = context.handle or f"local:{context.context_id}"
        logger.info("本地执行环境已申请: %s -> %s", context.context_id, context.workspace)
        return context

    def teardown(self, context: ExecutionContext) -> None:
        logger.info("本地执行环境已释放: %s", context.context_id)

    def wrap(
        self, context: ExecutionContext, command: str, working_dir: str,
        scope: EnvironmentScope,
    ) -> tuple[str | list[str], str, dict[str, str]]:
        cwd = resolve_working_dir(context.workspace, working_dir)
        env = scope.as_env(os.environ)
        env["WORKSPACE"] = context.workspace
        return command, cwd, env


class DockerAgentHandler(BaseAgentHandler):
    """docker 容器执行环境"""

    def __init__(self, executor: CommandExecutor | None = None, docker: str = "docker") -> None:
        self._executor = executor
        self.docker = docker

    @property
    def executor(self) -> CommandExecutor:
        return self._executor or get_executor()

    def provision(self, context: ExecutionContext) -> ExecutionContext:
        Path(context.workspace).mkdir(parents=True, exist_ok=True)
        spec = context.spec
        cmd = [
            self.docker, "run", "-d",
            "-v", f"{Path(context.workspace).resolve()}:{CONTAINER_WORKSPACE}",
            "-w", CONTAINER_WORKSPACE,
            *spec.extra_args,
            spec.runtime_image, "sleep", "infinity",
        ]
        try:
            r = run_cmd(cmd, label="docker run", executor=self.executor)
        except ExecutionError as e:
            raise AgentProvisionError(f"容器启动失败 ({spec.runtime_image}): {e}") from e
        context.handle = r.stdout.strip()
        logger.info("容器执行环境已申请: %s -> %s (%s)",
                    context.context_id, context.handle[:12], spec.runtime_image)
        return context

    def teardown(self, context: ExecutionContext) -> None:
        if not context.handle:
            return
        try:
            run_cmd([self.docker, "rm", "-f", context.handle],
                    label="docker rm", executor=self.executor)
        except ExecutionError as e:
            logger.warning("容器回收失败: %s: %s", context.handle[:12], e)
            return
        logger.info("容器执行环境已释放: %s", context.context_id)

    def wrap(
        self, context: ExecutionContext, command: str, working_dir: str,
        scope: EnvironmentScope,
    ) -> tuple[str | list[str], str, dict[str, str]]:
        host_cwd = resolve_working_dir(context.workspace, working_dir)
        rel = os.path.relpath(host_cwd, Path(context.workspace).resolve())
        inner_cwd = CONTAINER_WORKSPACE if rel == "." else f"{CONTAINER_WORKSPACE}/{rel}"
        # 变量值经由 docker CLI 进程环境传入 (-e NAME)，不出现在命令行参数里
        values = scope.as_env()
        values["WORKSPACE"] = CONTAINER_WORKSPACE
        cmd = [self.docker, "exec", "-w", inner_cwd]
        for name in sorted(values):
            cmd += ["-e", name]
        cmd += [context.handle, "sh", "-c", command]
        return cmd, context.workspace, {**os.environ, **values}


# =========================================================================
# 处理器注册表
# =========================================================================

_HANDLERS: dict[str, type[BaseAgentHandler]] = {
    "local": LocalAgentHandler,
    "docker": DockerAgentHandler,
}


def register_agent_handler(provider: str, cls: type[BaseAgentHandler]) -> None:
    """注册自定义执行环境处理器"""
    _HANDLERS[provider] = cls


def get_agent_handler(provider: str) -> BaseAgentHandler:
    """根据 provider 获取处理器实例"""
    cls = _HANDLERS.get(provider)
    if cls is None:
        raise AgentProvisionError(f"不支持的执行环境类型: {provider}（可用: {list(_HANDLERS)}）")
    return cls()
