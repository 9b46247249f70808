"""服务容器 - 统一依赖注入

CLI 和 Web 层均通过 get_container() 获取服务，而非直接 import 构造。
同一容器内的实例共享状态（历史文件、命令执行器、后台运行表等）。

用法:
    container = ServiceContainer()
    report = container.orchestrator().run(pipeline, run_context)

    # 显式注入配置 / 命令执行器（测试）
    container = ServiceContainer(config=cfg, command_executor=fake)
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from stagerun.core.config import Config
    from stagerun.core.history import HistoryManager
    from stagerun.core.pipeline import RunResultPipeline
    from stagerun.core.protocols import ReportSink
    from stagerun.services.agent.handlers import BaseAgentHandler
    from stagerun.services.orchestrator.orchestrator import PipelineOrchestrator
    from stagerun.services.run_service import RunService
    from stagerun.utils.shell import CommandExecutor

logger = logging.getLogger(__name__)


class ServiceContainer:
    """懒加载服务容器"""

    def __init__(
        self,
        config: Config | None = None,
        command_executor: CommandExecutor | None = None,
    ) -> None:
        self._instances: dict[str, object] = {}
        if config is None:
            from stagerun.core.config import get_config
            config = get_config()
        self._config = config
        if command_executor is not None:
            self._instances["command_executor"] = command_executor

    @property
    def config(self) -> Config:
        return self._config

    # ---- 执行层 ----

    @property
    def command_executor(self) -> CommandExecutor:
        if "command_executor" not in self._instances:
            from stagerun.utils.shell import LocalExecutor
            self._instances["command_executor"] = LocalExecutor(
                grace_period=self._config.kill_grace_period,
            )
        return self._instances["command_executor"]  # type: ignore[return-value]

    def agent_handlers(self) -> dict[str, BaseAgentHandler]:
        """每次运行一组处理器实例，docker 处理器共用容器的命令执行器"""
        from stagerun.services.agent.handlers import DockerAgentHandler, LocalAgentHandler
        return {
            "local": LocalAgentHandler(),
            "docker": DockerAgentHandler(self.command_executor),
        }

    def report_sink(self, run_id: str) -> ReportSink:
        from stagerun.services.report.sink import create_sink
        return create_sink(self._config, run_id)

    def orchestrator(self) -> PipelineOrchestrator:
        """新建一次运行的编排器"""
        from stagerun.services.orchestrator.orchestrator import PipelineOrchestrator
        return PipelineOrchestrator(self)

    @property
    def credentials(self) -> dict[str, str]:
        if "credentials" not in self._instances:
            from stagerun.core.config import load_credentials
            self._instances["credentials"] = load_credentials(self._config.credentials_file)
        return dict(self._instances["credentials"])  # type: ignore[call-overload]

    # ---- 结果层 ----

    @property
    def history(self) -> HistoryManager:
        if "history" not in self._instances:
            from stagerun.core.history import HistoryManager
            self._instances["history"] = HistoryManager(
                history_file=self._config.history_file,
            )
        return self._instances["history"]  # type: ignore[return-value]

    @property
    def result_pipeline(self) -> RunResultPipeline:
        if "result_pipeline" not in self._instances:
            from stagerun.core.pipeline import RunResultPipeline
            self._instances["result_pipeline"] = RunResultPipeline(
                history_file=self._config.history_file,
                result_dir=self._config.result_dir,
                report_format=self._config.report_format,
            )
        return self._instances["result_pipeline"]  # type: ignore[return-value]

    @property
    def runs(self) -> RunService:
        if "runs" not in self._instances:
            from stagerun.services.run_service import RunService
            self._instances["runs"] = RunService(self)
        return self._instances["runs"]  # type: ignore[return-value]


# ---- 全局单例 ----

_global: ServiceContainer | None = None
_global_lock = threading.Lock()


def get_container() -> ServiceContainer:
    """获取全局 ServiceContainer 单例（线程安全）"""
    global _global  # noqa: PLW0603
    if _global is not None:
        return _global
    with _global_lock:
        if _global is None:
            _global = ServiceContainer()
        return _global


def set_container(container: ServiceContainer) -> None:
    """替换全局容器（Web 测试注入）"""
    global _global  # noqa: PLW0603
    with _global_lock:
        _global = container


def reset_container() -> None:
    """重置全局容器（仅用于测试）"""
    global _global  # noqa: PLW0603
    with _global_lock:
        _global = None
