"""执行上下文服务 - 处理器注册表 + 申请/释放管理"""

from stagerun.services.agent.handlers import (
    BaseAgentHandler,
    DockerAgentHandler,
    LocalAgentHandler,
    get_agent_handler,
    register_agent_handler,
)
from stagerun.services.agent.provisioner import AgentProvisioner

__all__ = [
    "AgentProvisioner",
    "BaseAgentHandler",
    "DockerAgentHandler",
    "LocalAgentHandler",
    "get_agent_handler",
    "register_agent_handler",
]
