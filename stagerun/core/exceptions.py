"""统一异常体系

所有业务异常继承 StageRunError，替代散落的 ValueError / RuntimeError。
执行器据此把错误映射为阶段状态，Web 层映射 HTTP 状态码，CLI 层输出友好提示。
"""

from __future__ import annotations


class StageRunError(Exception):
    """框架基础异常"""

    code: str = "UNKNOWN"

    def __init__(self, message: str) -> None:
        super().__init__(message)


class ConfigError(StageRunError):
    """配置文件缺失或内容无效"""

    code = "CONFIG_ERROR"


class ValidationError(StageRunError):
    """输入数据校验失败"""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, details: list[str] | None = None) -> None:
        super().__init__(message)
        self.details = details or []


class PipelineDefinitionError(ValidationError):
    """流水线定义无法反序列化为阶段树"""

    code = "PIPELINE_DEFINITION_ERROR"


class ExecutionError(StageRunError):
    """外部命令执行失败"""

    code = "EXECUTION_ERROR"


class ConditionEvaluationError(StageRunError):
    """门控表达式格式错误（按失败处理，而非跳过）"""

    code = "CONDITION_ERROR"


class CredentialNotFoundError(StageRunError):
    """环境覆盖层引用了未绑定的凭据"""

    code = "CREDENTIAL_NOT_FOUND"


class AgentProvisionError(StageRunError):
    """执行上下文申请失败（不执行任何动作，后置钩子照常运行）"""

    code = "AGENT_PROVISION_ERROR"


class ActionFailure(StageRunError):
    """动作非零退出或超时"""

    code = "ACTION_FAILURE"

    def __init__(self, message: str, exit_code: int | None = None, timed_out: bool = False) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.timed_out = timed_out


class ReportIngestError(StageRunError):
    """报告文件缺失或格式错误"""

    code = "REPORT_INGEST_ERROR"


class ReportPublishError(StageRunError):
    """报告发布到存储端失败"""

    code = "REPORT_PUBLISH_ERROR"


class CancellationError(StageRunError):
    """执行被中止（区别于失败）"""

    code = "CANCELLED"
