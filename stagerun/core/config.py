"""集中配置管理

提供统一的配置入口，支持从 YAML 文件加载 + 编程式覆盖。
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field

from stagerun.core.exceptions import ConfigError
from stagerun.utils.yaml_io import load_yaml

logger = logging.getLogger(__name__)

_SINK_TYPES = ("local", "http")


@dataclass
class Config:
    """引擎全局配置"""

    # 目录
    workspace_root: str = "data/workspaces"
    result_dir: str = "results"
    report_dir: str = "results/reports"
    history_file: str = "data/history.json"
    credentials_file: str = "configs/credentials.yml"

    # 执行
    max_parallel: int = 8
    default_action_timeout: int = 3600
    kill_grace_period: float = 5.0
    keep_workspace: bool = False

    # 报告发布
    report_sink: str = "local"
    report_sink_url: str = ""
    report_sink_token: str = ""
    report_format: str = "html"

    # 自定义扩展 (放不到字段里的配置项)
    extra: dict = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.report_sink not in _SINK_TYPES:
            raise ConfigError(f"不支持的报告存储类型: {self.report_sink}（可用: {list(_SINK_TYPES)}）")
        if self.max_parallel < 1:
            raise ConfigError(f"max_parallel 必须 >= 1: {self.max_parallel}")

    @classmethod
    def from_file(cls, path: str = "configs/default.yml") -> Config:
        """从 YAML 文件加载配置，不存在则返回默认"""
        data = load_yaml(path)
        if not data:
            return cls()
        known = {f.name for f in cls.__dataclass_fields__.values()}
        matched = {k: v for k, v in data.items() if k in known}
        extra = {k: v for k, v in data.items() if k not in known}
        cfg = cls(**matched)
        cfg.extra = extra
        return cfg

    def to_dict(self) -> dict:
        return asdict(self)


# 全局单例，首次 import 时不加载文件；由 CLI / Web 入口显式初始化
_current: Config | None = None


def get_config() -> Config:
    """获取当前配置（未初始化则返回默认值）"""
    global _current  # noqa: PLW0603
    if _current is None:
        _current = Config()
    return _current


def init_config(path: str = "configs/default.yml") -> Config:
    """从文件初始化全局配置"""
    global _current  # noqa: PLW0603
    _current = Config.from_file(path)
    logger.info("配置已加载: %s", path)
    return _current


def load_credentials(path: str) -> dict[str, str]:
    """加载凭据绑定文件（凭据 ID -> 值），支持顶层 credentials: 包装"""
    data = load_yaml(path)
    if isinstance(data.get("credentials"), dict):
        data = data["credentials"]
    creds = {str(k): str(v) for k, v in data.items() if v is not None}
    if creds:
        logger.info("已加载 %d 个凭据绑定: %s", len(creds), path)
    return creds
