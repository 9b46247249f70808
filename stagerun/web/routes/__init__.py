"""Web 路由模块 - Blueprint 集合

- runs_bp.py: 流水线运行、阶段汇总、定义校验
"""

from stagerun.web.routes.runs_bp import runs_bp

__all__ = ["runs_bp"]
