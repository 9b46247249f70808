"""stagerun - 构建/测试/部署流水线编排引擎"""

__version__ = "0.1.0"
