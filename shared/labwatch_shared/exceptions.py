"""
异常定义模块。

所有 LabWatch 异常都继承自 LabwatchError，调用方可以在循环边界统一捕获。
"""
from typing import Optional


class LabwatchError(Exception):
    """LabWatch 异常基类。"""

    def __init__(self, message: str, detail: Optional[str] = None):
        self.message = message
        self.detail = detail
        super().__init__(message)


class StoreError(LabwatchError):
    """远程存储读写失败（网络、超时、数据无法解码）。"""

    def __init__(self, message: str, path: str = "", detail: Optional[str] = None):
        self.path = path
        super().__init__(message, detail)

    def __str__(self) -> str:
        if self.path:
            return f"{self.message} (path={self.path})"
        return self.message


class ConfigError(LabwatchError):
    """配置无效。"""


class ActionError(LabwatchError):
    """操作员动作无法执行（未知机器、未知命令、空输入等）。"""
