"""LabWatch Monitor - 机群状态汇总、告警去重与远程命令。"""

__version__ = "0.3.0"
