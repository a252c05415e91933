"""LabWatch Agent - 实验室机器上的遥测与策略代理。"""

__version__ = "0.3.0"
