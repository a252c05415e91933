"""LabWatch 共享模块：存储路径、数据模型、存储客户端、命令/消息通道。"""

__version__ = "0.3.0"
