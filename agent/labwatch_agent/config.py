"""
Agent 配置加载模块。

定义所有配置数据类，并从 YAML 文件加载配置。
支持环境变量覆盖（LABWATCH_STORE_URL、LABWATCH_STORE_TOKEN）
和时间间隔简写（如 '3s'、'10m'、'1h'、'14d'）。
"""
import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

import yaml

from labwatch_agent.policy import DEFAULT_FORBIDDEN


@dataclass
class StoreConfig:
    """远程存储连接配置。"""
    url: str = "redis://localhost:6379/0"
    token: str = ""
    namespace: str = "labwatch"


@dataclass
class MachineConfig:
    """机器标识配置。"""
    name: str = ""   # 为空时使用主机名
    group: str = ""  # 首次注册时的分组


@dataclass
class LoopConfig:
    """主循环配置。"""
    interval: float = 3           # tick 间隔（秒）
    history_interval: float = 600  # 历史点追加间隔（秒）
    disk_path: str = field(default_factory=lambda: os.path.abspath(os.sep))


@dataclass
class PolicyConfig:
    """禁用进程策略配置。"""
    forbidden: List[str] = field(default_factory=lambda: list(DEFAULT_FORBIDDEN))
    kill_cooldown: float = 10  # 上课模式下两次强制结束之间的最短间隔（秒）


@dataclass
class MessagesConfig:
    """消息接收配置。"""
    staleness: float = 1800  # 超过该时长的消息不再展示（秒）
    state_file: str = "~/.labwatch/messages.json"


@dataclass
class AgentConfig:
    """Agent 主配置，聚合所有子配置。"""
    store: StoreConfig = field(default_factory=StoreConfig)
    machine: MachineConfig = field(default_factory=MachineConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    messages: MessagesConfig = field(default_factory=MessagesConfig)

    @property
    def machine_name(self) -> str:
        return self.machine.name or socket.gethostname()


_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def _parse_interval(val) -> float:
    """解析时间间隔，支持 '3s'、'10m'、'1h'、'14d' 等简写格式。"""
    if isinstance(val, (int, float)) and not isinstance(val, bool):
        return val
    s = str(val).strip().lower()
    if s and s[-1] in _UNITS:
        return float(s[:-1]) * _UNITS[s[-1]]
    return float(s)


def load_config(path: str) -> AgentConfig:
    """从 YAML 文件加载 Agent 配置。

    Args:
        path: 配置文件路径。

    Returns:
        解析后的 AgentConfig 实例。

    Raises:
        FileNotFoundError: 配置文件不存在时抛出。
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(p) as f:
        data = yaml.safe_load(f) or {}

    cfg = AgentConfig()

    # 存储配置，URL 与 token 优先从环境变量读取
    st = data.get("store", {}) or {}
    cfg.store.url = os.environ.get("LABWATCH_STORE_URL", st.get("url", cfg.store.url))
    cfg.store.token = os.environ.get("LABWATCH_STORE_TOKEN", st.get("token", ""))
    cfg.store.namespace = st.get("namespace", cfg.store.namespace)

    m = data.get("machine", {}) or {}
    cfg.machine.name = str(m.get("name", "") or "")
    cfg.machine.group = str(m.get("group", "") or "")

    lp = data.get("loop", {}) or {}
    cfg.loop.interval = _parse_interval(lp.get("interval", cfg.loop.interval))
    cfg.loop.history_interval = _parse_interval(lp.get("history_interval", cfg.loop.history_interval))
    cfg.loop.disk_path = lp.get("disk_path", cfg.loop.disk_path)

    pol = data.get("policy", {}) or {}
    if "forbidden" in pol:
        cfg.policy.forbidden = [str(n).strip().lower() for n in pol.get("forbidden") or [] if str(n).strip()]
    cfg.policy.kill_cooldown = _parse_interval(pol.get("kill_cooldown", cfg.policy.kill_cooldown))

    msg = data.get("messages", {}) or {}
    cfg.messages.staleness = _parse_interval(msg.get("staleness", cfg.messages.staleness))
    cfg.messages.state_file = msg.get("state_file", cfg.messages.state_file)

    return cfg
