"""
监控端配置模块 (Monitor Configuration Module)

使用 Pydantic Settings 管理监控端的所有配置项，支持从 .env 文件和环境变量读取
（前缀 LABWATCH_，如 LABWATCH_STORE_URL）。
配置对象在启动时构造并注入各组件，不依赖进程级全局状态。

Uses Pydantic Settings for all monitor configuration, read from .env and
LABWATCH_-prefixed environment variables. The settings object is built at
startup and injected into components.
"""
import socket

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """监控端配置类 (Monitor Settings)"""

    # 远程存储 (Remote Store)
    store_url: str = "redis://localhost:6379/0"  # memory:// / redis:// / https://<firebase-db>
    store_token: str = ""  # Firebase auth token
    store_namespace: str = "labwatch"  # Redis 键前缀

    # 身份 (Identity)
    identity: str = ""  # 本监控端机器名，为空时使用主机名
    monitor_identities: str = ""  # 指定的监控端机器名，逗号分隔

    # 汇总与判定 (Reconciliation)
    reconcile_interval: float = 3.0  # 汇总周期（秒）
    online_threshold: float = 30.0  # 心跳超过该秒数视为离线
    high_temperature: float = 80.0  # 高温告警阈值（°C）

    # 消息 (Messages)
    message_staleness: float = 1800.0  # 消息有效期（秒）
    message_cleanup_interval: float = 300.0  # 过期消息清理周期（秒）

    # 通知 (Notifications)
    notification_retention_hours: float = 48.0  # 通知保留时长（小时）
    notification_purge_interval: float = 3600.0  # 通知清理周期（秒）
    webhook_url: str = ""  # 新通知转发地址，为空时不转发

    # 历史 (History)
    history_retention_days: float = 14.0  # 历史点保留天数
    history_cleanup_interval: float = 3600.0  # 历史清理周期（秒）

    model_config = SettingsConfigDict(env_prefix="LABWATCH_", env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @field_validator("reconcile_interval", "online_threshold", "message_staleness", "history_retention_days")
    @classmethod
    def _positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @property
    def machine_identity(self) -> str:
        return self.identity or socket.gethostname()

    @property
    def monitor_identity_list(self) -> list[str]:
        return [s.strip() for s in self.monitor_identities.split(",") if s.strip()]
