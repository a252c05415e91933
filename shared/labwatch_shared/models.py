"""
共享数据模型。

使用 Pydantic 定义 Agent 与监控端通过远程存储交换的记录。
线上字段名保持 PascalCase（PCName、CpuUsage ...），与已有存储内容兼容；
Python 侧使用 snake_case 属性。
"""
from __future__ import annotations

import math
import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from labwatch_shared.paths import DEFAULT_GROUP, normalize_group
from labwatch_shared.timeutil import parse_timestamp, to_iso, utcnow


def _coerce_metric(value: Any) -> float:
    """指标值统一为非负浮点数，无法解析时视为 0（未知）。"""
    if isinstance(value, bool):
        return float(value)
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(number) or math.isinf(number) or number < 0:
        return 0.0
    return number


def _coerce_percent(value: Any) -> float:
    return min(_coerce_metric(value), 100.0)


class MachineSnapshot(BaseModel):
    """单台机器的当前状态快照（machines/{pc}/current）。"""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    pc_name: str = Field(alias="PCName")
    nickname: str = Field(default="", alias="Nickname")
    group: str = Field(default=DEFAULT_GROUP, alias="Group")
    cpu_usage: float = Field(default=0.0, alias="CpuUsage")
    cpu_temperature: float = Field(default=0.0, alias="CpuTemperature")
    ram_usage_percent: float = Field(default=0.0, alias="RamUsagePercent")
    total_ram_mb: float = Field(default=0.0, alias="TotalRamMB")
    used_ram_mb: float = Field(default=0.0, alias="UsedRamMB")
    disk_usage_percent: float = Field(default=0.0, alias="DiskUsagePercent")
    is_online: bool = Field(default=False, alias="IsOnline")
    last_update: str = Field(default="", alias="LastUpdate")
    forbidden_processes: list[str] = Field(default_factory=list, alias="ForbiddenProcesses")
    class_mode: bool = Field(default=False, alias="ClassMode")
    clock_issue: bool = Field(default=False, alias="ClockIssue")

    @field_validator("pc_name", mode="before")
    @classmethod
    def _check_name(cls, v):
        name = str(v or "").strip()
        if not name:
            raise ValueError("PCName must not be empty")
        return name

    @field_validator("nickname", "last_update", mode="before")
    @classmethod
    def _none_to_empty(cls, v):
        return "" if v is None else str(v)

    @field_validator("group", mode="before")
    @classmethod
    def _normalize_group(cls, v):
        return normalize_group(v)

    @field_validator("cpu_usage", "ram_usage_percent", "disk_usage_percent", mode="before")
    @classmethod
    def _clamp_percent(cls, v):
        return _coerce_percent(v)

    @field_validator("cpu_temperature", "total_ram_mb", "used_ram_mb", mode="before")
    @classmethod
    def _clamp_metric(cls, v):
        return _coerce_metric(v)

    @field_validator("is_online", "class_mode", "clock_issue", mode="before")
    @classmethod
    def _none_to_false(cls, v):
        return False if v is None else v

    @field_validator("forbidden_processes", mode="before")
    @classmethod
    def _normalize_processes(cls, v):
        if v is None:
            return []
        # Firebase 会把稀疏数组存成 {"0": "...", "1": "..."}
        if isinstance(v, dict):
            v = list(v.values())
        if isinstance(v, str):
            v = [v]
        names = {str(p).strip().lower() for p in v if p is not None and str(p).strip()}
        return sorted(names)

    @property
    def display_name(self) -> str:
        return self.nickname or self.pc_name

    @property
    def timestamp(self) -> Optional[datetime]:
        return parse_timestamp(self.last_update)

    def to_store(self) -> dict:
        """序列化为存储格式（PascalCase 字段）。"""
        return self.model_dump(by_alias=True)

    @classmethod
    def from_store(cls, data: Any, pc_name: str = "") -> "MachineSnapshot":
        """从存储数据构造快照，缺少 PCName 时使用路径中的机器名。"""
        if not isinstance(data, dict):
            raise ValueError(f"snapshot must be an object, got {type(data).__name__}")
        if pc_name and not data.get("PCName"):
            data = {**data, "PCName": pc_name}
        return cls.model_validate(data)


class HistoryPoint(BaseModel):
    """追加写入的历史点：快照的不可变副本 + 存储生成的键。"""

    model_config = ConfigDict(frozen=True)

    key: str
    snapshot: MachineSnapshot

    @property
    def timestamp(self) -> Optional[datetime]:
        return self.snapshot.timestamp


class Message(BaseModel):
    """全局或分组消息（global_message / lab_messages/{group}）。"""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(alias="Id")
    sender: str = Field(default="", alias="Sender")
    text: str = Field(default="", alias="Text")
    timestamp: str = Field(default="", alias="Timestamp")

    @field_validator("id", mode="before")
    @classmethod
    def _check_id(cls, v):
        mid = str(v or "").strip()
        if not mid:
            raise ValueError("message Id must not be empty")
        return mid

    @field_validator("sender", "text", "timestamp", mode="before")
    @classmethod
    def _none_to_empty(cls, v):
        return "" if v is None else str(v)

    @classmethod
    def create(cls, text: str, sender: str, now: Optional[datetime] = None) -> "Message":
        return cls(
            id=uuid.uuid4().hex,
            sender=sender,
            text=text,
            timestamp=to_iso(now or utcnow()),
        )

    @property
    def sent_at(self) -> Optional[datetime]:
        return parse_timestamp(self.timestamp)

    def to_store(self) -> dict:
        return self.model_dump(by_alias=True)
