"""
时间工具模块。

全系统统一使用 UTC：发布时间戳为带 +00:00 偏移的 ISO-8601 字符串，
解析时不带偏移的时间戳一律按 UTC 处理。
"""
import asyncio
import re
from datetime import datetime, timezone
from typing import Optional

# 部分客户端写入 7 位小数秒（如 .NET 的 "o" 格式），fromisoformat 只接受 6 位
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


def utcnow() -> datetime:
    """当前 UTC 时间（带时区）。"""
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """将时间转为 UTC ISO-8601 字符串，naive 时间视为 UTC。"""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def parse_timestamp(raw) -> Optional[datetime]:
    """解析 ISO-8601 时间戳，失败或为"零值"时返回 None。

    零值指 .NET 的 DateTime.MinValue（0001-01-01），历史数据中代表"未知"。
    """
    if isinstance(raw, datetime):
        dt = raw
    elif isinstance(raw, str):
        s = raw.strip()
        if not s:
            return None
        if s.endswith("Z") or s.endswith("z"):
            s = s[:-1] + "+00:00"
        s = _FRACTION_RE.sub(r"\1", s)
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            return None
    else:
        return None

    if dt.year <= 1:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def age_seconds(raw, now: Optional[datetime] = None) -> Optional[float]:
    """时间戳距今秒数（未来时间为负数），无法解析时返回 None。"""
    dt = parse_timestamp(raw)
    if dt is None:
        return None
    now = now or utcnow()
    return (now - dt).total_seconds()


def relative_time(raw, now: Optional[datetime] = None) -> str:
    """生成相对时间描述，用于状态行与机器列表。"""
    age = age_seconds(raw, now)
    if age is None:
        return "fecha inválida"
    if age < 60:
        return "hace unos segundos"
    if age < 3600:
        minutes = int(age // 60)
        return f"hace {minutes} {'minuto' if minutes == 1 else 'minutos'}"
    if age < 86400:
        hours = int(age // 3600)
        return f"hace {hours} {'hora' if hours == 1 else 'horas'}"
    days = int(age // 86400)
    return f"hace {days} {'día' if days == 1 else 'días'}"


async def wait_or_stop(stop_event: asyncio.Event, seconds: float) -> bool:
    """等待指定秒数或停止事件，返回 True 表示已请求停止。"""
    if stop_event.is_set():
        return True
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=max(seconds, 0))
    except asyncio.TimeoutError:
        return False
    return True
