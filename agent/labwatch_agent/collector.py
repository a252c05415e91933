"""
系统指标采集模块。

使用 psutil 采集 CPU 使用率、CPU 温度、内存、磁盘指标。
每个指标源独立读取：某个传感器失败只会让该项为 0，不影响其他指标，
保证每个 tick 都能发布心跳。
"""
import logging
from dataclasses import dataclass
from typing import Callable, Tuple, TypeVar

import psutil

logger = logging.getLogger(__name__)

T = TypeVar("T")

# 优先读取这些温度传感器（Intel / AMD / 树莓派）
CPU_SENSOR_NAMES = ("coretemp", "k10temp", "zenpower", "cpu_thermal", "cpu-thermal", "acpitz")


@dataclass
class MetricsSample:
    cpu_usage: float = 0.0
    cpu_temperature: float = 0.0
    ram_usage_percent: float = 0.0
    used_ram_mb: float = 0.0
    total_ram_mb: float = 0.0
    disk_usage_percent: float = 0.0


def _safe(name: str, reader: Callable[[], T], default: T) -> T:
    try:
        return reader()
    except Exception as e:
        logger.debug(f"Sensor {name} unavailable: {e}")
        return default


def read_cpu_percent(interval: float = 0.15) -> float:
    return round(psutil.cpu_percent(interval=interval), 1)


def read_cpu_temperature() -> float:
    """读取 CPU 温度（取最高值）。不支持的平台返回 0。"""
    if not hasattr(psutil, "sensors_temperatures"):
        return 0.0
    sensors = psutil.sensors_temperatures() or {}
    preferred = [sensors[n] for n in CPU_SENSOR_NAMES if n in sensors]
    entries = [e for group in (preferred or sensors.values()) for e in group]
    readings = [e.current for e in entries if e.current is not None and e.current > 0]
    return round(max(readings), 1) if readings else 0.0


def read_ram() -> Tuple[float, float, float]:
    """返回 (使用率 %, 已用 MB, 总量 MB)。"""
    mem = psutil.virtual_memory()
    total_mb = mem.total / (1024 * 1024)
    if total_mb <= 0:
        return 0.0, 0.0, 0.0
    used_mb = total_mb - mem.available / (1024 * 1024)
    return round(used_mb / total_mb * 100, 1), round(used_mb, 1), round(total_mb, 1)


def read_disk_percent(path: str) -> float:
    return round(psutil.disk_usage(path).percent, 1)


def collect_metrics(disk_path: str = "/") -> MetricsSample:
    """采集一次全部指标，单项失败时该项为 0。"""
    ram_percent, used_mb, total_mb = _safe("ram", read_ram, (0.0, 0.0, 0.0))
    return MetricsSample(
        cpu_usage=_safe("cpu", read_cpu_percent, 0.0),
        cpu_temperature=_safe("temperature", read_cpu_temperature, 0.0),
        ram_usage_percent=ram_percent,
        used_ram_mb=used_mb,
        total_ram_mb=total_mb,
        disk_usage_percent=_safe("disk", lambda: read_disk_percent(disk_path), 0.0),
    )
