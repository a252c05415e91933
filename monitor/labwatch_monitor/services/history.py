"""
历史数据服务 (Machine History Service)

读取机器历史点（图表数据源），并按保留期清理过期历史点，
防止存储无限增长。时间戳无法解析或为零值的历史点视为可删除。

Reads machine history points and sweeps points older than the retention
window. Points with unparseable or zero timestamps are deleted as well.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from labwatch_shared.exceptions import StoreError
from labwatch_shared.machines import MachineRepository
from labwatch_shared.models import HistoryPoint
from labwatch_shared.store.base import RemoteStateStore
from labwatch_shared.timeutil import utcnow

logger = logging.getLogger(__name__)

# 默认保留 14 天
DEFAULT_RETENTION_DAYS = 14


@dataclass
class CleanupStats:
    """一次清理的统计"""
    expired: Dict[str, int] = field(default_factory=dict)
    invalid: Dict[str, int] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return sum(self.expired.values()) + sum(self.invalid.values())


class HistoryService:
    """历史点读取与保留期清理"""

    def __init__(
        self,
        store: RemoteStateStore,
        retention_days: float = DEFAULT_RETENTION_DAYS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.machines = MachineRepository(store)
        self.retention = timedelta(days=retention_days)
        self.clock = clock

    def cutoff(self, now: Optional[datetime] = None) -> datetime:
        return (now or self.clock()) - self.retention

    async def history(self, pc_name: str, since: Optional[datetime] = None) -> List[HistoryPoint]:
        """
        读取一台机器的历史点，按时间升序返回。

        Args:
            pc_name: 机器名
            since: 起始时间，默认为保留期起点

        Returns:
            List[HistoryPoint]: 时间戳有效且不早于 since 的历史点
        """
        since = since or self.cutoff()
        points, _ = await self.machines.read_history(pc_name)
        valid = [p for p in points if p.timestamp is not None and p.timestamp >= since]
        return sorted(valid, key=lambda p: (p.timestamp, p.key))

    async def cleanup_machine(self, pc_name: str, cutoff: datetime, stats: CleanupStats) -> None:
        points, invalid = await self.machines.read_history(pc_name)
        unparseable = [p.key for p in points if p.timestamp is None]
        expired = [p.key for p in points if p.timestamp is not None and p.timestamp < cutoff]

        for key in invalid + unparseable + expired:
            await self.machines.delete_history_point(pc_name, key)

        if expired:
            stats.expired[pc_name] = len(expired)
        if invalid or unparseable:
            stats.invalid[pc_name] = len(invalid) + len(unparseable)

    async def cleanup(self, now: Optional[datetime] = None) -> CleanupStats:
        """清理全部机器的过期历史点。单台机器失败不影响其他机器。"""
        cutoff = self.cutoff(now)
        stats = CleanupStats()
        for pc_name in await self.machines.list_names():
            try:
                await self.cleanup_machine(pc_name, cutoff, stats)
            except StoreError as e:
                logger.warning(f"History cleanup failed for {pc_name}: {e}")
                stats.errors.append(f"{pc_name}: {e}")

        logger.info(
            f"History cleanup completed. Removed {stats.total} points older than "
            f"{cutoff.isoformat()}, details: expired={stats.expired} invalid={stats.invalid}"
        )
        return stats
