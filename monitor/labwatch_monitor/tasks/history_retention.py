"""
历史数据保留定时任务。

每小时按保留期清理一次机器历史点。
"""
import asyncio

from labwatch_monitor.services.history import HistoryService
from labwatch_monitor.tasks.cleanup import periodic

HISTORY_CLEANUP_INTERVAL = 3600


async def history_retention_loop(service: HistoryService, stop_event: asyncio.Event,
                                 interval: float = HISTORY_CLEANUP_INTERVAL) -> None:
    await periodic("History retention", interval, service.cleanup, stop_event)
