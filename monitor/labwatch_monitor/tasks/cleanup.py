"""
消息与通知清理任务 (Message and Notification Cleanup Tasks)

- 每 5 分钟删除超过有效期的全局消息和分组消息
- 每小时删除超过保留期（默认 2 天）的通知

Periodic cleanup of stale broadcast messages and old notifications.
"""
import asyncio
import logging
from typing import Awaitable, Callable

from labwatch_shared import paths
from labwatch_shared.channels import MessageChannel
from labwatch_shared.store.base import RemoteStateStore
from labwatch_shared.timeutil import wait_or_stop
from labwatch_monitor.services.notifications import NotificationEngine

logger = logging.getLogger(__name__)

# 清理间隔（秒）
MESSAGE_CLEANUP_INTERVAL = 300
NOTIFICATION_PURGE_INTERVAL = 3600


async def periodic(name: str, interval: float, job: Callable[[], Awaitable], stop_event: asyncio.Event) -> None:
    """
    周期任务主循环

    先等待一个周期再执行；单次失败只记录日志，下一周期重试。
    """
    logger.info(f"{name} task started (interval {interval}s)")
    while not await wait_or_stop(stop_event, interval):
        try:
            await job()
        except asyncio.CancelledError:
            logger.info(f"{name} task cancelled")
            raise
        except Exception as e:
            logger.error(f"{name} task error: {e}", exc_info=True)
    logger.info(f"{name} task stopped")


async def clean_stale_messages(store: RemoteStateStore, max_age_seconds: float) -> int:
    """删除过期的全局消息和所有分组消息"""
    groups = await store.keys(paths.LAB_MESSAGES)
    removed = await MessageChannel(store).clean_stale(groups, max_age_seconds)
    if removed:
        logger.info(f"Removed {removed} stale messages")
    return removed


async def message_cleanup_loop(store: RemoteStateStore, max_age_seconds: float, stop_event: asyncio.Event,
                               interval: float = MESSAGE_CLEANUP_INTERVAL) -> None:
    await periodic("Message cleanup", interval,
                   lambda: clean_stale_messages(store, max_age_seconds), stop_event)


async def notification_purge_loop(engine: NotificationEngine, stop_event: asyncio.Event,
                                  interval: float = NOTIFICATION_PURGE_INTERVAL) -> None:
    async def _purge():
        engine.purge()

    await periodic("Notification purge", interval, _purge, stop_event)
