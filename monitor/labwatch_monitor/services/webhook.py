"""
Webhook 转发模块。

把每条新通知以 JSON POST 到配置的 webhook_url，失败时重试，
最终失败只记录日志，不影响汇总循环。
"""
import asyncio
import logging
from typing import Optional, Set

import httpx

from labwatch_monitor.services.notifications import Notification

logger = logging.getLogger(__name__)

# 发送最大重试次数
MAX_RETRIES = 3


class WebhookForwarder:
    """通知 Webhook 转发器"""

    def __init__(self, url: str, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._pending: Set[asyncio.Task] = set()

    async def send(self, notification: Notification) -> bool:
        """发送一条通知，返回是否成功。"""
        payload = notification.model_dump(by_alias=True, mode="json")
        error = ""
        for attempt in range(MAX_RETRIES):
            try:
                resp = await self._client.post(url=self.url, json=payload)
                if 200 <= resp.status_code < 300:
                    return True
                error = f"HTTP {resp.status_code}"
            except httpx.HTTPError as e:
                error = str(e)[:500]
            logger.debug(f"Webhook attempt {attempt + 1} failed: {error}")
        logger.warning(f"Webhook delivery failed for notification {notification.id}: {error}")
        return False

    def __call__(self, notification: Notification) -> None:
        """作为 NotificationEngine 监听器使用：在后台任务中发送。"""
        task = asyncio.get_running_loop().create_task(self.send(notification))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def close(self) -> None:
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        await self._client.aclose()
