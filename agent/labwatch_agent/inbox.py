"""
消息接收模块。

轮询全局消息和本机分组的消息，按 Id + 时间戳去重：
- Id 与上次已读相同则跳过
- 时间戳早于上次已读消息则跳过（被覆盖的旧消息重放）
- 超过有效期的消息跳过（Agent 启动前很久写入的消息不再展示）

已读状态持久化到本地 JSON 文件，重启后不会重复展示；
每条消息展示后立即保存，只有"展示后、保存前崩溃"这一窗口可能导致重复。
"""
import json
import logging
import os
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, List, Optional

from labwatch_shared.channels import MessageChannel
from labwatch_shared.models import Message
from labwatch_shared.paths import normalize_group
from labwatch_shared.timeutil import parse_timestamp, to_iso, utcnow

logger = logging.getLogger(__name__)

GLOBAL_CHANNEL = "global"

MessageHandler = Callable[[str, Message], None]


def load_state(path: str) -> Dict[str, Dict[str, str]]:
    """从磁盘加载已读状态。"""
    try:
        with open(path, "r") as f:
            data = json.load(f)
        return data if isinstance(data, dict) else {}
    except (FileNotFoundError, json.JSONDecodeError):
        return {}


def save_state(path: str, state: Dict[str, Dict[str, str]]) -> None:
    """将已读状态持久化到磁盘。"""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    tmp = p.with_suffix(p.suffix + ".tmp")
    with open(tmp, "w") as f:
        json.dump(state, f)
    os.replace(tmp, p)


class MessageInbox:
    def __init__(
        self,
        channel: MessageChannel,
        state_file: str,
        staleness_seconds: float = 1800,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.channel = channel
        self.state_file = os.path.expanduser(state_file)
        self.staleness = timedelta(seconds=staleness_seconds)
        self._clock = clock
        self._state = load_state(self.state_file)
        self._handlers: List[MessageHandler] = []

    def add_handler(self, handler: MessageHandler) -> None:
        self._handlers.append(handler)

    def last_seen(self, channel: str) -> Optional[str]:
        return (self._state.get(channel) or {}).get("id")

    def _is_new(self, channel: str, message: Message) -> bool:
        seen = self._state.get(channel) or {}
        if message.id == seen.get("id"):
            return False
        sent_at = message.sent_at
        if sent_at is None:
            logger.debug(f"Skipping message {message.id} with invalid timestamp")
            return False
        if self._clock() - sent_at > self.staleness:
            logger.debug(f"Skipping stale message {message.id} on {channel}")
            return False
        seen_at = parse_timestamp(seen.get("timestamp"))
        if seen_at is not None and sent_at < seen_at:
            return False
        return True

    def _deliver(self, channel: str, message: Message) -> None:
        for handler in self._handlers:
            try:
                handler(channel, message)
            except Exception:
                logger.exception(f"Message handler failed for {message.id}")
        self._state[channel] = {"id": message.id, "timestamp": to_iso(message.sent_at)}
        try:
            save_state(self.state_file, self._state)
        except OSError as e:
            logger.warning(f"Failed to persist message state: {e}")

    async def check_global(self) -> Optional[Message]:
        """检查全局消息，有新消息时展示并返回。"""
        message = await self.channel.read_global()
        if message is not None and self._is_new(GLOBAL_CHANNEL, message):
            self._deliver(GLOBAL_CHANNEL, message)
            return message
        return None

    async def check_group(self, group: str) -> Optional[Message]:
        """检查分组消息，有新消息时展示并返回。"""
        group = normalize_group(group)
        channel = f"group:{group}"
        message = await self.channel.read_group(group)
        if message is not None and self._is_new(channel, message):
            self._deliver(channel, message)
            return message
        return None
