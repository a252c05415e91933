"""
命令与消息通道。

CommandChannel：每台机器一个命令槽（commands/{pc}），最多一条待执行命令，
重复发送直接覆盖（最后写入者胜出），Agent 执行后删除即确认。

MessageChannel：全局消息（global_message）和分组消息（lab_messages/{group}），
每次发送覆盖旧消息；Agent 通过 Id + 时间戳去重，保证每条消息最多送达一次。
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, Optional

from pydantic import ValidationError

from labwatch_shared import paths
from labwatch_shared.models import Message
from labwatch_shared.store.base import RemoteStateStore
from labwatch_shared.timeutil import parse_timestamp, utcnow

logger = logging.getLogger(__name__)

# 命令集合是封闭的
KILL_FORBIDDEN = "KILL_FORBIDDEN"
KNOWN_COMMANDS = frozenset({KILL_FORBIDDEN})


class CommandChannel:
    """单槽命令通道：Absent -> Pending -> (执行) -> Absent。"""

    def __init__(self, store: RemoteStateStore):
        self.store = store

    async def send(self, pc_name: str, command: Optional[str]) -> None:
        """写入命令；command 为 None 时删除命令槽（确认）。"""
        path = paths.command_slot(pc_name)
        if command is None:
            await self.store.delete(path)
        else:
            await self.store.set(path, command)

    async def pending(self, pc_name: str) -> Optional[str]:
        """读取待执行命令。非字符串内容按其文本返回，由调用方判定为未知命令。"""
        value = await self.store.get(paths.command_slot(pc_name))
        if value is None:
            return None
        if isinstance(value, str):
            return value.strip() or None
        return str(value)

    async def acknowledge(self, pc_name: str) -> None:
        await self.send(pc_name, None)


class MessageChannel:
    """全局 / 分组消息的单槽通道。"""

    def __init__(self, store: RemoteStateStore):
        self.store = store

    async def _send(self, path: str, text: str, sender: str) -> Message:
        message = Message.create(text, sender)
        await self.store.set(path, message.to_store())
        return message

    async def send_global(self, text: str, sender: str) -> Message:
        return await self._send(paths.GLOBAL_MESSAGE, text, sender)

    async def send_group(self, group: str, text: str, sender: str) -> Message:
        return await self._send(paths.lab_message(paths.normalize_group(group)), text, sender)

    async def _read(self, path: str) -> Optional[Message]:
        data = await self.store.get(path)
        if data is None:
            return None
        if not isinstance(data, dict):
            logger.warning(f"Ignoring malformed message at {path}")
            return None
        try:
            return Message.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed message at {path}: {e}")
            return None

    async def read_global(self) -> Optional[Message]:
        return await self._read(paths.GLOBAL_MESSAGE)

    async def read_group(self, group: str) -> Optional[Message]:
        return await self._read(paths.lab_message(paths.normalize_group(group)))

    async def read_groups(self) -> Dict[str, Message]:
        """读取全部分组消息，忽略格式错误的条目。"""
        data = await self.store.get(paths.LAB_MESSAGES)
        if not isinstance(data, dict):
            return {}
        messages = {}
        for group, raw in data.items():
            try:
                messages[group] = Message.model_validate(raw)
            except ValidationError as e:
                logger.warning(f"Ignoring malformed message for {group}: {e}")
        return messages

    async def clean_stale(self, groups: Iterable[str], max_age_seconds: float,
                          now: Optional[datetime] = None) -> int:
        """删除超过有效期（或时间戳无效）的全局消息和分组消息，返回删除数量。"""
        now = now or utcnow()
        cutoff = now - timedelta(seconds=max_age_seconds)
        slots = [paths.GLOBAL_MESSAGE] + [paths.lab_message(paths.normalize_group(g)) for g in groups]
        removed = 0
        for path in dict.fromkeys(slots):
            data = await self.store.get(path)
            if data is None:
                continue
            sent_at = parse_timestamp(data.get("Timestamp")) if isinstance(data, dict) else None
            if sent_at is None or sent_at < cutoff:
                await self.store.delete(path)
                removed += 1
        return removed
