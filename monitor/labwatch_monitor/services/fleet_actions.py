"""
操作员动作服务。

改名、改组、切换分组上课模式、下发/清除命令、发送全局/分组消息。
每个动作先校验输入，失败时抛出 ActionError。

改名、改组、上课模式和消息都写入存储，由运行中的汇总观察后通知；
命令执行后即被 Agent 删除，下发命令的通知写入传入的通知引擎
（没有引擎时只记录日志）。
"""
import logging
from typing import Optional

from labwatch_shared import paths
from labwatch_shared.channels import KNOWN_COMMANDS, CommandChannel, MessageChannel
from labwatch_shared.exceptions import ActionError
from labwatch_shared.machines import GroupPolicyStore, MachineRepository
from labwatch_shared.models import Message, MachineSnapshot
from labwatch_shared.store.base import RemoteStateStore

from labwatch_monitor.services import notifications as n

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 500
MAX_LABEL_LENGTH = 64


def _clean_label(value: Optional[str], what: str) -> str:
    label = (value or "").strip()
    if not label:
        raise ActionError(f"{what} must not be empty")
    if len(label) > MAX_LABEL_LENGTH:
        raise ActionError(f"{what} is longer than {MAX_LABEL_LENGTH} characters")
    if "/" in label:
        raise ActionError(f"{what} must not contain '/'")
    return label


def _clean_text(text: Optional[str]) -> str:
    body = (text or "").strip()
    if not body:
        raise ActionError("message text must not be empty")
    if len(body) > MAX_MESSAGE_LENGTH:
        raise ActionError(f"message text is longer than {MAX_MESSAGE_LENGTH} characters")
    return body


class FleetActions:
    """监控端对机群执行的手动操作。"""

    def __init__(self, store: RemoteStateStore, sender: str,
                 engine: Optional[n.NotificationEngine] = None):
        self.store = store
        self.engine = engine
        self.sender = sender
        self.machines = MachineRepository(store)
        self.group_policy = GroupPolicyStore(store)
        self.commands = CommandChannel(store)
        self.messages = MessageChannel(store)

    async def _require_machine(self, pc_name: str) -> MachineSnapshot:
        snapshot = await self.machines.get_current(pc_name)
        if snapshot is None:
            raise ActionError(f"unknown machine: {pc_name}")
        return snapshot

    async def rename(self, pc_name: str, nickname: str) -> MachineSnapshot:
        """修改显示名。只写 Nickname 字段，Agent 发布前会合并该字段。"""
        nickname = _clean_label(nickname, "nickname")
        snapshot = await self._require_machine(pc_name)
        await self.store.set(paths.join_path(paths.machine_current(pc_name), "Nickname"), nickname)
        logger.info(f"Renamed {pc_name} to {nickname!r}")
        return snapshot.model_copy(update={"nickname": nickname})

    async def regroup(self, pc_name: str, group: str) -> MachineSnapshot:
        group = paths.normalize_group(_clean_label(group, "group"))
        snapshot = await self._require_machine(pc_name)
        await self.store.set(paths.join_path(paths.machine_current(pc_name), "Group"), group)
        logger.info(f"Moved {pc_name} from {snapshot.group} to {group}")
        return snapshot.model_copy(update={"group": group})

    async def set_class_mode(self, group: str, enabled: bool) -> None:
        group = paths.normalize_group(_clean_label(group, "group"))
        await self.group_policy.set_class_mode(group, enabled)
        logger.info(f"Class mode for {group} set to {enabled}")

    async def send_command(self, pc_name: str, command: str) -> None:
        command = (command or "").strip().upper()
        if command not in KNOWN_COMMANDS:
            raise ActionError(f"unknown command: {command or '(empty)'}")
        snapshot = await self._require_machine(pc_name)
        await self.commands.send(pc_name, command)
        if self.engine is not None:
            self.engine.notify(
                snapshot.group, n.TITLE_COMMAND,
                f"{command} enviado a {snapshot.display_name}", entity=pc_name,
            )
        logger.info(f"Command {command} sent to {pc_name}")

    async def clear_command(self, pc_name: str) -> Optional[str]:
        """删除待执行命令，返回被删除的命令（没有则为 None）。"""
        pending = await self.commands.pending(pc_name)
        if pending is not None:
            await self.commands.send(pc_name, None)
            logger.info(f"Cleared pending command {pending} for {pc_name}")
        return pending

    async def broadcast(self, text: str) -> Message:
        message = await self.messages.send_global(_clean_text(text), self.sender)
        logger.info(f"Global message {message.id} sent")
        return message

    async def message_group(self, group: str, text: str) -> Message:
        group = paths.normalize_group(_clean_label(group, "group"))
        message = await self.messages.send_group(group, _clean_text(text), self.sender)
        logger.info(f"Message {message.id} sent to {group}")
        return message
