"""
机器快照与历史的存储访问层。

Agent 和监控端共用：读写当前快照、列出机群、追加/读取/删除历史点、
读写分组上课模式。存储失败以 StoreError 向上抛出，由调用方的循环边界处理。
"""
import asyncio
import logging
from typing import Optional

from pydantic import ValidationError

from labwatch_shared import paths
from labwatch_shared.models import HistoryPoint, MachineSnapshot
from labwatch_shared.store.base import RemoteStateStore

logger = logging.getLogger(__name__)


class MachineRepository:
    def __init__(self, store: RemoteStateStore):
        self.store = store

    async def get_current(self, pc_name: str) -> Optional[MachineSnapshot]:
        """读取当前快照；不存在或格式无效时返回 None。"""
        data = await self.store.get(paths.machine_current(pc_name))
        if data is None:
            return None
        try:
            return MachineSnapshot.from_store(data, pc_name)
        except (ValidationError, ValueError) as e:
            logger.warning(f"Invalid snapshot for {pc_name}: {e}")
            return None

    async def set_current(self, snapshot: MachineSnapshot) -> None:
        await self.store.set(paths.machine_current(snapshot.pc_name), snapshot.to_store())

    async def list_names(self) -> list[str]:
        return await self.store.keys(paths.MACHINES)

    async def list_current(self) -> dict[str, MachineSnapshot]:
        """读取全部机器的当前快照（并发），跳过缺失或无效的记录。"""
        names = await self.list_names()
        results = await asyncio.gather(*(self.get_current(n) for n in names))
        return {name: snap for name, snap in zip(names, results) if snap is not None}

    async def append_history(self, snapshot: MachineSnapshot) -> str:
        return await self.store.push(paths.machine_history(snapshot.pc_name), snapshot.to_store())

    async def read_history(self, pc_name: str) -> tuple[list[HistoryPoint], list[str]]:
        """读取历史点，返回 (有效历史点, 无效记录的键)。"""
        raw = await self.store.get(paths.machine_history(pc_name))
        points: list[HistoryPoint] = []
        invalid: list[str] = []
        if not isinstance(raw, dict):
            return points, invalid
        for key, data in raw.items():
            try:
                point = HistoryPoint(key=key, snapshot=MachineSnapshot.from_store(data, pc_name))
            except (ValidationError, ValueError):
                invalid.append(key)
                continue
            points.append(point)
        return points, invalid

    async def delete_history_point(self, pc_name: str, key: str) -> None:
        await self.store.delete(paths.join_path(paths.machine_history(pc_name), key))


class GroupPolicyStore:
    """分组上课模式（groups/{group}/classMode）。"""

    def __init__(self, store: RemoteStateStore):
        self.store = store

    async def get_class_mode(self, group: str) -> bool:
        value = await self.store.get(paths.class_mode(paths.normalize_group(group)))
        if isinstance(value, str):
            return value.strip().lower() == "true"
        return bool(value)

    async def set_class_mode(self, group: str, enabled: bool) -> None:
        await self.store.set(paths.class_mode(paths.normalize_group(group)), bool(enabled))
