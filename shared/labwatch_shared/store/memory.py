"""进程内存储实现，用于测试和单机演示。"""
import copy
from typing import Any

from labwatch_shared.exceptions import StoreError
from labwatch_shared.paths import join_path, split_path
from labwatch_shared.store.base import RemoteStateStore, new_push_key


class MemoryStore(RemoteStateStore):
    """嵌套 dict 实现的存储树。读写都做深拷贝，调用方拿到的数据与存储互不影响。"""

    def __init__(self, initial: dict | None = None) -> None:
        self._root: dict = copy.deepcopy(initial) if initial else {}

    def _parts(self, path: str) -> list[str]:
        parts = split_path(path)
        if not parts:
            raise StoreError("Root path is not addressable", path=path)
        return parts

    async def get(self, path: str) -> Any:
        node: Any = self._root
        for part in split_path(path):
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return copy.deepcopy(node)

    async def set(self, path: str, value: Any) -> None:
        if value is None or value == {}:
            await self.delete(path)
            return
        parts = self._parts(path)
        node = self._root
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                # 祖先是叶子值时被子树替换
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = copy.deepcopy(value)

    async def push(self, path: str, value: Any) -> str:
        key = new_push_key()
        await self.set(join_path(path, key), value)
        return key

    async def delete(self, path: str) -> None:
        parts = self._parts(path)
        trail = []
        node: Any = self._root
        for part in parts[:-1]:
            if not isinstance(node, dict) or part not in node:
                return
            trail.append((node, part))
            node = node[part]
        if isinstance(node, dict):
            node.pop(parts[-1], None)
        # 清理空的祖先节点
        for parent, part in reversed(trail):
            if parent[part] == {}:
                del parent[part]
            else:
                break

    async def keys(self, path: str) -> list[str]:
        node = await self.get(path)
        if not isinstance(node, dict):
            return []
        return sorted(node)

    def dump(self) -> dict:
        """返回整棵存储树的副本（调试与测试用）。"""
        return copy.deepcopy(self._root)
