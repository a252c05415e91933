"""
Redis 存储实现。

每个叶子路径对应一个 Redis 键（{namespace}:{path}），值为 JSON 编码。
dict 值写入时按路径展开为多个叶子键；每个中间节点维护一个子节点集合
（{namespace}#children:{path}），读取子树和列出子键都沿集合逐层展开，
开销只与子树大小有关，不扫描整个键空间。
写入在一个 MULTI/EXEC 管道中完成。
"""
import json
import logging
from typing import Any, Dict, Iterable, Iterator, Optional, Set

import redis.asyncio as redis
from redis.exceptions import RedisError

from labwatch_shared.exceptions import StoreError
from labwatch_shared.paths import join_path, split_path
from labwatch_shared.store.base import RemoteStateStore, new_push_key

logger = logging.getLogger(__name__)


def _flatten(path: str, value: Any) -> Iterator[tuple[str, Any]]:
    """把 dict 值展开为 (叶子路径, 值)；空 dict 不产生任何键。"""
    if isinstance(value, dict):
        for k, v in value.items():
            yield from _flatten(join_path(path, str(k)), v)
    elif value is not None:
        yield path, value


def _insert(tree: dict, parts: list[str], value: Any) -> None:
    node = tree
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = value


def _index_entries(leaf_paths: Iterable[str]) -> Dict[str, Set[str]]:
    """叶子路径的全部祖先 -> 子节点名（根节点为空串）。"""
    entries: Dict[str, Set[str]] = {}
    for leaf in leaf_paths:
        parts = split_path(leaf)
        for i in range(len(parts)):
            entries.setdefault("/".join(parts[:i]), set()).add(parts[i])
    return entries


class RedisStore(RemoteStateStore):
    """基于 redis.asyncio 的层级存储。"""

    def __init__(self, url: str = "redis://localhost:6379/0", namespace: str = "labwatch",
                 client: Optional[redis.Redis] = None) -> None:
        self.url = url
        self.namespace = namespace
        self._client = client

    async def _get_client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(self.url, decode_responses=True)
        return self._client

    def _key(self, path: str) -> str:
        return f"{self.namespace}:{join_path(path)}"

    def _index(self, path: str) -> str:
        return f"{self.namespace}#children:{join_path(path)}"

    async def _walk(self, client: redis.Redis, path: str) -> tuple[Dict[str, str], list[str]]:
        """
        沿子节点集合逐层展开 path 下的子树。

        返回 (叶子路径 -> 原始 JSON, 途经的子节点集合键)。每层一次
        SMEMBERS 管道加一次 MGET。
        """
        leaves: Dict[str, str] = {}
        index_keys: list[str] = []
        level = [join_path(path)]
        while level:
            pipe = client.pipeline(transaction=False)
            for node in level:
                pipe.smembers(self._index(node))
            children_per_node = await pipe.execute()

            candidates = []
            for node, children in zip(level, children_per_node):
                if children:
                    index_keys.append(self._index(node))
                    candidates.extend(join_path(node, c) for c in sorted(children))
            if not candidates:
                break

            values = await client.mget([self._key(p) for p in candidates])
            level = []
            for candidate, raw in zip(candidates, values):
                if raw is None:
                    # 没有叶子值的是中间节点，下一层继续展开
                    level.append(candidate)
                else:
                    leaves[candidate] = raw
        return leaves, index_keys

    async def get(self, path: str) -> Any:
        try:
            client = await self._get_client()
            raw = await client.get(self._key(path))
            if raw is not None:
                return json.loads(raw)

            leaves, _ = await self._walk(client, path)
            if not leaves:
                return None
            depth = len(split_path(path))
            tree: dict = {}
            for leaf, raw_value in leaves.items():
                _insert(tree, split_path(leaf)[depth:], json.loads(raw_value))
            return tree
        except (RedisError, OSError) as e:
            raise StoreError(f"Redis read failed: {e}", path=path) from e
        except ValueError as e:
            raise StoreError(f"Invalid JSON in store: {e}", path=path) from e

    async def set(self, path: str, value: Any) -> None:
        parts = split_path(path)
        if not parts:
            raise StoreError("Root path is not addressable", path=path)
        try:
            new_leaves = list(_flatten(join_path(path), value))
            mapping = {self._key(p): json.dumps(v) for p, v in new_leaves}
        except (TypeError, ValueError) as e:
            raise StoreError(f"Value is not JSON serializable: {e}", path=path) from e
        if not mapping:
            await self.delete(path)
            return

        try:
            client = await self._get_client()
            old_leaves, old_index = await self._walk(client, path)
            stale = [self._key(path)] + [self._key(p) for p in old_leaves] + old_index
            # 祖先若是叶子值，会被新的子树替换
            stale += [self._key("/".join(parts[:i])) for i in range(1, len(parts))]

            pipe = client.pipeline(transaction=True)
            pipe.delete(*stale)
            pipe.mset(mapping)
            for parent, children in _index_entries(p for p, _ in new_leaves).items():
                pipe.sadd(self._index(parent), *sorted(children))
            await pipe.execute()
        except (RedisError, OSError) as e:
            raise StoreError(f"Redis write failed: {e}", path=path) from e

    async def push(self, path: str, value: Any) -> str:
        key = new_push_key()
        await self.set(join_path(path, key), value)
        return key

    async def delete(self, path: str) -> None:
        parts = split_path(path)
        if not parts:
            raise StoreError("Root path is not addressable", path=path)
        try:
            client = await self._get_client()
            leaves, index_keys = await self._walk(client, path)

            pipe = client.pipeline(transaction=True)
            pipe.delete(self._key(path), *[self._key(p) for p in leaves], *index_keys)
            pipe.srem(self._index("/".join(parts[:-1])), parts[-1])
            await pipe.execute()

            # 子节点集合为空时 Redis 会删除该键，逐级把空的祖先从上一级摘掉
            for i in range(len(parts) - 1, 0, -1):
                if await client.scard(self._index("/".join(parts[:i]))):
                    break
                await client.srem(self._index("/".join(parts[:i - 1])), parts[i - 1])
        except (RedisError, OSError) as e:
            raise StoreError(f"Redis delete failed: {e}", path=path) from e

    async def keys(self, path: str) -> list[str]:
        try:
            client = await self._get_client()
            return sorted(await client.smembers(self._index(path)))
        except (RedisError, OSError) as e:
            raise StoreError(f"Redis read failed: {e}", path=path) from e

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
