"""
远程状态存储接口。

按层级路径寻址的键值存储：get / set（覆盖）/ push（追加并生成键）/ delete，
以及 keys（浅层列出子键）。每条路径最后写入者胜出，跨路径无事务。
值为 JSON 兼容数据（dict / list / str / 数字 / bool）；set(path, None) 等价于删除。
"""
import abc
import random
import threading
import time
from typing import Any, Optional

# Firebase push ID 字符表，按 ASCII 顺序排列，保证键按时间字典序递增
PUSH_CHARS = "-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz"


class PushKeyGenerator:
    """生成按时间排序的 20 字符追加键：8 位毫秒时间戳 + 12 位随机后缀。

    同一毫秒内的多次调用对随机后缀递增，保证单调。
    """

    def __init__(self) -> None:
        self._last_ms = -1
        self._last_rand = [0] * 12
        self._lock = threading.Lock()

    def __call__(self, now_ms: Optional[int] = None) -> str:
        if now_ms is None:
            now_ms = int(time.time() * 1000)
        with self._lock:
            duplicate = now_ms == self._last_ms
            self._last_ms = now_ms

            ts_chars = []
            t = now_ms
            for _ in range(8):
                ts_chars.append(PUSH_CHARS[t % 64])
                t //= 64
            key = "".join(reversed(ts_chars))

            if not duplicate:
                self._last_rand = [random.randrange(64) for _ in range(12)]
            else:
                i = 11
                while i >= 0 and self._last_rand[i] == 63:
                    self._last_rand[i] = 0
                    i -= 1
                if i >= 0:
                    self._last_rand[i] += 1
            return key + "".join(PUSH_CHARS[r] for r in self._last_rand)


new_push_key = PushKeyGenerator()


class RemoteStateStore(abc.ABC):
    """远程状态存储抽象基类。所有失败都以 StoreError 抛出。"""

    @abc.abstractmethod
    async def get(self, path: str) -> Any:
        """读取路径上的值（含子树），不存在时返回 None。"""

    @abc.abstractmethod
    async def set(self, path: str, value: Any) -> None:
        """覆盖写入路径上的值（整棵子树被替换）。"""

    @abc.abstractmethod
    async def push(self, path: str, value: Any) -> str:
        """在路径下追加一个子节点，返回生成的键。"""

    @abc.abstractmethod
    async def delete(self, path: str) -> None:
        """删除路径及其子树，不存在时静默返回。"""

    @abc.abstractmethod
    async def keys(self, path: str) -> list[str]:
        """浅层列出路径下的子键（已排序）。"""

    async def close(self) -> None:
        """释放连接等资源。"""

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()
