"""
远程存储客户端。

create_store() 根据 URL scheme 选择实现：
- memory://              进程内存储
- redis:// / rediss://   Redis
- http:// / https://     Firebase Realtime Database REST
"""
from labwatch_shared.exceptions import ConfigError
from labwatch_shared.store.base import RemoteStateStore, new_push_key
from labwatch_shared.store.memory import MemoryStore


def create_store(url: str, token: str = "", namespace: str = "labwatch") -> RemoteStateStore:
    """根据 URL 创建存储客户端。"""
    u = (url or "").strip()
    scheme = u.split("://", 1)[0].lower() if "://" in u else ""

    if scheme == "memory":
        return MemoryStore()
    if scheme in ("redis", "rediss", "unix"):
        from labwatch_shared.store.redis_store import RedisStore
        return RedisStore(u, namespace=namespace)
    if scheme in ("http", "https"):
        from labwatch_shared.store.firebase_store import FirebaseStore
        return FirebaseStore(u, token=token)
    raise ConfigError(f"Unsupported store URL: {url!r}")


__all__ = ["RemoteStateStore", "MemoryStore", "create_store", "new_push_key"]
