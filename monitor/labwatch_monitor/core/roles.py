"""
监控端身份校验。

一台机器可以运行监控端的条件：在配置的 monitor_identities 中，
或者存储中 masters/{pc} 为 true。
"""
import logging
from typing import Iterable

from labwatch_shared import paths
from labwatch_shared.store.base import RemoteStateStore

logger = logging.getLogger(__name__)


async def is_designated_monitor(store: RemoteStateStore, identity: str, identities: Iterable[str]) -> bool:
    """判断 identity 是否为指定的监控端。配置优先，其次查询存储。"""
    wanted = identity.strip().lower()
    if any(wanted == i.strip().lower() for i in identities):
        return True
    value = await store.get(paths.master_flag(identity))
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return value is True
