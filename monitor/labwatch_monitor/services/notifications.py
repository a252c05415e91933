"""
通知去重服务 (Notification Deduplication Service)

按 (scope, condition, entity) 键做边沿触发去重：条件由假变真且键不存在时
生成一条通知并记录键；条件变假时删除键，允许下一次激活再次通知。
手动操作产生的通知（发送消息、改名、改组、下发命令、切换上课模式）不去重。

键集合与通知列表只属于当前监控端实例，不写入远程存储。

Edge-triggered notification deduplication keyed by (scope, condition, entity).
Manual notifications always fire. State is local to one monitor instance.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field

from labwatch_shared.timeutil import utcnow

logger = logging.getLogger(__name__)

# 条件类型
CONDITION_CLOCK = "clock_issue"
CONDITION_FORBIDDEN = "forbidden_process"
CONDITION_TEMPERATURE = "high_temperature"
CONDITION_HARDWARE = "hardware_error"

# 通知标题
TITLE_CLOCK = "Error de hora"
TITLE_FORBIDDEN = "App prohibida"
TITLE_TEMPERATURE = "Temperatura alta"
TITLE_HARDWARE = "Error de hardware"
TITLE_COMMAND = "Comando enviado"
TITLE_NICKNAME = "Nickname actualizado"
TITLE_GROUP = "Grupo actualizado"
TITLE_MESSAGE = "Mensaje enviado"
TITLE_GLOBAL_MESSAGE = "Mensaje global enviado"
TITLE_CLASS_MODE = "Modo clase"

# 默认保留 2 天
DEFAULT_RETENTION = timedelta(hours=48)

NotificationKey = Tuple[str, str, str]
Listener = Callable[["Notification"], None]


def key_to_str(key: NotificationKey) -> str:
    return ":".join(key)


class Notification(BaseModel):
    """面向用户的通知记录。"""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(alias="Id")
    title: str = Field(alias="Title")
    message: str = Field(alias="Message")
    timestamp: datetime = Field(alias="Timestamp")
    read: bool = Field(default=False, alias="Read")
    scope: str = Field(alias="Scope")
    entity: Optional[str] = Field(default=None, alias="Entity")


class NotificationEngine:
    """通知去重引擎"""

    def __init__(self, clock: Callable[[], datetime] = utcnow, retention: timedelta = DEFAULT_RETENTION):
        self.clock = clock
        self.retention = retention
        self._keys: Set[NotificationKey] = set()
        self._by_scope: Dict[str, List[Notification]] = {}
        self._listeners: List[Listener] = []

    # ------------------------------------------------------------------
    # 监听器
    # ------------------------------------------------------------------

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def _emit(self, scope: str, title: str, message: str, entity: Optional[str]) -> Notification:
        notification = Notification(
            id=uuid.uuid4().hex,
            title=title,
            message=message,
            timestamp=self.clock(),
            scope=scope,
            entity=entity,
        )
        self._by_scope.setdefault(scope, []).append(notification)
        logger.info(f"Notification [{scope}] {title}: {message}")
        for listener in self._listeners:
            try:
                listener(notification)
            except Exception:
                logger.exception(f"Notification listener {listener!r} failed")
        return notification

    # ------------------------------------------------------------------
    # 触发
    # ------------------------------------------------------------------

    def notify(self, scope: str, title: str, message: str, entity: Optional[str] = None) -> Notification:
        """手动通知，每次调用都会生成一条记录。"""
        return self._emit(scope, title, message, entity)

    def update_condition(
        self,
        scope: str,
        condition: str,
        entity: str,
        active: bool,
        title: str,
        message: str,
    ) -> Optional[Notification]:
        """
        更新条件状态，返回新生成的通知（没有则为 None）。

        同一实体的同类键在任一作用域存在即视为已通知；实体换组时键迁移到
        新作用域，不重复通知。active 为假时删除该实体在所有作用域下的同类键。
        """
        same = {k for k in self._keys if k[1] == condition and k[2] == entity}
        if not active:
            self._keys -= same
            return None

        key = (scope, condition, entity)
        if same:
            if key not in same:
                logger.debug(f"Moving {condition} key of {entity} to scope {scope}")
                self._keys -= same
                self._keys.add(key)
            return None
        self._keys.add(key)
        return self._emit(scope, title, message, entity)

    def evaluate(self, status) -> List[Notification]:
        """根据一台机器的汇总状态更新全部监控条件。"""
        snap = status.snapshot
        name = snap.display_name
        scope = status.group
        checks = [
            (CONDITION_CLOCK, status.clock_issue, TITLE_CLOCK,
             f"{name} tiene la hora desincronizada ({snap.last_update})"),
            (CONDITION_FORBIDDEN, status.forbidden, TITLE_FORBIDDEN,
             f"{name} está ejecutando: {', '.join(snap.forbidden_processes)}"),
            (CONDITION_TEMPERATURE, status.high_temperature, TITLE_TEMPERATURE,
             f"{name} alcanzó {snap.cpu_temperature:.0f}°C"),
            (CONDITION_HARDWARE, status.hardware_error, TITLE_HARDWARE,
             f"{name} reporta CPU, RAM y disco en 0"),
        ]
        created = []
        for condition, active, title, message in checks:
            notification = self.update_condition(scope, condition, status.pc_name, active, title, message)
            if notification is not None:
                created.append(notification)
        return created

    def forget_entity(self, entity: str) -> None:
        """机器移出机群时丢弃它的全部键。"""
        self._keys = {k for k in self._keys if k[2] != entity}

    # ------------------------------------------------------------------
    # 查询与维护
    # ------------------------------------------------------------------

    @property
    def active_keys(self) -> Set[NotificationKey]:
        return set(self._keys)

    def key_strings(self) -> List[str]:
        return sorted(key_to_str(k) for k in self._keys)

    def scopes(self) -> List[str]:
        return sorted(self._by_scope)

    def notifications(self, scope: Optional[str] = None) -> List[Notification]:
        """按时间倒序返回通知，scope 为 None 时返回全部。"""
        if scope is None:
            items = [n for group in self._by_scope.values() for n in group]
        else:
            items = list(self._by_scope.get(scope, []))
        return sorted(items, key=lambda n: n.timestamp, reverse=True)

    def unread_count(self, scope: Optional[str] = None) -> int:
        return sum(1 for n in self.notifications(scope) if not n.read)

    def open_scope(self, scope: str) -> int:
        """
        打开某个作用域：标记其通知为已读，并清除该作用域下的全部键。

        条件若仍然成立，下一次汇总会重新通知。返回标记为已读的数量。
        """
        marked = 0
        for notification in self._by_scope.get(scope, []):
            if not notification.read:
                notification.read = True
                marked += 1
        self._keys = {k for k in self._keys if k[0] != scope}
        return marked

    def clear_scope(self, scope: str) -> int:
        removed = self._by_scope.pop(scope, [])
        return len(removed)

    def purge(self, now: Optional[datetime] = None) -> int:
        """删除早于保留期的通知，返回删除数量。"""
        cutoff = (now or self.clock()) - self.retention
        removed = 0
        for scope in list(self._by_scope):
            kept = [n for n in self._by_scope[scope] if n.timestamp >= cutoff]
            removed += len(self._by_scope[scope]) - len(kept)
            if kept:
                self._by_scope[scope] = kept
            else:
                del self._by_scope[scope]
        if removed:
            logger.info(f"Purged {removed} notifications older than {cutoff.isoformat()}")
        return removed
