"""
机群汇总服务 (Fleet Reconciliation Service)

周期性读取全部机器的当前快照，推导每台机器的在线 / 时钟异常 /
违规进程 / 高温 / 硬件异常状态，并与上一次汇总结果比较，
输出分组容器与机器实体的增删改移事件。

一次只允许一个汇总在执行：上一次未完成时新的请求直接跳过，不排队。

操作员的改名、改组、上课模式切换和消息都写在存储里，可能来自任意进程；
汇总在相邻两次之间观察到这些变化时生成手动通知，运行中的监控端因此
能记录全部操作。

Periodically fetches all current snapshots, derives per-machine status and
diffs fleet and group membership against the previous reconciliation.
At most one reconciliation runs at a time; overlapping requests are skipped.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from labwatch_monitor.services import notifications as n
from labwatch_shared import paths
from labwatch_shared.channels import MessageChannel
from labwatch_shared.exceptions import StoreError
from labwatch_shared.machines import GroupPolicyStore, MachineRepository
from labwatch_shared.models import MachineSnapshot
from labwatch_shared.paths import normalize_group
from labwatch_shared.store.base import RemoteStateStore
from labwatch_shared.timeutil import age_seconds, relative_time, to_iso, utcnow

logger = logging.getLogger(__name__)

ONLINE_THRESHOLD = 30  # 心跳超过该秒数视为离线
CLOCK_RECENT_WINDOW = 60  # LastUpdate 在该时间内有变化视为"正在上报"
CLOCK_SKEW_LIMIT = 2 * 3600  # 上报时间与 UTC 相差超过该秒数视为时钟异常
HIGH_TEMPERATURE = 80.0
ZERO_EPSILON = 0.1
ZERO_STREAK = 2  # 连续多少次汇总全为 0 才判定硬件异常

# 事件类型
GROUP_CREATED = "group_created"
CREATED = "created"
MOVED = "moved"
UPDATED = "updated"
DETACHED = "detached"
REMOVED = "removed"
GROUP_REMOVED = "group_removed"


@dataclass
class MachineStatus:
    """单台机器在一次汇总中的推导状态。"""
    pc_name: str
    group: str
    snapshot: MachineSnapshot
    online: bool
    age_seconds: Optional[float]
    clock_issue: bool = False
    forbidden: bool = False
    high_temperature: bool = False
    hardware_error: bool = False

    @property
    def last_seen(self) -> str:
        return relative_time(self.snapshot.last_update)


@dataclass
class EntityState:
    """实体表中一台机器的跟踪状态。"""
    pc_name: str
    group: Optional[str] = None  # None 表示尚未挂到任何分组容器
    status: Optional[MachineStatus] = None
    zero_streak: int = 0
    last_update_raw: str = ""
    last_change_at: Optional[datetime] = None


@dataclass(frozen=True)
class ReconcileEvent:
    kind: str
    group: str
    pc_name: Optional[str] = None
    old_group: Optional[str] = None

    def __str__(self):
        if self.kind == MOVED:
            return f"{self.kind} {self.pc_name}: {self.old_group} -> {self.group}"
        if self.pc_name is None:
            return f"{self.kind} {self.group}"
        return f"{self.kind} {self.pc_name} [{self.group}]"


@dataclass
class ReconcileResult:
    started_at: datetime
    statuses: Dict[str, MachineStatus] = field(default_factory=dict)
    groups: Dict[str, List[str]] = field(default_factory=dict)
    class_modes: Dict[str, bool] = field(default_factory=dict)
    events: List[ReconcileEvent] = field(default_factory=list)
    notifications: list = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def events_of(self, kind: str) -> List[ReconcileEvent]:
        return [e for e in self.events if e.kind == kind]


def is_online(snapshot: MachineSnapshot, now: datetime, threshold: float = ONLINE_THRESHOLD) -> bool:
    """时间戳可解析且距今不超过阈值才算在线（未来时间戳同样算在线）。"""
    age = age_seconds(snapshot.last_update, now)
    return age is not None and age <= threshold


def is_zero_metrics(snapshot: MachineSnapshot) -> bool:
    return (
        snapshot.cpu_usage < ZERO_EPSILON
        and snapshot.ram_usage_percent < ZERO_EPSILON
        and snapshot.disk_usage_percent < ZERO_EPSILON
    )


class FleetReconciler:
    """机群汇总器"""

    def __init__(
        self,
        store: RemoteStateStore,
        engine=None,
        online_threshold: float = ONLINE_THRESHOLD,
        high_temperature: float = HIGH_TEMPERATURE,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.machines = MachineRepository(store)
        self.group_policy = GroupPolicyStore(store)
        self.messages = MessageChannel(store)
        self.engine = engine
        self.online_threshold = online_threshold
        self.high_temperature = high_temperature
        self.clock = clock

        self.entities: Dict[str, EntityState] = {}
        self.containers: Dict[str, List[str]] = {}
        self.class_modes: Dict[str, bool] = {}
        # 消息槽路径 -> 最近看到的消息 Id；None 表示还没有基线
        self._seen_messages: Optional[Dict[str, str]] = None

        self.last_success: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.skipped = 0
        self._lock = asyncio.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def tick(self) -> Optional[ReconcileResult]:
        """执行一次汇总；已有汇总在执行时跳过并返回 None。"""
        if self._lock.locked():
            self.skipped += 1
            logger.debug("Reconciliation still running, tick skipped")
            return None
        async with self._lock:
            return await self._reconcile()

    async def _reconcile(self) -> ReconcileResult:
        now = self.clock()
        result = ReconcileResult(started_at=now)

        try:
            names = await self.machines.list_names()
            fetched = await asyncio.gather(*(self.machines.get_current(n) for n in names))
        except StoreError as e:
            self._record_error(result, f"fleet fetch failed: {e}")
            return result

        fleet = set(names)
        live = {name: snap for name, snap in zip(names, fetched) if snap is not None}

        grouping: Dict[str, List[str]] = {}
        for name, snap in live.items():
            grouping.setdefault(normalize_group(snap.group), []).append(name)
        grouping = {g: sorted(grouping[g]) for g in sorted(grouping)}
        live_group = {name: g for g, members in grouping.items() for name in members}

        for group, members in grouping.items():
            if group not in self.containers:
                self.containers[group] = []
                result.events.append(ReconcileEvent(GROUP_CREATED, group))

            for name in members:
                previous = self.entities[name].status if name in self.entities else None
                status = self._derive(name, group, live[name], now)
                result.statuses[name] = status
                event = self._attach(name, group, status)
                result.events.append(event)
                self._notify_changes(result, event, previous, status)

            # 本组之前跟踪、现在不在本组的实体
            for name in list(self.containers[group]):
                if name in members:
                    continue
                if name in live_group:
                    # 已移到其他组，由那个组的处理发出 moved 事件
                    continue
                self.containers[group].remove(name)
                self.entities.pop(name, None)
                if name in fleet:
                    result.events.append(ReconcileEvent(DETACHED, group, name))
                else:
                    result.events.append(ReconcileEvent(REMOVED, group, name))
                    if self.engine is not None:
                        self.engine.forget_entity(name)

        # 整个分组已消失的容器，及其中残留的实体
        for group in sorted(set(self.containers) - set(grouping)):
            for name in self.containers[group]:
                if name in live_group:
                    continue
                self.entities.pop(name, None)
                kind = DETACHED if name in fleet else REMOVED
                result.events.append(ReconcileEvent(kind, group, name))
                if kind == REMOVED and self.engine is not None:
                    self.engine.forget_entity(name)
            del self.containers[group]
            result.events.append(ReconcileEvent(GROUP_REMOVED, group))

        result.groups = {g: list(m) for g, m in grouping.items()}

        for group in grouping:
            previous = self.class_modes.get(group)
            try:
                enabled = await self.group_policy.get_class_mode(group)
            except StoreError as e:
                result.errors.append(f"class mode read failed for {group}: {e}")
                logger.warning(f"Class mode read failed for {group}: {e}")
                continue
            self.class_modes[group] = enabled
            if previous is not None and previous != enabled:
                state = "activado" if enabled else "desactivado"
                self._notify(result, group, n.TITLE_CLASS_MODE, f"Modo clase {state} en {group}")
        for group in set(self.class_modes) - set(grouping):
            del self.class_modes[group]
        result.class_modes = {g: self.class_modes.get(g, False) for g in grouping}

        if self.engine is not None:
            await self._observe_messages(result)
            for status in result.statuses.values():
                result.notifications.extend(self.engine.evaluate(status))

        if result.errors:
            self.last_error = result.errors[-1]
        else:
            self.last_error = None
        self.last_success = now
        return result

    def _attach(self, name: str, group: str, status: MachineStatus) -> ReconcileEvent:
        entity = self.entities[name]
        if entity.group == group and name in self.containers[group]:
            return ReconcileEvent(UPDATED, group, name)

        if name not in self.containers[group]:
            self.containers[group].append(name)
        old_group = entity.group
        entity.group = group
        if old_group is None:
            return ReconcileEvent(CREATED, group, name)

        old = self.containers.get(old_group)
        if old is not None and name in old:
            old.remove(name)
        return ReconcileEvent(MOVED, group, name, old_group=old_group)

    def _derive(self, name: str, group: str, snap: MachineSnapshot, now: datetime) -> MachineStatus:
        """推导状态并更新实体表中的跟踪信息。"""
        entity = self.entities.get(name)
        if entity is None:
            entity = EntityState(pc_name=name, last_update_raw=snap.last_update)
            self.entities[name] = entity
        elif snap.last_update != entity.last_update_raw:
            entity.last_update_raw = snap.last_update
            entity.last_change_at = now

        age = age_seconds(snap.last_update, now)
        online = age is not None and age <= self.online_threshold

        # 首次看到的时间戳不算"变化"，避免把长期离线的机器误判为时钟异常
        reporting = (
            entity.last_change_at is not None
            and (now - entity.last_change_at).total_seconds() <= CLOCK_RECENT_WINDOW
        )
        clock_issue = reporting and age is not None and abs(age) > CLOCK_SKEW_LIMIT

        if online and is_zero_metrics(snap):
            entity.zero_streak += 1
        else:
            entity.zero_streak = 0

        status = MachineStatus(
            pc_name=name,
            group=group,
            snapshot=snap.model_copy(update={"is_online": online, "clock_issue": clock_issue}),
            online=online,
            age_seconds=age,
            clock_issue=clock_issue,
            forbidden=online and bool(snap.forbidden_processes),
            high_temperature=snap.cpu_temperature >= self.high_temperature,
            hardware_error=entity.zero_streak >= ZERO_STREAK,
        )
        entity.status = status
        return status

    def _notify(self, result: ReconcileResult, scope: str, title: str, message: str,
                entity: Optional[str] = None) -> None:
        if self.engine is not None:
            result.notifications.append(self.engine.notify(scope, title, message, entity=entity))

    def _notify_changes(self, result: ReconcileResult, event: ReconcileEvent,
                        previous: Optional[MachineStatus], status: MachineStatus) -> None:
        name = status.pc_name
        snap = status.snapshot
        if event.kind == MOVED:
            self._notify(result, status.group, n.TITLE_GROUP,
                         f"{snap.display_name}: {event.old_group} -> {status.group}", entity=name)
        if previous is not None and previous.snapshot.nickname != snap.nickname:
            self._notify(result, status.group, n.TITLE_NICKNAME,
                         f"{name}: {previous.snapshot.display_name} -> {snap.display_name}", entity=name)

    async def _observe_messages(self, result: ReconcileResult) -> None:
        """新出现的全局 / 分组消息各通知一次；第一次读取只建立基线。"""
        try:
            global_message = await self.messages.read_global()
            group_messages = await self.messages.read_groups()
        except StoreError as e:
            result.errors.append(f"message read failed: {e}")
            logger.warning(f"Message read failed: {e}")
            return

        slots = {}
        if global_message is not None:
            slots[paths.GLOBAL_MESSAGE] = (
                paths.GLOBAL_SCOPE, n.TITLE_GLOBAL_MESSAGE, global_message.text, global_message.id,
            )
        for group, message in group_messages.items():
            slots[paths.lab_message(group)] = (group, n.TITLE_MESSAGE, f"[{group}] {message.text}", message.id)

        seen = self._seen_messages
        self._seen_messages = {path: slot[3] for path, slot in slots.items()}
        if seen is None:
            return
        for path, (scope, title, text, message_id) in slots.items():
            if seen.get(path) != message_id:
                self._notify(result, scope, title, text)

    def _record_error(self, result: ReconcileResult, message: str) -> None:
        logger.warning(message)
        result.errors.append(message)
        self.last_error = message

    def group_of(self, pc_name: str) -> Optional[str]:
        entity = self.entities.get(pc_name)
        return entity.group if entity else None

    def status_line(self, now: Optional[datetime] = None) -> str:
        """状态行：最近一次成功汇总时间和最近的错误。"""
        if self.last_success is None:
            line = "Sin sincronizar"
        else:
            line = f"Última sincronización: {to_iso(self.last_success)} ({relative_time(self.last_success, now or self.clock())})"
        if self.last_error:
            line += f" | Error: {self.last_error}"
        return line
