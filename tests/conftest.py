"""
LabWatch 测试基础配置

提供内存存储、模拟 Redis、固定时钟等通用 fixture。
所有测试不依赖外部 Redis / Firebase / 真实进程。
"""
from datetime import datetime, timedelta, timezone

import pytest

from labwatch_agent.collector import MetricsSample
from labwatch_agent.config import AgentConfig
from labwatch_shared.models import MachineSnapshot
from labwatch_shared.store import MemoryStore
from labwatch_shared.timeutil import to_iso

NOW = datetime(2024, 3, 4, 10, 0, 0, tzinfo=timezone.utc)


class FakePipeline:
    """收集命令，execute() 时按顺序在 FakeRedis 上执行。"""

    def __init__(self, redis: "FakeRedis"):
        self._redis = redis
        self._calls = []

    def __getattr__(self, name):
        def queue(*args, **kwargs):
            self._calls.append((name, args, kwargs))
            return self
        return queue

    async def execute(self) -> list:
        return [await getattr(self._redis, name)(*args, **kwargs) for name, args, kwargs in self._calls]


class FakeRedis:
    """
    内存级 Redis 模拟，支持 RedisStore 用到的字符串、集合和管道命令。

    reads 统计读命令实际访问的键数（含集合成员），用于检查读取开销。
    不提供 SCAN：存储不应依赖全键空间扫描。
    """

    def __init__(self):
        self._store: dict[str, str] = {}
        self._sets: dict[str, set] = {}
        self.reads = 0
        self.closed = False

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def get(self, key: str) -> str | None:
        self.reads += 1
        return self._store.get(key)

    async def set(self, key: str, value: str, ex: int | None = None, **kwargs) -> None:
        self._store[key] = value

    async def mget(self, keys) -> list:
        self.reads += len(keys)
        return [self._store.get(k) for k in keys]

    async def mset(self, mapping: dict) -> None:
        self._store.update(mapping)

    async def delete(self, *keys: str) -> int:
        removed = 0
        for k in keys:
            if self._store.pop(k, None) is not None or self._sets.pop(k, None) is not None:
                removed += 1
        return removed

    async def sadd(self, key: str, *members: str) -> int:
        members_set = self._sets.setdefault(key, set())
        added = len(set(members) - members_set)
        members_set.update(members)
        return added

    async def srem(self, key: str, *members: str) -> int:
        members_set = self._sets.get(key, set())
        removed = len(members_set & set(members))
        members_set.difference_update(members)
        if not members_set:
            # 与 Redis 一致：空集合自动删除
            self._sets.pop(key, None)
        return removed

    async def smembers(self, key: str) -> set:
        members = set(self._sets.get(key, set()))
        self.reads += max(len(members), 1)
        return members

    async def scard(self, key: str) -> int:
        self.reads += 1
        return len(self._sets.get(key, set()))

    async def aclose(self) -> None:
        self.closed = True


class FakePolicy:
    """不访问真实进程的策略替身：running 为当前运行的禁用进程名。"""

    def __init__(self, running=(), kill_cooldown: float = 10, clock=None):
        self.running = set(running)
        self.kill_cooldown = kill_cooldown
        self._clock = clock or (lambda: 0.0)
        self._last_enforced = None
        self.kill_calls = 0

    def detect(self):
        return sorted(self.running)

    def kill_forbidden(self):
        self.kill_calls += 1
        killed = sorted(self.running)
        self.running.clear()
        return killed

    def enforce(self):
        now = self._clock()
        if self._last_enforced is not None and now - self._last_enforced < self.kill_cooldown:
            return []
        self._last_enforced = now
        return self.kill_forbidden()


class Clock:
    """可手动推进的 UTC 时钟"""

    def __init__(self, start: datetime = NOW):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class Monotonic:
    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> float:
        self.value += seconds
        return self.value


def make_snapshot(pc_name: str, last_update: datetime = NOW, **fields) -> dict:
    """构造存储格式的快照（PascalCase 字段）。"""
    defaults = dict(
        cpu_usage=12.5,
        cpu_temperature=45.0,
        ram_usage_percent=40.0,
        used_ram_mb=3200.0,
        total_ram_mb=8000.0,
        disk_usage_percent=55.0,
        is_online=True,
    )
    defaults.update(fields)
    return MachineSnapshot(pc_name=pc_name, last_update=to_iso(last_update), **defaults).to_store()


def fixed_sample(**overrides):
    sample = MetricsSample(
        cpu_usage=20.0,
        cpu_temperature=50.0,
        ram_usage_percent=35.0,
        used_ram_mb=2800.0,
        total_ram_mb=8000.0,
        disk_usage_percent=60.0,
    )
    for k, v in overrides.items():
        setattr(sample, k, v)
    return lambda disk_path: sample


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def monotonic():
    return Monotonic()


@pytest.fixture
def agent_config(tmp_path):
    cfg = AgentConfig()
    cfg.machine.name = "pc-03"
    cfg.machine.group = "LAB B"
    cfg.loop.interval = 0.01
    cfg.messages.state_file = str(tmp_path / "messages.json")
    return cfg
