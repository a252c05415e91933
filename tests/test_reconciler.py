"""机群汇总测试：在线判定、时钟异常、硬件异常、分组差异与重叠保护。"""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from labwatch_monitor.services import notifications as n
from labwatch_monitor.services.fleet_actions import FleetActions
from labwatch_monitor.services.notifications import (
    CONDITION_FORBIDDEN,
    NotificationEngine,
    TITLE_FORBIDDEN,
)
from labwatch_monitor.services import reconciler as r
from labwatch_monitor.services.reconciler import FleetReconciler
from labwatch_shared import paths
from labwatch_shared.channels import MessageChannel
from labwatch_shared.exceptions import StoreError
from tests.conftest import make_snapshot


async def _put(store, name, last_update, **fields):
    await store.set(paths.machine_current(name), make_snapshot(name, last_update, **fields))


class TestOnline:
    @pytest.mark.asyncio
    async def test_stale_heartbeat_is_offline(self, store, clock):
        """40 秒前的心跳、30 秒阈值：离线。"""
        await _put(store, "pc-01", clock() - timedelta(seconds=40))
        await _put(store, "pc-02", clock() - timedelta(seconds=30))
        result = await FleetReconciler(store, online_threshold=30, clock=clock).tick()
        assert result.statuses["pc-01"].online is False
        assert result.statuses["pc-02"].online is True
        assert result.statuses["pc-01"].snapshot.is_online is False

    @pytest.mark.asyncio
    async def test_invalid_timestamp_is_offline(self, store, clock):
        await store.set(paths.machine_current("pc-01"), {"PCName": "pc-01", "LastUpdate": "mañana"})
        result = await FleetReconciler(store, clock=clock).tick()
        assert result.statuses["pc-01"].online is False
        assert result.statuses["pc-01"].age_seconds is None

    @pytest.mark.asyncio
    async def test_naive_timestamp_is_utc(self, store, clock):
        raw = make_snapshot("pc-01")
        raw["LastUpdate"] = (clock() - timedelta(seconds=5)).replace(tzinfo=None).isoformat()
        await store.set(paths.machine_current("pc-01"), raw)
        result = await FleetReconciler(store, clock=clock).tick()
        assert result.statuses["pc-01"].online is True

    @pytest.mark.asyncio
    async def test_forbidden_only_when_online(self, store, clock):
        await _put(store, "pc-01", clock(), forbidden_processes=["steam"])
        await _put(store, "pc-02", clock() - timedelta(minutes=5), forbidden_processes=["steam"])
        result = await FleetReconciler(store, clock=clock).tick()
        assert result.statuses["pc-01"].forbidden is True
        assert result.statuses["pc-02"].forbidden is False


class TestClockIssue:
    @pytest.mark.asyncio
    async def test_active_machine_with_wrong_clock(self, store, clock):
        rec = FleetReconciler(store, clock=clock)
        await _put(store, "pc-01", clock() - timedelta(hours=3))
        first = await rec.tick()
        assert first.statuses["pc-01"].clock_issue is False

        # 机器仍在上报（LastUpdate 变化），但时间比 UTC 慢 3 小时
        clock.advance(3)
        await _put(store, "pc-01", clock() - timedelta(hours=3))
        second = await rec.tick()
        assert second.statuses["pc-01"].clock_issue is True
        assert second.statuses["pc-01"].snapshot.clock_issue is True

    @pytest.mark.asyncio
    async def test_long_offline_machine_is_not_clock_issue(self, store, clock):
        rec = FleetReconciler(store, clock=clock)
        await _put(store, "pc-01", clock() - timedelta(days=2))
        for _ in range(3):
            result = await rec.tick()
            clock.advance(3)
        assert result.statuses["pc-01"].clock_issue is False

    @pytest.mark.asyncio
    async def test_clock_issue_clears_when_reporting_stops(self, store, clock):
        rec = FleetReconciler(store, clock=clock)
        await _put(store, "pc-01", clock() + timedelta(hours=5))
        await rec.tick()
        clock.advance(3)
        await _put(store, "pc-01", clock() + timedelta(hours=5))
        assert (await rec.tick()).statuses["pc-01"].clock_issue is True
        clock.advance(61)
        assert (await rec.tick()).statuses["pc-01"].clock_issue is False

    @pytest.mark.asyncio
    async def test_small_skew_ignored(self, store, clock):
        rec = FleetReconciler(store, clock=clock)
        await _put(store, "pc-01", clock() - timedelta(minutes=10))
        await rec.tick()
        await _put(store, "pc-01", clock() - timedelta(minutes=9))
        assert (await rec.tick()).statuses["pc-01"].clock_issue is False


class TestHardwareError:
    @pytest.mark.asyncio
    async def test_two_consecutive_zero_reads(self, store, clock):
        rec = FleetReconciler(store, clock=clock)
        await _put(store, "pc-01", clock(), cpu_usage=0, ram_usage_percent=0.05, disk_usage_percent=0)
        assert (await rec.tick()).statuses["pc-01"].hardware_error is False
        assert (await rec.tick()).statuses["pc-01"].hardware_error is True

    @pytest.mark.asyncio
    async def test_single_zero_read_debounced(self, store, clock):
        rec = FleetReconciler(store, clock=clock)
        await _put(store, "pc-01", clock(), cpu_usage=0, ram_usage_percent=0, disk_usage_percent=0)
        await rec.tick()
        await _put(store, "pc-01", clock(), cpu_usage=5)
        assert (await rec.tick()).statuses["pc-01"].hardware_error is False
        await _put(store, "pc-01", clock(), cpu_usage=0, ram_usage_percent=0, disk_usage_percent=0)
        assert (await rec.tick()).statuses["pc-01"].hardware_error is False

    @pytest.mark.asyncio
    async def test_high_temperature(self, store, clock):
        await _put(store, "pc-01", clock(), cpu_temperature=80)
        await _put(store, "pc-02", clock(), cpu_temperature=79.9)
        result = await FleetReconciler(store, clock=clock).tick()
        assert result.statuses["pc-01"].high_temperature is True
        assert result.statuses["pc-02"].high_temperature is False


class TestDiff:
    @pytest.mark.asyncio
    async def test_initial_grouping(self, store, clock):
        await _put(store, "pc-02", clock(), group="LAB B")
        await _put(store, "pc-01", clock(), group="LAB A")
        await _put(store, "pc-03", clock(), group="  ")
        result = await FleetReconciler(store, clock=clock).tick()

        assert list(result.groups) == ["LAB A", "LAB B", "ungrouped"]
        assert [(e.kind, e.group, e.pc_name) for e in result.events] == [
            (r.GROUP_CREATED, "LAB A", None),
            (r.CREATED, "LAB A", "pc-01"),
            (r.GROUP_CREATED, "LAB B", None),
            (r.CREATED, "LAB B", "pc-02"),
            (r.GROUP_CREATED, "ungrouped", None),
            (r.CREATED, "ungrouped", "pc-03"),
        ]

    @pytest.mark.asyncio
    async def test_unchanged_machine_is_updated(self, store, clock):
        await _put(store, "pc-01", clock(), group="LAB A")
        rec = FleetReconciler(store, clock=clock)
        await rec.tick()
        result = await rec.tick()
        assert [(e.kind, e.pc_name) for e in result.events] == [(r.UPDATED, "pc-01")]

    @pytest.mark.asyncio
    async def test_regroup_is_single_move(self, store, clock):
        """改组只产生一次 moved（旧组 -> 新组），不是删除再创建。"""
        await _put(store, "pc-01", clock(), group="LAB A")
        await _put(store, "pc-02", clock(), group="LAB A")
        rec = FleetReconciler(store, clock=clock)
        await rec.tick()

        await _put(store, "pc-02", clock(), group="LAB C")
        result = await rec.tick()

        pc02 = [e for e in result.events if e.pc_name == "pc-02"]
        assert len(pc02) == 1
        assert (pc02[0].kind, pc02[0].old_group, pc02[0].group) == (r.MOVED, "LAB A", "LAB C")
        assert result.events_of(r.REMOVED) == []
        assert result.events_of(r.CREATED) == []
        assert rec.containers == {"LAB A": ["pc-01"], "LAB C": ["pc-02"]}
        assert rec.group_of("pc-02") == "LAB C"

    @pytest.mark.asyncio
    async def test_move_to_earlier_group_and_old_group_removed(self, store, clock):
        await _put(store, "pc-01", clock(), group="LAB Z")
        rec = FleetReconciler(store, clock=clock)
        await rec.tick()

        await _put(store, "pc-01", clock(), group="LAB A")
        result = await rec.tick()

        kinds = [(e.kind, e.group) for e in result.events]
        assert kinds == [(r.GROUP_CREATED, "LAB A"), (r.MOVED, "LAB A"), (r.GROUP_REMOVED, "LAB Z")]
        assert rec.containers == {"LAB A": ["pc-01"]}

    @pytest.mark.asyncio
    async def test_entity_never_in_two_containers(self, store, clock):
        names = [f"pc-{i:02d}" for i in range(6)]
        for i, name in enumerate(names):
            await _put(store, name, clock(), group=f"LAB {i % 3}")
        rec = FleetReconciler(store, clock=clock)
        await rec.tick()
        for shift in range(1, 4):
            for i, name in enumerate(names):
                await _put(store, name, clock(), group=f"LAB {(i + shift) % 4}")
            await rec.tick()
            members = [n for container in rec.containers.values() for n in container]
            assert sorted(members) == names

    @pytest.mark.asyncio
    async def test_removed_machine(self, store, clock):
        engine = NotificationEngine(clock=clock)
        await _put(store, "pc-01", clock(), group="LAB A", forbidden_processes=["steam"])
        await _put(store, "pc-02", clock(), group="LAB A")
        rec = FleetReconciler(store, engine, clock=clock)
        await rec.tick()
        assert ("LAB A", CONDITION_FORBIDDEN, "pc-01") in engine.active_keys

        await store.delete("machines/pc-01")
        result = await rec.tick()

        assert [(e.kind, e.pc_name) for e in result.events if e.kind != r.UPDATED] == [(r.REMOVED, "pc-01")]
        assert "pc-01" not in rec.entities
        assert engine.active_keys == set()

    @pytest.mark.asyncio
    async def test_invalid_snapshot_detaches(self, store, clock):
        await _put(store, "pc-01", clock(), group="LAB A")
        await _put(store, "pc-02", clock(), group="LAB A")
        rec = FleetReconciler(store, clock=clock)
        await rec.tick()

        await store.set(paths.machine_current("pc-01"), "corrupted")
        result = await rec.tick()
        assert [(e.kind, e.pc_name) for e in result.events_of(r.DETACHED)] == [(r.DETACHED, "pc-01")]
        assert rec.containers == {"LAB A": ["pc-02"]}

    @pytest.mark.asyncio
    async def test_last_machine_leaves_group(self, store, clock):
        await _put(store, "pc-01", clock(), group="LAB A")
        rec = FleetReconciler(store, clock=clock)
        await rec.tick()
        await store.delete("machines/pc-01")
        result = await rec.tick()
        assert [(e.kind, e.group) for e in result.events] == [(r.REMOVED, "LAB A"), (r.GROUP_REMOVED, "LAB A")]
        assert rec.containers == {}


class TestTick:
    @pytest.mark.asyncio
    async def test_class_modes_read_per_group(self, store, clock):
        await _put(store, "pc-01", clock(), group="LAB A")
        await _put(store, "pc-02", clock(), group="LAB B")
        await store.set(paths.class_mode("LAB B"), True)
        result = await FleetReconciler(store, clock=clock).tick()
        assert result.class_modes == {"LAB A": False, "LAB B": True}

    @pytest.mark.asyncio
    async def test_store_failure_keeps_last_success(self, store, clock):
        await _put(store, "pc-01", clock())
        rec = FleetReconciler(store, clock=clock)
        await rec.tick()
        first_success = rec.last_success

        clock.advance(3)
        with patch.object(store, "keys", AsyncMock(side_effect=StoreError("timeout", path="machines"))):
            result = await rec.tick()
        assert not result.ok
        assert rec.last_success == first_success
        assert "timeout" in rec.last_error
        assert "Error: fleet fetch failed" in rec.status_line()
        assert rec.containers == {"ungrouped": ["pc-01"]}

        await rec.tick()
        assert rec.last_error is None

    @pytest.mark.asyncio
    async def test_overlap_guard_skips(self, store, clock):
        await _put(store, "pc-01", clock())
        rec = FleetReconciler(store, clock=clock)
        gate = asyncio.Event()
        calls = 0
        original = rec.machines.list_names

        async def slow_list_names():
            nonlocal calls
            calls += 1
            await gate.wait()
            return await original()

        rec.machines.list_names = slow_list_names
        first = asyncio.create_task(rec.tick())
        await asyncio.sleep(0)
        assert rec.busy

        skipped = await asyncio.gather(rec.tick(), rec.tick())
        assert skipped == [None, None]
        assert rec.skipped == 2

        gate.set()
        assert (await first) is not None
        assert calls == 1
        assert not rec.busy

    @pytest.mark.asyncio
    async def test_engine_receives_statuses(self, store, clock):
        engine = NotificationEngine(clock=clock)
        await _put(store, "pc-01", clock(), group="LAB A", forbidden_processes=["steam"])
        rec = FleetReconciler(store, engine, clock=clock)
        result = await rec.tick()
        assert [n.title for n in result.notifications] == [TITLE_FORBIDDEN]
        assert (await rec.tick()).notifications == []

    def test_status_line_before_first_run(self, store):
        assert FleetReconciler(store).status_line() == "Sin sincronizar"


class TestOperatorChanges:
    """其他进程写入的操作由运行中的汇总观察并通知。"""

    @pytest.fixture
    async def running(self, store, clock):
        await _put(store, "pc-01", clock(), group="LAB A", nickname="pc-01")
        engine = NotificationEngine(clock=clock)
        rec = FleetReconciler(store, engine, clock=clock)
        await rec.tick()
        return rec, engine, FleetActions(store, sender="profe-pc")

    @pytest.mark.asyncio
    async def test_first_tick_has_no_operator_notifications(self, running):
        rec, engine, _ = running
        assert engine.notifications() == []

    @pytest.mark.asyncio
    async def test_regroup_observed(self, running):
        rec, engine, actions = running
        await actions.regroup("pc-01", "LAB B")
        result = await rec.tick()
        [note] = result.notifications
        assert (note.title, note.scope, note.entity) == (n.TITLE_GROUP, "LAB B", "pc-01")
        assert note.message == "pc-01: LAB A -> LAB B"
        assert (await rec.tick()).notifications == []

    @pytest.mark.asyncio
    async def test_rename_observed(self, running):
        rec, engine, actions = running
        await actions.rename("pc-01", "Fila 1")
        result = await rec.tick()
        [note] = result.notifications
        assert (note.title, note.scope) == (n.TITLE_NICKNAME, "LAB A")
        assert note.message == "pc-01: pc-01 -> Fila 1"
        assert engine.unread_count("LAB A") == 1

    @pytest.mark.asyncio
    async def test_class_mode_flip_observed(self, running):
        rec, engine, actions = running
        await actions.set_class_mode("LAB A", True)
        await actions.set_class_mode("LAB A", False)
        assert (await rec.tick()).notifications == []

        await actions.set_class_mode("LAB A", True)
        [note] = (await rec.tick()).notifications
        assert (note.title, note.message) == (n.TITLE_CLASS_MODE, "Modo clase activado en LAB A")
        await actions.set_class_mode("LAB A", False)
        [note] = (await rec.tick()).notifications
        assert note.message == "Modo clase desactivado en LAB A"

    @pytest.mark.asyncio
    async def test_messages_observed_once(self, running):
        rec, engine, actions = running
        await actions.broadcast("Fin de la clase")
        await actions.message_group("LAB A", "Guarden sus archivos")
        result = await rec.tick()
        assert sorted((x.scope, x.title) for x in result.notifications) == [
            ("LAB A", n.TITLE_MESSAGE), (paths.GLOBAL_SCOPE, n.TITLE_GLOBAL_MESSAGE),
        ]
        assert (await rec.tick()).notifications == []

        await actions.broadcast("Otro aviso")
        [note] = (await rec.tick()).notifications
        assert note.message == "Otro aviso"

    @pytest.mark.asyncio
    async def test_messages_before_start_are_baseline(self, store, clock):
        await MessageChannel(store).send_global("hola", "profe-pc")
        await _put(store, "pc-01", clock(), group="LAB A")
        rec = FleetReconciler(store, NotificationEngine(clock=clock), clock=clock)
        assert (await rec.tick()).notifications == []
        assert (await rec.tick()).notifications == []

    @pytest.mark.asyncio
    async def test_without_engine_nothing_is_read_for_messages(self, store, clock):
        await _put(store, "pc-01", clock(), group="LAB A")
        rec = FleetReconciler(store, clock=clock)
        with patch.object(rec.messages, "read_global", AsyncMock()) as read_global:
            await rec.tick()
        read_global.assert_not_awaited()
