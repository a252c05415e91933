"""数据模型、路径与时间工具测试。"""
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from labwatch_shared import paths
from labwatch_shared.models import Message, MachineSnapshot
from labwatch_shared.timeutil import age_seconds, parse_timestamp, relative_time, to_iso
from tests.conftest import NOW


class TestMachineSnapshot:
    def test_wire_field_names(self):
        snap = MachineSnapshot(pc_name="pc-01", cpu_usage=10)
        data = snap.to_store()
        assert set(data) == {
            "PCName", "Nickname", "Group", "CpuUsage", "CpuTemperature", "RamUsagePercent",
            "TotalRamMB", "UsedRamMB", "DiskUsagePercent", "IsOnline", "LastUpdate",
            "ForbiddenProcesses", "ClassMode", "ClockIssue",
        }
        assert data["Group"] == paths.DEFAULT_GROUP

    def test_clamps_metrics(self):
        snap = MachineSnapshot.from_store({
            "PCName": "pc-01", "CpuUsage": 140, "RamUsagePercent": -3,
            "DiskUsagePercent": "nan", "CpuTemperature": "garbage", "UsedRamMB": -1,
        })
        assert snap.cpu_usage == 100.0
        assert snap.ram_usage_percent == 0.0
        assert snap.disk_usage_percent == 0.0
        assert snap.cpu_temperature == 0.0
        assert snap.used_ram_mb == 0.0

    def test_blank_group_defaults(self):
        snap = MachineSnapshot.from_store({"PCName": "pc-01", "Group": "   "})
        assert snap.group == "ungrouped"

    def test_group_trimmed(self):
        assert MachineSnapshot.from_store({"PCName": "pc-01", "Group": " LAB A "}).group == "LAB A"

    def test_forbidden_processes_normalized(self):
        snap = MachineSnapshot.from_store({
            "PCName": "pc-01", "ForbiddenProcesses": {"0": "Steam", "1": "steam", "2": "Discord"},
        })
        assert snap.forbidden_processes == ["discord", "steam"]

    def test_missing_name_uses_path(self):
        snap = MachineSnapshot.from_store({"CpuUsage": 5}, "pc-07")
        assert snap.pc_name == "pc-07"

    def test_empty_name_rejected(self):
        with pytest.raises(ValidationError):
            MachineSnapshot.from_store({"PCName": ""})

    def test_non_dict_rejected(self):
        with pytest.raises(ValueError):
            MachineSnapshot.from_store("broken", "pc-01")

    def test_extra_fields_ignored_and_nulls_defaulted(self):
        snap = MachineSnapshot.from_store({"PCName": "pc-01", "Foo": 1, "Nickname": None, "ClassMode": None})
        assert snap.nickname == ""
        assert snap.class_mode is False
        assert snap.display_name == "pc-01"


class TestMessage:
    def test_create(self):
        msg = Message.create("hola", "monitor-1", NOW)
        assert len(msg.id) == 32
        assert msg.sent_at == NOW
        assert msg.to_store()["Sender"] == "monitor-1"

    def test_empty_id_rejected(self):
        with pytest.raises(ValidationError):
            Message.model_validate({"Id": " ", "Text": "x"})


class TestTimestamps:
    def test_naive_is_utc(self):
        assert parse_timestamp("2024-03-04T10:00:00") == NOW

    def test_zulu_and_long_fraction(self):
        dt = parse_timestamp("2024-03-04T10:00:00.1234567Z")
        assert dt == NOW + timedelta(microseconds=123456)

    def test_offset_converted(self):
        assert parse_timestamp("2024-03-04T11:00:00+01:00") == NOW

    @pytest.mark.parametrize("raw", ["", "not a date", None, 42, "0001-01-01T00:00:00"])
    def test_invalid(self, raw):
        assert parse_timestamp(raw) is None

    def test_to_iso_naive(self):
        assert to_iso(datetime(2024, 3, 4, 10, 0, 0)) == "2024-03-04T10:00:00+00:00"

    def test_age_seconds(self):
        assert age_seconds(to_iso(NOW - timedelta(seconds=40)), NOW) == 40
        assert age_seconds("bad", NOW) is None

    def test_relative_time(self):
        assert relative_time(to_iso(NOW - timedelta(seconds=5)), NOW) == "hace unos segundos"
        assert relative_time(to_iso(NOW - timedelta(minutes=1)), NOW) == "hace 1 minuto"
        assert relative_time(to_iso(NOW - timedelta(minutes=5)), NOW) == "hace 5 minutos"
        assert relative_time(to_iso(NOW - timedelta(hours=3)), NOW) == "hace 3 horas"
        assert relative_time(to_iso(NOW - timedelta(days=1)), NOW) == "hace 1 día"
        assert relative_time("??", NOW) == "fecha inválida"


class TestPaths:
    def test_layout(self):
        assert paths.machine_current("pc-01") == "machines/pc-01/current"
        assert paths.machine_history("pc-01") == "machines/pc-01/history"
        assert paths.command_slot("pc-01") == "commands/pc-01"
        assert paths.lab_message("LAB A") == "lab_messages/LAB A"
        assert paths.class_mode("LAB A") == "groups/LAB A/classMode"
        assert paths.master_flag("pc-01") == "masters/pc-01"

    def test_join_ignores_slashes(self):
        assert paths.join_path("/machines/", "pc-01//current") == "machines/pc-01/current"
