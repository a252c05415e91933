"""消息接收去重测试。"""
import json
from datetime import timedelta

import pytest

from labwatch_agent.inbox import GLOBAL_CHANNEL, MessageInbox, load_state
from labwatch_shared import paths
from labwatch_shared.channels import MessageChannel
from labwatch_shared.timeutil import to_iso


def _message(mid, sent_at, text="hola"):
    return {"Id": mid, "Sender": "monitor", "Text": text, "Timestamp": to_iso(sent_at)}


@pytest.fixture
def state_file(tmp_path):
    return str(tmp_path / "state" / "messages.json")


class TestMessageInbox:
    @pytest.mark.asyncio
    async def test_seen_id_not_redelivered_new_id_delivered_once(self, store, clock, state_file):
        """已读 m1 不重复展示；10 分钟前的 m2 在 30 分钟有效期内只展示一次。"""
        await store.set(paths.GLOBAL_MESSAGE, _message("m1", clock() - timedelta(minutes=20)))
        inbox = MessageInbox(MessageChannel(store), state_file, 1800, clock=clock)
        inbox._state[GLOBAL_CHANNEL] = {"id": "m1", "timestamp": to_iso(clock() - timedelta(minutes=20))}

        delivered = []
        inbox.add_handler(lambda channel, msg: delivered.append((channel, msg.id)))

        assert await inbox.check_global() is None

        await store.set(paths.GLOBAL_MESSAGE, _message("m2", clock() - timedelta(minutes=10)))
        assert (await inbox.check_global()).id == "m2"
        assert await inbox.check_global() is None
        assert delivered == [(GLOBAL_CHANNEL, "m2")]

    @pytest.mark.asyncio
    async def test_state_persisted_immediately(self, store, clock, state_file):
        await store.set(paths.GLOBAL_MESSAGE, _message("m1", clock()))
        inbox = MessageInbox(MessageChannel(store), state_file, 1800, clock=clock)
        await inbox.check_global()

        with open(state_file) as f:
            assert json.load(f)[GLOBAL_CHANNEL]["id"] == "m1"

        # 重启后不会重复展示
        restarted = MessageInbox(MessageChannel(store), state_file, 1800, clock=clock)
        assert restarted.last_seen(GLOBAL_CHANNEL) == "m1"
        assert await restarted.check_global() is None

    @pytest.mark.asyncio
    async def test_stale_message_skipped(self, store, clock, state_file):
        await store.set(paths.GLOBAL_MESSAGE, _message("old", clock() - timedelta(minutes=31)))
        inbox = MessageInbox(MessageChannel(store), state_file, 1800, clock=clock)
        assert await inbox.check_global() is None
        assert inbox.last_seen(GLOBAL_CHANNEL) is None

    @pytest.mark.asyncio
    async def test_older_than_last_seen_skipped(self, store, clock, state_file):
        inbox = MessageInbox(MessageChannel(store), state_file, 1800, clock=clock)
        inbox._state[GLOBAL_CHANNEL] = {"id": "m5", "timestamp": to_iso(clock() - timedelta(minutes=1))}
        await store.set(paths.GLOBAL_MESSAGE, _message("m4", clock() - timedelta(minutes=2)))
        assert await inbox.check_global() is None

    @pytest.mark.asyncio
    async def test_invalid_timestamp_skipped(self, store, clock, state_file):
        await store.set(paths.GLOBAL_MESSAGE, {"Id": "m1", "Text": "x", "Timestamp": "yesterday"})
        inbox = MessageInbox(MessageChannel(store), state_file, 1800, clock=clock)
        assert await inbox.check_global() is None

    @pytest.mark.asyncio
    async def test_group_channel_independent(self, store, clock, state_file):
        await store.set(paths.GLOBAL_MESSAGE, _message("same", clock()))
        await store.set(paths.lab_message("LAB B"), _message("same", clock()))
        inbox = MessageInbox(MessageChannel(store), state_file, 1800, clock=clock)
        assert await inbox.check_global() is not None
        assert (await inbox.check_group("LAB B")).id == "same"
        assert inbox.last_seen("group:LAB B") == "same"
        assert await inbox.check_group("LAB A") is None

    @pytest.mark.asyncio
    async def test_handler_error_does_not_block_delivery(self, store, clock, state_file):
        await store.set(paths.GLOBAL_MESSAGE, _message("m1", clock()))
        inbox = MessageInbox(MessageChannel(store), state_file, 1800, clock=clock)

        def broken(channel, msg):
            raise RuntimeError("display failed")

        inbox.add_handler(broken)
        assert (await inbox.check_global()).id == "m1"
        assert inbox.last_seen(GLOBAL_CHANNEL) == "m1"


def test_load_state_corrupt(tmp_path):
    path = tmp_path / "messages.json"
    path.write_text("{broken")
    assert load_state(str(path)) == {}
    assert load_state(str(tmp_path / "missing.json")) == {}
