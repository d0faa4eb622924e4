"""
Tests for the WebSocket fan-out hub.
"""

import asyncio
import json

import pytest

from shelly_dial.app.realtime import RealtimeHub, encode_event


class FakeSocket:
    def __init__(self, *, fail=False, stall=False):
        self.fail = fail
        self.stall = stall
        self.accepted = False
        self.closed = False
        self.sent: list[str] = []

    async def accept(self):
        self.accepted = True

    async def send_text(self, msg):
        if self.stall:
            await asyncio.sleep(10)
        if self.fail:
            raise RuntimeError("socket gone")
        self.sent.append(msg)

    async def close(self):
        self.closed = True


class TestRealtimeHub:
    @pytest.mark.asyncio
    async def test_broadcast_reaches_every_page(self):
        hub = RealtimeHub()
        a, b = FakeSocket(), FakeSocket()
        await hub.connect(a)
        await hub.connect(b)

        await hub.broadcast("device", {"id": "bulb-1"})

        assert a.accepted and b.accepted
        assert json.loads(a.sent[0]) == {"type": "device", "data": {"id": "bulb-1"}}
        assert b.sent == a.sent

    @pytest.mark.asyncio
    async def test_failed_and_stalled_pages_are_dropped(self):
        hub = RealtimeHub(send_timeout_s=0.05)
        ok, broken, stalled = FakeSocket(), FakeSocket(fail=True), FakeSocket(stall=True)
        for ws in (ok, broken, stalled):
            await hub.connect(ws)

        await hub.broadcast("relay", {"status": "online"})

        assert hub.client_count == 1
        assert len(ok.sent) == 1

    @pytest.mark.asyncio
    async def test_publish_from_sync_code(self):
        hub = RealtimeHub()
        ws = FakeSocket()
        await hub.connect(ws)
        hub.bind(asyncio.get_running_loop())

        hub.publish("devices", {"mode": "temperature"})
        await asyncio.sleep(0.01)

        assert ws.sent == [encode_event("devices", {"mode": "temperature"})]

    def test_publish_without_loop_is_ignored(self):
        RealtimeHub().publish("device", {})

    @pytest.mark.asyncio
    async def test_close_all(self):
        hub = RealtimeHub()
        ws = FakeSocket()
        await hub.connect(ws)

        await hub.close_all()

        assert ws.closed
        assert hub.client_count == 0
