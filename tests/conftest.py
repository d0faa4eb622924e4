"""
Shared fixtures: a small bulb set, a recording light sender and a relay stub.
"""

from __future__ import annotations

import asyncio
from typing import NamedTuple

import pytest

from shelly_dial.app.gateway import DeviceRequestError
from shelly_dial.app.settings import Limits, RelayConfig
from shelly_dial.app.store import Device, DeviceStateStore


class SentCall(NamedTuple):
    address: str
    on: bool | None
    brightness: int | None
    temperature: int | None


class FakeSender:
    """Records set_light calls and the per-address concurrency it observed."""

    def __init__(self, *, delay: float = 0.0, fail: bool = False) -> None:
        self.delay = delay
        self.fail = fail
        self.gate: asyncio.Event | None = None
        self.calls: list[SentCall] = []
        self.active: dict[str, int] = {}
        self.max_active: dict[str, int] = {}

    async def set_light(self, address, *, on=None, brightness=None, temperature=None):
        self.active[address] = self.active.get(address, 0) + 1
        self.max_active[address] = max(self.max_active.get(address, 0), self.active[address])
        self.calls.append(SentCall(address, on, brightness, temperature))
        try:
            if self.gate is not None:
                await self.gate.wait()
            elif self.delay:
                await asyncio.sleep(self.delay)
            if self.fail:
                raise DeviceRequestError(f"{address}: HTTP 500")
        finally:
            self.active[address] -= 1

    def calls_for(self, address: str) -> list[SentCall]:
        return [c for c in self.calls if c.address == address]


class StubRelay:
    def __init__(self, online: bool = False) -> None:
        self.online = online
        self.first_check_calls = 0

    def is_online(self) -> bool:
        return self.online

    async def wait_for_first_check(self) -> bool:
        self.first_check_calls += 1
        return self.online


@pytest.fixture
def limits() -> Limits:
    return Limits()


@pytest.fixture
def relay_config() -> RelayConfig:
    return RelayConfig(
        enabled=True,
        host="relay.local",
        port=8443,
        health_path="/health",
        health_timeout_s=0.2,
        recheck_interval_s=30.0,
        verify_tls=True,
    )


@pytest.fixture
def devices() -> list[Device]:
    return [
        Device(id="a", name="A", address="10.0.0.1", brightness=50, temperature=4000),
        Device(id="b", name="B", address="10.0.0.2", brightness=50, temperature=4000),
        Device(id="c", name="C", address="10.0.0.3", brightness=50, temperature=4000, linked=False),
    ]


@pytest.fixture
def store(devices, limits) -> DeviceStateStore:
    return DeviceStateStore(devices, limits=limits)


@pytest.fixture
def sender() -> FakeSender:
    return FakeSender()


@pytest.fixture
def relay_stub() -> StubRelay:
    return StubRelay()
