from __future__ import annotations

import asyncio
import logging
from typing import Callable, Literal

from .gateway import DeviceGateway, DeviceStatus
from .group import GroupPropagator
from .scheduler import UpdateScheduler
from .store import FIELD_BRIGHTNESS, FIELD_TEMPERATURE, Device, DeviceStateStore

_LOGGER = logging.getLogger("controller")

MODE_BRIGHTNESS = "brightness"
MODE_TEMPERATURE = "temperature"

ControlMode = Literal["brightness", "temperature"]


class BulbController:
    """The operations a user can trigger from the page (or over MQTT)."""

    def __init__(
        self,
        store: DeviceStateStore,
        scheduler: UpdateScheduler,
        gateway: DeviceGateway,
    ) -> None:
        self._store = store
        self._scheduler = scheduler
        self._gateway = gateway
        self._group = GroupPropagator(store, scheduler)
        self._mode: ControlMode = MODE_BRIGHTNESS
        self._mode_listeners: list[Callable[[str], None]] = []

    @property
    def store(self) -> DeviceStateStore:
        return self._store

    @property
    def scheduler(self) -> UpdateScheduler:
        return self._scheduler

    @property
    def mode(self) -> ControlMode:
        return self._mode

    def add_mode_listener(self, cb: Callable[[str], None]) -> None:
        self._mode_listeners.append(cb)

    def set_mode(self, mode: str) -> str:
        if mode not in (MODE_BRIGHTNESS, MODE_TEMPERATURE):
            raise ValueError("mode must be brightness/temperature")
        if mode != self._mode:
            self._mode = mode
            for cb in list(self._mode_listeners):
                try:
                    cb(mode)
                except Exception:
                    _LOGGER.exception("Mode listener failed")
        return self._mode

    def toggle_mode(self) -> str:
        return self.set_mode(MODE_TEMPERATURE if self._mode == MODE_BRIGHTNESS else MODE_BRIGHTNESS)

    # Levels

    def set_brightness(self, device_id: str, value: float) -> list[str]:
        return self._group.change(device_id, FIELD_BRIGHTNESS, value)

    def set_temperature(self, device_id: str, value: float) -> list[str]:
        return self._group.change(device_id, FIELD_TEMPERATURE, value)

    def dial_value(self, device: Device, mode: str | None = None) -> float:
        mode = mode or self._mode
        if mode == MODE_BRIGHTNESS:
            return float(device.brightness)
        lim = self._store.limits
        span = lim.temp_max - lim.temp_min
        if span <= 0:
            return 0.0
        return (device.temperature - lim.temp_min) / span * 100.0

    def set_dial_value(self, device_id: str, value: float, mode: str | None = None) -> list[str]:
        mode = mode or self._mode
        pct = max(0.0, min(100.0, float(value)))
        if mode == MODE_BRIGHTNESS:
            return self.set_brightness(device_id, pct)
        lim = self._store.limits
        return self.set_temperature(device_id, lim.temp_min + pct / 100.0 * (lim.temp_max - lim.temp_min))

    # Power / link

    def set_power(self, device_id: str, on: bool) -> Device | None:
        dev = self._store.get(device_id)
        if dev is None:
            return None
        if dev.powered == bool(on):
            return dev
        dev = self._store.set_powered(device_id, bool(on))
        if dev is None:
            return None
        if dev.powered:
            # Turning on re-asserts both levels; the bulb's own values are stale after being off.
            self._scheduler.schedule(
                device_id, powered=True, brightness=dev.brightness, temperature=dev.temperature
            )
        else:
            self._scheduler.schedule(device_id, powered=False)
        return dev

    def toggle_power(self, device_id: str) -> Device | None:
        dev = self._store.get(device_id)
        if dev is None:
            return None
        return self.set_power(device_id, not dev.powered)

    def is_any_on(self) -> bool:
        return self._store.is_any_on()

    def set_all_power(self, on: bool) -> list[str]:
        changed: list[str] = []
        for dev in self._store.devices():
            if dev.powered != bool(on):
                self.set_power(dev.id, on)
                changed.append(dev.id)
        return changed

    def toggle_link(self, device_id: str) -> Device | None:
        dev = self._store.get(device_id)
        if dev is None:
            return None
        return self._store.set_linked(device_id, not dev.linked)

    # Reachability

    async def refresh_status(self, device_id: str) -> DeviceStatus | None:
        dev = self._store.get(device_id)
        if dev is None:
            return None
        status = await self._gateway.get_status(dev.address)
        self._store.set_reachable(device_id, status.online)
        if not status.online:
            _LOGGER.info("%s unreachable: %s", dev.name, status.error)
        return status

    async def refresh_all(self) -> dict[str, DeviceStatus]:
        devices = self._store.devices()
        results = await asyncio.gather(*(self.refresh_status(d.id) for d in devices))
        return {d.id: st for d, st in zip(devices, results) if st is not None}
