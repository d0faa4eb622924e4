from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, fields
from typing import Protocol

from .store import Device, DeviceStateStore

_LOGGER = logging.getLogger("scheduler")


class LightSender(Protocol):
    async def set_light(
        self,
        address: str,
        *,
        on: bool | None = None,
        brightness: int | None = None,
        temperature: int | None = None,
    ) -> None: ...


@dataclass
class PendingUpdate:
    brightness: int | None = None
    temperature: int | None = None
    powered: bool | None = None

    def merge(self, other: "PendingUpdate") -> None:
        # Last write wins per field.
        for f in fields(self):
            v = getattr(other, f.name)
            if v is not None:
                setattr(self, f.name, v)

    def is_empty(self) -> bool:
        return self.brightness is None and self.temperature is None and self.powered is None


@dataclass(frozen=True)
class LightCommand:
    on: bool | None = None
    brightness: int | None = None
    temperature: int | None = None

    @property
    def kind(self) -> str:
        if self.on is False:
            return "turn_off"
        if self.on is True:
            return "turn_on"
        if self.brightness is not None and self.temperature is not None:
            return "set_light"
        if self.brightness is not None:
            return "set_brightness"
        return "set_temperature"


def plan_command(update: PendingUpdate, device: Device) -> LightCommand | None:
    """Decide the single call that carries ``update`` to the bulb.

    Off beats everything else pending. Turning on always re-asserts brightness
    and temperature, falling back to the device's last-known values.
    """
    if update.powered is False:
        return LightCommand(on=False)
    if update.powered is True:
        return LightCommand(
            on=True,
            brightness=update.brightness if update.brightness is not None else device.brightness,
            temperature=update.temperature if update.temperature is not None else device.temperature,
        )
    if update.brightness is not None or update.temperature is not None:
        return LightCommand(brightness=update.brightness, temperature=update.temperature)
    return None


class UpdateScheduler:
    """Per-bulb debounce, coalescing and in-flight exclusion.

    Every state transition happens synchronously on the event loop; the only
    suspension point inside the scheduler is the network call itself, so the
    maps below never need a lock.
    """

    def __init__(
        self,
        store: DeviceStateStore,
        sender: LightSender,
        *,
        debounce_s: float = 0.25,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self._store = store
        self._sender = sender
        self._debounce_s = float(max(0.0, debounce_s))
        self._loop = loop

        self._pending: dict[str, PendingUpdate] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._inflight: set[str] = set()
        self._tasks: set[asyncio.Task] = set()
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = False

    @property
    def debounce_s(self) -> float:
        return self._debounce_s

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def pending(self, device_id: str) -> PendingUpdate | None:
        return self._pending.get(device_id)

    def is_inflight(self, device_id: str) -> bool:
        return device_id in self._inflight

    def has_timer(self, device_id: str) -> bool:
        return device_id in self._timers

    def is_idle(self) -> bool:
        return not (self._pending or self._timers or self._inflight)

    async def wait_idle(self) -> None:
        await self._idle.wait()

    def _refresh(self, device_id: str) -> None:
        busy = device_id in self._pending or device_id in self._inflight
        dev = self._store.get(device_id)
        if dev is not None and dev.pending != busy:
            self._store.set_pending(device_id, busy)
        if self.is_idle():
            self._idle.set()
        else:
            self._idle.clear()

    def _cancel_timer(self, device_id: str) -> None:
        handle = self._timers.pop(device_id, None)
        if handle is not None:
            handle.cancel()

    def schedule(
        self,
        device_id: str,
        *,
        brightness: int | None = None,
        temperature: int | None = None,
        powered: bool | None = None,
    ) -> None:
        if self._closed:
            return
        if self._store.get(device_id) is None:
            _LOGGER.warning("schedule() for unknown device %s ignored", device_id)
            return

        update = PendingUpdate(brightness=brightness, temperature=temperature, powered=powered)
        slot = self._pending.get(device_id)
        if slot is None:
            slot = PendingUpdate()
            self._pending[device_id] = slot
        slot.merge(update)

        self._cancel_timer(device_id)
        if device_id in self._inflight:
            # Picked up when the outstanding request completes.
            self._refresh(device_id)
            return

        if powered is not None:
            self._refresh(device_id)
            self.flush(device_id)
            return

        self._timers[device_id] = self._get_loop().call_later(self._debounce_s, self._on_timer, device_id)
        self._refresh(device_id)

    def _on_timer(self, device_id: str) -> None:
        self._timers.pop(device_id, None)
        if device_id in self._inflight:
            # The completion path re-flushes.
            return
        self.flush(device_id)

    def flush(self, device_id: str) -> None:
        if self._closed or device_id in self._inflight:
            return
        self._cancel_timer(device_id)
        update = self._pending.pop(device_id, None)
        dev = self._store.get(device_id)
        if update is None or dev is None:
            self._refresh(device_id)
            return

        command = plan_command(update, dev)
        if command is None:
            self._refresh(device_id)
            return

        self._inflight.add(device_id)
        self._refresh(device_id)
        task = self._get_loop().create_task(self._send(dev, command))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _send(self, dev: Device, command: LightCommand) -> None:
        try:
            _LOGGER.debug("%s -> %s %s", dev.id, command.kind, command)
            await self._sender.set_light(
                dev.address,
                on=command.on,
                brightness=command.brightness,
                temperature=command.temperature,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            _LOGGER.warning("Failed to update %s: %s", dev.name, e)
        finally:
            self._inflight.discard(dev.id)
            if dev.id in self._pending:
                self.flush(dev.id)
            else:
                self._refresh(dev.id)

    async def close(self) -> None:
        self._closed = True
        for device_id in list(self._timers):
            self._cancel_timer(device_id)
        self._pending.clear()
        tasks = list(self._tasks)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight.clear()
        self._idle.set()
