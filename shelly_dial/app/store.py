from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, replace
from typing import Any, Callable, Iterable, Literal

from .settings import DeviceConfig, Limits

_LOGGER = logging.getLogger("store")

FIELD_BRIGHTNESS = "brightness"
FIELD_TEMPERATURE = "temperature"

LevelField = Literal["brightness", "temperature"]


@dataclass(frozen=True)
class Device:
    id: str
    name: str
    address: str
    brightness: int = 50  # 0-100
    temperature: int = 4000  # Kelvin
    powered: bool = True
    linked: bool = True
    pending: bool = False
    reachable: bool | None = None  # None until the first status query

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def clamp_field(field: str, value: float, limits: Limits) -> int:
    if field == FIELD_BRIGHTNESS:
        return limits.clamp_brightness(value)
    if field == FIELD_TEMPERATURE:
        return limits.clamp_temperature(value)
    raise ValueError(f"unsupported field: {field}")


def apply_optimistic_change(
    devices: Iterable[Device],
    source_id: str,
    field: LevelField,
    value: float,
    limits: Limits,
) -> list[Device]:
    """Return a new device list with ``field`` set on the source and, if the
    source is linked, on every other linked device.

    Unknown source ids leave the list untouched.
    """
    items = list(devices)
    source = next((d for d in items if d.id == source_id), None)
    if source is None:
        return items

    clamped = clamp_field(field, value, limits)
    out: list[Device] = []
    for dev in items:
        if dev.id == source_id or (source.linked and dev.linked):
            out.append(replace(dev, **{field: clamped}))
        else:
            out.append(dev)
    return out


class DeviceStateStore:
    """In-memory record of every bulb's last-known and desired state."""

    def __init__(self, devices: Iterable[Device], *, limits: Limits) -> None:
        self._limits = limits
        self._devices: list[Device] = []
        seen: set[str] = set()
        for dev in devices:
            if dev.id in seen:
                _LOGGER.warning("Duplicate device id %s ignored", dev.id)
                continue
            seen.add(dev.id)
            self._devices.append(
                replace(
                    dev,
                    brightness=limits.clamp_brightness(dev.brightness),
                    temperature=limits.clamp_temperature(dev.temperature),
                )
            )
        self._listeners: list[Callable[[Device], None]] = []

    @classmethod
    def from_config(cls, devices: Iterable[DeviceConfig], *, limits: Limits) -> "DeviceStateStore":
        return cls((Device(id=d.id, name=d.name, address=d.address) for d in devices), limits=limits)

    @property
    def limits(self) -> Limits:
        return self._limits

    def devices(self) -> list[Device]:
        return list(self._devices)

    def get(self, device_id: str) -> Device | None:
        for dev in self._devices:
            if dev.id == device_id:
                return dev
        return None

    def add_listener(self, cb: Callable[[Device], None]) -> Callable[[], None]:
        self._listeners.append(cb)

        def _remove() -> None:
            try:
                self._listeners.remove(cb)
            except ValueError:
                pass

        return _remove

    def _emit(self, dev: Device) -> None:
        for cb in list(self._listeners):
            try:
                cb(dev)
            except Exception:
                _LOGGER.exception("Device listener failed")

    def _commit(self, updated: list[Device]) -> list[Device]:
        before = {d.id: d for d in self._devices}
        self._devices = updated
        changed = [d for d in updated if before.get(d.id) != d]
        for dev in changed:
            self._emit(dev)
        return changed

    def _update(self, device_id: str, **changes: Any) -> Device | None:
        dev = self.get(device_id)
        if dev is None:
            return None
        new = replace(dev, **changes)
        if new != dev:
            self._commit([new if d.id == device_id else d for d in self._devices])
        return new

    def apply_optimistic_change(self, source_id: str, field: LevelField, value: float) -> list[Device]:
        """Apply a level change to the source (and its linked peers); returns the changed devices."""
        return self._commit(apply_optimistic_change(self._devices, source_id, field, value, self._limits))

    def set_powered(self, device_id: str, powered: bool) -> Device | None:
        return self._update(device_id, powered=bool(powered))

    def set_linked(self, device_id: str, linked: bool) -> Device | None:
        return self._update(device_id, linked=bool(linked))

    def set_pending(self, device_id: str, pending: bool) -> Device | None:
        return self._update(device_id, pending=bool(pending))

    def set_reachable(self, device_id: str, reachable: bool | None) -> Device | None:
        return self._update(device_id, reachable=reachable)

    def is_any_on(self) -> bool:
        return any(d.powered for d in self._devices)
