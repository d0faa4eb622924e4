from __future__ import annotations

import logging
from typing import Iterable

from .scheduler import UpdateScheduler
from .store import FIELD_BRIGHTNESS, FIELD_TEMPERATURE, Device, DeviceStateStore

_LOGGER = logging.getLogger("group")


def propagation_targets(devices: Iterable[Device], source_id: str) -> list[str]:
    """Ids that receive a level change made on ``source_id``: the source itself
    plus, when it is linked, every other linked device. There is a single
    implicit group per session."""
    items = list(devices)
    source = next((d for d in items if d.id == source_id), None)
    if source is None:
        return []
    return [d.id for d in items if d.id == source_id or (source.linked and d.linked)]


class GroupPropagator:
    def __init__(self, store: DeviceStateStore, scheduler: UpdateScheduler) -> None:
        self._store = store
        self._scheduler = scheduler

    def change(self, source_id: str, field: str, value: float) -> list[str]:
        """Fan a brightness/temperature gesture out to the linked group.

        Returns the ids that got a network update scheduled. Devices that are
        off take the new value locally only; it goes out with their next
        turn-on.
        """
        if field not in (FIELD_BRIGHTNESS, FIELD_TEMPERATURE):
            raise ValueError(f"unsupported field: {field}")

        targets = propagation_targets(self._store.devices(), source_id)
        if not targets:
            _LOGGER.warning("Change for unknown device %s ignored", source_id)
            return []

        self._store.apply_optimistic_change(source_id, field, value)

        scheduled: list[str] = []
        for dev_id in targets:
            dev = self._store.get(dev_id)
            if dev is None or not dev.powered:
                continue
            self._scheduler.schedule(dev_id, **{field: getattr(dev, field)})
            scheduled.append(dev_id)
        return scheduled
