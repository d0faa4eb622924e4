from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

from .settings import Limits
from .store import Device


def slugify(text: str) -> str:
    s = text.strip().lower()
    s = re.sub(r"[^a-z0-9_\- ]+", "", s)
    s = re.sub(r"[\s\-]+", "_", s)
    return s or "device"


def node_id(base_topic: str) -> str:
    return f"shelly_dial_{slugify(base_topic)}"


def state_topic(base_topic: str, device_id: str) -> str:
    return f"{base_topic}/state/light/{slugify(device_id)}"


def command_topic(base_topic: str, device_id: str) -> str:
    return f"{base_topic}/cmd/light/{slugify(device_id)}"


def availability_topic(base_topic: str) -> str:
    return f"{base_topic}/availability"


def light_discovery(
    *,
    discovery_prefix: str,
    base_topic: str,
    device: Device,
    limits: Limits,
) -> tuple[str, dict[str, Any]]:
    nid = node_id(base_topic)
    # Keyed on the device id so renames do not create new entities.
    oid = f"light_{slugify(device.id)}"
    uid = f"{nid}_{oid}"

    payload: dict[str, Any] = {
        "name": device.name,
        "unique_id": uid,
        "schema": "json",
        "state_topic": state_topic(base_topic, device.id),
        "command_topic": command_topic(base_topic, device.id),
        "availability_topic": availability_topic(base_topic),
        "payload_available": "online",
        "payload_not_available": "offline",
        "brightness": True,
        "brightness_scale": limits.brightness_max,
        "supported_color_modes": ["color_temp"],
        "color_temp_kelvin": True,
        "min_kelvin": limits.temp_min,
        "max_kelvin": limits.temp_max,
        "device": {
            "identifiers": [f"shelly_dial:{slugify(device.id)}"],
            "name": device.name,
            "manufacturer": "Shelly",
            "model": "Duo",
            "configuration_url": f"http://{device.address}",
        },
    }

    topic = f"{discovery_prefix}/light/{nid}/{oid}/config"
    return topic, payload


def light_state_payload(device: Device) -> dict[str, Any]:
    return {
        "state": "ON" if device.powered else "OFF",
        "brightness": int(device.brightness),
        "color_mode": "color_temp",
        "color_temp": int(device.temperature),
    }


@dataclass(frozen=True)
class LightCommandPayload:
    on: bool | None = None
    brightness: int | None = None
    temperature: int | None = None


def parse_light_command(payload: str) -> LightCommandPayload:
    s = payload.strip()
    if not s:
        raise ValueError("empty payload")

    if s[0] == "{":
        obj = json.loads(s)
        if not isinstance(obj, dict):
            raise ValueError("unsupported payload")
        state = str(obj.get("state") or "").upper()
        on: bool | None = None
        if state in ("ON", "OFF"):
            on = state == "ON"
        br = obj.get("brightness")
        ct = obj.get("color_temp")
        try:
            return LightCommandPayload(
                on=on,
                brightness=int(br) if br is not None else None,
                temperature=int(ct) if ct is not None else None,
            )
        except TypeError as e:
            raise ValueError(f"bad light value: {e}") from e

    up = s.upper()
    if up in ("ON", "OFF"):
        return LightCommandPayload(on=up == "ON")

    raise ValueError("unsupported payload")
