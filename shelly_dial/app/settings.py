from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

DEFAULT_DEVICES: tuple[dict[str, str], ...] = (
    {"id": "bulb-1", "name": "Bulb 1", "address": "192.168.4.160"},
    {"id": "bulb-2", "name": "Bulb 2", "address": "192.168.4.161"},
    {"id": "bulb-3", "name": "Bulb 3", "address": "192.168.4.162"},
    {"id": "bulb-4", "name": "Bulb 4", "address": "192.168.4.163"},
)


@dataclass(frozen=True)
class DeviceConfig:
    id: str
    name: str
    address: str


@dataclass(frozen=True)
class Limits:
    brightness_min: int = 0
    brightness_max: int = 100
    temp_min: int = 2700
    temp_max: int = 6500

    def clamp_brightness(self, value: float) -> int:
        return int(round(max(self.brightness_min, min(self.brightness_max, float(value)))))

    def clamp_temperature(self, value: float) -> int:
        return int(round(max(self.temp_min, min(self.temp_max, float(value)))))


@dataclass(frozen=True)
class SchedulerConfig:
    debounce_s: float
    set_timeout_s: float


@dataclass(frozen=True)
class RelayConfig:
    enabled: bool
    host: str
    port: int
    health_path: str
    health_timeout_s: float
    recheck_interval_s: float
    verify_tls: bool

    @property
    def base_url(self) -> str:
        return f"https://{self.host}:{self.port}"


@dataclass(frozen=True)
class MqttConfig:
    enabled: bool
    host: str
    port: int
    username: str
    password: str
    base_topic: str
    discovery_prefix: str
    client_id: str


@dataclass(frozen=True)
class Settings:
    devices: tuple[DeviceConfig, ...]
    limits: Limits
    scheduler: SchedulerConfig
    relay: RelayConfig
    mqtt: MqttConfig
    status_timeout_s: float
    status_poll_interval_s: float
    simulate: bool
    simulate_latency_s: float
    debug: bool


def read_options() -> dict[str, Any]:
    path = os.environ.get("SHELLY_DIAL_OPTIONS", "/data/options.json")
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return {}


def _read_float(raw: dict[str, Any], key: str, default: float) -> float:
    try:
        v = raw.get(key)
        if v is None:
            return float(default)
        return float(v)
    except (TypeError, ValueError):
        return float(default)


def _read_int(raw: dict[str, Any], key: str, default: int) -> int:
    try:
        v = raw.get(key)
        if v is None:
            return int(default)
        return int(v)
    except (TypeError, ValueError):
        return int(default)


def _load_devices(items: Any) -> tuple[DeviceConfig, ...]:
    if not isinstance(items, list):
        items = list(DEFAULT_DEVICES)

    out: list[DeviceConfig] = []
    seen: set[str] = set()
    for idx, it in enumerate(items):
        if not isinstance(it, dict):
            continue
        address = str(it.get("address") or it.get("ip") or "").strip()
        if not address:
            continue
        dev_id = str(it.get("id") or f"bulb-{idx + 1}").strip()
        # ids are never reused within a session
        if dev_id in seen:
            continue
        seen.add(dev_id)
        name = str(it.get("name") or "").strip() or dev_id
        out.append(DeviceConfig(id=dev_id, name=name, address=address))
    return tuple(out)


def _load_limits(raw: dict[str, Any]) -> Limits:
    b_lo = _read_int(raw, "brightness_min", 0)
    b_hi = _read_int(raw, "brightness_max", 100)
    t_lo = _read_int(raw, "temp_min", 2700)
    t_hi = _read_int(raw, "temp_max", 6500)
    if b_lo > b_hi:
        b_lo, b_hi = b_hi, b_lo
    if t_lo > t_hi:
        t_lo, t_hi = t_hi, t_lo
    return Limits(brightness_min=b_lo, brightness_max=b_hi, temp_min=t_lo, temp_max=t_hi)


def load_settings(options: dict[str, Any]) -> Settings:
    limits = _load_limits(options.get("limits") or {})

    scheduler = SchedulerConfig(
        debounce_s=max(0.0, _read_float(options, "debounce_ms", 250.0)) / 1000.0,
        set_timeout_s=max(0.1, _read_float(options, "set_timeout_s", 5.0)),
    )

    relay_raw = options.get("relay") or {}
    health_path = str(relay_raw.get("health_path") or "/health").strip()
    if not health_path.startswith("/"):
        health_path = "/" + health_path
    relay = RelayConfig(
        enabled=bool(relay_raw.get("enabled") or False),
        host=str(relay_raw.get("host") or "raspberrypi.local").strip(),
        port=_read_int(relay_raw, "port", 8443),
        health_path=health_path,
        health_timeout_s=max(0.1, _read_float(relay_raw, "health_timeout_s", 3.0)),
        recheck_interval_s=max(1.0, _read_float(relay_raw, "recheck_interval_s", 30.0)),
        verify_tls=bool(relay_raw.get("verify_tls", True)),
    )

    mqtt_raw = options.get("mqtt") or {}
    mqtt = MqttConfig(
        enabled=bool(mqtt_raw.get("enabled") or False),
        host=str(mqtt_raw.get("host") or "core-mosquitto"),
        port=_read_int(mqtt_raw, "port", 1883),
        username=str(mqtt_raw.get("username") or ""),
        password=str(mqtt_raw.get("password") or ""),
        base_topic=str(mqtt_raw.get("base_topic") or "shelly_dial").rstrip("/"),
        discovery_prefix=str(mqtt_raw.get("discovery_prefix") or "homeassistant").rstrip("/"),
        client_id=str(mqtt_raw.get("client_id") or "shelly-dial"),
    )

    return Settings(
        devices=_load_devices(options.get("devices")),
        limits=limits,
        scheduler=scheduler,
        relay=relay,
        mqtt=mqtt,
        status_timeout_s=max(0.1, _read_float(options, "status_timeout_s", 5.0)),
        status_poll_interval_s=max(0.0, _read_float(options, "status_poll_interval_s", 30.0)),
        simulate=bool(options.get("simulate") or False),
        simulate_latency_s=max(0.0, _read_float(options, "simulate_latency_s", 0.15)),
        debug=bool(options.get("debug") or False),
    )
