"""
Tests for MQTT discovery payloads, command parsing and the bridge.
"""

import asyncio
import json
from types import SimpleNamespace

import pytest

from shelly_dial.app.controller import BulbController
from shelly_dial.app.discovery import (
    LightCommandPayload,
    light_discovery,
    light_state_payload,
    parse_light_command,
    slugify,
)
from shelly_dial.app.mqtt_client import MqttBridge
from shelly_dial.app.scheduler import UpdateScheduler
from shelly_dial.app.settings import load_settings


class FakePahoClient:
    """Just enough of paho's Client surface for the bridge."""

    def __init__(self):
        self.published: list[tuple[str, str, bool]] = []
        self.subscribed: list[str] = []
        self.running = False
        self.on_connect = None
        self.on_disconnect = None
        self.on_message = None

    def connect_async(self, host, port, keepalive=60):
        self.target = (host, port)

    def loop_start(self):
        self.running = True

    def loop_stop(self):
        self.running = False

    def disconnect(self):
        pass

    def subscribe(self, topic, qos=0):
        self.subscribed.append(topic)

    def publish(self, topic, payload, qos=0, retain=False):
        self.published.append((topic, payload, retain))

    def topics(self) -> list[str]:
        return [t for t, _p, _r in self.published]


def make_bridge(store, sender, mqtt_config, loop=None):
    scheduler = UpdateScheduler(store, sender, debounce_s=0.02)
    controller = BulbController(store, scheduler, gateway=None)
    client = FakePahoClient()
    bridge = MqttBridge(controller, mqtt_config, loop, client=client)
    return bridge, client, controller


def message(topic, payload):
    return SimpleNamespace(topic=topic, payload=payload.encode("utf-8"))


@pytest.fixture
def mqtt_config():
    return load_settings({"mqtt": {"enabled": True, "base_topic": "lights"}}).mqtt


class TestDiscovery:
    def test_slugify(self):
        assert slugify("Bulb 1") == "bulb_1"
        assert slugify("  Desk-Lamp!! ") == "desk_lamp"
        assert slugify("!!!") == "device"

    def test_light_discovery_payload(self, devices, limits):
        topic, payload = light_discovery(
            discovery_prefix="homeassistant", base_topic="lights", device=devices[0], limits=limits
        )

        assert topic == "homeassistant/light/shelly_dial_lights/light_a/config"
        assert payload["command_topic"] == "lights/cmd/light/a"
        assert payload["state_topic"] == "lights/state/light/a"
        assert payload["min_kelvin"] == 2700
        assert payload["max_kelvin"] == 6500
        assert payload["brightness_scale"] == 100

    def test_state_payload(self, devices):
        assert light_state_payload(devices[0]) == {
            "state": "ON",
            "brightness": 50,
            "color_mode": "color_temp",
            "color_temp": 4000,
        }


class TestParseLightCommand:
    def test_plain_on_off(self):
        assert parse_light_command("on") == LightCommandPayload(on=True)
        assert parse_light_command(" OFF ") == LightCommandPayload(on=False)

    def test_json(self):
        cmd = parse_light_command('{"state": "ON", "brightness": 40, "color_temp": 3000}')
        assert cmd == LightCommandPayload(on=True, brightness=40, temperature=3000)

    def test_json_without_state(self):
        assert parse_light_command('{"brightness": 10}') == LightCommandPayload(brightness=10)

    @pytest.mark.parametrize("payload", ["", "toggle", "[1]", '{"brightness": [1]}', "{nope"])
    def test_rejects(self, payload):
        with pytest.raises(ValueError):
            parse_light_command(payload)


class TestMqttBridge:
    """Bridge wiring against a fake paho client."""

    @pytest.mark.asyncio
    async def test_connect_subscribes_and_announces(self, store, sender, mqtt_config):
        bridge, client, _controller = make_bridge(store, sender, mqtt_config, asyncio.get_running_loop())

        bridge.start()
        client.on_connect(client, None, {}, 0)
        await asyncio.sleep(0)

        assert client.running
        assert client.subscribed == ["lights/cmd/light/+"]
        assert "lights/availability" in client.topics()
        assert "lights/state/light/a" in client.topics()
        assert sum(t.endswith("/config") for t in client.topics()) == 3
        assert bridge.status().connected is True

    @pytest.mark.asyncio
    async def test_disconnect_records_error(self, store, sender, mqtt_config):
        bridge, client, _controller = make_bridge(store, sender, mqtt_config, asyncio.get_running_loop())
        bridge.start()
        client.on_connect(client, None, {}, 0)

        client.on_disconnect(client, None, {}, 7)

        st = bridge.status()
        assert st.connected is False
        assert "7" in st.last_error

    @pytest.mark.asyncio
    async def test_store_changes_are_mirrored(self, store, sender, mqtt_config):
        bridge, client, _controller = make_bridge(store, sender, mqtt_config, asyncio.get_running_loop())
        bridge.start()

        store.set_powered("c", False)

        topic, payload, retain = client.published[-1]
        assert topic == "lights/state/light/c"
        assert json.loads(payload)["state"] == "OFF"
        assert retain is True

    def test_resolve_topic(self, store, sender, mqtt_config):
        bridge, _client, _controller = make_bridge(store, sender, mqtt_config)

        assert bridge.resolve_topic("lights/cmd/light/b") == "b"
        assert bridge.resolve_topic("lights/cmd/light/zzz") is None
        assert bridge.resolve_topic("other/cmd/light/b") is None

    @pytest.mark.asyncio
    async def test_message_is_applied_on_the_loop(self, store, sender, mqtt_config):
        bridge, client, controller = make_bridge(store, sender, mqtt_config, asyncio.get_running_loop())
        bridge.start()

        client.on_message(client, None, message("lights/cmd/light/c", '{"brightness": 20, "color_temp": 3000}'))
        await asyncio.sleep(0)

        assert store.get("c").brightness == 20
        assert store.get("c").temperature == 3000
        await asyncio.wait_for(controller.scheduler.wait_idle(), timeout=2.0)

    @pytest.mark.asyncio
    async def test_off_command(self, store, sender, mqtt_config):
        bridge, _client, controller = make_bridge(store, sender, mqtt_config, asyncio.get_running_loop())

        bridge.apply("a", LightCommandPayload(on=False, brightness=10))
        await asyncio.wait_for(controller.scheduler.wait_idle(), timeout=2.0)

        assert store.get("a").powered is False
        assert store.get("a").brightness == 50
        assert sender.calls == [("10.0.0.1", False, None, None)]

    @pytest.mark.asyncio
    async def test_bad_payload_is_ignored(self, store, sender, mqtt_config):
        bridge, client, _controller = make_bridge(store, sender, mqtt_config, asyncio.get_running_loop())
        bridge.start()

        client.on_message(client, None, message("lights/cmd/light/a", "blink"))
        await asyncio.sleep(0)

        assert store.get("a").powered is True

    @pytest.mark.asyncio
    async def test_stop_publishes_offline(self, store, sender, mqtt_config):
        bridge, client, _controller = make_bridge(store, sender, mqtt_config, asyncio.get_running_loop())
        bridge.start()

        bridge.stop()

        assert client.published[-1] == ("lights/availability", "offline", True)
        assert client.running is False

    @pytest.mark.asyncio
    async def test_stop_detaches_from_store(self, store, sender, mqtt_config):
        bridge, client, _controller = make_bridge(store, sender, mqtt_config, asyncio.get_running_loop())
        bridge.start()
        bridge.stop()
        published = len(client.published)

        store.set_powered("c", False)

        assert len(client.published) == published
