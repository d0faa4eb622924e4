from __future__ import annotations

import asyncio
import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable

import paho.mqtt.client as mqtt

from .controller import BulbController
from .discovery import (
    LightCommandPayload,
    availability_topic,
    light_discovery,
    light_state_payload,
    parse_light_command,
    slugify,
    state_topic,
)
from .settings import MqttConfig
from .store import Device

_LOGGER = logging.getLogger("mqtt")


@dataclass(frozen=True)
class MqttStatus:
    enabled: bool
    connected: bool
    last_error: str | None


def make_client(config: MqttConfig) -> mqtt.Client:
    client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=config.client_id)
    if config.username:
        client.username_pw_set(config.username, config.password)
    client.will_set(availability_topic(config.base_topic), "offline", retain=True)
    client.reconnect_delay_set(min_delay=1, max_delay=30)
    return client


class MqttBridge:
    """Mirrors bulb state to MQTT and feeds MQTT light commands into the controller.

    paho calls back on its own network thread. Anything that touches the store
    or the scheduler is handed to the event loop first; publishing is
    thread-safe in paho and happens directly.
    """

    def __init__(
        self,
        controller: BulbController,
        config: MqttConfig,
        loop: asyncio.AbstractEventLoop,
        *,
        client: Any = None,
    ) -> None:
        self._controller = controller
        self._config = config
        self._loop = loop
        self._client = client if client is not None else make_client(config)
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message

        self._lock = threading.Lock()
        self._connected = False
        self._last_error: str | None = None
        self._by_slug: dict[str, str] = {slugify(d.id): d.id for d in controller.store.devices()}
        self._unsubscribe: Callable[[], None] | None = None

    @property
    def command_filter(self) -> str:
        return f"{self._config.base_topic}/cmd/light/+"

    def start(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self._controller.store.add_listener(self.publish_state)
        try:
            self._client.connect_async(self._config.host, self._config.port, keepalive=30)
            self._client.loop_start()
            _LOGGER.info("MQTT connecting to %s:%s", self._config.host, self._config.port)
        except Exception as e:
            with self._lock:
                self._last_error = str(e)
            _LOGGER.warning("MQTT connect failed: %s", e)

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        try:
            self._publish(availability_topic(self._config.base_topic), "offline", retain=True)
        finally:
            self._client.loop_stop()
            self._client.disconnect()
            with self._lock:
                self._connected = False

    def status(self) -> MqttStatus:
        with self._lock:
            return MqttStatus(enabled=True, connected=self._connected, last_error=self._last_error)

    def _publish(self, topic: str, payload: Any, *, retain: bool = False) -> None:
        data = json.dumps(payload, ensure_ascii=False) if isinstance(payload, dict) else str(payload)
        self._client.publish(topic, data, qos=0, retain=retain)

    # Network thread

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if getattr(reason_code, "is_failure", False):
            with self._lock:
                self._last_error = f"connect refused: {reason_code}"
            _LOGGER.warning("MQTT connect refused: %s", reason_code)
            return
        with self._lock:
            self._connected = True
            self._last_error = None
        # Subscriptions do not survive a reconnect with a clean session.
        client.subscribe(self.command_filter, qos=0)
        self._loop.call_soon_threadsafe(self.announce)

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None):
        with self._lock:
            self._connected = False
            if getattr(reason_code, "value", reason_code) != 0:
                self._last_error = f"disconnect reason_code={reason_code}"
        _LOGGER.info("MQTT disconnected: %s", reason_code)

    def _on_message(self, client, userdata, msg):
        payload = msg.payload.decode("utf-8", errors="replace")
        try:
            self.handle_message(str(msg.topic), payload)
        except Exception:
            # Keep the network thread alive.
            _LOGGER.exception("MQTT message handler failed for %s", msg.topic)

    def handle_message(self, topic: str, payload: str) -> None:
        device_id = self.resolve_topic(topic)
        if device_id is None:
            return
        try:
            cmd = parse_light_command(payload)
        except ValueError as e:
            _LOGGER.warning("Ignoring MQTT command on %s: %s", topic, e)
            return
        self._loop.call_soon_threadsafe(self.apply, device_id, cmd)

    # Event loop

    def announce(self) -> None:
        self.publish_discovery()
        self._publish(availability_topic(self._config.base_topic), "online", retain=True)
        for dev in self._controller.store.devices():
            self.publish_state(dev)

    def publish_discovery(self) -> None:
        limits = self._controller.store.limits
        for dev in self._controller.store.devices():
            topic, payload = light_discovery(
                discovery_prefix=self._config.discovery_prefix,
                base_topic=self._config.base_topic,
                device=dev,
                limits=limits,
            )
            self._publish(topic, payload, retain=True)

    def publish_state(self, dev: Device) -> None:
        self._publish(state_topic(self._config.base_topic, dev.id), light_state_payload(dev), retain=True)

    def resolve_topic(self, topic: str) -> str | None:
        # topic: base/cmd/light/<slug>
        prefix = f"{self._config.base_topic}/cmd/light/"
        if not topic.startswith(prefix):
            return None
        return self._by_slug.get(topic[len(prefix):])

    def apply(self, device_id: str, cmd: LightCommandPayload) -> None:
        ctl = self._controller
        if cmd.on is False:
            ctl.set_power(device_id, False)
            return
        if cmd.brightness is not None:
            ctl.set_brightness(device_id, cmd.brightness)
        if cmd.temperature is not None:
            ctl.set_temperature(device_id, cmd.temperature)
        if cmd.on is True:
            ctl.set_power(device_id, True)
