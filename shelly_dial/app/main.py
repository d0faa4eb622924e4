from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Awaitable, Callable

from fastapi import Body, FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import FileResponse
from fastapi.staticfiles import StaticFiles

from .controller import BulbController
from .gateway import DeviceGateway, Transport
from .mqtt_client import MqttBridge
from .realtime import RealtimeHub
from .relay import RelayMonitor
from .scheduler import UpdateScheduler
from .settings import Settings, load_settings, read_options
from .simulator import SimulatedTransport
from .store import Device, DeviceStateStore

_LOGGER = logging.getLogger("shelly_dial")
logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper())

APP_VERSION = "0.3.1"

HTTP_PORT = 8126


def _configure_logging(debug: bool) -> None:
    level = logging.DEBUG if debug else logging.INFO

    root = logging.getLogger()
    root.setLevel(level)

    for name in (
        "shelly_dial",
        "scheduler",
        "gateway",
        "relay",
        "controller",
        "group",
        "simulator",
        "realtime",
        "mqtt",
        "uvicorn",
        "uvicorn.error",
    ):
        logging.getLogger(name).setLevel(level)

    # Access log is one line per dial step: keep it quiet unless debugging.
    logging.getLogger("uvicorn.access").setLevel(logging.INFO if debug else logging.WARNING)
    logging.getLogger("paho").setLevel(logging.INFO if debug else logging.WARNING)


def _parse_state(payload: dict[str, Any] | None) -> bool | None:
    if not payload:
        return None
    raw = payload.get("state")
    if raw is None:
        return None
    state = str(raw).strip().upper()
    if state not in ("ON", "OFF"):
        raise HTTPException(status_code=400, detail="state must be ON/OFF")
    return state == "ON"


def _parse_value(payload: dict[str, Any] | None) -> float:
    try:
        return float((payload or {})["value"])
    except (KeyError, TypeError, ValueError):
        raise HTTPException(status_code=400, detail="value must be a number")


def create_app(
    options: dict[str, Any] | None = None,
    *,
    transport: Transport | None = None,
    health_check: Callable[[], Awaitable[bool]] | None = None,
) -> FastAPI:
    api = FastAPI(title="Shelly Dial", version=APP_VERSION)

    static_dir = os.path.join(os.path.dirname(__file__), "static")
    api.mount("/static", StaticFiles(directory=static_dir), name="static")

    if options is None:
        options = read_options()
    settings: Settings = load_settings(options)
    api.state.settings = settings
    _configure_logging(settings.debug)

    if settings.simulate:
        _LOGGER.warning("Simulation mode: no requests reach real bulbs")
        if transport is None:
            transport = SimulatedTransport(latency_s=settings.simulate_latency_s)

    store = DeviceStateStore.from_config(settings.devices, limits=settings.limits)
    relay = RelayMonitor(settings.relay, health_check=health_check, simulate=settings.simulate)
    gateway = DeviceGateway(
        relay=relay,
        relay_config=settings.relay,
        transport=transport,
        set_timeout_s=settings.scheduler.set_timeout_s,
        status_timeout_s=settings.status_timeout_s,
    )
    scheduler = UpdateScheduler(store, gateway, debounce_s=settings.scheduler.debounce_s)
    controller = BulbController(store, scheduler, gateway)
    hub = RealtimeHub()

    api.state.store = store
    api.state.relay = relay
    api.state.gateway = gateway
    api.state.scheduler = scheduler
    api.state.controller = controller
    api.state.hub = hub
    api.state.mqtt_bridge = None
    api.state.poll_task = None

    def _require_device(device_id: str) -> Device:
        dev = store.get(device_id)
        if dev is None:
            raise HTTPException(status_code=404, detail="Not Found")
        return dev

    def _device_view(dev: Device) -> dict[str, Any]:
        out = dev.to_dict()
        out["dial"] = round(controller.dial_value(dev), 1)
        return out

    def _devices_view() -> dict[str, Any]:
        return {
            "devices": [_device_view(d) for d in store.devices()],
            "any_on": controller.is_any_on(),
            "mode": controller.mode,
        }

    def _relay_view() -> dict[str, Any]:
        return {
            "status": relay.status,
            "enabled": relay.enabled,
            "last_checked_at": relay.last_checked_at,
        }

    async def _status_poll_loop() -> None:
        interval = settings.status_poll_interval_s
        while True:
            try:
                await controller.refresh_all()
            except asyncio.CancelledError:
                raise
            except Exception:
                _LOGGER.exception("Status poll failed")
            await asyncio.sleep(interval)

    @api.on_event("startup")
    async def _startup() -> None:
        loop = asyncio.get_running_loop()
        api.state.loop = loop
        hub.bind(loop)

        store.add_listener(lambda dev: hub.publish("device", _device_view(dev)))
        controller.add_mode_listener(lambda mode: hub.publish("devices", _devices_view()))
        relay.subscribe(lambda status: hub.publish("relay", _relay_view()))

        relay.start_monitoring()

        if settings.mqtt.enabled:
            bridge = MqttBridge(controller, settings.mqtt, loop)
            bridge.start()
            api.state.mqtt_bridge = bridge

        if settings.status_poll_interval_s > 0:
            api.state.poll_task = loop.create_task(_status_poll_loop())

        _LOGGER.info(
            "Started with %d bulbs (debounce %.0f ms, relay %s, simulate %s)",
            len(store.devices()),
            settings.scheduler.debounce_s * 1000,
            "enabled" if settings.relay.enabled else "disabled",
            settings.simulate,
        )

    @api.on_event("shutdown")
    async def _shutdown() -> None:
        poll = api.state.poll_task
        api.state.poll_task = None
        if poll is not None and not poll.done():
            poll.cancel()
            try:
                await poll
            except asyncio.CancelledError:
                pass

        bridge: MqttBridge | None = api.state.mqtt_bridge
        if bridge is not None:
            try:
                bridge.stop()
            except Exception:
                _LOGGER.exception("MQTT shutdown failed")

        await scheduler.close()
        await relay.stop()
        await hub.close_all()

    @api.get("/health")
    async def health():
        return {"status": "ok"}

    @api.get("/", include_in_schema=False)
    async def index():
        return FileResponse(os.path.join(static_dir, "index.html"))

    @api.get("/api/meta")
    async def api_meta():
        lim = settings.limits
        return {
            "version": APP_VERSION,
            "simulate": settings.simulate,
            "debounce_ms": int(round(settings.scheduler.debounce_s * 1000)),
            "limits": {
                "brightness_min": lim.brightness_min,
                "brightness_max": lim.brightness_max,
                "temp_min": lim.temp_min,
                "temp_max": lim.temp_max,
            },
            "gateway": gateway.describe(),
        }

    @api.get("/api/devices")
    async def api_devices():
        return _devices_view()

    @api.post("/api/devices/{device_id}/brightness")
    async def set_brightness(device_id: str, payload: dict[str, Any] | None = Body(default=None)):
        _require_device(device_id)
        scheduled = controller.set_brightness(device_id, _parse_value(payload))
        return {"ok": True, "scheduled": scheduled}

    @api.post("/api/devices/{device_id}/temperature")
    async def set_temperature(device_id: str, payload: dict[str, Any] | None = Body(default=None)):
        _require_device(device_id)
        scheduled = controller.set_temperature(device_id, _parse_value(payload))
        return {"ok": True, "scheduled": scheduled}

    @api.post("/api/devices/{device_id}/dial")
    async def set_dial(device_id: str, payload: dict[str, Any] | None = Body(default=None)):
        _require_device(device_id)
        scheduled = controller.set_dial_value(device_id, _parse_value(payload))
        return {"ok": True, "mode": controller.mode, "scheduled": scheduled}

    @api.post("/api/devices/{device_id}/power")
    async def set_power(device_id: str, payload: dict[str, Any] | None = Body(default=None)):
        _require_device(device_id)
        on = _parse_state(payload)
        dev = controller.toggle_power(device_id) if on is None else controller.set_power(device_id, on)
        return _device_view(dev or _require_device(device_id))

    @api.post("/api/devices/{device_id}/link")
    async def toggle_link(device_id: str):
        _require_device(device_id)
        dev = controller.toggle_link(device_id)
        return _device_view(dev or _require_device(device_id))

    @api.get("/api/devices/{device_id}/status")
    async def device_status(device_id: str):
        _require_device(device_id)
        st = await controller.refresh_status(device_id)
        if st is None:
            raise HTTPException(status_code=404, detail="Not Found")
        return {
            "online": st.online,
            "ison": st.is_on,
            "brightness": st.brightness,
            "temp": st.temperature,
            "error": st.error,
        }

    @api.post("/api/power")
    async def set_all_power(payload: dict[str, Any] | None = Body(default=None)):
        on = _parse_state(payload)
        if on is None:
            on = not controller.is_any_on()
        changed = controller.set_all_power(on)
        return {"ok": True, "any_on": controller.is_any_on(), "changed": changed}

    @api.get("/api/mode")
    async def get_mode():
        return {"mode": controller.mode}

    @api.post("/api/mode")
    async def set_mode(payload: dict[str, Any] | None = Body(default=None)):
        mode = (payload or {}).get("mode")
        if mode is None:
            return {"mode": controller.toggle_mode()}
        try:
            return {"mode": controller.set_mode(str(mode).strip().lower())}
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    @api.get("/api/relay/status")
    async def relay_status():
        return _relay_view()

    @api.post("/api/relay/probe")
    async def relay_probe():
        online = await relay.probe()
        return {"online": online, **_relay_view()}

    @api.get("/api/mqtt/status")
    async def mqtt_status():
        bridge: MqttBridge | None = api.state.mqtt_bridge
        if bridge is None:
            return {"enabled": False, "connected": False, "last_error": None}
        st = bridge.status()
        return {"enabled": st.enabled, "connected": st.connected, "last_error": st.last_error}

    @api.websocket("/ws")
    async def ws_endpoint(ws: WebSocket):
        await hub.connect(ws)
        try:
            await hub.send(ws, "snapshot", {**_devices_view(), "relay": _relay_view()})
            while True:
                msg = await ws.receive_text()
                if msg.strip().lower() == "ping":
                    await ws.send_text("pong")
        except WebSocketDisconnect:
            pass
        finally:
            await hub.disconnect(ws)

    return api


def main() -> None:
    import uvicorn

    app = create_app()
    port = int(os.environ.get("SHELLY_DIAL_PORT") or HTTP_PORT)
    uvicorn.run(app, host="0.0.0.0", port=port, log_level="info")


if __name__ == "__main__":
    main()
