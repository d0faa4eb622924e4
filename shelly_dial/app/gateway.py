from __future__ import annotations

import asyncio
import json
import logging
import ssl
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any, Protocol

from .settings import RelayConfig

_LOGGER = logging.getLogger("gateway")

LIGHT_PATH = "/light/0"
STATUS_PATH = "/status"


class DeviceRequestError(Exception):
    """A set-light call failed (network error, timeout or non-2xx)."""


class Transport(Protocol):
    async def get(self, url: str, *, timeout: float) -> tuple[int, bytes]: ...


class RelayState(Protocol):
    def is_online(self) -> bool: ...

    async def wait_for_first_check(self) -> bool: ...


@dataclass(frozen=True)
class DeviceRequest:
    url: str
    via_relay: bool


@dataclass(frozen=True)
class DeviceStatus:
    online: bool
    is_on: bool = False
    brightness: int = 0
    temperature: int = 4000
    error: str | None = None

    @classmethod
    def unreachable(cls, error: str) -> "DeviceStatus":
        return cls(online=False, error=error)


class HttpTransport:
    """Blocking urllib GETs pushed onto a worker thread."""

    def __init__(self, *, verify_tls: bool = True) -> None:
        self._ssl_ctx: ssl.SSLContext | None = None
        if not verify_tls:
            # Relays on a LAN usually serve a self-signed certificate.
            ctx = ssl.create_default_context()
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE
            self._ssl_ctx = ctx

    def _get_blocking(self, url: str, timeout: float) -> tuple[int, bytes]:
        req = urllib.request.Request(url=url, method="GET", headers={"Cache-Control": "no-store"})
        try:
            with urllib.request.urlopen(req, timeout=timeout, context=self._ssl_ctx) as resp:
                return int(resp.status), resp.read()
        except urllib.error.HTTPError as e:
            try:
                body = e.read()
            except Exception:
                body = b""
            return int(e.code), body

    async def get(self, url: str, *, timeout: float) -> tuple[int, bytes]:
        return await asyncio.to_thread(self._get_blocking, url, timeout)


def _clean_path(path: str) -> str:
    return path if path.startswith("/") else f"/{path}"


def _light_query(*, on: bool | None, brightness: int | None, temperature: int | None) -> dict[str, str]:
    params: dict[str, str] = {}
    if on is not None:
        params["turn"] = "on" if on else "off"
    if brightness is not None:
        params["brightness"] = str(int(round(brightness)))
    if temperature is not None:
        params["temp"] = str(int(round(temperature)))
    return params


def parse_status_payload(raw: bytes) -> DeviceStatus:
    try:
        data = json.loads(raw.decode("utf-8", errors="replace"))
    except ValueError:
        return DeviceStatus.unreachable("Malformed status payload")

    lights = data.get("lights") if isinstance(data, dict) else None
    light = lights[0] if isinstance(lights, list) and lights else None
    if not isinstance(light, dict):
        return DeviceStatus.unreachable("No light data in response")
    try:
        return DeviceStatus(
            online=True,
            is_on=bool(light["ison"]),
            brightness=int(light["brightness"]),
            temperature=int(light["temp"]),
        )
    except (KeyError, TypeError, ValueError):
        return DeviceStatus.unreachable("Incomplete light data in response")


class DeviceGateway:
    """Builds and issues the per-bulb HTTP calls, routing through the relay when it is online."""

    def __init__(
        self,
        *,
        relay: RelayState,
        relay_config: RelayConfig,
        transport: Transport | None = None,
        set_timeout_s: float = 5.0,
        status_timeout_s: float = 5.0,
    ) -> None:
        self._relay = relay
        self._relay_config = relay_config
        self._transport: Transport = transport or HttpTransport(verify_tls=relay_config.verify_tls)
        self._set_timeout_s = float(set_timeout_s)
        self._status_timeout_s = float(status_timeout_s)

    def build_request(self, address: str, path: str, params: dict[str, str] | None = None) -> DeviceRequest:
        # Evaluated per call so a relay transition applies to the very next request.
        path = _clean_path(path)
        query = f"?{urllib.parse.urlencode(params)}" if params else ""
        if self._relay.is_online():
            url = f"{self._relay_config.base_url}/proxy/{address}{path}{query}"
            _LOGGER.debug("Routing through relay: %s", url)
            return DeviceRequest(url=url, via_relay=True)
        url = f"http://{address}{path}{query}"
        _LOGGER.debug("Direct connection: %s", url)
        return DeviceRequest(url=url, via_relay=False)

    async def set_light(
        self,
        address: str,
        *,
        on: bool | None = None,
        brightness: int | None = None,
        temperature: int | None = None,
    ) -> None:
        await self._relay.wait_for_first_check()
        req = self.build_request(address, LIGHT_PATH, _light_query(on=on, brightness=brightness, temperature=temperature))
        try:
            status, _body = await asyncio.wait_for(
                self._transport.get(req.url, timeout=self._set_timeout_s),
                timeout=self._set_timeout_s,
            )
        except asyncio.TimeoutError as e:
            raise DeviceRequestError(f"{address}: timeout after {self._set_timeout_s:.1f}s") from e
        except Exception as e:
            raise DeviceRequestError(f"{address}: {e}") from e
        if not 200 <= status < 300:
            raise DeviceRequestError(f"{address}: HTTP {status}")

    async def turn_on(self, address: str, brightness: int, temperature: int) -> None:
        await self.set_light(address, on=True, brightness=brightness, temperature=temperature)

    async def turn_off(self, address: str) -> None:
        await self.set_light(address, on=False)

    async def set_brightness(self, address: str, brightness: int) -> None:
        await self.set_light(address, brightness=brightness)

    async def set_temperature(self, address: str, temperature: int) -> None:
        await self.set_light(address, temperature=temperature)

    async def get_status(self, address: str) -> DeviceStatus:
        try:
            await self._relay.wait_for_first_check()
            req = self.build_request(address, STATUS_PATH)
            status, body = await asyncio.wait_for(
                self._transport.get(req.url, timeout=self._status_timeout_s),
                timeout=self._status_timeout_s,
            )
        except asyncio.TimeoutError:
            _LOGGER.warning("Status query to %s timed out", address)
            return DeviceStatus.unreachable("Timeout")
        except Exception as e:
            _LOGGER.warning("Status query to %s failed: %s", address, e)
            return DeviceStatus.unreachable(str(e) or type(e).__name__)

        if not 200 <= status < 300:
            return DeviceStatus.unreachable(f"HTTP {status}")
        return parse_status_payload(body)

    def describe(self) -> dict[str, Any]:
        return {
            "set_timeout_s": self._set_timeout_s,
            "status_timeout_s": self._status_timeout_s,
            "transport": type(self._transport).__name__,
        }
