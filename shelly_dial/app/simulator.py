from __future__ import annotations

import asyncio
import json
import logging
import urllib.parse
from dataclasses import asdict, dataclass

_LOGGER = logging.getLogger("simulator")


@dataclass
class SimulatedLight:
    ison: bool = True
    brightness: int = 50
    temp: int = 4000


class SimulatedTransport:
    """In-memory stand-in for the bulbs' HTTP API.

    Speaks the same URLs as the real devices (direct or relay-routed) so the
    gateway is exercised unchanged; every call takes ``latency_s`` and echoes
    the stored state.
    """

    def __init__(self, *, latency_s: float = 0.15) -> None:
        self._latency_s = float(max(0.0, latency_s))
        self._lights: dict[str, SimulatedLight] = {}
        self.calls: list[str] = []

    def light(self, address: str) -> SimulatedLight:
        st = self._lights.get(address)
        if st is None:
            st = SimulatedLight()
            self._lights[address] = st
        return st

    @staticmethod
    def _split(url: str) -> tuple[str, str, dict[str, str]]:
        u = urllib.parse.urlparse(url)
        query = {k: v[-1] for k, v in urllib.parse.parse_qs(u.query).items() if v}
        path = u.path or "/"
        if path.startswith("/proxy/"):
            rest = path[len("/proxy/"):]
            address, _, tail = rest.partition("/")
            return address, "/" + tail, query
        return u.netloc, path, query

    async def get(self, url: str, *, timeout: float) -> tuple[int, bytes]:
        self.calls.append(url)
        if self._latency_s:
            await asyncio.sleep(self._latency_s)

        address, path, query = self._split(url)
        st = self.light(address)

        if path == "/light/0":
            turn = query.get("turn")
            if turn == "on":
                st.ison = True
            elif turn == "off":
                st.ison = False
            try:
                if "brightness" in query:
                    st.brightness = int(float(query["brightness"]))
                if "temp" in query:
                    st.temp = int(float(query["temp"]))
            except ValueError:
                return 400, b'{"error": "bad value"}'
            _LOGGER.info("[SIMULATE] setLight(%s): %s", address, query)
            return 200, json.dumps(asdict(st)).encode("utf-8")

        if path == "/status":
            _LOGGER.debug("[SIMULATE] getStatus(%s)", address)
            return 200, json.dumps({"lights": [asdict(st)]}).encode("utf-8")

        return 404, b'{"error": "not found"}'
