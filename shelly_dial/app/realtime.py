from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from fastapi import WebSocket

_LOGGER = logging.getLogger("realtime")

SEND_TIMEOUT_S = 2.0


def encode_event(event_type: str, data: dict[str, Any]) -> str:
    return json.dumps({"type": event_type, "data": data}, ensure_ascii=False)


class RealtimeHub:
    """Pushes device, mode and relay events to every open page.

    Dial drags produce a burst of device events, so each page gets its own
    bounded send; a stalled socket is dropped instead of holding up the rest.
    """

    def __init__(self, *, send_timeout_s: float = SEND_TIMEOUT_S) -> None:
        self._pages: set[WebSocket] = set()
        self._send_timeout_s = float(send_timeout_s)
        self._loop: asyncio.AbstractEventLoop | None = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def client_count(self) -> int:
        return len(self._pages)

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        self._pages.add(ws)
        _LOGGER.debug("Page connected (%d open)", len(self._pages))

    async def disconnect(self, ws: WebSocket) -> None:
        if ws in self._pages:
            self._pages.discard(ws)
            _LOGGER.debug("Page disconnected (%d open)", len(self._pages))

    async def send(self, ws: WebSocket, event_type: str, data: dict[str, Any]) -> None:
        await ws.send_text(encode_event(event_type, data))

    async def _deliver(self, ws: WebSocket, msg: str) -> bool:
        try:
            await asyncio.wait_for(ws.send_text(msg), timeout=self._send_timeout_s)
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            _LOGGER.debug("Dropping page after failed send: %s", e)
            return False

    async def broadcast(self, event_type: str, data: dict[str, Any]) -> None:
        pages = list(self._pages)
        if not pages:
            return
        msg = encode_event(event_type, data)
        delivered = await asyncio.gather(*(self._deliver(ws, msg) for ws in pages))
        for ws, ok in zip(pages, delivered):
            if not ok:
                self._pages.discard(ws)

    def publish(self, event_type: str, data: dict[str, Any]) -> None:
        """Schedule a broadcast from synchronous listener code."""
        loop = self._loop
        if loop is None or loop.is_closed() or not self._pages:
            return
        task = loop.create_task(self.broadcast(event_type, data))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def close_all(self) -> None:
        pages = list(self._pages)
        self._pages.clear()
        for t in list(self._tasks):
            t.cancel()
        for ws in pages:
            try:
                await ws.close()
            except Exception:
                _LOGGER.debug("WebSocket close failed", exc_info=True)
