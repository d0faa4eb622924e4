from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Literal

from .gateway import HttpTransport
from .settings import RelayConfig

_LOGGER = logging.getLogger("relay")

STATUS_CHECKING = "checking"
STATUS_ONLINE = "online"
STATUS_OFFLINE = "offline"

RelayStatus = Literal["checking", "online", "offline"]
StatusListener = Callable[[str], None]


class RelayMonitor:
    """Process-wide view of whether the relay is reachable.

    One probe runs at a time; concurrent callers share its outcome. While the
    relay is offline it is re-probed at most once per ``recheck_interval_s``.
    """

    def __init__(
        self,
        config: RelayConfig,
        *,
        health_check: Callable[[], Awaitable[bool]] | None = None,
        simulate: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._simulate = bool(simulate)
        self._clock = clock
        self._health_check = health_check or self._http_health_check
        self._transport = HttpTransport(verify_tls=config.verify_tls)

        self._status: RelayStatus = STATUS_CHECKING
        self._last_checked_at: float | None = None
        self._listeners: list[StatusListener] = []

        self._probe_task: asyncio.Task | None = None
        self._initial_check: asyncio.Future | None = None
        self._monitor_task: asyncio.Task | None = None

    @property
    def status(self) -> RelayStatus:
        return self._status

    @property
    def last_checked_at(self) -> float | None:
        return self._last_checked_at

    @property
    def enabled(self) -> bool:
        return self._config.enabled and not self._simulate

    def is_online(self) -> bool:
        return self._status == STATUS_ONLINE

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        self._listeners.append(listener)
        try:
            listener(self._status)
        except Exception:
            _LOGGER.exception("Relay status listener failed")

        def _unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return _unsubscribe

    def _set_status(self, status: RelayStatus) -> None:
        if status == self._status:
            return
        self._status = status
        for cb in list(self._listeners):
            try:
                cb(status)
            except Exception:
                _LOGGER.exception("Relay status listener failed")

    async def _http_health_check(self) -> bool:
        url = f"{self._config.base_url}{self._config.health_path}"
        status, _body = await self._transport.get(url, timeout=self._config.health_timeout_s)
        return 200 <= status < 300

    async def _run_probe(self) -> bool:
        try:
            ok = bool(
                await asyncio.wait_for(self._health_check(), timeout=self._config.health_timeout_s)
            )
        except asyncio.TimeoutError:
            _LOGGER.info("Relay health check timed out after %.1fs", self._config.health_timeout_s)
            ok = False
        except Exception as e:
            _LOGGER.info("Relay health check failed: %s", e)
            ok = False
        finally:
            self._last_checked_at = self._clock()
            self._probe_task = None
        self._set_status(STATUS_ONLINE if ok else STATUS_OFFLINE)
        _LOGGER.info("Relay health check result: %s", self._status)
        return ok

    async def probe(self) -> bool:
        if not self.enabled:
            self._last_checked_at = self._clock()
            self._set_status(STATUS_OFFLINE)
            return False

        task = self._probe_task
        if task is None or task.done():
            self._set_status(STATUS_CHECKING)
            task = asyncio.get_running_loop().create_task(self._run_probe())
            self._probe_task = task
        # Shielded so one impatient caller cannot cancel the shared probe.
        return await asyncio.shield(task)

    def _should_recheck(self) -> bool:
        if self._status != STATUS_OFFLINE:
            return False
        last = self._last_checked_at
        return last is None or (self._clock() - last) >= self._config.recheck_interval_s

    async def _monitor_loop(self) -> None:
        interval = self._config.recheck_interval_s
        while True:
            await asyncio.sleep(interval)
            if not self.enabled or not self._should_recheck():
                continue
            try:
                await self.probe()
            except asyncio.CancelledError:
                raise
            except Exception:
                _LOGGER.exception("Relay re-probe failed")

    def start_monitoring(self) -> None:
        loop = asyncio.get_running_loop()
        self._initial_check = asyncio.ensure_future(self.probe())
        if self._monitor_task is not None and not self._monitor_task.done():
            self._monitor_task.cancel()
        self._monitor_task = loop.create_task(self._monitor_loop())

    async def wait_for_first_check(self) -> bool:
        if self._initial_check is None:
            if self._last_checked_at is not None and self._status != STATUS_CHECKING:
                return self.is_online()
            self._initial_check = asyncio.ensure_future(self.probe())
        return await asyncio.shield(self._initial_check)

    async def stop(self) -> None:
        task = self._monitor_task
        self._monitor_task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        init = self._initial_check
        if init is not None and not init.done():
            init.cancel()
        probe = self._probe_task
        self._probe_task = None
        if probe is not None and not probe.done():
            probe.cancel()
            try:
                await probe
            except asyncio.CancelledError:
                pass
