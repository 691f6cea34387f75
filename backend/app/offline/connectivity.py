from __future__ import annotations

import asyncio
from typing import Optional

import httpx

from ..jsonlog import json_log
from .events import OFFLINE, ONLINE, ConnectivityChanged, EventBus
from .models import now_ms


class ConnectivityMonitor:
    """
    Tracks whether the upstream POS API is reachable and emits `online` /
    `offline` on transitions only.
    """

    def __init__(
        self,
        bus: EventBus,
        client: httpx.AsyncClient,
        *,
        health_path: str = "/api/health",
        interval_seconds: float = 15.0,
        timeout_seconds: float = 0.8,
        initially_online: bool = True,
    ):
        self._bus = bus
        self._client = client
        self._health_path = health_path
        self._interval = interval_seconds
        self._timeout = timeout_seconds
        self._online = bool(initially_online)
        self._task: Optional[asyncio.Task] = None

    @property
    def is_online(self) -> bool:
        return self._online

    async def set_online(self, online: bool) -> bool:
        online = bool(online)
        if online == self._online:
            return False
        self._online = online
        json_log("info", "offline.connectivity.changed", online=online)
        await self._bus.emit(ONLINE if online else OFFLINE, ConnectivityChanged(online=online, timestamp=now_ms()))
        return True

    async def probe(self) -> bool:
        try:
            response = await self._client.get(self._health_path, timeout=self._timeout)
            # Any answer short of a server error means the network path works.
            ok = response.status_code < 500
        except httpx.HTTPError as ex:
            json_log("debug", "offline.connectivity.probe_failed", error=str(ex))
            ok = False
        await self.set_online(ok)
        return ok

    async def _probe_loop(self):
        while True:
            try:
                await self.probe()
            except Exception as ex:
                json_log("error", "offline.connectivity.loop_error", error=str(ex))
            await asyncio.sleep(self._interval)

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._probe_loop())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
